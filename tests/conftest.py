"""Test configuration: hermetic settings plus shared push fakes."""

from __future__ import annotations

import os

# Settings are cached at import time, so the environment must be pinned first.
os.environ["BARBERBELL_ENV_FILE"] = os.devnull
os.environ.setdefault("BARBERBELL_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ.pop("BARBERBELL_PG_DSN", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402

from app.notifications.booking_ledger import NullBookingLedger  # noqa: E402
from app.notifications.contracts import ChannelKind, GatewayChannel, OutboundPush, RecipientGoneError, TransientNetworkError, WebPushChannel  # noqa: E402
from app.notifications.dispatch import DispatchGateway  # noqa: E402
from app.notifications.dispatch_log_repo import DispatchLogEntry, DispatchLogRepository  # noqa: E402
from app.notifications.factory import PushServices  # noqa: E402
from app.notifications.reconciliation import ReconciliationPass  # noqa: E402
from app.notifications.subscriber_registry import InMemorySubscriberRegistry  # noqa: E402
from app.notifications.triggers import BookingNotifier  # noqa: E402

P256DH = "BEl6f5Y8X5Y_u7d8mV_AbpZfXfTLT3s1O3L4wM1x8QY2_5qWQ-jxJq7uKjv8mQ4I"
AUTH = "gq8Yh5xA9l2mQ6pR"


def webpush_channel(suffix: str) -> WebPushChannel:
  return WebPushChannel(endpoint=f"https://fcm.googleapis.com/fcm/send/{suffix}", p256dh=P256DH, auth=AUTH)


def gateway_channel(suffix: str) -> GatewayChannel:
  return GatewayChannel(token=f"gateway-token-{suffix}-0123456789")


class FakeSender:
  """Records pushes; keys listed in ``gone`` or ``flaky`` fail with the matching error."""

  def __init__(self, *, gone: set[str] | None = None, flaky: set[str] | None = None) -> None:
    self.gone = gone or set()
    self.flaky = flaky or set()
    self.sent: list[OutboundPush] = []

  def send(self, push: OutboundPush) -> str:
    self.sent.append(push)
    key = push.channel.key
    if key in self.gone:
      raise RecipientGoneError("not registered")
    if key in self.flaky:
      raise TransientNetworkError("provider unavailable")
    return f"msg-{len(self.sent)}"


class RecordingLogRepository(DispatchLogRepository):
  def __init__(self) -> None:
    self.entries: list[DispatchLogEntry] = []

  async def insert(self, entry: DispatchLogEntry) -> None:
    self.entries.append(entry)


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def registry() -> InMemorySubscriberRegistry:
  return InMemorySubscriberRegistry()


@pytest.fixture
def sender() -> FakeSender:
  return FakeSender()


@pytest.fixture
def audit_repo() -> RecordingLogRepository:
  return RecordingLogRepository()


@pytest.fixture
def gateway(registry, sender, audit_repo) -> DispatchGateway:
  return DispatchGateway(senders={ChannelKind.WEBPUSH: sender, ChannelKind.GATEWAY: sender}, registry=registry, dispatch_log_repo=audit_repo, public_base_url="https://barber.example.com")


@pytest.fixture
def push_services(registry, gateway) -> PushServices:
  """Services wired to the in-memory registry and fake sender, without background probes."""
  return PushServices(
    registry=registry,
    gateway=gateway,
    reconciliation=ReconciliationPass(gateway=gateway, registry=registry, enabled=False),
    booking_notifier=BookingNotifier(gateway=gateway, ledger=NullBookingLedger(), admin_queue_path="/admin/appointments"),
    vapid_public_key="BEl62iUYgUivxIkv69yViEuiBIa-Ib9-SkvMeAtA3LFgDzkrxZJjSgSnfckjBJuBkr3qBUYIHBQFLXYp5Nksh8U",
  )
