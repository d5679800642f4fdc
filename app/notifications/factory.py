"""Factory helpers for push notification services."""

from __future__ import annotations

from dataclasses import dataclass

from app.config import Settings
from app.core.firebase import get_firestore_client, initialize_firebase
from app.notifications.booking_ledger import BookingLedger, FirestoreBookingLedger, NullBookingLedger
from app.notifications.contracts import ChannelKind, PushSender
from app.notifications.dispatch import DispatchGateway
from app.notifications.dispatch_log_repo import DispatchLogRepository, NullDispatchLogRepository
from app.notifications.push_sender import GatewayPushSender, NullPushSender, VapidConfig, WebPushSender
from app.notifications.reconciliation import ReconciliationPass
from app.notifications.subscriber_registry import InMemorySubscriberRegistry, SubscriberRegistry
from app.notifications.triggers import BookingNotifier


@dataclass(frozen=True)
class PushServices:
  """Wired components shared by the HTTP surface."""

  registry: SubscriberRegistry
  gateway: DispatchGateway
  reconciliation: ReconciliationPass
  booking_notifier: BookingNotifier
  vapid_public_key: str | None


def build_push_services(settings: Settings) -> PushServices:
  """Construct push services based on environment configuration."""
  # Without Postgres the registry lives in process memory.
  registry: SubscriberRegistry = SubscriberRegistry() if settings.pg_dsn else InMemorySubscriberRegistry()

  if settings.pg_dsn and settings.dispatch_audit_enabled:
    dispatch_log_repo: DispatchLogRepository = DispatchLogRepository()
  else:
    dispatch_log_repo = NullDispatchLogRepository()

  # Direct push needs the full VAPID key pair; config validation guarantees it when enabled.
  if settings.push_notifications_enabled and settings.push_vapid_public_key and settings.push_vapid_private_key and settings.push_vapid_sub:
    vapid_config = VapidConfig(public_key=settings.push_vapid_public_key, private_key=settings.push_vapid_private_key, sub=settings.push_vapid_sub)
    webpush_sender: PushSender = WebPushSender(vapid_config=vapid_config, timeout_seconds=settings.push_timeout_seconds)
  else:
    webpush_sender = NullPushSender(transport="webpush")

  firebase_ready = settings.gateway_notifications_enabled and initialize_firebase()
  gateway_sender: PushSender = GatewayPushSender() if firebase_ready else NullPushSender(transport="gateway")

  firestore_client = get_firestore_client() if firebase_ready else None
  ledger: BookingLedger = FirestoreBookingLedger(client=firestore_client) if firestore_client is not None else NullBookingLedger()

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: webpush_sender, ChannelKind.GATEWAY: gateway_sender}, registry=registry, dispatch_log_repo=dispatch_log_repo, public_base_url=settings.public_base_url)
  return PushServices(
    registry=registry,
    gateway=gateway,
    reconciliation=ReconciliationPass(gateway=gateway, registry=registry, enabled=settings.reconciliation_enabled),
    booking_notifier=BookingNotifier(gateway=gateway, ledger=ledger, admin_queue_path=settings.admin_queue_path),
    vapid_public_key=settings.push_vapid_public_key if settings.push_notifications_enabled else None,
  )
