from __future__ import annotations

import datetime

import pytest

from app.notifications.booking_ledger import FirestoreBookingLedger, NullBookingLedger
from app.notifications.contracts import ChannelKind, InvalidTargetError, ServerInternalError, SubscriberRole, UnauthenticatedError
from app.notifications.dispatch import DispatchGateway
from app.notifications.payloads import APP_NAME, DEFAULT_BODY
from app.notifications.subscriber_registry import InMemorySubscriberRegistry, SubscriberUpdate
from app.notifications.triggers import REGISTRY_UNAVAILABLE, BookingEvent, BookingNotifier, StatusChangeEvent, booking_message, send_on_demand, status_change_message
from tests.conftest import FakeSender, gateway_channel, webpush_channel


class RecordingLedger(NullBookingLedger):
  def __init__(self, *, fail: bool = False) -> None:
    self.marked: list[str] = []
    self.fail = fail

  async def mark_notified(self, appointment_id: str) -> bool:
    if self.fail:
      raise RuntimeError("firestore unavailable")
    self.marked.append(appointment_id)
    return True


def _pending(**overrides) -> BookingEvent:
  values = {"appointment_id": "apt-1", "status": "pending", "group_id": "shop-1", "client_name": "Ana", "scheduled_at": datetime.datetime(2024, 5, 3, 14, 30)}
  values.update(overrides)
  return BookingEvent(**values)


@pytest.fixture
def ledger() -> RecordingLedger:
  return RecordingLedger()


@pytest.fixture
def notifier(gateway, ledger) -> BookingNotifier:
  return BookingNotifier(gateway=gateway, ledger=ledger, admin_queue_path="/admin/appointments")


@pytest.mark.anyio
async def test_pending_booking_notifies_valid_admins_once(notifier, registry, sender, ledger):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))
  await registry.upsert("admin-2", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=gateway_channel("b")))
  await registry.upsert("admin-3", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=gateway_channel("c")))
  await registry.mark_invalid(gateway_channel("c").key, "recipient-gone")

  result = await notifier.on_booking_written(_pending())

  assert result.skipped_reason is None
  assert len(result.outcomes) == 2
  assert result.delivered == 2
  assert result.marked_notified is True
  assert ledger.marked == ["apt-1"]

  push = sender.sent[0]
  assert push.request.title == "New appointment"
  assert push.request.body == "Ana requested an appointment for 03/05/2024 14:30"
  assert push.request.data["appointmentId"] == "apt-1"
  assert push.request.data["type"] == "new_appointment"
  assert push.request.data["groupId"] == "shop-1"
  assert push.request.url == "/admin/appointments"


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("overrides", "reason"),
  [
    ({"status": "confirmed"}, "not-pending"),
    ({"group_id": None}, "no-group"),
    ({"notification_sent": True}, "already-notified"),
  ],
)
async def test_bookings_that_need_no_notification_are_skipped(notifier, registry, sender, ledger, overrides, reason):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))

  result = await notifier.on_booking_written(_pending(**overrides))

  assert result.skipped_reason == reason
  assert sender.sent == []
  assert ledger.marked == []


@pytest.mark.anyio
async def test_group_without_admins_is_still_marked(notifier, ledger):
  result = await notifier.on_booking_written(_pending(group_id="shop-empty"))

  assert result.outcomes == []
  assert ledger.marked == ["apt-1"]


@pytest.mark.anyio
async def test_registry_failure_leaves_booking_unflagged(audit_repo, ledger):
  class BrokenRegistry(InMemorySubscriberRegistry):
    async def query_by_group_and_role(self, group_id, role, *, include_invalid=False):
      raise ConnectionError("database down")

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: FakeSender()}, registry=BrokenRegistry(), dispatch_log_repo=audit_repo)
  notifier = BookingNotifier(gateway=gateway, ledger=ledger, admin_queue_path="/admin/appointments")

  result = await notifier.on_booking_written(_pending())

  assert result.skipped_reason == REGISTRY_UNAVAILABLE
  assert ledger.marked == []


@pytest.mark.anyio
async def test_write_back_failure_does_not_undo_delivery(gateway, registry):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))
  notifier = BookingNotifier(gateway=gateway, ledger=RecordingLedger(fail=True), admin_queue_path="/admin/appointments")

  result = await notifier.on_booking_written(_pending())

  assert result.delivered == 1
  assert result.marked_notified is False


def test_booking_message_without_client_or_date():
  assert booking_message(_pending(client_name="  ", scheduled_at=None)) == ("New appointment", "A client requested an appointment for date not specified")


@pytest.mark.anyio
async def test_on_demand_requires_authenticated_caller(gateway, sender):
  with pytest.raises(UnauthenticatedError):
    await send_on_demand(gateway, caller_id=None, channel=webpush_channel("a"))
  assert sender.sent == []


@pytest.mark.anyio
async def test_on_demand_requires_channel(gateway, sender):
  with pytest.raises(InvalidTargetError):
    await send_on_demand(gateway, caller_id="u1", channel=None, title="Hi", body="There")
  assert sender.sent == []


@pytest.mark.anyio
async def test_on_demand_applies_defaults_and_returns_message_id(gateway, sender):
  result = await send_on_demand(gateway, caller_id="u1", channel=gateway_channel("a"))

  assert result == {"success": True, "messageId": "msg-1"}
  assert sender.sent[0].request.title == APP_NAME
  assert sender.sent[0].request.body == DEFAULT_BODY


@pytest.mark.anyio
async def test_on_demand_provider_failure_is_internal(registry, audit_repo):
  channel = webpush_channel("flaky")
  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: FakeSender(flaky={channel.key})}, registry=registry, dispatch_log_repo=audit_repo)

  with pytest.raises(ServerInternalError):
    await send_on_demand(gateway, caller_id="u1", channel=channel, title="Hi", body="There")


@pytest.mark.anyio
async def test_firestore_ledger_flags_appointment_document():
  class FakeDocument:
    def __init__(self) -> None:
      self.updates: list[dict] = []

    def update(self, values: dict) -> None:
      self.updates.append(values)

  class FakeClient:
    def __init__(self) -> None:
      self.documents: dict[tuple[str, str], FakeDocument] = {}

    def collection(self, name: str):
      client = self

      class _Collection:
        def document(self, doc_id: str) -> FakeDocument:
          return client.documents.setdefault((name, doc_id), FakeDocument())

      return _Collection()

  client = FakeClient()

  assert await FirestoreBookingLedger(client=client).mark_notified("apt-1") is True

  update = client.documents[("appointments", "apt-1")].updates[0]
  assert update["notificationSent"] is True
  assert "notificationSentAt" in update


@pytest.mark.anyio
async def test_disabled_ledger_does_not_report_booking_as_flagged(gateway, registry, sender):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))
  notifier = BookingNotifier(gateway=gateway, ledger=NullBookingLedger(), admin_queue_path="/admin/appointments")

  result = await notifier.on_booking_written(_pending())

  assert result.delivered == 1
  assert result.marked_notified is False


def _status_change(**overrides) -> StatusChangeEvent:
  values = {
    "appointment_id": "apt-9",
    "old_status": "pending",
    "new_status": "confirmed",
    "group_id": "shop-1",
    "client_name": "Ana",
    "service": "Beard trim",
    "scheduled_at": datetime.datetime(2024, 5, 3, 14, 30),
  }
  values.update(overrides)
  return StatusChangeEvent(**values)


@pytest.mark.anyio
async def test_status_change_notifies_admins_with_link_to_appointment(notifier, registry, sender, ledger):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))
  await registry.upsert("staff-1", SubscriberUpdate(role=SubscriberRole.STAFF, group_id="shop-1", channel=gateway_channel("b")))

  result = await notifier.on_status_changed(_status_change())

  assert result.skipped_reason is None
  assert result.delivered == 1
  assert result.marked_notified is False
  assert ledger.marked == []

  push = sender.sent[0]
  assert push.request.title == "Appointment confirmed"
  assert push.request.body == "Ana: appointment for Beard trim on 03/05/2024 14:30 has been confirmed."
  assert push.request.url == "/admin/appointments?id=apt-9"
  assert push.request.data["type"] == "status_change"
  assert (push.request.data["oldStatus"], push.request.data["newStatus"]) == ("pending", "confirmed")


@pytest.mark.parametrize(
  ("new_status", "title"),
  [("confirmed", "Appointment confirmed"), ("completed", "Appointment completed"), ("cancelled", "Appointment cancelled"), ("no-show", "Appointment updated")],
)
def test_status_change_titles_follow_new_status(new_status, title):
  assert status_change_message(_status_change(new_status=new_status))[0] == title


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("overrides", "reason"),
  [
    ({"new_status": "pending"}, "status-unchanged"),
    ({"group_id": None}, "no-group"),
  ],
)
async def test_status_changes_that_need_no_notification_are_skipped(notifier, registry, sender, overrides, reason):
  await registry.upsert("admin-1", SubscriberUpdate(role=SubscriberRole.ADMIN, group_id="shop-1", channel=webpush_channel("a")))

  result = await notifier.on_status_changed(_status_change(**overrides))

  assert result.skipped_reason == reason
  assert sender.sent == []


@pytest.mark.anyio
async def test_status_change_registry_failure_is_reported(audit_repo, ledger):
  class BrokenRegistry(InMemorySubscriberRegistry):
    async def query_by_group_and_role(self, group_id, role, *, include_invalid=False):
      raise ConnectionError("database down")

  gateway = DispatchGateway(senders={ChannelKind.WEBPUSH: FakeSender()}, registry=BrokenRegistry(), dispatch_log_repo=audit_repo)
  notifier = BookingNotifier(gateway=gateway, ledger=ledger, admin_queue_path="/admin/appointments")

  result = await notifier.on_status_changed(_status_change())

  assert result.skipped_reason == REGISTRY_UNAVAILABLE
