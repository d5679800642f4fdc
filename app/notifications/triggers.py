"""Entry points that turn business events and caller requests into dispatches."""

from __future__ import annotations

import datetime
import logging
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from app.notifications.booking_ledger import BookingLedger
from app.notifications.contracts import DeliveryTarget, DispatchOutcome, GatewayChannel, InvalidTargetError, PlatformHint, ServerInternalError, SubscriberRole, UnauthenticatedError, WebPushChannel
from app.notifications.dispatch import DispatchGateway
from app.notifications.payloads import APP_NAME, DEFAULT_BODY, build_notification_request

logger = logging.getLogger(__name__)

PENDING_STATUS = "pending"
NEW_APPOINTMENT_TYPE = "new_appointment"
STATUS_CHANGE_TYPE = "status_change"
REGISTRY_UNAVAILABLE = "registry-unavailable"

_STATUS_CHANGE_COPY = {
  "confirmed": ("Appointment confirmed", "has been confirmed"),
  "completed": ("Appointment completed", "has been marked as completed"),
  "cancelled": ("Appointment cancelled", "has been cancelled"),
}
_STATUS_CHANGE_FALLBACK = ("Appointment updated", "has been updated")


@dataclass(frozen=True)
class BookingEvent:
  """Snapshot of a booking record as observed by the event source."""

  appointment_id: str
  status: str
  group_id: str | None = None
  client_name: str | None = None
  scheduled_at: datetime.datetime | None = None
  notification_sent: bool = False


@dataclass(frozen=True)
class StatusChangeEvent:
  """A booking whose status moved from ``old_status`` to ``new_status``."""

  appointment_id: str
  old_status: str | None
  new_status: str
  group_id: str | None = None
  client_name: str | None = None
  service: str | None = None
  scheduled_at: datetime.datetime | None = None


@dataclass(frozen=True)
class BookingNotificationResult:
  appointment_id: str
  skipped_reason: str | None = None
  outcomes: list[DispatchOutcome] = field(default_factory=list)
  marked_notified: bool = False

  @property
  def delivered(self) -> int:
    return sum(1 for outcome in self.outcomes if outcome.delivered)


def _format_when(scheduled_at: datetime.datetime | None) -> str:
  return scheduled_at.strftime("%d/%m/%Y %H:%M") if scheduled_at else "date not specified"


def booking_message(event: BookingEvent) -> tuple[str, str]:
  client = (event.client_name or "").strip() or "A client"
  return "New appointment", f"{client} requested an appointment for {_format_when(event.scheduled_at)}"


def status_change_message(event: StatusChangeEvent) -> tuple[str, str]:
  title, outcome = _STATUS_CHANGE_COPY.get(event.new_status, _STATUS_CHANGE_FALLBACK)
  client = (event.client_name or "").strip() or "A client"
  service = (event.service or "").strip() or "service"
  return title, f"{client}: appointment for {service} on {_format_when(event.scheduled_at)} {outcome}."


class BookingNotifier:
  """Notify the admins of a booking's group about new pending bookings and status changes."""

  def __init__(self, *, gateway: DispatchGateway, ledger: BookingLedger, admin_queue_path: str) -> None:
    self._gateway = gateway
    self._ledger = ledger
    self._admin_queue_path = admin_queue_path

  async def on_booking_written(self, event: BookingEvent) -> BookingNotificationResult:
    if event.status != PENDING_STATUS:
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason="not-pending")
    if not event.group_id:
      logger.warning("Booking has no group; skipping notification appointment_id=%s", event.appointment_id)
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason="no-group")
    if event.notification_sent:
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason="already-notified")

    title, body = booking_message(event)
    data = {"appointmentId": event.appointment_id, "type": NEW_APPOINTMENT_TYPE, "url": self._admin_queue_path, "groupId": event.group_id}
    outcomes = await self._notify_admins(event.appointment_id, event.group_id, title, body, data, trigger="booking")
    if outcomes is None:
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason=REGISTRY_UNAVAILABLE)

    try:
      marked = await self._ledger.mark_notified(event.appointment_id)
    except Exception as exc:  # noqa: BLE001
      marked = False
      logger.error("Booking write-back failed appointment_id=%s error=%s", event.appointment_id, exc, exc_info=True)

    return BookingNotificationResult(appointment_id=event.appointment_id, outcomes=outcomes, marked_notified=marked)

  async def on_status_changed(self, event: StatusChangeEvent) -> BookingNotificationResult:
    """Tell the group's admins that a booking moved to a new status; no write-back."""
    if event.new_status == event.old_status:
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason="status-unchanged")
    if not event.group_id:
      logger.warning("Status change has no group; skipping notification appointment_id=%s", event.appointment_id)
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason="no-group")

    title, body = status_change_message(event)
    data = {
      "appointmentId": event.appointment_id,
      "type": STATUS_CHANGE_TYPE,
      "oldStatus": event.old_status,
      "newStatus": event.new_status,
      "url": f"{self._admin_queue_path}?{urllib.parse.urlencode({'id': event.appointment_id})}",
      "groupId": event.group_id,
    }
    outcomes = await self._notify_admins(event.appointment_id, event.group_id, title, body, data, trigger="status-change")
    if outcomes is None:
      return BookingNotificationResult(appointment_id=event.appointment_id, skipped_reason=REGISTRY_UNAVAILABLE)

    return BookingNotificationResult(appointment_id=event.appointment_id, outcomes=outcomes)

  async def _notify_admins(self, appointment_id: str, group_id: str, title: str, body: str, data: dict[str, Any], *, trigger: str) -> list[DispatchOutcome] | None:
    """Fan out to the group's admins; None when the registry could not be read."""
    request = build_notification_request(title, body, {**data, "timestamp": datetime.datetime.now(datetime.UTC).isoformat()})
    try:
      return await self._gateway.dispatch_to_group(group_id, SubscriberRole.ADMIN, request, trigger=trigger)
    except ServerInternalError as exc:
      # Leave the booking unflagged so the event source can redeliver it.
      logger.error("Booking notification aborted appointment_id=%s trigger=%s error=%s", appointment_id, trigger, exc)
      return None


async def send_on_demand(
  gateway: DispatchGateway,
  *,
  caller_id: str | None,
  channel: GatewayChannel | WebPushChannel | None,
  title: str | None = None,
  body: str | None = None,
  data: Mapping[str, Any] | None = None,
  platform: PlatformHint = PlatformHint.DESKTOP,
  standalone: bool = False,
) -> dict[str, Any]:
  """Send one ad hoc notification for an authenticated caller.

  Returns ``{"success": True, "messageId": ...}``. Raises ``UnauthenticatedError``
  without a caller, ``InvalidTargetError`` without a channel, and
  ``ServerInternalError`` when the provider rejects the send.
  """
  if not caller_id:
    raise UnauthenticatedError("The caller must be authenticated to send notifications.")
  if channel is None:
    raise InvalidTargetError("A target channel is required.")

  request = build_notification_request(title, body, data, default_title=APP_NAME, default_body=DEFAULT_BODY)
  outcome = await gateway.dispatch_one(DeliveryTarget(channel=channel, platform=platform, standalone=standalone), request)
  if not outcome.delivered:
    raise ServerInternalError(f"Failed to send notification: {outcome.detail or outcome.reason}")

  logger.info("On-demand notification sent caller_id=%s message_id=%s", caller_id, outcome.message_id)
  return {"success": True, "messageId": outcome.message_id}
