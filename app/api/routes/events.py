from __future__ import annotations

import datetime
import logging
import secrets
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.api.deps import get_push_services
from app.config import Settings, get_settings
from app.notifications.contracts import TransientNetworkError
from app.notifications.factory import PushServices
from app.notifications.triggers import REGISTRY_UNAVAILABLE, BookingEvent, BookingNotificationResult, StatusChangeEvent

router = APIRouter(prefix="/events", tags=["events"])
logger = logging.getLogger(__name__)


def verify_event_secret(
  settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_barberbell_event_secret: str | None = Header(default=None)
) -> None:
  """Accept the shared secret as a dedicated header or as a bearer token."""
  # No configured secret means no caller is accepted.
  if not settings.event_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Event authentication is not configured.")
  shared_secret_valid = secrets.compare_digest((x_barberbell_event_secret or ""), settings.event_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), f"Bearer {settings.event_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /events")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid event secret.")


class BookingEventPayload(BaseModel):
  """Booking record snapshot pushed by the data store trigger."""

  appointment_id: str = Field(min_length=1, max_length=256, validation_alias=AliasChoices("appointmentId", "id"))
  status: str = Field(max_length=32)
  group_id: str | None = Field(default=None, max_length=128, validation_alias=AliasChoices("groupId", "shopId"))
  client_name: str | None = Field(default=None, max_length=200, validation_alias=AliasChoices("clientName", "name"))
  date: datetime.datetime | None = None
  notification_sent: bool = Field(default=False, validation_alias=AliasChoices("notificationSent", "notification_sent"))
  model_config = ConfigDict(extra="ignore")

  def to_event(self) -> BookingEvent:
    return BookingEvent(appointment_id=self.appointment_id, status=self.status, group_id=self.group_id, client_name=self.client_name, scheduled_at=self.date, notification_sent=self.notification_sent)


class StatusChangePayload(BaseModel):
  """Booking status transition reported after an update."""

  appointment_id: str = Field(min_length=1, max_length=256, validation_alias=AliasChoices("appointmentId", "id"))
  old_status: str | None = Field(default=None, max_length=32, validation_alias=AliasChoices("oldStatus", "previousStatus"))
  new_status: str = Field(min_length=1, max_length=32, validation_alias=AliasChoices("newStatus", "status"))
  group_id: str | None = Field(default=None, max_length=128, validation_alias=AliasChoices("groupId", "shopId"))
  client_name: str | None = Field(default=None, max_length=200, validation_alias=AliasChoices("clientName", "name"))
  service: str | None = Field(default=None, max_length=200)
  date: datetime.datetime | None = None
  model_config = ConfigDict(extra="ignore")

  def to_event(self) -> StatusChangeEvent:
    return StatusChangeEvent(
      appointment_id=self.appointment_id,
      old_status=self.old_status,
      new_status=self.new_status,
      group_id=self.group_id,
      client_name=self.client_name,
      service=self.service,
      scheduled_at=self.date,
    )


def _summary(result: BookingNotificationResult, event_name: str) -> dict[str, Any]:
  if result.skipped_reason == REGISTRY_UNAVAILABLE:
    # 503 asks the event source to redeliver; the booking was not flagged.
    raise TransientNetworkError("Subscriber registry unavailable; retry the event.")

  logger.info("%s event handled appointment_id=%s skipped=%s attempted=%s delivered=%s", event_name, result.appointment_id, result.skipped_reason, len(result.outcomes), result.delivered)
  return {
    "appointmentId": result.appointment_id,
    "skipped": result.skipped_reason,
    "attempted": len(result.outcomes),
    "delivered": result.delivered,
    "notificationSent": result.marked_notified,
  }


@router.post("/bookings", status_code=status.HTTP_200_OK, dependencies=[Depends(verify_event_secret)])
async def booking_written(payload: BookingEventPayload, services: Annotated[PushServices, Depends(get_push_services)]) -> dict[str, Any]:
  """Notify the booking group's admins about a new pending booking."""
  result = await services.booking_notifier.on_booking_written(payload.to_event())
  return _summary(result, "Booking")


@router.post("/booking-status", status_code=status.HTTP_200_OK, dependencies=[Depends(verify_event_secret)])
async def booking_status_changed(payload: StatusChangePayload, services: Annotated[PushServices, Depends(get_push_services)]) -> dict[str, Any]:
  """Notify the booking group's admins that a booking changed status."""
  result = await services.booking_notifier.on_status_changed(payload.to_event())
  return _summary(result, "Status change")
