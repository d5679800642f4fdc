"""Write-back port for marking a booking as notified."""

from __future__ import annotations

import logging
from typing import Protocol

from firebase_admin import firestore
from google.cloud.firestore import Client as FirestoreClient
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

APPOINTMENTS_COLLECTION = "appointments"


class BookingLedger(Protocol):
  async def mark_notified(self, appointment_id: str) -> bool:
    """Flag the booking so a redelivered event does not notify twice; return whether a record was written."""


class FirestoreBookingLedger:
  """Update ``appointments/{id}`` with ``notificationSent`` and a server timestamp."""

  def __init__(self, *, client: FirestoreClient) -> None:
    self._client = client

  async def mark_notified(self, appointment_id: str) -> bool:
    document = self._client.collection(APPOINTMENTS_COLLECTION).document(appointment_id)
    await run_in_threadpool(document.update, {"notificationSent": True, "notificationSentAt": firestore.SERVER_TIMESTAMP})
    return True


class NullBookingLedger:
  """Ledger used when Firestore is not configured; nothing is flagged."""

  async def mark_notified(self, appointment_id: str) -> bool:
    logger.debug("Booking ledger disabled; not marking appointment_id=%s", appointment_id)
    return False
