"""Dispatch gateway: single sends, concurrent group fan-out and validation probes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from starlette.concurrency import run_in_threadpool

from app.notifications.contracts import (
  ChannelKind,
  DeliveryTarget,
  DispatchOutcome,
  FailureReason,
  NotificationError,
  NotificationRequest,
  OutcomeStatus,
  PushSender,
  ServerInternalError,
  SubscriberRole,
  redact_channel_key,
)
from app.notifications.dispatch_log_repo import DispatchLogEntry, DispatchLogRepository
from app.notifications.payloads import build_outbound
from app.notifications.subscriber_registry import SubscriberRegistry

logger = logging.getLogger(__name__)

PROBE_REQUEST = NotificationRequest(title="", body="", data={"type": "validation_probe", "url": "/"})
_REASON_BY_CODE = {reason.value: reason for reason in FailureReason}


class DispatchGateway:
  """Send notifications and turn every send into a typed outcome."""

  def __init__(self, *, senders: Mapping[ChannelKind, PushSender], registry: SubscriberRegistry, dispatch_log_repo: DispatchLogRepository, public_base_url: str | None = None) -> None:
    self._senders = dict(senders)
    self._registry = registry
    self._dispatch_log_repo = dispatch_log_repo
    self._public_base_url = public_base_url

  async def dispatch_one(self, target: DeliveryTarget, request: NotificationRequest, *, trigger: str = "on-demand") -> DispatchOutcome:
    """Send to one channel; failures come back as an outcome rather than an exception."""
    outcome = await self._send(target, request)
    await self._retire_gone([outcome])
    await self._audit(DispatchLogEntry(trigger=trigger, group_id=None, role=None, title=request.title, url=request.url, outcomes=[outcome]))
    return outcome

  async def dispatch_to_group(self, group_id: str, role: SubscriberRole, request: NotificationRequest, *, trigger: str = "group") -> list[DispatchOutcome]:
    """Fan out to every valid subscriber of ``role`` in ``group_id``.

    Sends run concurrently and independently; the batch completes even when some
    recipients fail. Recipients reported as gone are marked invalid afterwards.
    Only a failed registry read raises, as ``ServerInternalError``.
    """
    try:
      records = await self._registry.query_by_group_and_role(group_id, role)
    except Exception as exc:
      logger.error("Subscriber lookup failed group_id=%s role=%s error=%s", group_id, role, exc, exc_info=True)
      raise ServerInternalError(f"Subscriber lookup failed for group {group_id}") from exc

    targets = [DeliveryTarget(channel=record.channel, platform=record.platform, standalone=record.standalone, subject_id=record.subject_id) for record in records if record.channel is not None]
    outcomes = list(await asyncio.gather(*(self._send(target, request) for target in targets)))

    delivered = sum(1 for outcome in outcomes if outcome.delivered)
    logger.info("Dispatch finished group_id=%s role=%s attempted=%s delivered=%s failed=%s", group_id, role, len(outcomes), delivered, len(outcomes) - delivered)

    await self._retire_gone(outcomes)
    await self._audit(DispatchLogEntry(trigger=trigger, group_id=group_id, role=role.value, title=request.title, url=request.url, outcomes=outcomes))
    return outcomes

  async def probe(self, target: DeliveryTarget) -> DispatchOutcome:
    """Send a silent validation message; the caller decides what to do with the result."""
    return await self._send(target, PROBE_REQUEST, probe=True)

  async def _send(self, target: DeliveryTarget, request: NotificationRequest, *, probe: bool = False) -> DispatchOutcome:
    channel = target.channel
    sender = self._senders.get(channel.kind)
    redacted = redact_channel_key(channel.key)
    try:
      if sender is None:
        raise ServerInternalError(f"No sender registered for {channel.kind} channels")

      push = build_outbound(target, request, public_base_url=self._public_base_url, probe=probe)
      # Senders are blocking SDK/HTTP clients.
      message_id = await run_in_threadpool(sender.send, push)
    except NotificationError as exc:
      reason = _REASON_BY_CODE.get(exc.code, FailureReason.INTERNAL)
      logger.warning("Push send failed channel=%s kind=%s probe=%s reason=%s error=%s", redacted, channel.kind, probe, reason, exc)
      return DispatchOutcome(channel_key=channel.key, channel_kind=channel.kind, status=OutcomeStatus.FAILED, subject_id=target.subject_id, reason=reason, detail=str(exc))
    except Exception as exc:  # noqa: BLE001
      logger.error("Push send crashed channel=%s kind=%s probe=%s error=%s", redacted, channel.kind, probe, exc, exc_info=True)
      return DispatchOutcome(channel_key=channel.key, channel_kind=channel.kind, status=OutcomeStatus.FAILED, subject_id=target.subject_id, reason=FailureReason.INTERNAL, detail=str(exc))

    logger.info("Push delivered channel=%s kind=%s probe=%s message_id=%s", redacted, channel.kind, probe, message_id)
    return DispatchOutcome(channel_key=channel.key, channel_kind=channel.kind, status=OutcomeStatus.DELIVERED, subject_id=target.subject_id, message_id=message_id)

  async def _retire_gone(self, outcomes: list[DispatchOutcome]) -> None:
    for outcome in outcomes:
      if not outcome.recipient_gone:
        continue
      try:
        await self._registry.mark_invalid(outcome.channel_key, FailureReason.RECIPIENT_GONE.value)
      except Exception as exc:  # noqa: BLE001
        logger.error("Failed marking channel invalid channel=%s error=%s", redact_channel_key(outcome.channel_key), exc, exc_info=True)

  async def _audit(self, entry: DispatchLogEntry) -> None:
    try:
      await self._dispatch_log_repo.insert(entry)
    except Exception as exc:  # noqa: BLE001
      logger.error("Dispatch audit insert failed trigger=%s error=%s", entry.trigger, exc, exc_info=True)
