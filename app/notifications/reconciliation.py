"""Probe freshly written channels and retire the ones the provider no longer knows."""

from __future__ import annotations

import asyncio
import logging

from app.notifications.contracts import DeliveryTarget, redact_channel_key
from app.notifications.dispatch import DispatchGateway
from app.notifications.subscriber_registry import SubscriberRegistry

logger = logging.getLogger(__name__)

PROBE_GONE_REASON = "probe-recipient-gone"


class ReconciliationPass:
  def __init__(self, *, gateway: DispatchGateway, registry: SubscriberRegistry, enabled: bool = True) -> None:
    self._gateway = gateway
    self._registry = registry
    self._enabled = enabled
    self._tasks: set[asyncio.Task[bool]] = set()

  async def on_channel_written(self, target: DeliveryTarget) -> bool:
    """Probe ``target``; returns True when the channel was retired."""
    outcome = await self._gateway.probe(target)
    if not outcome.recipient_gone:
      return False

    # Keyed by channel so a renewal written meanwhile is left alone.
    touched = await self._registry.mark_invalid(target.channel.key, PROBE_GONE_REASON)
    logger.info("Reconciliation retired channel=%s subject_id=%s rows=%s", redact_channel_key(target.channel.key), target.subject_id, touched)
    return touched > 0

  def schedule(self, target: DeliveryTarget) -> asyncio.Task[bool] | None:
    """Run the probe in the background so registry writes never wait on the provider."""
    if not self._enabled:
      return None

    task = asyncio.create_task(self.on_channel_written(target))
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    task.add_done_callback(self._log_task_error)
    return task

  async def drain(self) -> None:
    """Wait for in-flight probes; used on shutdown and in tests."""
    if self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)

  @staticmethod
  def _log_task_error(task: asyncio.Task[bool]) -> None:
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Reconciliation probe task failed: %s", exc, exc_info=exc)
