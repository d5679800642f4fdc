"""Repository helpers for fan-out audit rows."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session_factory
from app.notifications.contracts import DispatchOutcome
from app.schema.dispatch_logs import PushDispatchLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchLogEntry:
  """Summary of one dispatch batch for auditing and troubleshooting."""

  trigger: str
  group_id: str | None
  role: str | None
  title: str
  url: str
  outcomes: Sequence[DispatchOutcome]

  @property
  def delivered(self) -> int:
    return sum(1 for outcome in self.outcomes if outcome.delivered)


class DispatchLogRepository:
  """Persist dispatch audit rows to Postgres using SQLAlchemy."""

  async def insert(self, entry: DispatchLogEntry) -> None:
    session_factory = get_session_factory()
    if session_factory is None:
      return

    async with session_factory() as session:
      await self._insert_with_session(session=session, entry=entry)

  async def _insert_with_session(self, *, session: AsyncSession, entry: DispatchLogEntry) -> None:
    # Results carry redacted channel keys only.
    record = PushDispatchLog(
      trigger=entry.trigger,
      group_id=entry.group_id,
      role=entry.role,
      title=entry.title,
      url=entry.url,
      attempted=len(entry.outcomes),
      delivered=entry.delivered,
      failed=len(entry.outcomes) - entry.delivered,
      results=[outcome.as_dict() for outcome in entry.outcomes],
    )
    session.add(record)
    await session.commit()


class NullDispatchLogRepository(DispatchLogRepository):
  """No-op repository used when persistence or auditing is unavailable."""

  async def insert(self, entry: DispatchLogEntry) -> None:
    logger.debug("Dispatch audit disabled; dropping trigger=%s attempted=%s delivered=%s", entry.trigger, len(entry.outcomes), entry.delivered)
