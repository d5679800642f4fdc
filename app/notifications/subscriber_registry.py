"""Subscriber registry: one record per subject describing how to reach its device."""

from __future__ import annotations

import dataclasses
import datetime
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session_factory
from app.notifications.contracts import Channel, ChannelKind, GatewayChannel, PlatformHint, SubscriberRole, Validity, WebPushChannel, redact_channel_key
from app.schema.subscribers import PushSubscriber

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriberRecord:
  subject_id: str
  role: SubscriberRole
  group_id: str | None
  channel: Channel | None
  platform: PlatformHint
  standalone: bool
  user_agent: str | None
  last_updated: datetime.datetime
  validity: Validity = Validity.VALID
  invalid_reason: str | None = None
  invalidated_at: datetime.datetime | None = None

  @property
  def reachable(self) -> bool:
    return self.validity == Validity.VALID and self.channel is not None


@dataclass(frozen=True)
class SubscriberUpdate:
  """Partial write; ``None`` fields are left untouched on an existing record."""

  role: SubscriberRole | None = None
  group_id: str | None = None
  channel: Channel | None = None
  platform: PlatformHint | None = None
  standalone: bool | None = None
  user_agent: str | None = None

  def column_values(self) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if self.role is not None:
      values["role"] = self.role.value
    if self.group_id is not None:
      values["group_id"] = self.group_id
    if self.platform is not None:
      values["platform"] = self.platform.value
    if self.standalone is not None:
      values["standalone"] = self.standalone
    if self.user_agent is not None:
      values["user_agent"] = self.user_agent
    if self.channel is not None:
      # A freshly written channel replaces the previous one and revives the record.
      values.update(_channel_columns(self.channel))
      values.update({"validity": Validity.VALID.value, "invalid_reason": None, "invalidated_at": None})
    return values


def _channel_columns(channel: Channel | None) -> dict[str, Any]:
  columns: dict[str, Any] = {"channel_kind": None, "gateway_token": None, "endpoint": None, "p256dh": None, "auth": None}
  if isinstance(channel, GatewayChannel):
    columns.update(channel_kind=ChannelKind.GATEWAY.value, gateway_token=channel.token)
  elif isinstance(channel, WebPushChannel):
    columns.update(channel_kind=ChannelKind.WEBPUSH.value, endpoint=channel.endpoint, p256dh=channel.p256dh, auth=channel.auth)
  return columns


def _channel_from_row(row: PushSubscriber) -> Channel | None:
  if row.channel_kind == ChannelKind.GATEWAY.value and row.gateway_token:
    return GatewayChannel(token=row.gateway_token)
  if row.channel_kind == ChannelKind.WEBPUSH.value and row.endpoint and row.p256dh and row.auth:
    return WebPushChannel(endpoint=row.endpoint, p256dh=row.p256dh, auth=row.auth)
  return None


def _to_record(row: PushSubscriber) -> SubscriberRecord:
  return SubscriberRecord(
    subject_id=row.subject_id,
    role=SubscriberRole(row.role),
    group_id=row.group_id,
    channel=_channel_from_row(row),
    platform=PlatformHint(row.platform),
    standalone=row.standalone,
    user_agent=row.user_agent,
    last_updated=row.last_updated,
    validity=Validity(row.validity),
    invalid_reason=row.invalid_reason,
    invalidated_at=row.invalidated_at,
  )


def _now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


class SubscriberRegistry:
  """Persist subscriber records in Postgres keyed by subject id."""

  async def upsert(self, subject_id: str, entry: SubscriberUpdate) -> SubscriberRecord:
    """Insert or merge a record; repeated calls for one subject never add rows."""
    session_factory = self._require_session_factory()
    async with session_factory() as session:
      return await self._upsert_with_session(session=session, subject_id=subject_id, entry=entry)

  async def _upsert_with_session(self, *, session: AsyncSession, subject_id: str, entry: SubscriberUpdate) -> SubscriberRecord:
    values = {**entry.column_values(), "last_updated": _now()}
    stmt = insert(PushSubscriber).values(subject_id=subject_id, **values)
    # Only the supplied columns are overwritten on conflict; everything else keeps its stored value.
    stmt = stmt.on_conflict_do_update(index_elements=["subject_id"], set_={key: stmt.excluded[key] for key in values}).returning(PushSubscriber)
    result = await session.execute(stmt)
    row = result.scalar_one()
    await session.commit()
    return _to_record(row)

  async def get(self, subject_id: str) -> SubscriberRecord | None:
    session_factory = self._require_session_factory()
    async with session_factory() as session:
      result = await session.execute(select(PushSubscriber).where(PushSubscriber.subject_id == subject_id))
      row = result.scalar_one_or_none()
      return _to_record(row) if row is not None else None

  async def query_by_group_and_role(self, group_id: str, role: SubscriberRole, *, include_invalid: bool = False) -> list[SubscriberRecord]:
    """List records for a group and role; dispatch callers only see reachable rows."""
    session_factory = self._require_session_factory()
    async with session_factory() as session:
      stmt = select(PushSubscriber).where(PushSubscriber.group_id == group_id, PushSubscriber.role == role.value)
      if not include_invalid:
        stmt = stmt.where(PushSubscriber.validity == Validity.VALID.value, PushSubscriber.channel_kind.is_not(None))
      result = await session.execute(stmt.order_by(PushSubscriber.subject_id))
      return [_to_record(row) for row in result.scalars().all()]

  async def mark_invalid(self, channel_key: str, reason: str) -> int:
    """Retire every record currently holding ``channel_key``; returns the number of rows touched."""
    session_factory = self._require_session_factory()
    async with session_factory() as session:
      stmt = (
        update(PushSubscriber)
        .where(or_(PushSubscriber.gateway_token == channel_key, PushSubscriber.endpoint == channel_key))
        .values(**_channel_columns(None), validity=Validity.INVALID.value, invalid_reason=reason, invalidated_at=_now())
      )
      result = await session.execute(stmt)
      await session.commit()
      touched = int(result.rowcount or 0)

    logger.info("Marked subscriber channel invalid channel=%s reason=%s rows=%s", redact_channel_key(channel_key), reason, touched)
    return touched

  async def clear_channel(self, subject_id: str, reason: str) -> bool:
    """Drop the channel payload for one subject while keeping the record for audit."""
    session_factory = self._require_session_factory()
    async with session_factory() as session:
      stmt = update(PushSubscriber).where(PushSubscriber.subject_id == subject_id).values(**_channel_columns(None), validity=Validity.INVALID.value, invalid_reason=reason, invalidated_at=_now())
      result = await session.execute(stmt)
      await session.commit()
      return bool(result.rowcount)

  @staticmethod
  def _require_session_factory():  # type: ignore[no-untyped-def]
    session_factory = get_session_factory()
    if session_factory is None:
      raise RuntimeError("Subscriber registry requires BARBERBELL_PG_DSN.")
    return session_factory


class InMemorySubscriberRegistry(SubscriberRegistry):
  """Process-local registry used when Postgres is not configured."""

  def __init__(self) -> None:
    self._records: dict[str, SubscriberRecord] = {}

  async def upsert(self, subject_id: str, entry: SubscriberUpdate) -> SubscriberRecord:
    existing = self._records.get(subject_id)
    if existing is None:
      record = SubscriberRecord(
        subject_id=subject_id,
        role=entry.role or SubscriberRole.OTHER,
        group_id=entry.group_id,
        channel=entry.channel,
        platform=entry.platform or PlatformHint.DESKTOP,
        standalone=bool(entry.standalone),
        user_agent=entry.user_agent,
        last_updated=_now(),
      )
    else:
      changes: dict[str, Any] = {field.name: getattr(entry, field.name) for field in dataclasses.fields(entry) if getattr(entry, field.name) is not None}
      if entry.channel is not None:
        changes.update(validity=Validity.VALID, invalid_reason=None, invalidated_at=None)
      record = dataclasses.replace(existing, **changes, last_updated=_now())

    self._records[subject_id] = record
    return record

  async def get(self, subject_id: str) -> SubscriberRecord | None:
    return self._records.get(subject_id)

  async def query_by_group_and_role(self, group_id: str, role: SubscriberRole, *, include_invalid: bool = False) -> list[SubscriberRecord]:
    matches = [record for record in self._records.values() if record.group_id == group_id and record.role == role]
    if not include_invalid:
      matches = [record for record in matches if record.reachable]
    return sorted(matches, key=lambda record: record.subject_id)

  async def mark_invalid(self, channel_key: str, reason: str) -> int:
    touched = 0
    for subject_id, record in list(self._records.items()):
      if record.channel is not None and record.channel.key == channel_key:
        self._records[subject_id] = self._retired(record, reason)
        touched += 1

    logger.info("Marked subscriber channel invalid channel=%s reason=%s rows=%s", redact_channel_key(channel_key), reason, touched)
    return touched

  async def clear_channel(self, subject_id: str, reason: str) -> bool:
    record = self._records.get(subject_id)
    if record is None:
      return False
    self._records[subject_id] = self._retired(record, reason)
    return True

  @staticmethod
  def _retired(record: SubscriberRecord, reason: str) -> SubscriberRecord:
    return dataclasses.replace(record, channel=None, validity=Validity.INVALID, invalid_reason=reason, invalidated_at=_now())
