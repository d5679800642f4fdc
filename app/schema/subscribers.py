"""SQLAlchemy model for the push subscriber registry."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class PushSubscriber(Base):
  """One row per subject describing how to reach its most recently registered device."""

  __tablename__ = "push_subscribers"
  __table_args__ = (
    Index("ux_push_subscribers_subject_id", "subject_id", unique=True),
    Index("ix_push_subscribers_group_role", "group_id", "role"),
    Index("ix_push_subscribers_gateway_token", "gateway_token"),
    Index("ix_push_subscribers_endpoint", "endpoint"),
  )

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
  role: Mapped[str] = mapped_column(String(16), nullable=False, default="other", server_default="other")
  group_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
  channel_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
  gateway_token: Mapped[str | None] = mapped_column(Text, nullable=True)
  endpoint: Mapped[str | None] = mapped_column(Text, nullable=True)
  p256dh: Mapped[str | None] = mapped_column(Text, nullable=True)
  auth: Mapped[str | None] = mapped_column(Text, nullable=True)
  platform: Mapped[str] = mapped_column(String(16), nullable=False, default="desktop", server_default="desktop")
  standalone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
  validity: Mapped[str] = mapped_column(String(16), nullable=False, default="valid", server_default="valid")
  invalid_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
  invalidated_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_updated: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
