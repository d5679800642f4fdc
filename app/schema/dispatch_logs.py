"""SQLAlchemy model for fan-out audit rows."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class PushDispatchLog(Base):
  """Summarize one dispatch batch with its per-recipient results."""

  __tablename__ = "push_dispatch_logs"

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  trigger: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
  group_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
  role: Mapped[str | None] = mapped_column(String(16), nullable=True)
  title: Mapped[str] = mapped_column(Text, nullable=False)
  url: Mapped[str] = mapped_column(Text, nullable=False)
  attempted: Mapped[int] = mapped_column(Integer, nullable=False)
  delivered: Mapped[int] = mapped_column(Integer, nullable=False)
  failed: Mapped[int] = mapped_column(Integer, nullable=False)
  results: Mapped[list] = mapped_column(JSONB, nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
