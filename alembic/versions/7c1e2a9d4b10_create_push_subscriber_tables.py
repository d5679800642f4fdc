"""Create push subscriber registry and dispatch audit tables.

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "7c1e2a9d4b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "push_subscribers",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("subject_id", sa.String(length=128), nullable=False),
    sa.Column("role", sa.String(length=16), server_default="other", nullable=False),
    sa.Column("group_id", sa.String(length=128), nullable=True),
    sa.Column("channel_kind", sa.String(length=16), nullable=True),
    sa.Column("gateway_token", sa.Text(), nullable=True),
    sa.Column("endpoint", sa.Text(), nullable=True),
    sa.Column("p256dh", sa.Text(), nullable=True),
    sa.Column("auth", sa.Text(), nullable=True),
    sa.Column("platform", sa.String(length=16), server_default="desktop", nullable=False),
    sa.Column("standalone", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("user_agent", sa.Text(), nullable=True),
    sa.Column("validity", sa.String(length=16), server_default="valid", nullable=False),
    sa.Column("invalid_reason", sa.Text(), nullable=True),
    sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ux_push_subscribers_subject_id", "push_subscribers", ["subject_id"], unique=True)
  op.create_index("ix_push_subscribers_group_role", "push_subscribers", ["group_id", "role"], unique=False)
  op.create_index("ix_push_subscribers_gateway_token", "push_subscribers", ["gateway_token"], unique=False)
  op.create_index("ix_push_subscribers_endpoint", "push_subscribers", ["endpoint"], unique=False)

  op.create_table(
    "push_dispatch_logs",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("trigger", sa.String(length=32), nullable=False),
    sa.Column("group_id", sa.String(length=128), nullable=True),
    sa.Column("role", sa.String(length=16), nullable=True),
    sa.Column("title", sa.Text(), nullable=False),
    sa.Column("url", sa.Text(), nullable=False),
    sa.Column("attempted", sa.Integer(), nullable=False),
    sa.Column("delivered", sa.Integer(), nullable=False),
    sa.Column("failed", sa.Integer(), nullable=False),
    sa.Column("results", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_push_dispatch_logs_trigger"), "push_dispatch_logs", ["trigger"], unique=False)
  op.create_index(op.f("ix_push_dispatch_logs_group_id"), "push_dispatch_logs", ["group_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_push_dispatch_logs_group_id"), table_name="push_dispatch_logs")
  op.drop_index(op.f("ix_push_dispatch_logs_trigger"), table_name="push_dispatch_logs")
  op.drop_table("push_dispatch_logs")
  op.drop_index("ix_push_subscribers_endpoint", table_name="push_subscribers")
  op.drop_index("ix_push_subscribers_gateway_token", table_name="push_subscribers")
  op.drop_index("ix_push_subscribers_group_role", table_name="push_subscribers")
  op.drop_index("ux_push_subscribers_subject_id", table_name="push_subscribers")
  op.drop_table("push_subscribers")
