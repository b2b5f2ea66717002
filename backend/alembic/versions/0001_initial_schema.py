"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates all tables for CalMirror:
calendar_configs, event_mappings, block_events, sync_logs, sync_jobs.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- calendar_configs ---
    op.create_table(
        "calendar_configs",
        sa.Column("calendar_id", sa.String(255), primary_key=True),
        sa.Column("calendar_name", sa.String(255), nullable=True),
        sa.Column("calendar_alias", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("webhook_id", sa.String(255), nullable=True),
        sa.Column("webhook_resource_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- event_mappings ---
    op.create_table(
        "event_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("original_event_id", sa.String(1024), nullable=False),
        sa.Column("original_calendar_id", sa.String(255), nullable=False),
        sa.Column("original_summary", sa.Text, nullable=True),
        sa.Column("event_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("event_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("original_event_id", "original_calendar_id", name="uq_event_mappings_source"),
    )

    # --- block_events ---
    op.create_table(
        "block_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "mapping_id", sa.String(36),
            sa.ForeignKey("event_mappings.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("block_event_id", sa.String(1024), nullable=False),
        sa.Column("target_calendar_id", sa.String(255), nullable=False),
        sa.Column("block_title", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("mapping_id", "target_calendar_id", name="uq_block_events_target"),
    )

    # --- sync_logs ---
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("calendar_id", sa.String(255), nullable=True),
        sa.Column("event_id", sa.String(1024), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_logs_created_at", "sync_logs", ["created_at"])

    # --- sync_jobs ---
    op.create_table(
        "sync_jobs",
        sa.Column("job_id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False, server_default="syncEvent"),
        sa.Column("event_data", sa.JSON, nullable=False),
        sa.Column("source_calendar_id", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="10"),
        sa.Column("state", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_jobs_claim", "sync_jobs", ["state", "priority", "run_after"])


def downgrade() -> None:
    op.drop_index("ix_sync_jobs_claim", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_index("ix_sync_logs_created_at", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_table("block_events")
    op.drop_table("event_mappings")
    op.drop_table("calendar_configs")
