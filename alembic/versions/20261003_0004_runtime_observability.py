"""Runtime event log and worker circuit status."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261003_0004"
down_revision = "20261002_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "runtime_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("layer", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("persona_id", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_runtime_events_time", "runtime_events", ["occurred_at"])
    op.create_index("idx_runtime_events_layer_time", "runtime_events", ["layer", "occurred_at"])
    op.create_index(
        "idx_runtime_events_reason_time",
        "runtime_events",
        ["reason_code", "occurred_at"],
    )
    op.create_index(
        "idx_runtime_events_entity_time",
        "runtime_events",
        ["entity_id", "occurred_at"],
    )

    op.create_table(
        "worker_status",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False, server_default="reply_executor"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("circuit_open", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("circuit_reason", sa.String(), nullable=True),
        sa.Column("current_task_id", sa.String(), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("worker_id"),
    )


def downgrade() -> None:
    op.drop_table("worker_status")
    op.drop_index("idx_runtime_events_entity_time", table_name="runtime_events")
    op.drop_index("idx_runtime_events_reason_time", table_name="runtime_events")
    op.drop_index("idx_runtime_events_layer_time", table_name="runtime_events")
    op.drop_index("idx_runtime_events_time", table_name="runtime_events")
    op.drop_table("runtime_events")
