"""Persona task queue, idempotency keys and transition audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "persona_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("result_id", sa.String(), nullable=True),
        sa.Column("result_type", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_persona_tasks_persona_id", "persona_tasks", ["persona_id"])
    op.create_index("ix_persona_tasks_task_type", "persona_tasks", ["task_type"])
    op.create_index("ix_persona_tasks_status", "persona_tasks", ["status"])
    op.create_index("ix_persona_tasks_lease_owner", "persona_tasks", ["lease_owner"])
    op.create_index(
        "idx_persona_tasks_queue",
        "persona_tasks",
        ["status", "scheduled_at", "created_at"],
    )
    op.create_index("idx_persona_tasks_lease", "persona_tasks", ["status", "lease_until"])

    op.create_table(
        "task_transition_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["persona_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_task_transition_events_reason_code",
        "task_transition_events",
        ["reason_code"],
    )
    op.create_index(
        "idx_task_transition_events_task_time",
        "task_transition_events",
        ["task_id", "created_at"],
    )

    op.create_table(
        "task_idempotency_keys",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("result_id", sa.String(), nullable=False),
        sa.Column("result_type", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "task_type",
            "idempotency_key",
            name="uq_task_idempotency_keys_scope",
        ),
    )


def downgrade() -> None:
    op.drop_table("task_idempotency_keys")
    op.drop_index("idx_task_transition_events_task_time", table_name="task_transition_events")
    op.drop_index("ix_task_transition_events_reason_code", table_name="task_transition_events")
    op.drop_table("task_transition_events")
    op.drop_index("idx_persona_tasks_lease", table_name="persona_tasks")
    op.drop_index("idx_persona_tasks_queue", table_name="persona_tasks")
    op.drop_index("ix_persona_tasks_lease_owner", table_name="persona_tasks")
    op.drop_index("ix_persona_tasks_status", table_name="persona_tasks")
    op.drop_index("ix_persona_tasks_task_type", table_name="persona_tasks")
    op.drop_index("ix_persona_tasks_persona_id", table_name="persona_tasks")
    op.drop_table("persona_tasks")
