"""Policy releases and human review queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0003"
down_revision = "20261001_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "policy_releases",
        sa.Column("version", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("policy_json", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("change_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("version"),
    )
    op.create_index("ix_policy_releases_is_active", "policy_releases", ["is_active"])

    op.create_table(
        "review_queue",
        sa.Column("review_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("risk_level", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("enqueue_reason_code", sa.String(), nullable=False),
        sa.Column("decision", sa.String(), nullable=True),
        sa.Column("decision_reason_code", sa.String(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["persona_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("review_id"),
    )
    op.create_index("idx_review_queue_status_expiry", "review_queue", ["status", "expires_at"])
    op.create_index("idx_review_queue_created", "review_queue", ["created_at"])
    op.create_index(
        "uq_review_queue_open_task",
        "review_queue",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('PENDING', 'IN_REVIEW')"),
    )

    op.create_table(
        "review_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("review_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["review_id"], ["review_queue.review_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_review_events_review_time", "review_events", ["review_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_review_events_review_time", table_name="review_events")
    op.drop_table("review_events")
    op.drop_index("uq_review_queue_open_task", table_name="review_queue")
    op.drop_index("idx_review_queue_created", table_name="review_queue")
    op.drop_index("idx_review_queue_status_expiry", table_name="review_queue")
    op.drop_table("review_queue")
    op.drop_index("ix_policy_releases_is_active", table_name="policy_releases")
    op.drop_table("policy_releases")
