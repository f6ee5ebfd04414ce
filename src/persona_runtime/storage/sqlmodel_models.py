"""SQLModel ORM tables for the persona runtime."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Persona(SQLModel, table=True):
    __tablename__ = "personas"  # type: ignore[bad-override]

    persona_id: str = Field(primary_key=True)
    display_name: str
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Board(SQLModel, table=True):
    __tablename__ = "boards"  # type: ignore[bad-override]

    board_id: str = Field(primary_key=True)
    name: str
    is_archived: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Post(SQLModel, table=True):
    __tablename__ = "posts"  # type: ignore[bad-override]

    post_id: str = Field(primary_key=True)
    board_id: str = Field(
        sa_column=Column(
            ForeignKey("boards.board_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    author_id: str | None = None
    persona_id: str | None = Field(default=None, index=True)
    title: str = ""
    body: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    status: str = Field(default="PUBLISHED", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Comment(SQLModel, table=True):
    __tablename__ = "comments"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_comments_post_time", "post_id", "created_at"),
        Index("idx_comments_persona_time", "persona_id", "created_at"),
    )

    comment_id: str = Field(primary_key=True)
    post_id: str = Field(
        sa_column=Column(
            ForeignKey("posts.post_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    parent_id: str | None = None
    author_id: str | None = None
    persona_id: str | None = None
    body: str = Field(sa_column=Column(Text, nullable=False))
    is_deleted: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BoardPersonaBan(SQLModel, table=True):
    __tablename__ = "board_persona_bans"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("board_id", "persona_id", name="uq_board_persona_bans_scope"),
    )

    id: int | None = Field(default=None, primary_key=True)
    board_id: str = Field(index=True)
    persona_id: str = Field(index=True)
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HeartbeatEvent(SQLModel, table=True):
    __tablename__ = "heartbeat_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("source_name", "source_id", name="uq_heartbeat_events_source"),
        Index("idx_heartbeat_events_source_time", "source_name", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    source_name: str
    source_id: str
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HeartbeatCheckpoint(SQLModel, table=True):
    __tablename__ = "heartbeat_checkpoints"  # type: ignore[bad-override]

    source_name: str = Field(primary_key=True)
    last_captured_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    safety_overlap_seconds: int = Field(default=10)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskIntentRow(SQLModel, table=True):
    __tablename__ = "task_intents"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "intent_type",
            "source_table",
            "source_id",
            name="uq_task_intents_source",
        ),
        Index("idx_task_intents_status_time", "status", "created_at"),
    )

    intent_id: str = Field(primary_key=True)
    intent_type: str
    source_table: str
    source_id: str
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status: str = Field(default="NEW")
    selected_persona_id: str | None = None
    decision_reason_codes_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PersonaTask(SQLModel, table=True):
    __tablename__ = "persona_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_persona_tasks_queue", "status", "scheduled_at", "created_at"),
        Index("idx_persona_tasks_lease", "status", "lease_until"),
    )

    task_id: str = Field(primary_key=True)
    persona_id: str = Field(index=True)
    task_type: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    lease_owner: str | None = Field(default=None, index=True)
    lease_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    idempotency_key: str | None = Field(default=None, unique=True)
    result_id: str | None = None
    result_type: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskTransitionEventRow(SQLModel, table=True):
    __tablename__ = "task_transition_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_transition_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("persona_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    persona_id: str
    task_type: str
    from_status: str | None = None
    to_status: str
    reason_code: str = Field(index=True)
    worker_id: str | None = None
    retry_count: int = 0
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskIdempotencyKey(SQLModel, table=True):
    __tablename__ = "task_idempotency_keys"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_type",
            "idempotency_key",
            name="uq_task_idempotency_keys_scope",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_type: str
    idempotency_key: str
    result_id: str
    result_type: str
    task_id: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PolicyReleaseRow(SQLModel, table=True):
    __tablename__ = "policy_releases"  # type: ignore[bad-override]

    version: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    policy_json: str = Field(sa_column=Column(Text, nullable=False))
    is_active: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0"), index=True),
    )
    created_by: str | None = None
    change_note: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewQueueRow(SQLModel, table=True):
    __tablename__ = "review_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_review_queue_status_expiry", "status", "expires_at"),
        Index("idx_review_queue_created", "created_at"),
        Index(
            "uq_review_queue_open_task",
            "task_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'IN_REVIEW')"),
        ),
    )

    review_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("persona_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    persona_id: str
    risk_level: str
    status: str
    enqueue_reason_code: str
    decision: str | None = None
    decision_reason_code: str | None = None
    reviewer_id: str | None = None
    note: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    decided_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewEventRow(SQLModel, table=True):
    __tablename__ = "review_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_review_events_review_time", "review_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    review_id: str = Field(
        sa_column=Column(
            ForeignKey("review_queue.review_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str
    event_type: str
    reason_code: str | None = None
    reviewer_id: str | None = None
    note: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RuntimeEventRow(SQLModel, table=True):
    __tablename__ = "runtime_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_runtime_events_time", "occurred_at"),
        Index("idx_runtime_events_layer_time", "layer", "occurred_at"),
        Index("idx_runtime_events_reason_time", "reason_code", "occurred_at"),
        Index("idx_runtime_events_entity_time", "entity_id", "occurred_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    layer: str
    operation: str
    reason_code: str
    entity_id: str
    task_id: str | None = None
    persona_id: str | None = None
    worker_id: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    occurred_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerStatusRow(SQLModel, table=True):
    __tablename__ = "worker_status"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    agent_type: str = "reply_executor"
    status: str
    circuit_open: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    circuit_reason: str | None = None
    current_task_id: str | None = None
    last_heartbeat_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
