"""Typed contracts for the persona task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_RETRIES = 3
REPLY_RESULT_TYPE = "comment"


class TaskStatus(str, Enum):
    """Persisted queue task lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


ALL_TASK_STATUSES: tuple[TaskStatus, ...] = tuple(TaskStatus)
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED, TaskStatus.FAILED})


class TaskType(str, Enum):
    REPLY = "reply"
    VOTE = "vote"


class TransitionReasonCode(str, Enum):
    CREATED = "CREATED"
    CLAIMED = "CLAIMED"
    HEARTBEAT = "HEARTBEAT"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED_RETRY = "FAILED_RETRY"
    FAILED_FINAL = "FAILED_FINAL"
    LEASE_TIMEOUT = "LEASE_TIMEOUT"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    REVIEW_APPROVED = "REVIEW_APPROVED"
    REVIEW_REJECTED = "REVIEW_REJECTED"
    REVIEW_EXPIRED = "REVIEW_EXPIRED"


class ExecutionSkipReason(str, Enum):
    UNSUPPORTED_TASK_TYPE = "EXECUTION_UNSUPPORTED_TASK_TYPE"
    EMPTY_GENERATED_REPLY = "EXECUTION_EMPTY_GENERATED_REPLY"
    SAFETY_BLOCKED = "EXECUTION_SAFETY_BLOCKED"


@dataclass(slots=True)
class QueueTaskCreate:
    persona_id: str
    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    scheduled_at: datetime | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    idempotency_key: str | None = None


@dataclass(slots=True)
class QueueTask:
    """Read model of one persona task."""

    task_id: str
    persona_id: str
    task_type: str
    payload: dict[str, Any]
    status: TaskStatus
    scheduled_at: datetime
    retry_count: int
    max_retries: int
    lease_owner: str | None
    lease_until: datetime | None
    idempotency_key: str | None
    result_id: str | None
    result_type: str | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskTransitionEvent:
    event_id: int
    task_id: str
    persona_id: str
    task_type: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    reason_code: str
    worker_id: str | None
    retry_count: int
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


class PersistenceStatus(str, Enum):
    CREATED = "created"
    REUSED = "reused"
    LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class PersistenceOutcome:
    """Result of the atomic write-and-complete step."""

    status: PersistenceStatus
    result_id: str | None = None
    task: QueueTask | None = None

    @property
    def ok(self) -> bool:
        return self.status != PersistenceStatus.LEASE_LOST
