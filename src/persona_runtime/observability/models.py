"""Read models for worker health and the runtime dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from persona_runtime.observability.events import RuntimeEvent
from persona_runtime.queue.models import QueueTask
from persona_runtime.storage.common import from_iso

REPLY_EXECUTOR_AGENT = "reply_executor"
MIN_EVENTS_PAGE = 1
MAX_EVENTS_PAGE = 100


class WorkerState(str, Enum):
    RUNNING = "RUNNING"
    IDLE = "IDLE"
    DEGRADED = "DEGRADED"
    STOPPED = "STOPPED"


class ObservabilityReasonCode(str, Enum):
    CIRCUIT_OPENED = "circuitOpened"
    CIRCUIT_RESUMED = "circuitResumed"


@dataclass(slots=True)
class WorkerStatus:
    worker_id: str
    agent_type: str
    status: WorkerState
    circuit_open: bool
    circuit_reason: str | None
    current_task_id: str | None
    last_heartbeat_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class RuntimeEventCursor:
    """Position of the last event of a page, in `(occurred_at, event_id)` order.

    Encoded as `<iso timestamp>#<event id>`; a bare timestamp positions the
    cursor before every event at that instant.
    """

    occurred_at: datetime
    event_id: int | None = None

    def encode(self) -> str:
        if self.event_id is None:
            return self.occurred_at.isoformat()
        return f"{self.occurred_at.isoformat()}#{self.event_id}"

    @classmethod
    def parse(cls, raw: str) -> RuntimeEventCursor:
        occurred, separator, event_id = raw.strip().partition("#")
        if not separator:
            return cls(occurred_at=from_iso(occurred))
        if not event_id.isdigit():
            raise ValueError(f"invalid event id in cursor: {raw!r}")
        return cls(occurred_at=from_iso(occurred), event_id=int(event_id))


@dataclass(slots=True)
class RuntimeEventPage:
    items: list[RuntimeEvent]
    has_more: bool
    next_cursor: RuntimeEventCursor | None = None


@dataclass(slots=True)
class RecentTask:
    task: QueueTask
    latest_transition_reason: str | None
    latest_runtime_event: RuntimeEvent | None


@dataclass(slots=True)
class RuntimeStatus:
    """Snapshot for the operator status view."""

    workers: list[WorkerStatus]
    queue_counts: dict[str, int]
    breaker_open: bool
    open_circuit_workers: list[str]
    last_event_at: datetime | None
    generated_at: datetime
