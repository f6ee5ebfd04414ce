"""Append-only runtime events and the best-effort sink boundary."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from persona_runtime.storage.common import dump_json, to_db_datetime, utc_now
from persona_runtime.storage.sqlmodel_models import RuntimeEventRow

logger = logging.getLogger(__name__)

MIN_RECORDER_EVENTS = 20
_FAILURE_MARKERS: tuple[str, ...] = ("fail", "timeout", "blocked", "error", "notallowed")


class RuntimeLayer(str, Enum):
    """Runtime layers that emit events."""

    INTENT_COLLECTOR = "intent_collector"
    DISPATCHER = "dispatcher"
    DISPATCH_PRECHECK = "dispatch_precheck"
    POLICY_CONTROL_PLANE = "policy_control_plane"
    PROVIDER_RUNTIME = "provider_runtime"
    TOOL_RUNTIME = "tool_runtime"
    GENERATION = "generation"
    EXECUTION = "execution"
    TASK_QUEUE = "task_queue"
    REVIEW_QUEUE = "review_queue"
    WORKER = "worker"


@dataclass(slots=True)
class RuntimeEvent:
    """One observability record. Never mutated after emission."""

    layer: str
    operation: str
    reason_code: str
    entity_id: str
    occurred_at: datetime
    task_id: str | None = None
    persona_id: str | None = None
    worker_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: int | None = None


class RuntimeEventSink(Protocol):
    """Append-only destination for runtime events."""

    def record(self, event: RuntimeEvent) -> None:
        """Persist one event."""


class InMemoryRuntimeEventSink:
    """Collects events in a list; used by tests and smoke runs."""

    def __init__(self) -> None:
        self.events: list[RuntimeEvent] = []

    def record(self, event: RuntimeEvent) -> None:
        self.events.append(event)

    def reason_codes(self) -> list[str]:
        return [event.reason_code for event in self.events]


class SqlRuntimeEventSink:
    """Writes runtime events into the `runtime_events` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(self, event: RuntimeEvent) -> None:
        with Session(self.engine) as session:
            session.add(
                RuntimeEventRow(
                    layer=event.layer,
                    operation=event.operation,
                    reason_code=event.reason_code,
                    entity_id=event.entity_id,
                    task_id=event.task_id,
                    persona_id=event.persona_id,
                    worker_id=event.worker_id,
                    metadata_json=dump_json(event.metadata) if event.metadata else None,
                    occurred_at=to_db_datetime(event.occurred_at),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


class BestEffortEventSink:
    """The single place where observability write failures are swallowed.

    A failing sink must never abort the primary operation, so every error is
    logged and dropped here instead of at individual call sites.
    """

    def __init__(self, sink: RuntimeEventSink) -> None:
        self.sink = sink
        self.dropped = 0

    def record(self, event: RuntimeEvent) -> None:
        try:
            self.sink.record(event)
        except Exception as error:  # noqa: BLE001
            self.dropped += 1
            logger.warning(
                "Dropped runtime event %s/%s (%s): %s",
                event.layer,
                event.reason_code,
                event.entity_id,
                error,
            )


@dataclass(slots=True)
class RecorderStatus:
    """In-memory snapshot exposed by `RuntimeEventRecorder.get_status`."""

    total_recorded: int
    dropped: int
    recent: list[RuntimeEvent]
    last_failure_by_reason: dict[str, RuntimeEvent]


class RuntimeEventRecorder:
    """Builds runtime events, keeps a recent window, and forwards to the sink."""

    def __init__(
        self,
        sink: RuntimeEventSink | None = None,
        *,
        max_events: int = 200,
    ) -> None:
        self._sink = BestEffortEventSink(sink) if sink is not None else None
        self._recent: deque[RuntimeEvent] = deque(maxlen=max(MIN_RECORDER_EVENTS, max_events))
        self._last_failure_by_reason: dict[str, RuntimeEvent] = {}
        self._total = 0
        self._lock = threading.Lock()

    def record(  # noqa: PLR0913
        self,
        *,
        layer: RuntimeLayer | str,
        operation: str,
        reason_code: str,
        entity_id: str,
        occurred_at: datetime | None = None,
        task_id: str | None = None,
        persona_id: str | None = None,
        worker_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RuntimeEvent:
        event = RuntimeEvent(
            layer=layer.value if isinstance(layer, RuntimeLayer) else layer,
            operation=operation,
            reason_code=reason_code,
            entity_id=entity_id,
            occurred_at=occurred_at or utc_now(),
            task_id=task_id,
            persona_id=persona_id,
            worker_id=worker_id,
            metadata=dict(metadata or {}),
        )
        self.emit(event)
        return event

    def emit(self, event: RuntimeEvent) -> None:
        with self._lock:
            self._total += 1
            self._recent.append(event)
            if _is_failure_reason(event.reason_code):
                self._last_failure_by_reason[event.reason_code] = event
        if self._sink is not None:
            self._sink.record(event)

    def get_status(self) -> RecorderStatus:
        with self._lock:
            return RecorderStatus(
                total_recorded=self._total,
                dropped=self._sink.dropped if self._sink is not None else 0,
                recent=list(self._recent),
                last_failure_by_reason=dict(self._last_failure_by_reason),
            )


def _is_failure_reason(reason_code: str) -> bool:
    normalized = reason_code.lower()
    return any(marker in normalized for marker in _FAILURE_MARKERS)
