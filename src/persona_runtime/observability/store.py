"""Worker status, circuit breaker state and runtime event queries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from persona_runtime.observability.events import RuntimeEvent, RuntimeEventRecorder, RuntimeLayer
from persona_runtime.observability.models import (
    MAX_EVENTS_PAGE,
    MIN_EVENTS_PAGE,
    REPLY_EXECUTOR_AGENT,
    ObservabilityReasonCode,
    RecentTask,
    RuntimeEventCursor,
    RuntimeEventPage,
    RuntimeStatus,
    WorkerState,
    WorkerStatus,
)
from persona_runtime.queue.models import ALL_TASK_STATUSES
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.storage.common import (
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_runtime.storage.sqlmodel_models import (
    PersonaTask,
    RuntimeEventRow,
    TaskTransitionEventRow,
    WorkerStatusRow,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class RuntimeObservabilityStore:
    """Operator-facing view over workers, the queue and the runtime event log."""

    def __init__(self, engine: Engine, *, recorder: RuntimeEventRecorder | None = None) -> None:
        self.engine = engine
        self.recorder = recorder

    def upsert_worker_status(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        status: WorkerState,
        current_task_id: str | None = None,
        circuit_open: bool | None = None,
        circuit_reason: str | None = _UNSET,
        metadata: dict[str, Any] | None = None,
        agent_type: str = REPLY_EXECUTOR_AGENT,
        now: datetime | None = None,
    ) -> WorkerStatus:
        """Heartbeat a worker; circuit fields left as None/unset keep their stored values."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkerStatusRow, worker_id)
            if row is None:
                row = WorkerStatusRow(
                    worker_id=worker_id,
                    agent_type=agent_type,
                    status=status.value,
                    circuit_open=bool(circuit_open),
                    circuit_reason=None if circuit_reason is _UNSET else circuit_reason,
                    current_task_id=current_task_id,
                    last_heartbeat_at=to_db_datetime(now),
                    metadata_json=dump_json(metadata) if metadata else None,
                    updated_at=to_db_datetime(now),
                )
            else:
                row.status = status.value
                row.current_task_id = current_task_id
                row.last_heartbeat_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                if circuit_open is not None:
                    row.circuit_open = circuit_open
                if circuit_reason is not _UNSET:
                    row.circuit_reason = circuit_reason
                if metadata:
                    merged = load_json_object(row.metadata_json)
                    merged.update(metadata)
                    row.metadata_json = dump_json(merged)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker(row)

    def get_worker_status(self, worker_id: str) -> WorkerStatus | None:
        with Session(self.engine) as session:
            row = session.get(WorkerStatusRow, worker_id)
        return _to_worker(row) if row is not None else None

    def list_worker_statuses(self) -> list[WorkerStatus]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkerStatusRow).order_by(col(WorkerStatusRow.worker_id).asc()),
            ).all()
        return [_to_worker(row) for row in rows]

    def open_worker_circuit(
        self,
        *,
        worker_id: str,
        reason: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> WorkerStatus:
        now = now or utc_now()
        status = self.upsert_worker_status(
            worker_id=worker_id,
            status=WorkerState.DEGRADED,
            circuit_open=True,
            circuit_reason=reason,
            metadata={"circuitOpenedAt": now.isoformat(), **(metadata or {})},
            now=now,
        )
        logger.warning("Circuit opened for worker %s: %s", worker_id, reason)
        self._record(
            reason_code=ObservabilityReasonCode.CIRCUIT_OPENED,
            worker_id=worker_id,
            metadata={"reason": reason, **(metadata or {})},
            now=now,
        )
        return status

    def try_resume_worker_circuit(
        self,
        *,
        worker_id: str,
        requested_by: str,
        now: datetime | None = None,
    ) -> WorkerStatus:
        """Close an open circuit on operator request; unknown workers raise LookupError."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkerStatusRow, worker_id)
            if row is None:
                raise LookupError(f"Unknown worker: {worker_id}")
            previous_reason = row.circuit_reason
            metadata = load_json_object(row.metadata_json)
            metadata["resumeRequestedAt"] = now.isoformat()
            metadata["resumeRequestedBy"] = requested_by
            row.status = WorkerState.RUNNING.value
            row.circuit_open = False
            row.circuit_reason = None
            row.metadata_json = dump_json(metadata)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            resumed = _to_worker(row)

        logger.info("Circuit resumed for worker %s by %s", worker_id, requested_by)
        self._record(
            reason_code=ObservabilityReasonCode.CIRCUIT_RESUMED,
            worker_id=worker_id,
            metadata={"requestedBy": requested_by, "previousReason": previous_reason},
            now=now,
        )
        return resumed

    def get_queue_counts(self) -> dict[str, int]:
        """Task count per status; every status is present, zero when empty."""

        counts = {status.value: 0 for status in ALL_TASK_STATUSES}
        with Session(self.engine) as session:
            rows = session.exec(
                select(PersonaTask.status, func.count()).group_by(PersonaTask.status),
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    def get_last_runtime_event_at(self) -> datetime | None:
        with Session(self.engine) as session:
            latest = session.exec(select(func.max(RuntimeEventRow.occurred_at))).one()
        return optional_utc(latest)

    def list_runtime_events(  # noqa: PLR0913
        self,
        *,
        layer: str | None = None,
        reason_code: str | None = None,
        entity_id: str | None = None,
        occurred_from: datetime | None = None,
        occurred_to: datetime | None = None,
        cursor: RuntimeEventCursor | None = None,
        limit: int = 20,
    ) -> RuntimeEventPage:
        """Newest first; `cursor` returns events ordered strictly after it."""

        limit = min(MAX_EVENTS_PAGE, max(MIN_EVENTS_PAGE, limit))
        statement = select(RuntimeEventRow).order_by(
            col(RuntimeEventRow.occurred_at).desc(),
            col(RuntimeEventRow.id).desc(),
        )
        if layer:
            statement = statement.where(RuntimeEventRow.layer == layer)
        if reason_code:
            statement = statement.where(RuntimeEventRow.reason_code == reason_code)
        if entity_id:
            statement = statement.where(RuntimeEventRow.entity_id == entity_id)
        if occurred_from is not None:
            statement = statement.where(
                col(RuntimeEventRow.occurred_at) >= to_db_datetime(occurred_from),
            )
        if occurred_to is not None:
            statement = statement.where(
                col(RuntimeEventRow.occurred_at) <= to_db_datetime(occurred_to),
            )
        if cursor is not None:
            statement = statement.where(_before_cursor(cursor))

        with Session(self.engine) as session:
            rows = session.exec(statement.limit(limit + 1)).all()
        has_more = len(rows) > limit
        items = [_to_event(row) for row in rows[:limit]]
        return RuntimeEventPage(
            items=items,
            has_more=has_more,
            next_cursor=(
                RuntimeEventCursor(occurred_at=items[-1].occurred_at, event_id=items[-1].event_id)
                if has_more and items
                else None
            ),
        )

    def list_recent_tasks(self, *, limit: int = 20) -> list[RecentTask]:
        tasks = TaskQueueRepository(self.engine).list_tasks(limit=max(1, limit))
        recent: list[RecentTask] = []
        with Session(self.engine) as session:
            for task in tasks:
                latest_reason = session.exec(
                    select(TaskTransitionEventRow.reason_code)
                    .where(TaskTransitionEventRow.task_id == task.task_id)
                    .order_by(
                        col(TaskTransitionEventRow.created_at).desc(),
                        col(TaskTransitionEventRow.id).desc(),
                    )
                    .limit(1),
                ).first()
                latest_event = session.exec(
                    select(RuntimeEventRow)
                    .where(RuntimeEventRow.task_id == task.task_id)
                    .order_by(
                        col(RuntimeEventRow.occurred_at).desc(),
                        col(RuntimeEventRow.id).desc(),
                    )
                    .limit(1),
                ).first()
                recent.append(
                    RecentTask(
                        task=task,
                        latest_transition_reason=latest_reason,
                        latest_runtime_event=(
                            _to_event(latest_event) if latest_event is not None else None
                        ),
                    ),
                )
        return recent

    def get_runtime_status(self, *, now: datetime | None = None) -> RuntimeStatus:
        workers = self.list_worker_statuses()
        open_circuits = [worker.worker_id for worker in workers if worker.circuit_open]
        return RuntimeStatus(
            workers=workers,
            queue_counts=self.get_queue_counts(),
            breaker_open=bool(open_circuits),
            open_circuit_workers=open_circuits,
            last_event_at=self.get_last_runtime_event_at(),
            generated_at=now or utc_now(),
        )

    def _record(
        self,
        *,
        reason_code: ObservabilityReasonCode,
        worker_id: str,
        metadata: dict[str, Any],
        now: datetime,
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.record(
            layer=RuntimeLayer.WORKER,
            operation="CIRCUIT",
            reason_code=reason_code.value,
            entity_id=worker_id,
            occurred_at=now,
            worker_id=worker_id,
            metadata=metadata,
        )


def _to_worker(row: WorkerStatusRow) -> WorkerStatus:
    return WorkerStatus(
        worker_id=row.worker_id,
        agent_type=row.agent_type,
        status=WorkerState(row.status),
        circuit_open=bool(row.circuit_open),
        circuit_reason=row.circuit_reason,
        current_task_id=row.current_task_id,
        last_heartbeat_at=to_utc_aware_datetime(row.last_heartbeat_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        metadata=load_json_object(row.metadata_json),
        event_id=row.id,
    )


def _to_event(row: RuntimeEventRow) -> RuntimeEvent:
    return RuntimeEvent(
        layer=row.layer,
        operation=row.operation,
        reason_code=row.reason_code,
        entity_id=row.entity_id,
        occurred_at=to_utc_aware_datetime(row.occurred_at),
        task_id=row.task_id,
        persona_id=row.persona_id,
        worker_id=row.worker_id,
        metadata=load_json_object(row.metadata_json),
    )


def _before_cursor(cursor: RuntimeEventCursor) -> Any:
    occurred_at = to_db_datetime(cursor.occurred_at)
    if cursor.event_id is None:
        return col(RuntimeEventRow.occurred_at) < occurred_at
    return or_(
        col(RuntimeEventRow.occurred_at) < occurred_at,
        and_(
            col(RuntimeEventRow.occurred_at) == occurred_at,
            col(RuntimeEventRow.id) < cursor.event_id,
        ),
    )
