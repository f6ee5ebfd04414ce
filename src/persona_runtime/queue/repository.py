"""Persistent, lease-guarded task queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from persona_runtime.observability.events import RuntimeEvent, RuntimeEventRecorder, RuntimeLayer
from persona_runtime.queue.models import (
    REPLY_RESULT_TYPE,
    PersistenceOutcome,
    PersistenceStatus,
    QueueTask,
    QueueTaskCreate,
    TaskStatus,
    TaskTransitionEvent,
    TransitionReasonCode,
)
from persona_runtime.storage.common import (
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_runtime.storage.sqlmodel_models import (
    Comment,
    PersonaTask,
    TaskIdempotencyKey,
    TaskTransitionEventRow,
)

logger = logging.getLogger(__name__)

MAX_PERSIST_ATTEMPTS = 2


class ReplyAtomicPersistence(Protocol):
    def write_idempotent_and_complete(  # noqa: PLR0913
        self,
        *,
        task: QueueTask,
        worker_id: str,
        now: datetime,
        text: str,
        idempotency_key: str,
        parent_comment_id: str | None = None,
    ) -> PersistenceOutcome: ...


class TaskQueueRepository:
    """Queue persistence facade.

    Every mutation of a claimed task is a compare-and-swap on
    `status='RUNNING' AND lease_owner=<worker>`; zero affected rows means the
    lease was lost and nothing is written. Each status change appends a
    `task_transition_events` row in the same transaction and is mirrored to the
    runtime event recorder after commit.
    """

    def __init__(self, engine: Engine, *, recorder: RuntimeEventRecorder | None = None) -> None:
        self.engine = engine
        self.recorder = recorder

    def create_task(self, payload: QueueTaskCreate, *, now: datetime | None = None) -> QueueTask:
        """Create a PENDING task; an existing task with the same idempotency key is returned."""

        now = now or utc_now()
        if payload.idempotency_key is not None:
            existing = self._get_by_idempotency_key(payload.idempotency_key)
            if existing is not None:
                return existing

        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = PersonaTask(
                task_id=task_id,
                persona_id=payload.persona_id,
                task_type=payload.task_type,
                payload_json=dump_json(payload.payload),
                status=TaskStatus.PENDING.value,
                scheduled_at=to_db_datetime(payload.scheduled_at or now),
                retry_count=0,
                max_retries=max(0, payload.max_retries),
                idempotency_key=payload.idempotency_key,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            event = add_transition_event(
                session=session,
                task_id=task_id,
                persona_id=payload.persona_id,
                task_type=payload.task_type,
                from_status=None,
                to_status=TaskStatus.PENDING,
                reason_code=TransitionReasonCode.CREATED,
                worker_id=None,
                retry_count=0,
                details={"idempotency_key": payload.idempotency_key},
                now=now,
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.idempotency_key is None:
                    raise
                existing = self._get_by_idempotency_key(payload.idempotency_key)
                if existing is None:
                    raise
                return existing
            session.refresh(row)
            task = _to_task_view(row)
        self._mirror([event])
        return task

    def claim_oldest_pending(
        self,
        *,
        worker_id: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> QueueTask | None:
        """Atomically claim the oldest due PENDING task."""

        now = now or utc_now()
        lease_until = now + timedelta(seconds=lease_seconds)
        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(PersonaTask)
                    .where(
                        PersonaTask.status == TaskStatus.PENDING.value,
                        PersonaTask.scheduled_at <= to_db_datetime(now),
                    )
                    .order_by(
                        col(PersonaTask.scheduled_at).asc(),
                        col(PersonaTask.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(PersonaTask)
                    .where(
                        col(PersonaTask.task_id) == candidate.task_id,
                        col(PersonaTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        lease_owner=worker_id,
                        lease_until=to_db_datetime(lease_until),
                        started_at=to_db_datetime(now),
                        completed_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(PersonaTask).where(PersonaTask.task_id == candidate.task_id),
                ).one()
                session.refresh(claimed)
                event = add_transition_event(
                    session=session,
                    task_id=claimed.task_id,
                    persona_id=claimed.persona_id,
                    task_type=claimed.task_type,
                    from_status=TaskStatus.PENDING,
                    to_status=TaskStatus.RUNNING,
                    reason_code=TransitionReasonCode.CLAIMED,
                    worker_id=worker_id,
                    retry_count=claimed.retry_count,
                    details={"lease_until": lease_until.isoformat()},
                    now=now,
                )
                task = _to_task_view(claimed)
                session.commit()
            self._mirror([event])
            return task

    def heartbeat(
        self,
        *,
        task_id: str,
        worker_id: str,
        lease_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """Extend the lease of a task this worker still owns."""

        now = now or utc_now()
        lease_until = now + timedelta(seconds=lease_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PersonaTask)
                .where(*_owned_by(task_id, worker_id))
                .values(
                    lease_until=to_db_datetime(lease_until),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        self._mirror(
            [
                RuntimeEvent(
                    layer=RuntimeLayer.TASK_QUEUE.value,
                    operation="HEARTBEAT",
                    reason_code=TransitionReasonCode.HEARTBEAT.value,
                    entity_id=task_id,
                    occurred_at=now,
                    task_id=task_id,
                    worker_id=worker_id,
                    metadata={"leaseUntil": lease_until.isoformat()},
                ),
            ],
        )
        return True

    def complete_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        result_id: str | None = None,
        result_type: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        now = now or utc_now()
        return self._finish_owned(
            task_id=task_id,
            worker_id=worker_id,
            to_status=TaskStatus.DONE,
            reason_code=TransitionReasonCode.COMPLETED,
            values={"result_id": result_id, "result_type": result_type, "error_message": None},
            details={"result_id": result_id, "result_type": result_type},
            now=now,
        )

    def skip_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        reason: str,
        now: datetime | None = None,
    ) -> bool:
        now = now or utc_now()
        return self._finish_owned(
            task_id=task_id,
            worker_id=worker_id,
            to_status=TaskStatus.SKIPPED,
            reason_code=TransitionReasonCode.SKIPPED,
            values={"error_message": reason},
            details={"reason": reason},
            now=now,
        )

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        error: str,
        retry_at: datetime | None = None,
        now: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> TaskStatus | None:
        """Count one failed attempt.

        Returns PENDING when the task was re-queued at `retry_at`, FAILED when
        `retry_count` reached `max_retries`, or None when the lease was lost.
        """

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(PersonaTask).where(
                    PersonaTask.task_id == task_id,
                    PersonaTask.status == TaskStatus.RUNNING.value,
                    PersonaTask.lease_owner == worker_id,
                ),
            ).one_or_none()
            if row is None:
                return None

            retry_count = row.retry_count + 1
            final = retry_count >= row.max_retries
            to_status = TaskStatus.FAILED if final else TaskStatus.PENDING
            values: dict[str, Any] = {
                "status": to_status.value,
                "retry_count": retry_count,
                "error_message": error,
                "lease_owner": None,
                "lease_until": None,
                "updated_at": to_db_datetime(now),
            }
            if final:
                values["completed_at"] = to_db_datetime(now)
            else:
                values["started_at"] = None
                values["completed_at"] = None
                values["scheduled_at"] = to_db_datetime(retry_at or now)

            result = session.exec(
                sa_update(PersonaTask)
                .where(
                    *_owned_by(task_id, worker_id),
                    col(PersonaTask.retry_count) == row.retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            event = add_transition_event(
                session=session,
                task_id=task_id,
                persona_id=row.persona_id,
                task_type=row.task_type,
                from_status=TaskStatus.RUNNING,
                to_status=to_status,
                reason_code=(
                    TransitionReasonCode.FAILED_FINAL if final else TransitionReasonCode.FAILED_RETRY
                ),
                worker_id=worker_id,
                retry_count=retry_count,
                details={
                    "error": error,
                    "retry_at": None if final else (retry_at or now).isoformat(),
                    **(details or {}),
                },
                now=now,
            )
            session.commit()
        self._mirror([event])
        return to_status

    def recover_timed_out(self, *, now: datetime | None = None) -> int:
        """Return RUNNING tasks whose lease expired to PENDING."""

        now = now or utc_now()
        recovered = 0
        events: list[RuntimeEvent] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(PersonaTask).where(
                    PersonaTask.status == TaskStatus.RUNNING.value,
                    col(PersonaTask.lease_until).is_not(None),
                    col(PersonaTask.lease_until) < to_db_datetime(now),
                ),
            ).all()
            candidates = [
                (row.task_id, row.persona_id, row.task_type, row.lease_owner, row.lease_until)
                for row in rows
            ]

        for task_id, persona_id, task_type, lease_owner, lease_until in candidates:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(PersonaTask)
                    .where(
                        col(PersonaTask.task_id) == task_id,
                        col(PersonaTask.status) == TaskStatus.RUNNING.value,
                        col(PersonaTask.lease_owner) == lease_owner,
                        col(PersonaTask.lease_until) == lease_until,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        lease_owner=None,
                        lease_until=None,
                        started_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                row = session.exec(
                    select(PersonaTask).where(PersonaTask.task_id == task_id),
                ).one()
                events.append(
                    add_transition_event(
                        session=session,
                        task_id=task_id,
                        persona_id=persona_id,
                        task_type=task_type,
                        from_status=TaskStatus.RUNNING,
                        to_status=TaskStatus.PENDING,
                        reason_code=TransitionReasonCode.LEASE_TIMEOUT,
                        worker_id=None,
                        retry_count=row.retry_count,
                        details={"previous_lease_owner": lease_owner},
                        now=now,
                    ),
                )
                session.commit()
                recovered += 1

        if recovered:
            logger.warning("Recovered %d task(s) with expired leases", recovered)
        self._mirror(events)
        return recovered

    def write_idempotent_and_complete(  # noqa: PLR0913
        self,
        *,
        task: QueueTask,
        worker_id: str,
        now: datetime,
        text: str,
        idempotency_key: str,
        parent_comment_id: str | None = None,
    ) -> PersistenceOutcome:
        """Write the reply artifact exactly once and finish the task, all in one transaction."""

        post_id = task.payload.get("postId")
        if not isinstance(post_id, str) or not post_id:
            raise ValueError(f"Reply task has no postId in payload (task_id={task.task_id}).")
        parent_id = parent_comment_id or _optional_str(task.payload.get("parentCommentId"))

        for attempt in range(1, MAX_PERSIST_ATTEMPTS + 1):
            with Session(self.engine) as session:
                # Taking the write lock first makes the lease check and the
                # idempotency lookup one serialized unit.
                lease = session.exec(
                    sa_update(PersonaTask)
                    .where(*_owned_by(task.task_id, worker_id))
                    .values(updated_at=to_db_datetime(now)),
                )
                if lease.rowcount != 1:
                    session.rollback()
                    return PersistenceOutcome(status=PersistenceStatus.LEASE_LOST)

                record = session.exec(
                    select(TaskIdempotencyKey).where(
                        TaskIdempotencyKey.task_type == task.task_type,
                        TaskIdempotencyKey.idempotency_key == idempotency_key,
                    ),
                ).one_or_none()
                if record is not None:
                    status = PersistenceStatus.REUSED
                    result_id = record.result_id
                    result_type = record.result_type
                else:
                    status = PersistenceStatus.CREATED
                    result_id = str(uuid4())
                    result_type = REPLY_RESULT_TYPE
                    session.add(
                        Comment(
                            comment_id=result_id,
                            post_id=post_id,
                            parent_id=parent_id,
                            persona_id=task.persona_id,
                            body=text,
                            created_at=to_db_datetime(now),
                        ),
                    )
                    session.add(
                        TaskIdempotencyKey(
                            task_type=task.task_type,
                            idempotency_key=idempotency_key,
                            result_id=result_id,
                            result_type=result_type,
                            task_id=task.task_id,
                            created_at=to_db_datetime(now),
                            updated_at=to_db_datetime(now),
                        ),
                    )

                done = session.exec(
                    sa_update(PersonaTask)
                    .where(*_owned_by(task.task_id, worker_id))
                    .values(
                        status=TaskStatus.DONE.value,
                        result_id=result_id,
                        result_type=result_type,
                        error_message=None,
                        lease_owner=None,
                        lease_until=None,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if done.rowcount != 1:
                    session.rollback()
                    return PersistenceOutcome(status=PersistenceStatus.LEASE_LOST)

                event = add_transition_event(
                    session=session,
                    task_id=task.task_id,
                    persona_id=task.persona_id,
                    task_type=task.task_type,
                    from_status=TaskStatus.RUNNING,
                    to_status=TaskStatus.DONE,
                    reason_code=TransitionReasonCode.COMPLETED,
                    worker_id=worker_id,
                    retry_count=task.retry_count,
                    details={
                        "result_id": result_id,
                        "result_type": result_type,
                        "idempotency_key": idempotency_key,
                        "reused": status == PersistenceStatus.REUSED,
                    },
                    now=now,
                )
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer stored the same key first; re-read it.
                    session.rollback()
                    logger.warning(
                        "Idempotency key %s raced on attempt %d (task_id=%s)",
                        idempotency_key,
                        attempt,
                        task.task_id,
                    )
                    continue
            self._mirror([event])
            return PersistenceOutcome(
                status=status,
                result_id=result_id,
                task=self.get_task(task.task_id),
            )
        raise RuntimeError(
            "Idempotency record changed concurrently while completing; "
            f"please retry (task_id={task.task_id}).",
        )

    def get_task(self, task_id: str) -> QueueTask | None:
        with Session(self.engine) as session:
            row = session.get(PersonaTask, task_id)
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        persona_id: str | None = None,
        limit: int = 50,
    ) -> list[QueueTask]:
        """List recent tasks, optionally filtered by status or persona."""

        with Session(self.engine) as session:
            statement = (
                select(PersonaTask).order_by(col(PersonaTask.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(PersonaTask.status == status.value)
            if persona_id is not None:
                statement = statement.where(PersonaTask.persona_id == persona_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_transition_events(self, task_id: str, *, limit: int = 100) -> list[TaskTransitionEvent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskTransitionEventRow)
                .where(TaskTransitionEventRow.task_id == task_id)
                .order_by(
                    col(TaskTransitionEventRow.created_at).asc(),
                    col(TaskTransitionEventRow.id).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_transition_view(row) for row in rows]

    def _get_by_idempotency_key(self, idempotency_key: str) -> QueueTask | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PersonaTask).where(PersonaTask.idempotency_key == idempotency_key),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def _finish_owned(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        to_status: TaskStatus,
        reason_code: TransitionReasonCode,
        values: dict[str, Any],
        details: dict[str, Any],
        now: datetime,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PersonaTask)
                .where(*_owned_by(task_id, worker_id))
                .values(
                    status=to_status.value,
                    lease_owner=None,
                    lease_until=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = session.exec(select(PersonaTask).where(PersonaTask.task_id == task_id)).one()
            event = add_transition_event(
                session=session,
                task_id=task_id,
                persona_id=row.persona_id,
                task_type=row.task_type,
                from_status=TaskStatus.RUNNING,
                to_status=to_status,
                reason_code=reason_code,
                worker_id=worker_id,
                retry_count=row.retry_count,
                details=details,
                now=now,
            )
            session.commit()
        self._mirror([event])
        return True

    def _mirror(self, events: list[RuntimeEvent]) -> None:
        if self.recorder is None:
            return
        for event in events:
            self.recorder.emit(event)


def add_transition_event(  # noqa: PLR0913
    *,
    session: Session,
    task_id: str,
    persona_id: str,
    task_type: str,
    from_status: TaskStatus | None,
    to_status: TaskStatus,
    reason_code: TransitionReasonCode,
    worker_id: str | None,
    retry_count: int,
    details: dict[str, Any],
    now: datetime,
) -> RuntimeEvent:
    """Append a transition row and build its runtime event mirror."""

    session.add(
        TaskTransitionEventRow(
            task_id=task_id,
            persona_id=persona_id,
            task_type=task_type,
            from_status=from_status.value if from_status is not None else None,
            to_status=to_status.value,
            reason_code=reason_code.value,
            worker_id=worker_id,
            retry_count=retry_count,
            details_json=dump_json(details) if details else None,
            created_at=to_db_datetime(now),
        ),
    )
    return RuntimeEvent(
        layer=RuntimeLayer.TASK_QUEUE.value,
        operation="TRANSITION",
        reason_code=reason_code.value,
        entity_id=task_id,
        occurred_at=now,
        task_id=task_id,
        persona_id=persona_id,
        worker_id=worker_id,
        metadata={
            "fromStatus": from_status.value if from_status is not None else None,
            "toStatus": to_status.value,
            "retryCount": retry_count,
        },
    )


def _owned_by(task_id: str, worker_id: str) -> tuple[Any, ...]:
    return (
        col(PersonaTask.task_id) == task_id,
        col(PersonaTask.status) == TaskStatus.RUNNING.value,
        col(PersonaTask.lease_owner) == worker_id,
    )


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _to_task_view(row: PersonaTask) -> QueueTask:
    return QueueTask(
        task_id=row.task_id,
        persona_id=row.persona_id,
        task_type=row.task_type,
        payload=load_json_object(row.payload_json),
        status=TaskStatus(row.status),
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        lease_owner=row.lease_owner,
        lease_until=optional_utc(row.lease_until),
        idempotency_key=row.idempotency_key,
        result_id=row.result_id,
        result_type=row.result_type,
        error_message=row.error_message,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_transition_view(row: TaskTransitionEventRow) -> TaskTransitionEvent:
    return TaskTransitionEvent(
        event_id=row.id or 0,
        task_id=row.task_id,
        persona_id=row.persona_id,
        task_type=row.task_type,
        from_status=TaskStatus(row.from_status) if row.from_status is not None else None,
        to_status=TaskStatus(row.to_status),
        reason_code=row.reason_code,
        worker_id=row.worker_id,
        retry_count=row.retry_count,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json_object(row.details_json),
    )
