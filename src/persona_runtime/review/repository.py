"""SQL review queue: escalation, claim, decisions and expiry in single transactions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from persona_runtime.observability.events import RuntimeEvent, RuntimeEventRecorder, RuntimeLayer
from persona_runtime.queue.models import TaskStatus, TransitionReasonCode
from persona_runtime.queue.repository import add_transition_event
from persona_runtime.review.models import (
    DEFAULT_REVIEW_EXPIRY_DAYS,
    OPEN_REVIEW_STATUSES,
    REVIEW_APPROVED_PAYLOAD_KEY,
    REVIEW_TIMEOUT_REASON,
    ReviewDecision,
    ReviewEvent,
    ReviewEventType,
    ReviewPage,
    ReviewQueueItem,
    ReviewStatus,
)
from persona_runtime.storage.common import (
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_runtime.storage.sqlmodel_models import PersonaTask, ReviewEventRow, ReviewQueueRow

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200
DEFAULT_EXPIRE_BATCH = 100


class ReviewQueueStore(Protocol):
    def escalate_running_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        risk_level: str,
        reason_code: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None: ...

    def claim(
        self,
        *,
        review_id: str,
        reviewer_id: str,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None: ...

    def approve(  # noqa: PLR0913
        self,
        *,
        review_id: str,
        reviewer_id: str,
        reason_code: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None: ...

    def reject(  # noqa: PLR0913
        self,
        *,
        review_id: str,
        reviewer_id: str,
        reason_code: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None: ...

    def expire_due(self, *, now: datetime | None = None) -> int: ...


class SqlReviewQueueStore:
    """Review items next to the task they hold.

    Each operation updates the review row, the task row, the review event log
    and the task transition log in one transaction. Every status change is a
    compare-and-swap, so concurrent reviewers and expiry runs never apply the
    same change twice.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        recorder: RuntimeEventRecorder | None = None,
        expiry_days: int = DEFAULT_REVIEW_EXPIRY_DAYS,
    ) -> None:
        self.engine = engine
        self.recorder = recorder
        self.expiry = timedelta(days=max(1, expiry_days))

    def escalate_running_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        risk_level: str,
        reason_code: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None:
        """Move a RUNNING task owned by `worker_id` to IN_REVIEW and enqueue it.

        Returns None when the worker no longer holds the lease.
        """

        now = now or utc_now()
        events: list[RuntimeEvent] = []
        with Session(self.engine) as session:
            task = session.exec(
                select(PersonaTask).where(PersonaTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            result = session.exec(
                sa_update(PersonaTask)
                .where(
                    col(PersonaTask.task_id) == task_id,
                    col(PersonaTask.status) == TaskStatus.RUNNING.value,
                    col(PersonaTask.lease_owner) == worker_id,
                )
                .values(
                    status=TaskStatus.IN_REVIEW.value,
                    error_message=reason_code,
                    lease_owner=None,
                    lease_until=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            review = session.exec(
                select(ReviewQueueRow).where(
                    ReviewQueueRow.task_id == task_id,
                    col(ReviewQueueRow.status).in_(_values(OPEN_REVIEW_STATUSES)),
                ),
            ).one_or_none()
            if review is None:
                review = ReviewQueueRow(
                    review_id=str(uuid4()),
                    task_id=task_id,
                    persona_id=task.persona_id,
                    risk_level=risk_level,
                    status=ReviewStatus.PENDING.value,
                    enqueue_reason_code=reason_code,
                    metadata_json=dump_json(metadata) if metadata else None,
                    expires_at=to_db_datetime(now + self.expiry),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(review)
                events.append(
                    self._add_review_event(
                        session=session,
                        review_id=review.review_id,
                        task_id=task_id,
                        event_type=ReviewEventType.ENQUEUED,
                        reason_code=reason_code,
                        metadata=metadata,
                        now=now,
                    ),
                )

            events.append(
                add_transition_event(
                    session=session,
                    task_id=task_id,
                    persona_id=task.persona_id,
                    task_type=task.task_type,
                    from_status=TaskStatus.RUNNING,
                    to_status=TaskStatus.IN_REVIEW,
                    reason_code=TransitionReasonCode.REVIEW_REQUIRED,
                    worker_id=worker_id,
                    retry_count=task.retry_count,
                    details={
                        "review_id": review.review_id,
                        "risk_level": risk_level,
                        "reason_code": reason_code,
                    },
                    now=now,
                ),
            )
            session.commit()
            session.refresh(review)
            item = _to_item(review)
        self._mirror(events)
        logger.info("Task %s escalated to review %s (%s)", task_id, item.review_id, reason_code)
        return item

    def claim(
        self,
        *,
        review_id: str,
        reviewer_id: str,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None:
        """Take a PENDING item; claiming your own item again is a no-op."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(ReviewQueueRow, review_id)
            if row is None:
                return None
            if row.status == ReviewStatus.IN_REVIEW.value and row.reviewer_id == reviewer_id:
                return _to_item(row)
            if row.status != ReviewStatus.PENDING.value:
                return None

            result = session.exec(
                sa_update(ReviewQueueRow)
                .where(
                    col(ReviewQueueRow.review_id) == review_id,
                    col(ReviewQueueRow.status) == ReviewStatus.PENDING.value,
                )
                .values(
                    status=ReviewStatus.IN_REVIEW.value,
                    reviewer_id=reviewer_id,
                    claimed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self.get(review_id)
                if (
                    current is not None
                    and current.status == ReviewStatus.IN_REVIEW
                    and current.reviewer_id == reviewer_id
                ):
                    return current
                return None

            event = self._add_review_event(
                session=session,
                review_id=review_id,
                task_id=row.task_id,
                event_type=ReviewEventType.CLAIMED,
                reviewer_id=reviewer_id,
                now=now,
            )
            session.commit()
            session.refresh(row)
            item = _to_item(row)
        self._mirror([event])
        return item

    def approve(  # noqa: PLR0913
        self,
        *,
        review_id: str,
        reviewer_id: str,
        reason_code: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None:
        """Approve a claimed item and send its task back to PENDING for publication."""

        return self._decide(
            review_id=review_id,
            reviewer_id=reviewer_id,
            decision=ReviewDecision.APPROVE,
            reason_code=reason_code,
            note=note,
            now=now or utc_now(),
        )

    def reject(  # noqa: PLR0913
        self,
        *,
        review_id: str,
        reviewer_id: str,
        reason_code: str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ReviewQueueItem | None:
        """Reject a claimed item and skip its task."""

        return self._decide(
            review_id=review_id,
            reviewer_id=reviewer_id,
            decision=ReviewDecision.REJECT,
            reason_code=reason_code,
            note=note,
            now=now or utc_now(),
        )

    def expire_due(self, *, now: datetime | None = None, batch_size: int = DEFAULT_EXPIRE_BATCH) -> int:
        """Expire open items past `expires_at`; returns how many this caller expired."""

        now = now or utc_now()
        with Session(self.engine) as session:
            due_ids = list(
                session.exec(
                    select(ReviewQueueRow.review_id)
                    .where(
                        col(ReviewQueueRow.status).in_(_values(OPEN_REVIEW_STATUSES)),
                        col(ReviewQueueRow.expires_at) < to_db_datetime(now),
                    )
                    .order_by(col(ReviewQueueRow.expires_at).asc())
                    .limit(max(1, batch_size))
                    .with_for_update(skip_locked=True),
                ).all(),
            )

        expired = 0
        for review_id in due_ids:
            if self._expire_one(review_id=review_id, now=now):
                expired += 1
        if expired:
            logger.info("Expired %d review item(s)", expired)
        return expired

    def get(self, review_id: str) -> ReviewQueueItem | None:
        with Session(self.engine) as session:
            row = session.get(ReviewQueueRow, review_id)
        return _to_item(row) if row is not None else None

    def get_by_task(self, task_id: str) -> ReviewQueueItem | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReviewQueueRow)
                .where(ReviewQueueRow.task_id == task_id)
                .order_by(col(ReviewQueueRow.created_at).desc())
                .limit(1),
            ).one_or_none()
        return _to_item(row) if row is not None else None

    def list(
        self,
        *,
        statuses: tuple[ReviewStatus, ...] | list[ReviewStatus] | None = None,
        limit: int = 50,
        cursor: datetime | None = None,
    ) -> ReviewPage:
        """Newest first; `cursor` returns items strictly older than it."""

        limit = min(MAX_LIST_LIMIT, max(1, limit))
        with Session(self.engine) as session:
            statement = select(ReviewQueueRow).order_by(
                col(ReviewQueueRow.created_at).desc(),
                col(ReviewQueueRow.review_id).desc(),
            )
            if statuses:
                statement = statement.where(col(ReviewQueueRow.status).in_(_values(statuses)))
            if cursor is not None:
                statement = statement.where(col(ReviewQueueRow.created_at) < to_db_datetime(cursor))
            rows = session.exec(statement.limit(limit + 1)).all()
        items = [_to_item(row) for row in rows[:limit]]
        next_cursor = items[-1].created_at if len(rows) > limit and items else None
        return ReviewPage(items=items, next_cursor=next_cursor)

    def count(self, *, statuses: tuple[ReviewStatus, ...] | list[ReviewStatus] | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(ReviewQueueRow)
            if statuses:
                statement = statement.where(col(ReviewQueueRow.status).in_(_values(statuses)))
            return int(session.exec(statement).one())

    def list_events(self, review_id: str, *, limit: int = 100) -> list[ReviewEvent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ReviewEventRow)
                .where(ReviewEventRow.review_id == review_id)
                .order_by(col(ReviewEventRow.created_at).asc(), col(ReviewEventRow.id).asc())
                .limit(min(MAX_LIST_LIMIT, max(1, limit))),
            ).all()
        return [
            ReviewEvent(
                review_id=row.review_id,
                task_id=row.task_id,
                event_type=ReviewEventType(row.event_type),
                created_at=to_utc_aware_datetime(row.created_at),
                reason_code=row.reason_code,
                reviewer_id=row.reviewer_id,
                note=row.note,
                metadata=load_json_object(row.metadata_json),
            )
            for row in rows
        ]

    def _decide(  # noqa: PLR0913
        self,
        *,
        review_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        reason_code: str,
        note: str | None,
        now: datetime,
    ) -> ReviewQueueItem | None:
        approve = decision == ReviewDecision.APPROVE
        review_status = ReviewStatus.APPROVED if approve else ReviewStatus.REJECTED
        task_status = TaskStatus.PENDING if approve else TaskStatus.SKIPPED

        with Session(self.engine) as session:
            row = session.get(ReviewQueueRow, review_id)
            if row is None or row.status != ReviewStatus.IN_REVIEW.value:
                return None
            task = session.exec(
                select(PersonaTask).where(PersonaTask.task_id == row.task_id),
            ).one_or_none()
            if task is None:
                return None

            result = session.exec(
                sa_update(ReviewQueueRow)
                .where(
                    col(ReviewQueueRow.review_id) == review_id,
                    col(ReviewQueueRow.status) == ReviewStatus.IN_REVIEW.value,
                )
                .values(
                    status=review_status.value,
                    decision=decision.value,
                    decision_reason_code=reason_code,
                    reviewer_id=reviewer_id,
                    note=note,
                    decided_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            if approve:
                payload = load_json_object(task.payload_json)
                payload[REVIEW_APPROVED_PAYLOAD_KEY] = True
                task_values: dict[str, Any] = {
                    "status": task_status.value,
                    "payload_json": dump_json(payload),
                    "scheduled_at": to_db_datetime(now),
                    "error_message": None,
                    "started_at": None,
                    "completed_at": None,
                }
            else:
                task_values = {
                    "status": task_status.value,
                    "error_message": reason_code,
                    "completed_at": to_db_datetime(now),
                }
            task_result = session.exec(
                sa_update(PersonaTask)
                .where(
                    col(PersonaTask.task_id) == task.task_id,
                    col(PersonaTask.status) == TaskStatus.IN_REVIEW.value,
                )
                .values(
                    lease_owner=None,
                    lease_until=None,
                    updated_at=to_db_datetime(now),
                    **task_values,
                ),
            )
            if task_result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Task {task.task_id} changed concurrently while deciding review "
                    f"{review_id}; please retry command.",
                )

            events = [
                self._add_review_event(
                    session=session,
                    review_id=review_id,
                    task_id=task.task_id,
                    event_type=(
                        ReviewEventType.APPROVED if approve else ReviewEventType.REJECTED
                    ),
                    reason_code=reason_code,
                    reviewer_id=reviewer_id,
                    note=note,
                    now=now,
                ),
                add_transition_event(
                    session=session,
                    task_id=task.task_id,
                    persona_id=task.persona_id,
                    task_type=task.task_type,
                    from_status=TaskStatus.IN_REVIEW,
                    to_status=task_status,
                    reason_code=(
                        TransitionReasonCode.REVIEW_APPROVED
                        if approve
                        else TransitionReasonCode.REVIEW_REJECTED
                    ),
                    worker_id=f"reviewer:{reviewer_id}",
                    retry_count=task.retry_count,
                    details={"review_id": review_id, "reason_code": reason_code},
                    now=now,
                ),
            ]
            session.commit()
            session.refresh(row)
            item = _to_item(row)
        self._mirror(events)
        return item

    def _expire_one(self, *, review_id: str, now: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ReviewQueueRow)
                .where(
                    col(ReviewQueueRow.review_id) == review_id,
                    col(ReviewQueueRow.status).in_(_values(OPEN_REVIEW_STATUSES)),
                    col(ReviewQueueRow.expires_at) < to_db_datetime(now),
                )
                .values(
                    status=ReviewStatus.EXPIRED.value,
                    decision=None,
                    decision_reason_code=REVIEW_TIMEOUT_REASON,
                    decided_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            row = session.exec(
                select(ReviewQueueRow).where(ReviewQueueRow.review_id == review_id),
            ).one()
            task = session.exec(
                select(PersonaTask).where(PersonaTask.task_id == row.task_id),
            ).one_or_none()
            events = [
                self._add_review_event(
                    session=session,
                    review_id=review_id,
                    task_id=row.task_id,
                    event_type=ReviewEventType.EXPIRED,
                    reason_code=REVIEW_TIMEOUT_REASON,
                    now=now,
                ),
            ]
            if task is not None:
                task_result = session.exec(
                    sa_update(PersonaTask)
                    .where(
                        col(PersonaTask.task_id) == task.task_id,
                        col(PersonaTask.status) == TaskStatus.IN_REVIEW.value,
                    )
                    .values(
                        status=TaskStatus.SKIPPED.value,
                        error_message=REVIEW_TIMEOUT_REASON,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if task_result.rowcount == 1:
                    events.append(
                        add_transition_event(
                            session=session,
                            task_id=task.task_id,
                            persona_id=task.persona_id,
                            task_type=task.task_type,
                            from_status=TaskStatus.IN_REVIEW,
                            to_status=TaskStatus.SKIPPED,
                            reason_code=TransitionReasonCode.REVIEW_EXPIRED,
                            worker_id=None,
                            retry_count=task.retry_count,
                            details={"review_id": review_id},
                            now=now,
                        ),
                    )
            session.commit()
        self._mirror(events)
        return True

    def _add_review_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        review_id: str,
        task_id: str,
        event_type: ReviewEventType,
        now: datetime,
        reason_code: str | None = None,
        reviewer_id: str | None = None,
        note: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RuntimeEvent:
        session.add(
            ReviewEventRow(
                review_id=review_id,
                task_id=task_id,
                event_type=event_type.value,
                reason_code=reason_code,
                reviewer_id=reviewer_id,
                note=note,
                metadata_json=dump_json(metadata) if metadata else None,
                created_at=to_db_datetime(now),
            ),
        )
        return RuntimeEvent(
            layer=RuntimeLayer.REVIEW_QUEUE.value,
            operation=event_type.value,
            reason_code=reason_code or event_type.value,
            entity_id=review_id,
            occurred_at=now,
            task_id=task_id,
            metadata={"reviewerId": reviewer_id} if reviewer_id else {},
        )

    def _mirror(self, events: list[RuntimeEvent]) -> None:
        if self.recorder is None:
            return
        for event in events:
            self.recorder.emit(event)


def _values(statuses: tuple[ReviewStatus, ...] | list[ReviewStatus]) -> list[str]:
    return [status.value for status in statuses]


def _to_item(row: ReviewQueueRow) -> ReviewQueueItem:
    return ReviewQueueItem(
        review_id=row.review_id,
        task_id=row.task_id,
        persona_id=row.persona_id,
        risk_level=row.risk_level,
        status=ReviewStatus(row.status),
        enqueue_reason_code=row.enqueue_reason_code,
        expires_at=to_utc_aware_datetime(row.expires_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        decision=ReviewDecision(row.decision) if row.decision else None,
        decision_reason_code=row.decision_reason_code,
        reviewer_id=row.reviewer_id,
        note=row.note,
        claimed_at=optional_utc(row.claimed_at),
        decided_at=optional_utc(row.decided_at),
        metadata=load_json_object(row.metadata_json),
    )
