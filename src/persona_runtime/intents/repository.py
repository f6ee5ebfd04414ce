"""SQL persistence for task intents and heartbeat checkpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from persona_runtime.intents.models import (
    DEFAULT_SAFETY_OVERLAP_SECONDS,
    HeartbeatSourceName,
    IntentStatus,
    SourceCheckpoint,
    SourceCursor,
    SourceEvent,
    TaskIntent,
    TaskIntentUpsert,
)
from persona_runtime.storage.common import (
    EPOCH,
    dump_json,
    load_json_list,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_runtime.storage.sqlmodel_models import (
    Comment,
    HeartbeatCheckpoint,
    HeartbeatEvent,
    Post,
    TaskIntentRow,
)

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 3


class TaskIntentRepository(Protocol):
    def upsert_intent(self, payload: TaskIntentUpsert) -> TaskIntent: ...

    def list_new_intents(self, *, limit: int = 100) -> list[TaskIntent]: ...

    def mark_dispatched(self, *, intent_id: str, persona_id: str, reasons: list[str]) -> bool: ...

    def mark_skipped(self, *, intent_id: str, reasons: list[str]) -> bool: ...


class HeartbeatSource(Protocol):
    def fetch_recent_events(
        self,
        source_name: str,
        *,
        since: datetime,
        limit: int,
        after: SourceCursor | None = None,
    ) -> list[SourceEvent]: ...

    def get_checkpoint(self, source_name: str) -> SourceCheckpoint: ...

    def upsert_checkpoint(self, checkpoint: SourceCheckpoint) -> SourceCheckpoint: ...


class SqlTaskIntentRepository:
    """Task intents keyed by (type, source table, source id)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert_intent(self, payload: TaskIntentUpsert) -> TaskIntent:
        """Insert a NEW intent or refresh the payload of the existing one.

        Status and `created_at` of an existing intent are left untouched.
        """

        for _ in range(MAX_UPSERT_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(TaskIntentRow).where(
                        TaskIntentRow.intent_type == payload.intent_type.value,
                        TaskIntentRow.source_table == payload.source_table,
                        TaskIntentRow.source_id == payload.source_id,
                    ),
                ).one_or_none()
                if row is not None:
                    row.payload_json = dump_json(payload.payload)
                    row.updated_at = to_db_datetime(now)
                    session.add(row)
                    session.commit()
                    session.refresh(row)
                    return _to_intent(row)

                row = TaskIntentRow(
                    intent_id=str(uuid4()),
                    intent_type=payload.intent_type.value,
                    source_table=payload.source_table,
                    source_id=payload.source_id,
                    payload_json=dump_json(payload.payload),
                    status=IntentStatus.NEW.value,
                    created_at=to_db_datetime(payload.source_created_at),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_intent(row)
        raise RuntimeError(
            "Task intent changed concurrently while upserting; "
            f"please retry (source={payload.source_table}:{payload.source_id}).",
        )

    def list_new_intents(self, *, limit: int = 100) -> list[TaskIntent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskIntentRow)
                .where(TaskIntentRow.status == IntentStatus.NEW.value)
                .order_by(col(TaskIntentRow.created_at).asc(), col(TaskIntentRow.intent_id).asc())
                .limit(max(1, limit)),
            ).all()
        return [_to_intent(row) for row in rows]

    def mark_dispatched(self, *, intent_id: str, persona_id: str, reasons: list[str]) -> bool:
        return self._advance(
            intent_id=intent_id,
            status=IntentStatus.DISPATCHED,
            persona_id=persona_id,
            reasons=reasons,
        )

    def mark_skipped(self, *, intent_id: str, reasons: list[str]) -> bool:
        return self._advance(
            intent_id=intent_id,
            status=IntentStatus.SKIPPED,
            persona_id=None,
            reasons=reasons,
        )

    def get_intent(self, intent_id: str) -> TaskIntent | None:
        with Session(self.engine) as session:
            row = session.get(TaskIntentRow, intent_id)
        return _to_intent(row) if row is not None else None

    def list_intents(
        self,
        *,
        status: IntentStatus | None = None,
        limit: int = 50,
    ) -> list[TaskIntent]:
        with Session(self.engine) as session:
            statement = (
                select(TaskIntentRow)
                .order_by(col(TaskIntentRow.created_at).desc())
                .limit(max(1, limit))
            )
            if status is not None:
                statement = statement.where(TaskIntentRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_intent(row) for row in rows]

    def _advance(
        self,
        *,
        intent_id: str,
        status: IntentStatus,
        persona_id: str | None,
        reasons: list[str],
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskIntentRow)
                .where(
                    col(TaskIntentRow.intent_id) == intent_id,
                    col(TaskIntentRow.status) == IntentStatus.NEW.value,
                )
                .values(
                    status=status.value,
                    selected_persona_id=persona_id,
                    decision_reason_codes_json=dump_json(list(reasons)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Intent %s is no longer NEW; not marking %s",
                    intent_id,
                    status.value,
                )
                return False
            session.commit()
            return True


class SqlHeartbeatSource:
    """Forum activity feed with per-source checkpoints.

    Posts and comments are read from the forum mirror tables; every source
    also includes raw rows recorded in `heartbeat_events`.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def fetch_recent_events(
        self,
        source_name: str,
        *,
        since: datetime,
        limit: int,
        after: SourceCursor | None = None,
    ) -> list[SourceEvent]:
        """One page of events at or after `since`, ordered by `(created_at, source_id)`.

        With `after`, the page starts strictly past that cursor so callers can
        walk a burst larger than `limit`.
        """

        limit = max(1, limit)
        since_db = to_db_datetime(since)
        events: list[SourceEvent] = []
        with Session(self.engine) as session:
            if source_name == HeartbeatSourceName.POSTS.value:
                posts = session.exec(
                    select(Post)
                    .where(*_page_filter(Post.created_at, Post.post_id, since_db, after))
                    .order_by(col(Post.created_at).asc(), col(Post.post_id).asc())
                    .limit(limit),
                ).all()
                events.extend(
                    SourceEvent(
                        source_name=source_name,
                        source_id=row.post_id,
                        created_at=to_utc_aware_datetime(row.created_at),
                        payload={
                            "boardId": row.board_id,
                            "authorId": row.author_id,
                            "personaId": row.persona_id,
                            "title": row.title,
                        },
                    )
                    for row in posts
                )
            elif source_name == HeartbeatSourceName.COMMENTS.value:
                comments = session.exec(
                    select(Comment)
                    .where(*_page_filter(Comment.created_at, Comment.comment_id, since_db, after))
                    .order_by(col(Comment.created_at).asc(), col(Comment.comment_id).asc())
                    .limit(limit),
                ).all()
                events.extend(
                    SourceEvent(
                        source_name=source_name,
                        source_id=row.comment_id,
                        created_at=to_utc_aware_datetime(row.created_at),
                        payload={
                            "postId": row.post_id,
                            "parentId": row.parent_id,
                            "authorId": row.author_id,
                            "personaId": row.persona_id,
                            "body": row.body,
                        },
                    )
                    for row in comments
                )

            raw_rows = session.exec(
                select(HeartbeatEvent)
                .where(
                    HeartbeatEvent.source_name == source_name,
                    *_page_filter(
                        HeartbeatEvent.created_at,
                        HeartbeatEvent.source_id,
                        since_db,
                        after,
                    ),
                )
                .order_by(
                    col(HeartbeatEvent.created_at).asc(),
                    col(HeartbeatEvent.source_id).asc(),
                )
                .limit(limit),
            ).all()
        events.extend(
            SourceEvent(
                source_name=row.source_name,
                source_id=row.source_id,
                created_at=to_utc_aware_datetime(row.created_at),
                payload=load_json_object(row.payload_json),
            )
            for row in raw_rows
        )
        events.sort(key=lambda event: (event.created_at, event.source_id))
        return events[:limit]

    def get_checkpoint(self, source_name: str) -> SourceCheckpoint:
        """Stored checkpoint, creating the epoch checkpoint on first use."""

        with Session(self.engine) as session:
            row = session.get(HeartbeatCheckpoint, source_name)
            if row is None:
                row = HeartbeatCheckpoint(
                    source_name=source_name,
                    last_captured_at=to_db_datetime(EPOCH),
                    safety_overlap_seconds=DEFAULT_SAFETY_OVERLAP_SECONDS,
                    updated_at=to_db_datetime(utc_now()),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    row = session.get(HeartbeatCheckpoint, source_name)
                    if row is None:
                        raise
            return _to_checkpoint(row)

    def upsert_checkpoint(self, checkpoint: SourceCheckpoint) -> SourceCheckpoint:
        """Store the watermark; an older `last_captured_at` never replaces a newer one."""

        captured = to_db_datetime(checkpoint.last_captured_at)
        with Session(self.engine) as session:
            row = session.get(HeartbeatCheckpoint, checkpoint.source_name)
            if row is None:
                row = HeartbeatCheckpoint(
                    source_name=checkpoint.source_name,
                    last_captured_at=captured,
                    safety_overlap_seconds=checkpoint.safety_overlap_seconds,
                    updated_at=to_db_datetime(utc_now()),
                )
            else:
                row.last_captured_at = max(row.last_captured_at, captured)
                row.safety_overlap_seconds = checkpoint.safety_overlap_seconds
                row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_checkpoint(row)

    def record_event(
        self,
        *,
        source_name: str,
        source_id: str,
        payload: dict[str, object] | None = None,
        created_at: datetime | None = None,
    ) -> bool:
        """Append one raw activity row; False when it was already recorded."""

        with Session(self.engine) as session:
            session.add(
                HeartbeatEvent(
                    source_name=source_name,
                    source_id=source_id,
                    payload_json=dump_json(payload or {}),
                    created_at=to_db_datetime(created_at or utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True


def _to_intent(row: TaskIntentRow) -> TaskIntent:
    return TaskIntent(
        intent_id=row.intent_id,
        intent_type=row.intent_type,
        source_table=row.source_table,
        source_id=row.source_id,
        created_at=to_utc_aware_datetime(row.created_at),
        payload=load_json_object(row.payload_json),
        status=IntentStatus(row.status),
        selected_persona_id=row.selected_persona_id,
        decision_reason_codes=load_json_list(row.decision_reason_codes_json),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_checkpoint(row: HeartbeatCheckpoint) -> SourceCheckpoint:
    return SourceCheckpoint(
        source_name=row.source_name,
        last_captured_at=to_utc_aware_datetime(row.last_captured_at),
        safety_overlap_seconds=row.safety_overlap_seconds,
    )


def _page_filter(
    created_column: Any,
    id_column: Any,
    since_db: datetime,
    after: SourceCursor | None,
) -> list[Any]:
    clauses: list[Any] = [col(created_column) >= since_db]
    if after is not None:
        after_db = to_db_datetime(after.created_at)
        clauses.append(
            or_(
                col(created_column) > after_db,
                and_(col(created_column) == after_db, col(id_column) > after.source_id),
            ),
        )
    return clauses
