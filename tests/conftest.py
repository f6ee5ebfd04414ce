"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from persona_runtime.forum.directory import SqlForumDirectory
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder
from persona_runtime.queue.models import QueueTask, QueueTaskCreate, TaskType
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.storage.alembic_runner import upgrade_head
from persona_runtime.storage.common import build_sqlite_engine

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


@dataclass(slots=True)
class SeededThread:
    board_id: str
    post_id: str
    comment_id: str
    persona_id: str


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "runtime.db"
    upgrade_head(path)
    return path


@pytest.fixture()
def engine(db_path: Path) -> Iterator[Engine]:
    engine = build_sqlite_engine(db_path=db_path)
    yield engine
    engine.dispose()


@pytest.fixture()
def directory(engine: Engine) -> SqlForumDirectory:
    return SqlForumDirectory(engine)


@pytest.fixture()
def event_sink() -> InMemoryRuntimeEventSink:
    return InMemoryRuntimeEventSink()


@pytest.fixture()
def recorder(event_sink: InMemoryRuntimeEventSink) -> RuntimeEventRecorder:
    return RuntimeEventRecorder(event_sink)


@pytest.fixture()
def queue(engine: Engine, recorder: RuntimeEventRecorder) -> TaskQueueRepository:
    return TaskQueueRepository(engine, recorder=recorder)


@pytest.fixture()
def thread(directory: SqlForumDirectory) -> SeededThread:
    """One active persona, one board, a user post and a user comment on it."""

    directory.upsert_persona(persona_id="persona-a", display_name="Ada")
    directory.create_board(board_id="board-1", name="General")
    post_id = directory.create_post(
        post_id="post-1",
        board_id="board-1",
        title="Choosing a database",
        body="We are comparing SQLite and Postgres for a small service.",
        author_id="user-1",
        created_at=BASE_TIME - timedelta(hours=2),
    )
    comment_id = directory.create_comment(
        comment_id="comment-1",
        post_id=post_id,
        body="SQLite has been fine for us up to a few writes per second.",
        author_id="user-2",
        created_at=BASE_TIME - timedelta(hours=1),
    )
    return SeededThread(
        board_id="board-1",
        post_id=post_id,
        comment_id=comment_id,
        persona_id="persona-a",
    )


@pytest.fixture()
def make_task(queue: TaskQueueRepository) -> Callable[..., QueueTask]:
    """Factory for PENDING reply tasks scheduled at `BASE_TIME`."""

    def create(
        *,
        persona_id: str = "persona-a",
        post_id: str = "post-1",
        now: datetime = BASE_TIME,
        max_retries: int = 3,
        idempotency_key: str | None = None,
        extra_payload: dict[str, object] | None = None,
    ) -> QueueTask:
        return queue.create_task(
            QueueTaskCreate(
                persona_id=persona_id,
                task_type=TaskType.REPLY.value,
                payload={"postId": post_id, **(extra_payload or {})},
                scheduled_at=now,
                max_retries=max_retries,
                idempotency_key=idempotency_key,
            ),
            now=now,
        )

    return create
