from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
from sqlalchemy.engine import Engine

from persona_runtime.forum.directory import SqlForumDirectory
from persona_runtime.intents.collector import TaskIntentCollector, forum_target_predicate
from persona_runtime.intents.models import (
    IntentStatus,
    IntentType,
    SourceCheckpoint,
    SourceCursor,
    SourceEvent,
    TaskIntent,
    TaskIntentUpsert,
)
from persona_runtime.intents.repository import SqlHeartbeatSource, SqlTaskIntentRepository
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Intent Collection"),
]

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class _MemorySource:
    def __init__(self, events: list[SourceEvent]) -> None:
        self.events = events
        self.checkpoints: dict[str, SourceCheckpoint] = {}

    def fetch_recent_events(
        self,
        source_name: str,
        *,
        since: datetime,
        limit: int,
        after: SourceCursor | None = None,
    ) -> list[SourceEvent]:
        start = None if after is None else (after.created_at, after.source_id)
        ordered = sorted(self.events, key=lambda event: (event.created_at, event.source_id))
        return [
            event
            for event in ordered
            if event.source_name == source_name
            and event.created_at >= since
            and (start is None or (event.created_at, event.source_id) > start)
        ][:limit]

    def get_checkpoint(self, source_name: str) -> SourceCheckpoint:
        return self.checkpoints.get(
            source_name,
            SourceCheckpoint(source_name=source_name, last_captured_at=EPOCH),
        )

    def upsert_checkpoint(self, checkpoint: SourceCheckpoint) -> SourceCheckpoint:
        self.checkpoints[checkpoint.source_name] = checkpoint
        return checkpoint


class _FlakyIntents:
    def __init__(self) -> None:
        self.upserts: list[TaskIntentUpsert] = []

    def upsert_intent(self, payload: TaskIntentUpsert) -> TaskIntent:
        if payload.source_id == "bad":
            raise RuntimeError("constraint failed")
        self.upserts.append(payload)
        return TaskIntent(
            intent_id=str(len(self.upserts)),
            intent_type=payload.intent_type.value,
            source_table=payload.source_table,
            source_id=payload.source_id,
            created_at=payload.source_created_at,
            payload=payload.payload,
        )


def test_collects_reply_intents_from_forum_tables(
    engine: Engine,
    directory: SqlForumDirectory,
    thread,
) -> None:
    directory.create_board(board_id="board-2", name="Attic", is_archived=True)
    directory.create_post(
        post_id="post-2",
        board_id="board-2",
        title="Old thread",
        body="",
        author_id="user-3",
        created_at=BASE_TIME - timedelta(minutes=90),
    )
    directory.create_comment(
        post_id=thread.post_id,
        body="Persona answer",
        parent_id=thread.comment_id,
        persona_id=thread.persona_id,
        created_at=BASE_TIME - timedelta(minutes=30),
    )
    source = SqlHeartbeatSource(engine)
    assert source.record_event(
        source_name="votes",
        source_id="vote-1",
        payload={"authorId": "user-2", "postId": thread.post_id},
        created_at=BASE_TIME - timedelta(minutes=20),
    )
    assert source.record_event(source_name="votes", source_id="vote-1") is False
    intents = SqlTaskIntentRepository(engine)
    sink = InMemoryRuntimeEventSink()
    collector = TaskIntentCollector(
        source=source,
        intents=intents,
        target_is_eligible=forum_target_predicate(directory),
        recorder=RuntimeEventRecorder(sink),
    )

    first = collector.collect(now=BASE_TIME)

    assert first.scanned_by_source == {
        "posts": 2,
        "comments": 2,
        "votes": 1,
        "poll_votes": 0,
        "notifications": 0,
    }
    assert first.created_intents == 2
    assert first.skipped_events == 3
    new = intents.list_new_intents()
    assert [(item.source_table, item.source_id) for item in new] == [
        ("posts", thread.post_id),
        ("comments", thread.comment_id),
    ]
    assert new[0].payload["trigger"] == "new_post"
    assert new[1].payload == {
        "postId": thread.post_id,
        "parentCommentId": thread.comment_id,
        "trigger": "new_comment",
        "sourceName": "comments",
    }
    assert new[0].created_at == BASE_TIME - timedelta(hours=2)
    assert source.get_checkpoint("posts").last_captured_at == BASE_TIME - timedelta(minutes=90)
    assert sink.reason_codes() == ["intentsCollected"] * 5

    second = collector.collect(now=BASE_TIME + timedelta(minutes=1))

    assert second.created_intents == 0
    assert second.skipped_events == 3
    assert len(intents.list_intents(status=IntentStatus.NEW)) == 2


def test_bad_events_are_skipped_without_aborting() -> None:
    events = [
        SourceEvent("comments", "c-1", BASE_TIME, {"authorId": "u1", "postId": "p-1"}),
        SourceEvent("comments", "bad", BASE_TIME, {"authorId": "u1", "postId": "p-1"}),
        SourceEvent("comments", "c-2", BASE_TIME, {"authorId": "u2"}),
        SourceEvent(
            "comments",
            "c-3",
            BASE_TIME + timedelta(seconds=5),
            {"authorId": "u3", "postId": "p-1"},
        ),
    ]
    source = _MemorySource(events)
    intents = _FlakyIntents()
    checked: list[str] = []

    def eligible(post_id: str) -> bool:
        checked.append(post_id)
        return True

    summary = TaskIntentCollector(
        source=source,
        intents=intents,
        sources=["comments"],
        target_is_eligible=eligible,
    ).collect(now=BASE_TIME)

    assert summary.created_intents == 2
    assert summary.skipped_events == 2
    assert [item.source_id for item in intents.upserts] == ["c-1", "c-3"]
    assert checked == ["p-1"]
    assert source.checkpoints["comments"].last_captured_at == BASE_TIME + timedelta(seconds=5)


def test_checkpoint_never_moves_backwards(engine: Engine) -> None:
    source = SqlHeartbeatSource(engine)

    assert source.get_checkpoint("posts").last_captured_at == EPOCH
    source.upsert_checkpoint(SourceCheckpoint(source_name="posts", last_captured_at=BASE_TIME))
    stored = source.upsert_checkpoint(
        SourceCheckpoint(source_name="posts", last_captured_at=BASE_TIME - timedelta(days=1)),
    )

    assert stored.last_captured_at == BASE_TIME


def test_dispatch_marks_are_single_shot(engine: Engine) -> None:
    intents = SqlTaskIntentRepository(engine)
    upsert = TaskIntentUpsert(
        intent_type=IntentType.REPLY,
        source_table="posts",
        source_id="post-9",
        source_created_at=BASE_TIME,
        payload={"postId": "post-9"},
    )
    created = intents.upsert_intent(upsert)
    refreshed = intents.upsert_intent(
        TaskIntentUpsert(
            intent_type=upsert.intent_type,
            source_table="posts",
            source_id="post-9",
            source_created_at=BASE_TIME + timedelta(hours=1),
            payload={"postId": "post-9", "trigger": "new_post"},
        ),
    )

    assert refreshed.intent_id == created.intent_id
    assert refreshed.created_at == BASE_TIME
    assert refreshed.payload["trigger"] == "new_post"
    assert intents.mark_dispatched(intent_id=created.intent_id, persona_id="p", reasons=["A"])
    assert intents.mark_skipped(intent_id=created.intent_id, reasons=["B"]) is False
    stored = intents.get_intent(created.intent_id)
    assert stored is not None
    assert stored.status == IntentStatus.DISPATCHED
    assert stored.selected_persona_id == "p"
    assert stored.decision_reason_codes == ["A"]


def test_burst_larger_than_batch_is_collected_in_one_run(
    engine: Engine,
    directory: SqlForumDirectory,
    thread,
) -> None:
    for index in range(5):
        directory.create_comment(
            comment_id=f"c-{index}",
            post_id=thread.post_id,
            body=f"Burst comment {index}",
            author_id="user-4",
            created_at=BASE_TIME + timedelta(seconds=index + 1),
        )
    source = SqlHeartbeatSource(engine)
    intents = SqlTaskIntentRepository(engine)
    collector = TaskIntentCollector(
        source=source,
        intents=intents,
        sources=["comments"],
        batch_size=3,
    )

    first = collector.collect(now=BASE_TIME + timedelta(minutes=1))

    assert first.scanned_by_source == {"comments": 6}
    assert first.created_intents == 6
    assert source.get_checkpoint("comments").last_captured_at == BASE_TIME + timedelta(seconds=5)

    directory.create_comment(
        comment_id="c-late",
        post_id=thread.post_id,
        body="After the burst",
        author_id="user-5",
        created_at=BASE_TIME + timedelta(seconds=30),
    )
    for _ in range(3):
        collector.collect(now=BASE_TIME + timedelta(minutes=2))

    collected = [item.source_id for item in intents.list_new_intents()]
    assert collected == [thread.comment_id, "c-0", "c-1", "c-2", "c-3", "c-4", "c-late"]
    assert source.get_checkpoint("comments").last_captured_at == BASE_TIME + timedelta(seconds=30)


def test_pages_walk_through_events_sharing_a_timestamp() -> None:
    events = [
        SourceEvent("posts", f"p-{index}", BASE_TIME, {"authorId": "u1"})
        for index in range(5)
    ]
    source = _MemorySource(events)
    intents = _FlakyIntents()

    summary = TaskIntentCollector(
        source=source,
        intents=intents,
        sources=["posts"],
        batch_size=2,
    ).collect(now=BASE_TIME)

    assert summary.scanned_by_source == {"posts": 5}
    assert [item.source_id for item in intents.upserts] == ["p-0", "p-1", "p-2", "p-3", "p-4"]
    assert source.checkpoints["posts"].last_captured_at == BASE_TIME
