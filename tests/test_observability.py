from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from persona_runtime.observability.events import (
    RuntimeEvent,
    RuntimeEventRecorder,
    RuntimeLayer,
    SqlRuntimeEventSink,
)
from persona_runtime.observability.models import RuntimeEventCursor, WorkerState
from persona_runtime.observability.store import RuntimeObservabilityStore
from persona_runtime.queue.models import QueueTask

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Runtime Observability"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


class _BrokenSink:
    def record(self, event: RuntimeEvent) -> None:
        raise OSError(f"disk full while writing {event.reason_code}")


def test_event_pages_walk_backwards_with_cursor(engine: Engine) -> None:
    recorder = RuntimeEventRecorder(SqlRuntimeEventSink(engine))
    for minute in range(5):
        recorder.record(
            layer=RuntimeLayer.PROVIDER_RUNTIME,
            operation="CALL",
            reason_code="providerCallSucceeded" if minute % 2 == 0 else "providerCallFailed",
            entity_id=f"task-{minute}",
            occurred_at=NOW + timedelta(minutes=minute),
            metadata={"minute": minute} if minute else None,
        )
    store = RuntimeObservabilityStore(engine)

    first = store.list_runtime_events(limit=2)
    second = store.list_runtime_events(limit=2, cursor=first.next_cursor)
    last = store.list_runtime_events(limit=2, cursor=second.next_cursor)

    assert [event.entity_id for event in first.items] == ["task-4", "task-3"]
    assert first.has_more is True
    assert first.next_cursor is not None
    assert first.next_cursor.occurred_at == NOW + timedelta(minutes=3)
    assert [event.entity_id for event in second.items] == ["task-2", "task-1"]
    assert [event.entity_id for event in last.items] == ["task-0"]
    assert last.has_more is False
    assert last.next_cursor is None
    assert last.items[0].metadata == {}
    assert second.items[0].metadata == {"minute": 2}

    failed = store.list_runtime_events(reason_code="providerCallFailed", limit=500)
    assert [event.entity_id for event in failed.items] == ["task-3", "task-1"]
    window = store.list_runtime_events(
        layer="provider_runtime",
        occurred_from=NOW + timedelta(minutes=1),
        occurred_to=NOW + timedelta(minutes=2),
    )
    assert [event.entity_id for event in window.items] == ["task-2", "task-1"]
    assert store.get_last_runtime_event_at() == NOW + timedelta(minutes=4)


def test_event_pages_split_events_sharing_a_timestamp(engine: Engine) -> None:
    recorder = RuntimeEventRecorder(SqlRuntimeEventSink(engine))
    for index in range(5):
        recorder.record(
            layer=RuntimeLayer.TASK_QUEUE,
            operation="TRANSITION",
            reason_code="taskClaimed",
            entity_id=f"task-{index}",
            occurred_at=NOW,
        )
    store = RuntimeObservabilityStore(engine)

    first = store.list_runtime_events(limit=2)
    second = store.list_runtime_events(limit=2, cursor=first.next_cursor)
    last = store.list_runtime_events(limit=2, cursor=second.next_cursor)

    assert [event.entity_id for event in first.items] == ["task-4", "task-3"]
    assert [event.entity_id for event in second.items] == ["task-2", "task-1"]
    assert [event.entity_id for event in last.items] == ["task-0"]
    assert first.next_cursor is not None
    assert first.next_cursor.occurred_at == NOW
    assert RuntimeEventCursor.parse(first.next_cursor.encode()) == first.next_cursor
    bare = store.list_runtime_events(cursor=RuntimeEventCursor.parse(NOW.isoformat()))
    assert bare.items == []


def test_malformed_cursor_is_rejected() -> None:
    with pytest.raises(ValueError, match="invalid event id"):
        RuntimeEventCursor.parse(f"{NOW.isoformat()}#latest")
    with pytest.raises(ValueError):
        RuntimeEventCursor.parse("yesterday#4")


def test_recorder_survives_broken_sink() -> None:
    recorder = RuntimeEventRecorder(_BrokenSink(), max_events=1)

    for index in range(25):
        recorder.record(
            layer=RuntimeLayer.POLICY_CONTROL_PLANE,
            operation="LOAD",
            reason_code="loadFailed" if index == 3 else "cacheHit",
            entity_id="reply_policy",
        )

    status = recorder.get_status()
    assert status.total_recorded == 25
    assert status.dropped == 25
    assert len(status.recent) == 20
    assert list(status.last_failure_by_reason) == ["loadFailed"]


def test_worker_status_upsert_keeps_circuit_fields(engine: Engine) -> None:
    store = RuntimeObservabilityStore(engine)

    store.open_worker_circuit(worker_id="worker-1", reason="provider_billing_or_quota", now=NOW)
    heartbeat = store.upsert_worker_status(
        worker_id="worker-1",
        status=WorkerState.DEGRADED,
        metadata={"lastTaskId": "task-9"},
        now=NOW + timedelta(seconds=5),
    )

    assert heartbeat.circuit_open is True
    assert heartbeat.circuit_reason == "provider_billing_or_quota"
    assert heartbeat.metadata["circuitOpenedAt"] == NOW.isoformat()
    assert heartbeat.metadata["lastTaskId"] == "task-9"
    assert heartbeat.last_heartbeat_at == NOW + timedelta(seconds=5)

    resumed = store.try_resume_worker_circuit(worker_id="worker-1", requested_by="ops", now=NOW)
    assert resumed.status == WorkerState.RUNNING
    assert resumed.circuit_reason is None

    with pytest.raises(LookupError):
        store.try_resume_worker_circuit(worker_id="ghost", requested_by="ops")


def test_queue_counts_and_recent_tasks(
    engine: Engine,
    make_task: Callable[..., QueueTask],
) -> None:
    store = RuntimeObservabilityStore(engine)
    assert store.get_queue_counts() == {
        "PENDING": 0,
        "RUNNING": 0,
        "IN_REVIEW": 0,
        "DONE": 0,
        "SKIPPED": 0,
        "FAILED": 0,
    }

    task = make_task()
    make_task(post_id="post-2")

    assert store.get_queue_counts()["PENDING"] == 2
    recent = store.list_recent_tasks(limit=5)
    assert task.task_id in {item.task.task_id for item in recent}
    assert {item.latest_transition_reason for item in recent} == {"CREATED"}
    assert all(item.latest_runtime_event is None for item in recent)

    status = store.get_runtime_status(now=NOW)
    assert status.breaker_open is False
    assert status.workers == []
    assert status.generated_at == NOW
