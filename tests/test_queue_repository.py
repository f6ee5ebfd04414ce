from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure

from persona_runtime.forum.directory import SqlForumDirectory
from persona_runtime.observability.events import InMemoryRuntimeEventSink
from persona_runtime.queue.models import (
    PersistenceStatus,
    QueueTask,
    TaskStatus,
    TransitionReasonCode,
)
from persona_runtime.queue.repository import TaskQueueRepository

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Task Queue Reliability"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def test_create_task_is_idempotent_on_key(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    first = make_task(idempotency_key="intent:1")
    second = make_task(idempotency_key="intent:1")

    assert first.task_id == second.task_id
    assert first.status == TaskStatus.PENDING
    assert len(queue.list_tasks()) == 1
    events = queue.list_transition_events(first.task_id)
    assert [event.reason_code for event in events] == [TransitionReasonCode.CREATED.value]
    assert events[0].from_status is None


def test_claim_takes_oldest_due_task_and_skips_future_ones(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    later = make_task(now=NOW + timedelta(minutes=5))
    older = make_task(now=NOW - timedelta(minutes=5))
    newer = make_task(now=NOW)

    claimed = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)
    assert claimed is not None
    assert claimed.task_id == older.task_id
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.lease_owner == "worker-1"
    assert claimed.lease_until == NOW + timedelta(seconds=30)

    second = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)
    assert second is not None
    assert second.task_id == newer.task_id

    assert queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW) is None
    assert queue.get_task(later.task_id).status == TaskStatus.PENDING  # type: ignore[union-attr]


def test_concurrent_claims_never_share_a_task(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(6):
        make_task()

    start = threading.Event()
    claimed: list[str] = []
    lock = threading.Lock()

    def claim(worker_id: str) -> None:
        start.wait(timeout=2)
        while True:
            task = queue.claim_oldest_pending(worker_id=worker_id, lease_seconds=30, now=NOW)
            if task is None:
                return
            with lock:
                claimed.append(task.task_id)

    threads = [threading.Thread(target=claim, args=(f"worker-{i}",)) for i in range(3)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)
        assert thread.is_alive() is False

    assert len(claimed) == 6
    assert len(set(claimed)) == 6


def test_heartbeat_and_finish_require_lease_ownership(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    task = make_task()
    queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)

    assert queue.heartbeat(task_id=task.task_id, worker_id="worker-2", lease_seconds=30) is False
    assert queue.heartbeat(
        task_id=task.task_id,
        worker_id="worker-1",
        lease_seconds=60,
        now=NOW + timedelta(seconds=10),
    )
    refreshed = queue.get_task(task.task_id)
    assert refreshed is not None
    assert refreshed.lease_until == NOW + timedelta(seconds=70)

    assert queue.complete_task(task_id=task.task_id, worker_id="worker-2") is False
    assert queue.skip_task(task_id=task.task_id, worker_id="worker-1", reason="nothing to say")
    skipped = queue.get_task(task.task_id)
    assert skipped is not None
    assert skipped.status == TaskStatus.SKIPPED
    assert skipped.error_message == "nothing to say"
    assert skipped.lease_owner is None
    assert queue.complete_task(task_id=task.task_id, worker_id="worker-1") is False


def test_fail_task_retries_until_max_retries(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    task = make_task(max_retries=2)

    queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)
    retry_at = NOW + timedelta(seconds=10)
    status = queue.fail_task(
        task_id=task.task_id,
        worker_id="worker-1",
        error="provider timeout",
        retry_at=retry_at,
        now=NOW,
    )
    assert status == TaskStatus.PENDING
    requeued = queue.get_task(task.task_id)
    assert requeued is not None
    assert requeued.retry_count == 1
    assert requeued.scheduled_at == retry_at
    assert queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW) is None

    queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=retry_at)
    status = queue.fail_task(
        task_id=task.task_id,
        worker_id="worker-1",
        error="provider timeout",
        now=retry_at,
    )
    assert status == TaskStatus.FAILED
    failed = queue.get_task(task.task_id)
    assert failed is not None
    assert failed.retry_count == 2
    assert failed.completed_at == retry_at

    reasons = [event.reason_code for event in queue.list_transition_events(task.task_id)]
    assert reasons == [
        TransitionReasonCode.CREATED.value,
        TransitionReasonCode.CLAIMED.value,
        TransitionReasonCode.FAILED_RETRY.value,
        TransitionReasonCode.CLAIMED.value,
        TransitionReasonCode.FAILED_FINAL.value,
    ]


def test_fail_task_without_lease_returns_none(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
) -> None:
    task = make_task()
    assert queue.fail_task(task_id=task.task_id, worker_id="worker-1", error="boom") is None


def test_recover_timed_out_requeues_expired_leases(
    queue: TaskQueueRepository,
    make_task: Callable[..., QueueTask],
    event_sink: InMemoryRuntimeEventSink,
) -> None:
    stale = make_task()
    fresh = make_task()
    queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=10, now=NOW)
    queue.claim_oldest_pending(worker_id="worker-2", lease_seconds=120, now=NOW)

    recovered = queue.recover_timed_out(now=NOW + timedelta(seconds=30))

    assert recovered == 1
    assert queue.get_task(stale.task_id).status == TaskStatus.PENDING  # type: ignore[union-attr]
    assert queue.get_task(fresh.task_id).status == TaskStatus.RUNNING  # type: ignore[union-attr]
    timeout_events = [
        event
        for event in event_sink.events
        if event.reason_code == TransitionReasonCode.LEASE_TIMEOUT.value
    ]
    assert [event.entity_id for event in timeout_events] == [stale.task_id]
    assert queue.complete_task(task_id=stale.task_id, worker_id="worker-1") is False


def test_write_idempotent_and_complete_writes_reply_once(
    queue: TaskQueueRepository,
    directory: SqlForumDirectory,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    first = make_task(extra_payload={"parentCommentId": thread.comment_id})
    claimed = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)
    assert claimed is not None

    outcome = queue.write_idempotent_and_complete(
        task=claimed,
        worker_id="worker-1",
        now=NOW,
        text="SQLite is a fine start.",
        idempotency_key="reply:post-1:persona-a",
    )
    assert outcome.status == PersistenceStatus.CREATED
    assert outcome.task is not None
    assert outcome.task.status == TaskStatus.DONE
    assert outcome.task.result_id == outcome.result_id

    make_task()
    second = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=NOW)
    assert second is not None
    assert second.task_id != first.task_id
    reused = queue.write_idempotent_and_complete(
        task=second,
        worker_id="worker-1",
        now=NOW,
        text="A different draft.",
        idempotency_key="reply:post-1:persona-a",
    )
    assert reused.status == PersistenceStatus.REUSED
    assert reused.result_id == outcome.result_id

    assert directory.list_recent_persona_replies("persona-a", limit=10) == [
        "SQLite is a fine start.",
    ]
    stored = directory.get_comment(outcome.result_id or "")
    assert stored is not None
    assert stored.parent_id == thread.comment_id
    assert stored.persona_id == "persona-a"


def test_write_idempotent_and_complete_reports_lost_lease(
    queue: TaskQueueRepository,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    make_task()
    claimed = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=10, now=NOW)
    assert claimed is not None
    queue.recover_timed_out(now=NOW + timedelta(seconds=60))

    outcome = queue.write_idempotent_and_complete(
        task=claimed,
        worker_id="worker-1",
        now=NOW + timedelta(seconds=60),
        text="Too late.",
        idempotency_key="reply:late",
    )

    assert outcome.status == PersistenceStatus.LEASE_LOST
    assert outcome.ok is False
