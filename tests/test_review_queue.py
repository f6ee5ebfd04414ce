from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from persona_runtime.observability.events import RuntimeEventRecorder
from persona_runtime.queue.models import QueueTask, TaskStatus, TransitionReasonCode
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.review.models import (
    REVIEW_APPROVED_PAYLOAD_KEY,
    REVIEW_TIMEOUT_REASON,
    ReviewEventType,
    ReviewQueueItem,
    ReviewStatus,
)
from persona_runtime.review.repository import SqlReviewQueueStore

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Review Queue"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def reviews(engine: Engine, recorder: RuntimeEventRecorder) -> SqlReviewQueueStore:
    return SqlReviewQueueStore(engine, recorder=recorder, expiry_days=3)


@pytest.fixture()
def escalate(
    queue: TaskQueueRepository,
    reviews: SqlReviewQueueStore,
    make_task: Callable[..., QueueTask],
) -> Callable[..., ReviewQueueItem]:
    def run(*, now: datetime = NOW) -> ReviewQueueItem:
        task = make_task(now=now)
        claimed = queue.claim_oldest_pending(worker_id="worker-1", lease_seconds=30, now=now)
        assert claimed is not None
        assert claimed.task_id == task.task_id
        item = reviews.escalate_running_task(
            task_id=task.task_id,
            worker_id="worker-1",
            risk_level="GRAY",
            reason_code="SAFETY_REVIEW_REQUIRED",
            metadata={"similarity": 0.87},
            now=now,
        )
        assert item is not None
        return item

    return run


def test_escalation_moves_task_to_review(
    queue: TaskQueueRepository,
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    item = escalate()

    assert item.status == ReviewStatus.PENDING
    assert item.expires_at == NOW + timedelta(days=3)
    assert item.metadata == {"similarity": 0.87}
    task = queue.get_task(item.task_id)
    assert task is not None
    assert task.status == TaskStatus.IN_REVIEW
    assert task.lease_owner is None
    assert reviews.get_by_task(item.task_id).review_id == item.review_id  # type: ignore[union-attr]
    assert [event.event_type for event in reviews.list_events(item.review_id)] == [
        ReviewEventType.ENQUEUED,
    ]


def test_escalation_requires_lease(
    reviews: SqlReviewQueueStore,
    make_task: Callable[..., QueueTask],
) -> None:
    task = make_task()

    assert (
        reviews.escalate_running_task(
            task_id=task.task_id,
            worker_id="worker-1",
            risk_level="HIGH",
            reason_code="SAFETY_CHECK_FAILED",
        )
        is None
    )
    assert reviews.count() == 0


def test_claim_is_idempotent_for_same_reviewer(
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    item = escalate()

    first = reviews.claim(review_id=item.review_id, reviewer_id="alice", now=NOW)
    again = reviews.claim(review_id=item.review_id, reviewer_id="alice", now=NOW)
    other = reviews.claim(review_id=item.review_id, reviewer_id="bob", now=NOW)

    assert first is not None
    assert first.status == ReviewStatus.IN_REVIEW
    assert again is not None
    assert again.reviewer_id == "alice"
    assert other is None
    assert [event.event_type for event in reviews.list_events(item.review_id)] == [
        ReviewEventType.ENQUEUED,
        ReviewEventType.CLAIMED,
    ]


def test_approve_requeues_task_with_approval_marker(
    queue: TaskQueueRepository,
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    item = escalate()

    assert (
        reviews.approve(
            review_id=item.review_id,
            reviewer_id="alice",
            reason_code="LOOKS_FINE",
            now=NOW,
        )
        is None
    )

    reviews.claim(review_id=item.review_id, reviewer_id="alice", now=NOW)
    decided_at = NOW + timedelta(minutes=5)
    approved = reviews.approve(
        review_id=item.review_id,
        reviewer_id="alice",
        reason_code="LOOKS_FINE",
        note="ok to post",
        now=decided_at,
    )

    assert approved is not None
    assert approved.status == ReviewStatus.APPROVED
    assert approved.decision_reason_code == "LOOKS_FINE"
    task = queue.get_task(item.task_id)
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.payload[REVIEW_APPROVED_PAYLOAD_KEY] is True
    assert task.scheduled_at == decided_at
    assert queue.list_transition_events(item.task_id)[-1].reason_code == (
        TransitionReasonCode.REVIEW_APPROVED.value
    )
    assert reviews.reject(review_id=item.review_id, reviewer_id="alice", reason_code="X") is None


def test_reject_skips_task(
    queue: TaskQueueRepository,
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    item = escalate()
    reviews.claim(review_id=item.review_id, reviewer_id="bob", now=NOW)

    rejected = reviews.reject(
        review_id=item.review_id,
        reviewer_id="bob",
        reason_code="OFF_TOPIC",
        now=NOW,
    )

    assert rejected is not None
    assert rejected.status == ReviewStatus.REJECTED
    task = queue.get_task(item.task_id)
    assert task is not None
    assert task.status == TaskStatus.SKIPPED
    assert task.error_message == "OFF_TOPIC"


def test_expire_due_skips_task_and_leaves_fresh_items(
    queue: TaskQueueRepository,
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    old = escalate(now=NOW - timedelta(days=4))
    fresh = escalate(now=NOW)

    assert reviews.expire_due(now=NOW) == 1

    expired = reviews.get(old.review_id)
    assert expired is not None
    assert expired.status == ReviewStatus.EXPIRED
    assert expired.decision_reason_code == REVIEW_TIMEOUT_REASON
    task = queue.get_task(old.task_id)
    assert task is not None
    assert task.status == TaskStatus.SKIPPED
    assert task.error_message == REVIEW_TIMEOUT_REASON
    assert reviews.get(fresh.review_id).status == ReviewStatus.PENDING  # type: ignore[union-attr]
    assert reviews.expire_due(now=NOW) == 0


def test_concurrent_expiry_expires_each_item_once(
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
    engine: Engine,
) -> None:
    items = [escalate(now=NOW - timedelta(days=5)) for _ in range(5)]
    start = threading.Event()
    results: list[int] = []
    lock = threading.Lock()

    def expire() -> None:
        store = SqlReviewQueueStore(engine)
        start.wait(timeout=2)
        count = store.expire_due(now=NOW)
        with lock:
            results.append(count)

    threads = [threading.Thread(target=expire) for _ in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)
        assert thread.is_alive() is False

    assert sum(results) == len(items)
    for item in items:
        events = reviews.list_events(item.review_id)
        assert [event.event_type for event in events].count(ReviewEventType.EXPIRED) == 1


def test_list_pages_newest_first(
    reviews: SqlReviewQueueStore,
    escalate: Callable[..., ReviewQueueItem],
) -> None:
    created = [escalate(now=NOW + timedelta(minutes=minute)) for minute in range(3)]

    first = reviews.list(statuses=[ReviewStatus.PENDING], limit=2)
    assert [item.review_id for item in first.items] == [
        created[2].review_id,
        created[1].review_id,
    ]
    assert first.next_cursor == created[1].created_at

    second = reviews.list(statuses=[ReviewStatus.PENDING], limit=2, cursor=first.next_cursor)
    assert [item.review_id for item in second.items] == [created[0].review_id]
    assert second.next_cursor is None
    assert reviews.count(statuses=[ReviewStatus.PENDING]) == 3
