from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from persona_runtime.llm.models import LlmErrorDetails
from persona_runtime.observability.events import RuntimeEventRecorder
from persona_runtime.observability.models import WorkerState
from persona_runtime.observability.store import RuntimeObservabilityStore
from persona_runtime.queue.executor import ReplyExecutionAgent
from persona_runtime.queue.generator import GeneratedReply
from persona_runtime.queue.models import QueueTask, TaskStatus
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.queue.worker import TaskWorker
from persona_runtime.safety.gate import RuleBasedReplySafetyGate

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Worker Circuit Breaker"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
PAST = datetime(2024, 1, 1, tzinfo=UTC)


class _SequenceGenerator:
    """Returns a distinct draft per call, optionally carrying a provider error."""

    def __init__(self, *, error: str | None = None, details: LlmErrorDetails | None = None) -> None:
        self.error = error
        self.details = details
        self.calls = 0

    def generate(self, task: QueueTask) -> GeneratedReply:  # noqa: ARG002
        self.calls += 1
        return GeneratedReply(
            text=f"Fallback draft number {self.calls} with fresh wording {self.calls * 7}.",
            provider_error=self.error,
            provider_error_details=self.details,
            used_fallback=self.error is not None,
        )


@pytest.fixture()
def observability(engine: Engine, recorder: RuntimeEventRecorder) -> RuntimeObservabilityStore:
    return RuntimeObservabilityStore(engine, recorder=recorder)


def _worker(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    generator: _SequenceGenerator,
    *,
    threshold: int = 3,
) -> TaskWorker:
    agent = ReplyExecutionAgent(
        queue=queue,
        generator=generator,
        safety_gate=RuleBasedReplySafetyGate(),
        worker_id="worker-1",
    )
    return TaskWorker(
        agent=agent,
        queue=queue,
        observability=observability,
        worker_id="worker-1",
        poll_interval_seconds=0.0,
        circuit_failure_threshold=threshold,
    )


def test_auth_failure_opens_circuit_immediately(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(2):
        make_task()
    worker = _worker(
        queue,
        observability,
        _SequenceGenerator(
            error="provider rejected request",
            details=LlmErrorDetails(status_code=401),
        ),
    )

    first = worker.run_once(now=NOW)

    assert first.processed == 1
    assert first.succeeded == 1
    assert first.circuit_open is True
    status = observability.get_worker_status("worker-1")
    assert status is not None
    assert status.status == WorkerState.DEGRADED
    assert status.circuit_reason == "provider_access_or_auth"

    blocked = worker.run_once(now=NOW + timedelta(seconds=1))
    assert blocked.processed == 0
    assert blocked.circuit_open is True
    assert len(queue.list_tasks(status=TaskStatus.PENDING)) == 1

    resumed = observability.try_resume_worker_circuit(worker_id="worker-1", requested_by="ops")
    assert resumed.circuit_open is False
    assert resumed.metadata["resumeRequestedBy"] == "ops"


def test_transient_failures_open_circuit_at_threshold(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(4):
        make_task()
    worker = _worker(
        queue,
        observability,
        _SequenceGenerator(error="503 service unavailable"),
        threshold=2,
    )

    first = worker.run_once(now=NOW)
    second = worker.run_once(now=NOW)

    assert first.circuit_open is False
    assert second.circuit_open is True
    assert observability.get_runtime_status().breaker_open is True
    assert observability.get_runtime_status().open_circuit_workers == ["worker-1"]


def test_success_resets_failure_streak(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(3):
        make_task()
    generator = _SequenceGenerator(error="connection reset by peer")
    worker = _worker(queue, observability, generator, threshold=2)

    worker.run_once(now=NOW)
    generator.error = None
    worker.run_once(now=NOW)
    generator.error = "connection reset by peer"
    third = worker.run_once(now=NOW)

    assert third.circuit_open is False
    assert worker.consecutive_provider_failures == 1


def test_run_loop_drains_queue_and_stops(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(3):
        make_task(now=PAST)
    worker = _worker(queue, observability, _SequenceGenerator())

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.idle_polls == 1
    assert observability.get_queue_counts()["DONE"] == 3
    status = observability.get_worker_status("worker-1")
    assert status is not None
    assert status.status == WorkerState.STOPPED


def test_run_loop_respects_max_tasks_and_reports_degraded(
    queue: TaskQueueRepository,
    observability: RuntimeObservabilityStore,
    thread,
    make_task: Callable[..., QueueTask],
) -> None:
    for _ in range(3):
        make_task(now=PAST)
    worker = _worker(
        queue,
        observability,
        _SequenceGenerator(error="invalid api key"),
    )

    summary = worker.run_loop(max_tasks=2, max_idle_polls=1)

    assert summary.processed == 1
    assert summary.circuit_open is True
    status = observability.get_worker_status("worker-1")
    assert status is not None
    assert status.status == WorkerState.DEGRADED
