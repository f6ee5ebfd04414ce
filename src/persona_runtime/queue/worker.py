"""Polling worker around the reply execution agent, with a provider circuit breaker."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from persona_runtime.llm.failure_classifier import classify_provider_failure
from persona_runtime.observability.models import WorkerState
from persona_runtime.observability.store import RuntimeObservabilityStore
from persona_runtime.queue.executor import ExecutionOutcome, ExecutionStatus, ReplyExecutionAgent
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CIRCUIT_FAILURE_THRESHOLD = 3


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    in_review: int = 0
    retried: int = 0
    failed: int = 0
    lease_lost: int = 0
    recovered: int = 0
    idle_polls: int = 0
    circuit_open: bool = False

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.skipped += other.skipped
        self.in_review += other.in_review
        self.retried += other.retried
        self.failed += other.failed
        self.lease_lost += other.lease_lost
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls
        self.circuit_open = self.circuit_open or other.circuit_open


class TaskWorker:
    """Recovers expired leases, honours the circuit breaker, and runs one task per poll.

    The circuit opens after `circuit_failure_threshold` consecutive provider
    failures, or at once when the failure is an auth or billing problem. While
    it is open the worker claims nothing and reports DEGRADED until an operator
    resumes it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent: ReplyExecutionAgent,
        queue: TaskQueueRepository,
        observability: RuntimeObservabilityStore,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        circuit_failure_threshold: int = DEFAULT_CIRCUIT_FAILURE_THRESHOLD,
    ) -> None:
        self.agent = agent
        self.queue = queue
        self.observability = observability
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.circuit_failure_threshold = max(1, circuit_failure_threshold)
        self.consecutive_provider_failures = 0
        self._stop_requested = False

    def run_once(self, now: datetime | None = None) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        now = now or utc_now()
        summary.recovered = self.queue.recover_timed_out(now=now)

        current = self.observability.get_worker_status(self.worker_id)
        if current is not None and current.circuit_open:
            self.observability.upsert_worker_status(
                worker_id=self.worker_id,
                status=WorkerState.DEGRADED,
                now=now,
            )
            summary.idle_polls = 1
            summary.circuit_open = True
            return summary

        self.observability.upsert_worker_status(
            worker_id=self.worker_id,
            status=WorkerState.RUNNING,
            circuit_open=False,
            now=now,
        )
        outcome = self.agent.run_once(now=now)
        if outcome is None:
            self.observability.upsert_worker_status(
                worker_id=self.worker_id,
                status=WorkerState.IDLE,
                now=now,
            )
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        _count_outcome(summary, outcome)
        summary.circuit_open = self._track_provider_health(outcome, now=now)
        if not summary.circuit_open:
            self.observability.upsert_worker_status(
                worker_id=self.worker_id,
                status=WorkerState.RUNNING,
                metadata={"lastTaskId": outcome.task_id, "lastOutcome": outcome.status.value},
                now=now,
            )
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, `max_tasks` were processed, or a stop signal arrives."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

        self.observability.upsert_worker_status(
            worker_id=self.worker_id,
            status=WorkerState.DEGRADED if aggregate.circuit_open else WorkerState.STOPPED,
        )
        logger.info(
            "Worker %s finished: processed=%d succeeded=%d skipped=%d in_review=%d "
            "retried=%d failed=%d",
            self.worker_id,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.skipped,
            aggregate.in_review,
            aggregate.retried,
            aggregate.failed,
        )
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _track_provider_health(self, outcome: ExecutionOutcome, *, now: datetime) -> bool:
        """Update the failure streak; True when the circuit was opened."""

        if outcome.provider_error is None:
            self.consecutive_provider_failures = 0
            return False

        self.consecutive_provider_failures += 1
        classification = classify_provider_failure(
            outcome.provider_error,
            outcome.provider_error_details,
        )
        if (
            not classification.opens_circuit
            and self.consecutive_provider_failures < self.circuit_failure_threshold
        ):
            return False

        self.observability.open_worker_circuit(
            worker_id=self.worker_id,
            reason=classification.reason_code,
            metadata={
                "consecutiveFailures": self.consecutive_provider_failures,
                "failureClass": classification.failure_class.value,
                "lastError": outcome.provider_error,
            },
            now=now,
        )
        self.consecutive_provider_failures = 0
        return True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        try:
            original_sigint = signal.getsignal(signal.SIGINT)
            original_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _handle_signal(self, signum: int, _: object | None) -> None:
        logger.info("Worker %s received signal %s; stopping", self.worker_id, signum)
        self._stop_requested = True


def _count_outcome(summary: WorkerRunSummary, outcome: ExecutionOutcome) -> None:
    if outcome.succeeded:
        summary.succeeded = 1
    elif outcome.status == ExecutionStatus.SKIPPED:
        summary.skipped = 1
    elif outcome.status == ExecutionStatus.IN_REVIEW:
        summary.in_review = 1
    elif outcome.status == ExecutionStatus.FAILED_RETRY:
        summary.retried = 1
    elif outcome.status == ExecutionStatus.FAILED_FINAL:
        summary.failed = 1
    elif outcome.status == ExecutionStatus.LEASE_LOST:
        summary.lease_lost = 1
