"""Claim one reply task and drive it to DONE, SKIPPED, IN_REVIEW or a retry."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from persona_runtime.llm.models import LlmErrorDetails
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.queue.generator import GeneratedReply, ReplyGenerator
from persona_runtime.queue.models import (
    ExecutionSkipReason,
    PersistenceStatus,
    QueueTask,
    TaskStatus,
    TaskType,
)
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.review.models import REVIEW_APPROVED_PAYLOAD_KEY, ReviewReasonCode
from persona_runtime.review.repository import ReviewQueueStore
from persona_runtime.safety.gate import ReplySafetyGate, RiskLevel, SafetyGateResult
from persona_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 30
DEFAULT_RETRY_BASE_SECONDS = 30
DEFAULT_RETRY_MAX_SECONDS = 900


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    REUSED = "reused"
    SKIPPED = "skipped"
    IN_REVIEW = "in_review"
    FAILED_RETRY = "failed_retry"
    FAILED_FINAL = "failed_final"
    LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class ExecutionOutcome:
    """What happened to the one task `run_once` claimed."""

    task_id: str
    status: ExecutionStatus
    reason_code: str | None = None
    result_id: str | None = None
    error: str | None = None
    provider_error: str | None = None
    provider_error_details: LlmErrorDetails | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in {ExecutionStatus.COMPLETED, ExecutionStatus.REUSED}


class ReplyExecutionAgent:
    """Runs the reply pipeline for claimed tasks.

    Generation, safety and persistence each have their own exit path; an
    unexpected exception anywhere in the pipeline counts as a failed attempt
    and is retried with jittered exponential backoff until `max_retries`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: TaskQueueRepository,
        generator: ReplyGenerator,
        safety_gate: ReplySafetyGate,
        worker_id: str,
        review_store: ReviewQueueStore | None = None,
        recorder: RuntimeEventRecorder | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
    ) -> None:
        self.queue = queue
        self.generator = generator
        self.safety_gate = safety_gate
        self.worker_id = worker_id
        self.review_store = review_store
        self.recorder = recorder
        self.lease_seconds = lease_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._random = random.Random()  # noqa: S311

    def run_once(self, now: datetime | None = None) -> ExecutionOutcome | None:
        """Process at most one task; None when nothing was claimable."""

        now = now or utc_now()
        task = self.queue.claim_oldest_pending(
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
            now=now,
        )
        if task is None:
            return None

        try:
            return self._execute(task, now=now)
        except Exception as error:  # noqa: BLE001
            logger.warning("Reply task %s failed: %s", task.task_id, error)
            return self._fail(task, error=str(error) or type(error).__name__, now=now)

    def _execute(self, task: QueueTask, *, now: datetime) -> ExecutionOutcome:
        if task.task_type != TaskType.REPLY.value:
            return self._skip(task, reason=ExecutionSkipReason.UNSUPPORTED_TASK_TYPE.value, now=now)

        idempotency_key = resolve_idempotency_key(task)
        generated = self.generator.generate(task)
        if generated.skip_reason:
            return self._skip(task, reason=generated.skip_reason, now=now, generated=generated)

        text = (generated.text or "").strip()
        if not text:
            return self._skip(
                task,
                reason=ExecutionSkipReason.EMPTY_GENERATED_REPLY.value,
                now=now,
                generated=generated,
            )

        approved = task.payload.get(REVIEW_APPROVED_PAYLOAD_KEY) is True
        verdict = self._check_safety(task, text=text, generated=generated)
        if verdict is None:
            if not approved:
                return self._escalate(
                    task,
                    risk_level=RiskLevel.UNKNOWN,
                    reason_code=ReviewReasonCode.SAFETY_CHECK_FAILED.value,
                    now=now,
                    generated=generated,
                )
        elif not verdict.allowed:
            logger.info(
                "Safety gate blocked task %s: %s",
                task.task_id,
                verdict.reason or verdict.reason_code,
            )
            return self._skip(
                task,
                reason=ExecutionSkipReason.SAFETY_BLOCKED.value,
                now=now,
                generated=generated,
            )
        elif verdict.needs_review and not approved:
            return self._escalate(
                task,
                risk_level=verdict.risk_level or RiskLevel.GRAY,
                reason_code=ReviewReasonCode.SAFETY_REVIEW_REQUIRED.value,
                now=now,
                generated=generated,
                details={
                    "safetyReasonCode": verdict.reason_code.value if verdict.reason_code else None,
                    "similarity": verdict.similarity,
                },
            )

        persisted = self.queue.write_idempotent_and_complete(
            task=task,
            worker_id=self.worker_id,
            now=now,
            text=text,
            idempotency_key=idempotency_key,
            parent_comment_id=generated.parent_comment_id,
        )
        if persisted.status == PersistenceStatus.LEASE_LOST:
            return self._lease_lost(task, generated=generated)
        return ExecutionOutcome(
            task_id=task.task_id,
            status=(
                ExecutionStatus.REUSED
                if persisted.status == PersistenceStatus.REUSED
                else ExecutionStatus.COMPLETED
            ),
            result_id=persisted.result_id,
            provider_error=generated.provider_error,
            provider_error_details=generated.provider_error_details,
        )

    def _check_safety(
        self,
        task: QueueTask,
        *,
        text: str,
        generated: GeneratedReply,
    ) -> SafetyGateResult | None:
        """Gate verdict, or None when the gate itself failed."""

        try:
            return self.safety_gate.check(text, generated.safety_context)
        except Exception as error:  # noqa: BLE001
            logger.warning("Safety gate raised for task %s: %s", task.task_id, error)
            if self.recorder is not None:
                self.recorder.record(
                    layer=RuntimeLayer.EXECUTION,
                    operation="SAFETY_CHECK",
                    reason_code="safetyCheckFailed",
                    entity_id=task.task_id,
                    task_id=task.task_id,
                    persona_id=task.persona_id,
                    worker_id=self.worker_id,
                    metadata={"error": str(error) or type(error).__name__},
                )
            return None

    def _escalate(  # noqa: PLR0913
        self,
        task: QueueTask,
        *,
        risk_level: RiskLevel,
        reason_code: str,
        now: datetime,
        generated: GeneratedReply,
        details: dict[str, object] | None = None,
    ) -> ExecutionOutcome:
        if self.review_store is None:
            raise RuntimeError(f"Task {task.task_id} needs review but no review queue is configured.")
        item = self.review_store.escalate_running_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            risk_level=risk_level.value,
            reason_code=reason_code,
            metadata={
                "draft": generated.text,
                "parentCommentId": generated.parent_comment_id,
                **(details or {}),
            },
            now=now,
        )
        if item is None:
            return self._lease_lost(task, generated=generated)
        return ExecutionOutcome(
            task_id=task.task_id,
            status=ExecutionStatus.IN_REVIEW,
            reason_code=reason_code,
            provider_error=generated.provider_error,
            provider_error_details=generated.provider_error_details,
        )

    def _skip(
        self,
        task: QueueTask,
        *,
        reason: str,
        now: datetime,
        generated: GeneratedReply | None = None,
    ) -> ExecutionOutcome:
        if not self.queue.skip_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            reason=reason,
            now=now,
        ):
            return self._lease_lost(task, generated=generated)
        return ExecutionOutcome(
            task_id=task.task_id,
            status=ExecutionStatus.SKIPPED,
            reason_code=reason,
            provider_error=generated.provider_error if generated else None,
            provider_error_details=generated.provider_error_details if generated else None,
        )

    def _fail(self, task: QueueTask, *, error: str, now: datetime) -> ExecutionOutcome:
        retry_at = now + timedelta(
            seconds=self._compute_retry_delay(retry_number=task.retry_count + 1),
        )
        status = self.queue.fail_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            error=error,
            retry_at=retry_at,
            now=now,
        )
        if status is None:
            return ExecutionOutcome(
                task_id=task.task_id,
                status=ExecutionStatus.LEASE_LOST,
                error=error,
            )
        return ExecutionOutcome(
            task_id=task.task_id,
            status=(
                ExecutionStatus.FAILED_FINAL
                if status == TaskStatus.FAILED
                else ExecutionStatus.FAILED_RETRY
            ),
            error=error,
        )

    def _lease_lost(self, task: QueueTask, *, generated: GeneratedReply | None) -> ExecutionOutcome:
        logger.warning("Worker %s lost the lease on task %s", self.worker_id, task.task_id)
        return ExecutionOutcome(
            task_id=task.task_id,
            status=ExecutionStatus.LEASE_LOST,
            provider_error=generated.provider_error if generated else None,
            provider_error_details=generated.provider_error_details if generated else None,
        )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)


def resolve_idempotency_key(task: QueueTask) -> str:
    """Payload key first, then the task's own key, then `task:{id}`."""

    from_payload = task.payload.get("idempotencyKey")
    if isinstance(from_payload, str) and from_payload.strip():
        return from_payload.strip()
    if task.idempotency_key:
        return task.idempotency_key
    return f"task:{task.task_id}"
