"""Cheap pre-dispatch checks: eligibility, rate limits, cooldown and draft similarity."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from persona_runtime.dispatcher.models import PRECHECK_ALLOWED, DispatchReasonCode, PrecheckResult
from persona_runtime.forum.directory import ForumDirectory
from persona_runtime.forum.models import PersonaRef
from persona_runtime.intents.models import TaskIntent
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.policy.eligibility import ReplyEligibilityChecker
from persona_runtime.policy.models import DispatcherPolicy, EligibilityReasonCode
from persona_runtime.queue.generator import ReplyGenerator, TemplateReplyGenerator
from persona_runtime.queue.models import QueueTask, TaskStatus, TaskType
from persona_runtime.safety.gate import RuleBasedReplySafetyGate, SafetyContext, SafetyReasonCode

logger = logging.getLogger(__name__)

MAX_SIMILARITY_HINTS = 20
RECENT_REPLY_HINT_LIMIT = 10
RATE_LIMIT_WINDOW = timedelta(hours=1)

RecentReplyHints = Callable[[str], list[str]]


class ReplyDispatchPrecheck:
    """Decide whether a selected persona should get a reply task at all.

    Eligibility always runs and short-circuits. Rate limit, cooldown and the
    draft similarity check run only when the policy enables prechecks; every
    one of them runs and each block adds its own reason. The similarity check
    renders a template draft and blocks only when it is a near-duplicate of
    the persona's recent replies; any other safety verdict is left to the
    executor.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        directory: ForumDirectory,
        generator: ReplyGenerator | None = None,
        recent_reply_hints: RecentReplyHints | None = None,
        max_length: int = 2000,
        recorder: RuntimeEventRecorder | None = None,
    ) -> None:
        self.directory = directory
        self.eligibility = ReplyEligibilityChecker(directory)
        self.generator = generator or TemplateReplyGenerator(directory)
        self.recent_reply_hints = recent_reply_hints
        self.max_length = max_length
        self.recorder = recorder

    def __call__(
        self,
        *,
        intent: TaskIntent,
        persona: PersonaRef,
        policy: DispatcherPolicy,
        now: datetime,
    ) -> PrecheckResult:
        post_id = _post_id(intent.payload)
        board_id = intent.payload.get("boardId")
        eligibility = self.eligibility.check(
            persona_id=persona.persona_id,
            post_id=post_id,
            board_id=board_id if isinstance(board_id, str) else None,
            now=now,
        )
        if not eligibility.allowed:
            code = eligibility.reason_code or EligibilityReasonCode.ELIGIBILITY_CHECK_FAILED
            return _blocked([code.value])

        if not policy.precheck_enabled:
            return PRECHECK_ALLOWED

        reasons: list[str] = []
        if policy.per_persona_hourly_reply_limit > 0:
            recent_count = self.directory.count_persona_replies_since(
                persona.persona_id,
                since=now - RATE_LIMIT_WINDOW,
            )
            if recent_count >= policy.per_persona_hourly_reply_limit:
                reasons.append(DispatchReasonCode.RATE_LIMIT_HOURLY.value)

        if post_id is not None:
            if policy.per_post_cooldown_seconds > 0:
                latest = self.directory.latest_persona_reply_at_on_post(
                    persona_id=persona.persona_id,
                    post_id=post_id,
                )
                if latest is not None and now - latest < timedelta(
                    seconds=policy.per_post_cooldown_seconds,
                ):
                    reasons.append(DispatchReasonCode.COOLDOWN_ACTIVE.value)

            if self._draft_is_repetitive(intent=intent, persona=persona, policy=policy, now=now):
                reasons.append(DispatchReasonCode.PRECHECK_SAFETY_SIMILAR_TO_RECENT_REPLY.value)

        return _blocked(reasons) if reasons else PRECHECK_ALLOWED

    def _draft_is_repetitive(
        self,
        *,
        intent: TaskIntent,
        persona: PersonaRef,
        policy: DispatcherPolicy,
        now: datetime,
    ) -> bool:
        generated = self.generator.generate(_synthetic_task(intent, persona, now=now))
        text = (generated.text or "").strip()
        if not text:
            return False

        hints = list(generated.safety_context.recent_persona_replies)
        if self.recent_reply_hints is not None:
            hints = [*self.recent_reply_hints(persona.persona_id), *hints]
        gate = RuleBasedReplySafetyGate(
            max_length=self.max_length,
            similarity_threshold=policy.precheck_similarity_threshold,
            review_similarity_margin=0.0,
        )
        verdict = gate.check(
            text,
            SafetyContext(
                recent_persona_replies=tuple(dict.fromkeys(hints))[:MAX_SIMILARITY_HINTS],
            ),
        )
        if verdict.allowed or verdict.reason_code != SafetyReasonCode.SIMILAR_TO_RECENT_REPLY:
            return False

        self._record_safety_block(
            intent=intent,
            persona=persona,
            similarity=verdict.similarity,
            now=now,
        )
        return True

    def _record_safety_block(
        self,
        *,
        intent: TaskIntent,
        persona: PersonaRef,
        similarity: float | None,
        now: datetime,
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.record(
            layer=RuntimeLayer.DISPATCH_PRECHECK,
            operation="SAFETY_CHECK",
            reason_code=SafetyReasonCode.SIMILAR_TO_RECENT_REPLY.value,
            entity_id=intent.intent_id,
            occurred_at=now,
            persona_id=persona.persona_id,
            metadata={"postId": _post_id(intent.payload), "similarity": similarity},
        )


def recent_replies_from_directory(
    directory: ForumDirectory,
    *,
    limit: int = RECENT_REPLY_HINT_LIMIT,
) -> RecentReplyHints:
    def hints(persona_id: str) -> list[str]:
        return directory.list_recent_persona_replies(persona_id, limit=limit)

    return hints


def _blocked(codes: list[str]) -> PrecheckResult:
    return PrecheckResult(
        allowed=False,
        reasons=(*codes, DispatchReasonCode.PRECHECK_BLOCKED.value),
    )


def _post_id(payload: dict[str, Any]) -> str | None:
    post_id = payload.get("postId")
    return post_id if isinstance(post_id, str) and post_id else None


def _synthetic_task(intent: TaskIntent, persona: PersonaRef, *, now: datetime) -> QueueTask:
    return QueueTask(
        task_id=f"precheck:{intent.intent_id}:{persona.persona_id}",
        persona_id=persona.persona_id,
        task_type=TaskType.REPLY.value,
        payload=dict(intent.payload),
        status=TaskStatus.PENDING,
        scheduled_at=now,
        retry_count=0,
        max_retries=0,
        lease_owner=None,
        lease_until=None,
        idempotency_key=None,
        result_id=None,
        result_type=None,
        error_message=None,
        started_at=None,
        completed_at=None,
        created_at=now,
        updated_at=now,
    )
