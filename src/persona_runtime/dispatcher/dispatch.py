"""Turn NEW intents into PENDING reply tasks for a selected persona."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from persona_runtime.dispatcher.models import (
    DispatchDecision,
    DispatchReasonCode,
    DispatchRunSummary,
    PrecheckResult,
)
from persona_runtime.forum.directory import ForumDirectory
from persona_runtime.forum.models import PersonaRef, PersonaStatus
from persona_runtime.intents.models import IntentType, TaskIntent
from persona_runtime.intents.repository import TaskIntentRepository
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.policy.control_plane import ReplyPolicyProvider
from persona_runtime.policy.models import DispatcherPolicy, ReplyPolicyScope
from persona_runtime.queue.models import DEFAULT_MAX_RETRIES, QueueTask, QueueTaskCreate, TaskType
from persona_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_INTENT_BATCH_SIZE = 100
DEFAULT_PERSONA_BATCH_SIZE = 50

CreateTask = Callable[[QueueTaskCreate], QueueTask | None]
ScopedPolicy = Callable[[TaskIntent, PersonaRef], DispatcherPolicy]


class DispatchPrecheck(Protocol):
    def __call__(
        self,
        *,
        intent: TaskIntent,
        persona: PersonaRef,
        policy: DispatcherPolicy,
        now: datetime,
    ) -> PrecheckResult: ...


class PersonaSelector(Protocol):
    def select(self, intent: TaskIntent, personas: Sequence[PersonaRef]) -> PersonaRef | None: ...


class FirstActivePersonaSelector:
    """Always the first active persona, in the order the directory returned them."""

    def select(self, intent: TaskIntent, personas: Sequence[PersonaRef]) -> PersonaRef | None:  # noqa: ARG002
        return personas[0] if personas else None


def dispatch_intents(  # noqa: PLR0913
    *,
    intents: Sequence[TaskIntent],
    personas: Sequence[PersonaRef],
    policy: DispatcherPolicy,
    now: datetime,
    create_task: CreateTask,
    precheck: DispatchPrecheck | None = None,
    selector: PersonaSelector | None = None,
    make_task_id: Callable[[], str] | None = None,
    scoped_policy: ScopedPolicy | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> list[DispatchDecision]:
    """One decision per intent, in input order.

    `policy` gates the whole batch. When `scoped_policy` is given, the policy
    for the selected persona and target board is resolved again and used for
    the precheck; a scoped disable blocks that one intent.
    """

    selector = selector or FirstActivePersonaSelector()
    make_task_id = make_task_id or (lambda: str(uuid4()))
    active = [persona for persona in personas if persona.status == PersonaStatus.ACTIVE.value]
    decisions: list[DispatchDecision] = []

    for intent in intents:
        if intent.intent_type != IntentType.REPLY.value:
            decisions.append(_skip(intent, DispatchReasonCode.INTENT_TYPE_BLOCKED.value))
            continue
        if not policy.reply_enabled:
            decisions.append(_skip(intent, DispatchReasonCode.POLICY_DISABLED.value))
            continue

        selected = selector.select(intent, active) if active else None
        if selected is None:
            decisions.append(_skip(intent, DispatchReasonCode.NO_ACTIVE_PERSONA.value))
            continue

        reasons = [DispatchReasonCode.ACTIVE_OK.value, DispatchReasonCode.SELECTED_DEFAULT.value]
        effective = scoped_policy(intent, selected) if scoped_policy is not None else policy
        if not effective.reply_enabled:
            decisions.append(
                _skip(intent, *reasons, DispatchReasonCode.POLICY_DISABLED.value),
            )
            continue

        if precheck is not None:
            checked = precheck(intent=intent, persona=selected, policy=effective, now=now)
            if not checked.allowed:
                decisions.append(_skip(intent, *reasons, *checked.reasons))
                continue

        task_id = make_task_id()
        created = create_task(
            QueueTaskCreate(
                task_id=task_id,
                persona_id=selected.persona_id,
                task_type=TaskType.REPLY.value,
                payload={
                    **intent.payload,
                    "sourceIntentId": intent.intent_id,
                    "sourceTable": intent.source_table,
                    "sourceId": intent.source_id,
                },
                scheduled_at=now,
                max_retries=max_retries,
                idempotency_key=f"intent:{intent.intent_id}",
            ),
        )
        decisions.append(
            DispatchDecision(
                intent_id=intent.intent_id,
                dispatched=True,
                reasons=reasons,
                task_id=created.task_id if created is not None else task_id,
                persona_id=selected.persona_id,
                task_type=TaskType.REPLY.value,
            ),
        )

    return decisions


def dispatch_new_intents(  # noqa: PLR0913
    *,
    intents: TaskIntentRepository,
    directory: ForumDirectory,
    policy_provider: ReplyPolicyProvider,
    create_task: CreateTask,
    precheck: DispatchPrecheck | None = None,
    selector: PersonaSelector | None = None,
    recorder: RuntimeEventRecorder | None = None,
    intent_batch_size: int = DEFAULT_INTENT_BATCH_SIZE,
    persona_batch_size: int = DEFAULT_PERSONA_BATCH_SIZE,
    max_retries: int = DEFAULT_MAX_RETRIES,
    now: datetime | None = None,
) -> DispatchRunSummary:
    """Dispatch one batch of NEW intents and mark each DISPATCHED or SKIPPED."""

    now = now or utc_now()
    batch = intents.list_new_intents(limit=max(1, intent_batch_size))
    if not batch:
        return DispatchRunSummary()

    personas = directory.list_active_personas(limit=max(1, persona_batch_size))
    board_by_post: dict[str, str | None] = {}

    def board_of(intent: TaskIntent) -> str | None:
        board_id = intent.payload.get("boardId")
        if isinstance(board_id, str) and board_id:
            return board_id
        post_id = intent.payload.get("postId")
        if not isinstance(post_id, str) or not post_id:
            return None
        if post_id not in board_by_post:
            post = directory.get_post(post_id)
            board_by_post[post_id] = post.board_id if post is not None else None
        return board_by_post[post_id]

    def scoped_policy(intent: TaskIntent, persona: PersonaRef) -> DispatcherPolicy:
        return policy_provider.get_reply_policy(
            ReplyPolicyScope(persona_id=persona.persona_id, board_id=board_of(intent)),
        )

    decisions = dispatch_intents(
        intents=batch,
        personas=personas,
        policy=policy_provider.get_reply_policy(ReplyPolicyScope()),
        now=now,
        create_task=create_task,
        precheck=precheck,
        selector=selector,
        scoped_policy=scoped_policy,
        max_retries=max_retries,
    )

    summary = DispatchRunSummary(scanned=len(batch))
    for decision in decisions:
        if decision.dispatched and decision.persona_id:
            intents.mark_dispatched(
                intent_id=decision.intent_id,
                persona_id=decision.persona_id,
                reasons=decision.reasons,
            )
            summary.dispatched += 1
        else:
            intents.mark_skipped(intent_id=decision.intent_id, reasons=decision.reasons)
            summary.skipped += 1
        _record_decision(recorder, decision, now=now)

    logger.info(
        "Dispatched %d of %d intents (%d skipped)",
        summary.dispatched,
        summary.scanned,
        summary.skipped,
    )
    return summary


def _skip(intent: TaskIntent, *reasons: str) -> DispatchDecision:
    return DispatchDecision(intent_id=intent.intent_id, dispatched=False, reasons=list(reasons))


def _record_decision(
    recorder: RuntimeEventRecorder | None,
    decision: DispatchDecision,
    *,
    now: datetime,
) -> None:
    if recorder is None:
        return
    recorder.record(
        layer=RuntimeLayer.DISPATCHER,
        operation="DISPATCH",
        reason_code="intentDispatched" if decision.dispatched else "intentSkipped",
        entity_id=decision.intent_id,
        occurred_at=now,
        task_id=decision.task_id,
        persona_id=decision.persona_id,
        metadata={"reasons": list(decision.reasons)},
    )
