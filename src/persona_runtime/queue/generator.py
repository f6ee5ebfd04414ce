"""Reply draft generation for claimed reply tasks."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from persona_runtime.forum.directory import ForumDirectory
from persona_runtime.forum.models import ForumComment, ForumPost
from persona_runtime.llm.invoker import LlmInvoker
from persona_runtime.llm.models import LlmErrorDetails, LlmGenerateRequest, LlmTaskType
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.queue.models import QueueTask
from persona_runtime.safety.gate import SafetyContext
from persona_runtime.tools.loop import (
    DEFAULT_LOOP_TIMEOUT_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    InvokerModelAdapter,
    run_tool_loop,
)
from persona_runtime.tools.reply_tools import (
    ReplyDraft,
    ReplyToolContext,
    ReplyToolDeps,
    build_reply_tool_registry,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_COMMENT_LIMIT = 40
MAX_CONTEXT_COMMENT_LIMIT = 120
RECENT_SELF_REPLY_LIMIT = 5
_WHITESPACE_RE = re.compile(r"\s+")


class GeneratorSkipReason(str, Enum):
    MISSING_POST_ID = "GENERATOR_MISSING_POST_ID"
    POST_NOT_FOUND = "GENERATOR_POST_NOT_FOUND"
    AVOID_SELF_TALK = "GENERATOR_NO_ELIGIBLE_TARGET_AVOID_SELF_TALK"


@dataclass(slots=True)
class GeneratedReply:
    """Draft text plus what the executor needs to check and place it."""

    text: str = ""
    parent_comment_id: str | None = None
    skip_reason: str | None = None
    safety_context: SafetyContext = field(default_factory=SafetyContext)
    provider_id: str | None = None
    used_fallback: bool = False
    provider_error: str | None = None
    provider_error_details: LlmErrorDetails | None = None


class ReplyGenerator(Protocol):
    def generate(self, task: QueueTask) -> GeneratedReply: ...


@dataclass(slots=True)
class ThreadSnapshot:
    """The post, the comment to answer, and who is talking."""

    post: ForumPost
    focus: ForumComment | None
    participant_count: int
    recent_persona_replies: list[str]

    def tool_context(self, persona_id: str) -> ReplyToolContext:
        return ReplyToolContext(
            post_id=self.post.post_id,
            persona_id=persona_id,
            title=_normalize(self.post.title or "this post"),
            post_body_snippet=_normalize(self.post.body)[:180],
            focus_actor=_actor_label(self.focus) if self.focus else _actor_label(self.post),
            focus_snippet=_normalize(self.focus.body)[:120] if self.focus else None,
            participant_count=self.participant_count,
        )


class TemplateReplyGenerator:
    """Deterministic reply drafted from the thread; never answers the persona itself."""

    def __init__(self, directory: ForumDirectory) -> None:
        self.directory = directory

    def generate(self, task: QueueTask) -> GeneratedReply:
        snapshot = self.snapshot(task)
        if isinstance(snapshot, GeneratedReply):
            return snapshot
        return self.render(task, snapshot)

    def snapshot(self, task: QueueTask) -> ThreadSnapshot | GeneratedReply:
        """Load the thread, or a skip when there is nothing to answer."""

        post_id = task.payload.get("postId")
        if not isinstance(post_id, str) or not post_id:
            return GeneratedReply(skip_reason=GeneratorSkipReason.MISSING_POST_ID.value)
        post = self.directory.get_post(post_id)
        if post is None:
            return GeneratedReply(skip_reason=GeneratorSkipReason.POST_NOT_FOUND.value)

        comments = self.directory.list_post_comments(post_id, limit=_context_limit(task.payload))
        ranked = rank_focus_candidates(comments, persona_id=task.persona_id)

        # The newest comment by someone else is the focus, whatever `parentCommentId` asked for.
        focus = next((row for row in ranked if row.persona_id != task.persona_id), None)
        if focus is None and post.persona_id == task.persona_id:
            return GeneratedReply(skip_reason=GeneratorSkipReason.AVOID_SELF_TALK.value)

        participants = {_actor_label(post)}
        participants.update(_actor_label(row) for row in comments)
        recent = [
            _normalize(row.body) for row in ranked if row.persona_id == task.persona_id
        ]
        return ThreadSnapshot(
            post=post,
            focus=focus,
            participant_count=len(participants),
            recent_persona_replies=[body for body in recent if body][:RECENT_SELF_REPLY_LIMIT],
        )

    def render(self, task: QueueTask, snapshot: ThreadSnapshot) -> GeneratedReply:
        context = snapshot.tool_context(task.persona_id)
        lines = [
            f"I read the discussion on **{context.title}**.",
            (
                f'{context.focus_actor} raised: "{context.focus_snippet}".'
                if context.focus_snippet
                else "I want to add to the main post context."
            ),
            (
                "There are multiple perspectives in this thread, "
                "so I will keep this focused and concrete."
                if context.participant_count > 2
                else "I will keep this concise and directly relevant."
            ),
            (
                "Based on the post context, one practical next step is to "
                "clarify assumptions and compare trade-offs."
                if context.post_body_snippet
                else "A practical next step is to state assumptions "
                "and compare trade-offs before deciding."
            ),
        ]
        return GeneratedReply(
            text=f"{lines[0]}\n\n{lines[1]}\n\n{lines[2]} {lines[3]}",
            parent_comment_id=snapshot.focus.comment_id if snapshot.focus else None,
            safety_context=SafetyContext(
                recent_persona_replies=tuple(snapshot.recent_persona_replies),
            ),
        )


class LlmReplyGenerator:
    """Drafts through the tool loop; falls back to the template when the model returns nothing."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        directory: ForumDirectory,
        invoker: LlmInvoker,
        template: TemplateReplyGenerator | None = None,
        recorder: RuntimeEventRecorder | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        loop_timeout_seconds: float = DEFAULT_LOOP_TIMEOUT_SECONDS,
        call_timeout_seconds: float | None = None,
        retries: int | None = None,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        get_global_policy: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self.directory = directory
        self.invoker = invoker
        self.template = template or TemplateReplyGenerator(directory)
        self.recorder = recorder
        self.max_iterations = max_iterations
        self.loop_timeout_seconds = loop_timeout_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.retries = retries
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.get_global_policy = get_global_policy

    def generate(self, task: QueueTask) -> GeneratedReply:
        snapshot = self.template.snapshot(task)
        if isinstance(snapshot, GeneratedReply):
            return snapshot

        context = snapshot.tool_context(task.persona_id)
        drafts: list[ReplyDraft] = []

        def capture(draft: ReplyDraft) -> dict[str, Any]:
            drafts.append(draft)
            return {
                "accepted": True,
                "postId": draft.post_id,
                "parentCommentId": draft.parent_comment_id,
                "markdownLength": len(draft.markdown_content),
            }

        registry = build_reply_tool_registry(
            context,
            ReplyToolDeps(get_global_policy=self.get_global_policy, create_reply=capture),
        )
        adapter = InvokerModelAdapter(
            invoker=self.invoker,
            task_type=LlmTaskType.REPLY,
            entity_id=task.task_id,
            timeout_seconds=self.call_timeout_seconds,
            retries=self.retries,
        )
        loop = run_tool_loop(
            adapter=adapter,
            request=LlmGenerateRequest(
                prompt=build_reply_prompt(context, task=task),
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                metadata={"taskId": task.task_id, "personaId": task.persona_id},
            ),
            registry=registry,
            entity_id=task.task_id,
            max_iterations=self.max_iterations,
            timeout_seconds=self.loop_timeout_seconds,
            recorder=self.recorder,
        )

        fallback = self.template.render(task, snapshot)
        parent_comment_id = fallback.parent_comment_id
        if drafts:
            text = drafts[-1].markdown_content.strip()
            parent_comment_id = drafts[-1].parent_comment_id or parent_comment_id
        else:
            text = loop.output.text.strip()

        provider_error = loop.output.error if loop.output.failed else None
        if not text:
            logger.warning(
                "Model returned no reply for task %s; using template draft (%s)",
                task.task_id,
                provider_error or "empty output",
            )
            if self.recorder is not None:
                self.recorder.record(
                    layer=RuntimeLayer.GENERATION,
                    operation="GENERATE",
                    reason_code="generationTemplateFallback",
                    entity_id=task.task_id,
                    task_id=task.task_id,
                    persona_id=task.persona_id,
                    metadata={
                        "iterations": loop.iterations,
                        "timedOut": loop.timed_out,
                        "hitMaxIterations": loop.hit_max_iterations,
                        "error": provider_error,
                    },
                )
            text = fallback.text

        return GeneratedReply(
            text=text,
            parent_comment_id=parent_comment_id,
            safety_context=fallback.safety_context,
            provider_id=adapter.last_provider_id,
            used_fallback=adapter.used_fallback,
            provider_error=provider_error,
            provider_error_details=loop.output.error_details if loop.output.failed else None,
        )


def build_reply_prompt(context: ReplyToolContext, *, task: QueueTask) -> str:
    parts = [
        "You are a forum persona writing one reply in an ongoing discussion.",
        f"Post: {context.title}",
    ]
    if context.post_body_snippet:
        parts.append(f"Post excerpt: {context.post_body_snippet}")
    if context.focus_snippet:
        parts.append(f"Reply to {context.focus_actor}: {context.focus_snippet}")
    parts.append(f"Participants so far: {context.participant_count}")
    parts.append(
        "Write a concise, concrete Markdown reply without raw HTML. "
        "Call create_reply with the final text, "
        f"post_id={context.post_id} and idempotency_key=task:{task.task_id}.",
    )
    return "\n".join(parts)


def rank_focus_candidates(
    comments: list[ForumComment],
    *,
    persona_id: str,
) -> list[ForumComment]:
    """Other people's comments first, newest first within each group."""

    return sorted(
        comments,
        key=lambda row: (
            row.persona_id != persona_id,
            row.created_at.timestamp(),
            row.comment_id,
        ),
        reverse=True,
    )


def _context_limit(payload: dict[str, Any]) -> int:
    raw = payload.get("contextCommentLimit")
    if isinstance(raw, int | float) and not isinstance(raw, bool) and raw > 0:
        return min(int(raw), MAX_CONTEXT_COMMENT_LIMIT)
    return DEFAULT_CONTEXT_COMMENT_LIMIT


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def _short_id(value: str) -> str:
    return value[:8]


def _actor_label(row: ForumPost | ForumComment) -> str:
    if row.author_id:
        return f"user:{_short_id(row.author_id)}"
    if row.persona_id:
        return f"persona:{_short_id(row.persona_id)}"
    return "unknown"
