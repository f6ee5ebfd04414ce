"""Tools offered to the model while drafting a persona reply."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from persona_runtime.llm.models import ToolParameters, ToolProperty
from persona_runtime.policy.models import DEFAULT_DISPATCHER_POLICY
from persona_runtime.tools.registry import ToolDefinition, ToolHandlerContext, ToolRegistry

GET_THREAD_CONTEXT = "get_thread_context"
GET_GLOBAL_POLICY = "get_global_policy"
CREATE_REPLY = "create_reply"
REPLY_TOOL_NAMES: tuple[str, ...] = (GET_THREAD_CONTEXT, GET_GLOBAL_POLICY, CREATE_REPLY)
DEFAULT_THREAD_CONTEXT_LIMIT = 8


@dataclass(slots=True, frozen=True)
class ReplyToolContext:
    post_id: str
    persona_id: str
    title: str
    post_body_snippet: str
    focus_actor: str
    focus_snippet: str | None
    participant_count: int


@dataclass(slots=True, frozen=True)
class ReplyDraft:
    post_id: str
    parent_comment_id: str | None
    markdown_content: str
    idempotency_key: str


@dataclass(slots=True)
class ReplyToolDeps:
    """Optional overrides; unset hooks use the built-in defaults."""

    get_thread_context: Callable[[str, int], dict[str, Any]] | None = None
    get_global_policy: Callable[[], dict[str, Any]] | None = None
    create_reply: Callable[[ReplyDraft], dict[str, Any]] | None = None


def build_reply_tool_registry(
    context: ReplyToolContext,
    deps: ReplyToolDeps | None = None,
    *,
    allowlist: Iterable[str] = REPLY_TOOL_NAMES,
) -> ToolRegistry:
    deps = deps or ReplyToolDeps()
    get_thread_context = deps.get_thread_context or _default_thread_context(context)
    get_global_policy = deps.get_global_policy or DEFAULT_DISPATCHER_POLICY.to_document_patch
    create_reply = deps.create_reply or _accept_draft

    def thread_context_handler(args: dict[str, Any], _: ToolHandlerContext) -> dict[str, Any]:
        limit = args.get("limit")
        return get_thread_context(
            str(args["post_id"]),
            int(limit) if isinstance(limit, int | float) else DEFAULT_THREAD_CONTEXT_LIMIT,
        )

    def global_policy_handler(_args: dict[str, Any], _: ToolHandlerContext) -> dict[str, Any]:
        return get_global_policy()

    def create_reply_handler(args: dict[str, Any], _: ToolHandlerContext) -> dict[str, Any]:
        parent = args.get("parent_comment_id")
        return create_reply(
            ReplyDraft(
                post_id=str(args["post_id"]),
                parent_comment_id=parent if isinstance(parent, str) else None,
                markdown_content=str(args["markdown_content"]),
                idempotency_key=str(args["idempotency_key"]),
            ),
        )

    registry = ToolRegistry(allowlist=allowlist)
    registry.register(
        ToolDefinition(
            name=GET_THREAD_CONTEXT,
            description="Get compact thread context for reply drafting.",
            parameters=ToolParameters(
                properties={
                    "post_id": ToolProperty(type="string", description="Target post id"),
                    "limit": ToolProperty(type="number", description="Max items to summarize"),
                },
                required=("post_id",),
                additional_properties=False,
            ),
            handler=thread_context_handler,
        ),
    )
    registry.register(
        ToolDefinition(
            name=GET_GLOBAL_POLICY,
            description="Read active reply policy and guardrails.",
            parameters=ToolParameters(additional_properties=False),
            handler=global_policy_handler,
        ),
    )
    registry.register(
        ToolDefinition(
            name=CREATE_REPLY,
            description="Submit the reply draft for safety checks and publication.",
            parameters=ToolParameters(
                properties={
                    "post_id": ToolProperty(type="string", description="Target post id"),
                    "parent_comment_id": ToolProperty(
                        type="string",
                        description="Target parent comment id",
                    ),
                    "markdown_content": ToolProperty(
                        type="string",
                        description="Markdown reply body",
                    ),
                    "idempotency_key": ToolProperty(type="string", description="Idempotency key"),
                },
                required=("post_id", "markdown_content", "idempotency_key"),
                additional_properties=False,
            ),
            handler=create_reply_handler,
        ),
    )
    return registry


def _default_thread_context(context: ReplyToolContext) -> Callable[[str, int], dict[str, Any]]:
    def get_thread_context(_post_id: str, limit: int) -> dict[str, Any]:
        return {
            "postId": context.post_id,
            "title": context.title,
            "postBodySnippet": context.post_body_snippet,
            "focusActor": context.focus_actor,
            "focusSnippet": context.focus_snippet,
            "participantCount": context.participant_count,
            "limit": limit,
        }

    return get_thread_context


def _accept_draft(draft: ReplyDraft) -> dict[str, Any]:
    return {
        "accepted": True,
        "postId": draft.post_id,
        "parentCommentId": draft.parent_comment_id,
        "idempotencyKey": draft.idempotency_key,
        "markdownLength": len(draft.markdown_content),
    }
