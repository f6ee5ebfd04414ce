from __future__ import annotations

import allure

from persona_runtime.llm.models import (
    FinishReason,
    LlmGenerateRequest,
    LlmGenerateResult,
    LlmToolCall,
    ToolParameters,
    ToolProperty,
)
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder
from persona_runtime.tools.loop import ScriptedModelAdapter, run_tool_loop
from persona_runtime.tools.registry import (
    ToolDefinition,
    ToolHandlerContext,
    ToolRegistry,
    validate_tool_args,
)
from persona_runtime.tools.reply_tools import (
    CREATE_REPLY,
    GET_GLOBAL_POLICY,
    GET_THREAD_CONTEXT,
    ReplyDraft,
    ReplyToolContext,
    ReplyToolDeps,
    build_reply_tool_registry,
)

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Tool Runtime"),
]

CONTEXT = ReplyToolContext(
    post_id="post-1",
    persona_id="persona-a",
    title="Choosing a database",
    post_body_snippet="Postgres or SQLite?",
    focus_actor="bob",
    focus_snippet="SQLite is enough for us",
    participant_count=3,
)


def _call(name: str, arguments: object, call_id: str | None = None) -> LlmToolCall:
    return LlmToolCall(name=name, arguments=arguments, id=call_id)


def _tool_round(*calls: LlmToolCall) -> LlmGenerateResult:
    return LlmGenerateResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=list(calls))


def test_validate_tool_args() -> None:
    parameters = ToolParameters(
        properties={
            "post_id": ToolProperty(type="string"),
            "limit": ToolProperty(type="number"),
            "tone": ToolProperty(type="string", enum=("calm", "direct")),
        },
        required=("post_id",),
        additional_properties=False,
    )

    assert validate_tool_args(parameters, {"post_id": "p", "limit": 3}).ok is True
    assert validate_tool_args(parameters, ["p"]).message == "tool args must be an object"
    assert validate_tool_args(parameters, {}).message == "missing required arg: post_id"
    assert validate_tool_args(parameters, {"post_id": "p", "x": 1}).message == "unknown arg: x"
    assert validate_tool_args(parameters, {"post_id": "p", "limit": True}).message == (
        "invalid arg type for limit; expected number"
    )
    assert validate_tool_args(parameters, {"post_id": "p", "limit": float("nan")}).ok is False
    assert validate_tool_args(parameters, {"post_id": "p", "tone": "loud"}).message == (
        "invalid arg value for tone; expected one of: calm, direct"
    )


def test_registry_allowlists_and_handler_errors() -> None:
    def explode(_args: dict, _context: ToolHandlerContext) -> None:
        raise RuntimeError("backend down")

    registry = ToolRegistry(allowlist=["ok", "boom"])
    registry.register(
        ToolDefinition(
            name="ok",
            description="",
            parameters=ToolParameters(),
            handler=lambda args, _: {"echo": args},
        ),
    )
    registry.register(
        ToolDefinition(name="boom", description="", parameters=ToolParameters(), handler=explode),
    )
    registry.register(
        ToolDefinition(
            name="hidden",
            description="",
            parameters=ToolParameters(),
            handler=lambda *_: None,
        ),
    )
    context = ToolHandlerContext(entity_id="task-1")

    assert [schema.name for schema in registry.list_for_model()] == ["ok", "boom"]
    assert [schema.name for schema in registry.list_for_model(["boom"])] == ["boom"]

    ok = registry.execute(name="ok", arguments={"a": 1}, context=context, call_id="c1")
    assert ok.ok is True
    assert ok.result == {"echo": {"a": 1}}
    assert ok.id == "c1"

    hidden = registry.execute(name="hidden", arguments={}, context=context)
    assert hidden.error == "tool not allowed: hidden"
    narrowed = registry.execute(name="ok", arguments={}, context=context, allowlist=["boom"])
    assert narrowed.error == "tool not allowed: ok"
    failed = registry.execute(name="boom", arguments={}, context=context)
    assert failed.ok is False
    assert failed.error == "backend down"


def test_reply_registry_uses_defaults_and_overrides() -> None:
    drafts: list[ReplyDraft] = []

    def create_reply(draft: ReplyDraft) -> dict:
        drafts.append(draft)
        return {"accepted": True}

    registry = build_reply_tool_registry(CONTEXT, ReplyToolDeps(create_reply=create_reply))
    context = ToolHandlerContext(entity_id="task-1")

    thread = registry.execute(
        name=GET_THREAD_CONTEXT,
        arguments={"post_id": "post-1", "limit": 4},
        context=context,
    )
    policy = registry.execute(name=GET_GLOBAL_POLICY, arguments={}, context=context)
    created = registry.execute(
        name=CREATE_REPLY,
        arguments={
            "post_id": "post-1",
            "markdown_content": "**Agreed**",
            "idempotency_key": "intent:1",
        },
        context=context,
    )
    missing = registry.execute(name=CREATE_REPLY, arguments={"post_id": "x"}, context=context)

    assert thread.result["title"] == "Choosing a database"
    assert thread.result["limit"] == 4
    assert policy.result["replyEnabled"] is True
    assert created.result == {"accepted": True}
    assert drafts == [
        ReplyDraft(
            post_id="post-1",
            parent_comment_id=None,
            markdown_content="**Agreed**",
            idempotency_key="intent:1",
        ),
    ]
    assert missing.validation_error == "missing required arg: markdown_content"


def test_tool_loop_feeds_results_back_until_text() -> None:
    adapter = ScriptedModelAdapter(
        [
            _tool_round(_call(GET_THREAD_CONTEXT, {"post_id": "post-1"}, "c1")),
            LlmGenerateResult(text="Final reply"),
        ],
    )
    sink = InMemoryRuntimeEventSink()

    result = run_tool_loop(
        adapter=adapter,
        request=LlmGenerateRequest(prompt="Draft a reply"),
        registry=build_reply_tool_registry(CONTEXT),
        entity_id="task-1",
        recorder=RuntimeEventRecorder(sink),
    )

    assert result.output.text == "Final reply"
    assert result.iterations == 2
    assert result.hit_max_iterations is False
    assert [item.name for item in result.tool_results] == [GET_THREAD_CONTEXT]
    assert adapter.requests[0].tool_results == []
    assert adapter.requests[1].tool_results[0].result["focusActor"] == "bob"
    assert {tool.name for tool in adapter.requests[0].tools} == {
        GET_THREAD_CONTEXT,
        GET_GLOBAL_POLICY,
        CREATE_REPLY,
    }
    assert sink.events == []


def test_tool_loop_records_failures_and_stops_at_max_iterations() -> None:
    adapter = ScriptedModelAdapter(
        [
            _tool_round(
                _call(GET_THREAD_CONTEXT, {}),
                _call("delete_everything", {}),
            ),
            _tool_round(_call(GET_GLOBAL_POLICY, {})),
        ],
    )
    sink = InMemoryRuntimeEventSink()

    result = run_tool_loop(
        adapter=adapter,
        request=LlmGenerateRequest(prompt="Draft a reply"),
        registry=build_reply_tool_registry(CONTEXT),
        entity_id="task-1",
        max_iterations=2,
        recorder=RuntimeEventRecorder(sink),
    )

    assert result.hit_max_iterations is True
    assert result.iterations == 2
    assert len(result.tool_results) == 2
    assert sink.reason_codes() == [
        "toolValidationFailed",
        "toolNotAllowed",
        "toolLoopMaxIterations",
    ]


def test_tool_loop_times_out_and_survives_adapter_errors() -> None:
    ticks = iter([0.0, 0.0, 5.0, 5.0])
    adapter = ScriptedModelAdapter([_tool_round(_call(GET_GLOBAL_POLICY, {}))])
    sink = InMemoryRuntimeEventSink()

    timed_out = run_tool_loop(
        adapter=adapter,
        request=LlmGenerateRequest(prompt="x"),
        registry=build_reply_tool_registry(CONTEXT),
        entity_id="task-1",
        timeout_seconds=1.0,
        recorder=RuntimeEventRecorder(sink),
        clock=lambda: next(ticks),
    )

    class _Failing:
        def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult:  # noqa: ARG002
            raise ConnectionError("socket closed")

    errored = run_tool_loop(
        adapter=_Failing(),
        request=LlmGenerateRequest(prompt="x"),
        registry=build_reply_tool_registry(CONTEXT),
        entity_id="task-2",
    )

    assert timed_out.timed_out is True
    assert timed_out.iterations == 1
    assert timed_out.tool_results == []
    assert sink.reason_codes() == ["toolLoopTimeout"]
    assert errored.output.finish_reason == FinishReason.ERROR
    assert errored.output.error == "socket closed"


def test_single_iteration_budget_returns_without_raising() -> None:
    adapter = ScriptedModelAdapter([_tool_round(_call(GET_THREAD_CONTEXT, {"post_id": "post-1"}))])

    result = run_tool_loop(
        adapter=adapter,
        request=LlmGenerateRequest(prompt="Draft a reply"),
        registry=build_reply_tool_registry(CONTEXT),
        entity_id="task-3",
        max_iterations=1,
    )

    assert result.hit_max_iterations is True
    assert result.iterations == 1
    assert result.tool_results == []
    assert result.output.finish_reason == FinishReason.TOOL_CALLS
    assert len(adapter.requests) == 1
