"""Bounded model/tool conversation loop."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol

from persona_runtime.llm.invoker import LlmInvoker
from persona_runtime.llm.models import (
    FinishReason,
    LlmGenerateRequest,
    LlmGenerateResult,
    LlmTaskType,
    LlmToolResult,
)
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.tools.registry import ToolHandlerContext, ToolRegistry, ToolRuntimeReasonCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_LOOP_TIMEOUT_SECONDS = 30.0


class ModelAdapter(Protocol):
    """One model round: text or tool calls for the given request."""

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult: ...


@dataclass(slots=True)
class ToolLoopResult:
    output: LlmGenerateResult
    tool_results: list[LlmToolResult] = field(default_factory=list)
    iterations: int = 0
    hit_max_iterations: bool = False
    timed_out: bool = False


class ScriptedModelAdapter:
    """Replays fixed outputs; the last one repeats once the script runs out."""

    def __init__(self, outputs: Sequence[LlmGenerateResult]) -> None:
        if not outputs:
            raise ValueError("scripted adapter needs at least one output")
        self._outputs = list(outputs)
        self.requests: list[LlmGenerateRequest] = []

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult:
        index = min(len(self.requests), len(self._outputs) - 1)
        self.requests.append(request)
        return self._outputs[index]


class InvokerModelAdapter:
    """Runs each round through `LlmInvoker` so routing and fallback apply."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        invoker: LlmInvoker,
        task_type: LlmTaskType,
        entity_id: str,
        timeout_seconds: float | None = None,
        retries: int | None = None,
    ) -> None:
        self.invoker = invoker
        self.task_type = task_type
        self.entity_id = entity_id
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.last_provider_id: str | None = None
        self.last_model_id: str | None = None
        self.used_fallback = False

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult:
        result = self.invoker.invoke(
            task_type=self.task_type,
            entity_id=self.entity_id,
            request=request,
            timeout_seconds=self.timeout_seconds,
            retries=self.retries,
        )
        self.last_provider_id = result.provider_id
        self.last_model_id = result.model_id
        self.used_fallback = self.used_fallback or result.used_fallback
        return LlmGenerateResult(
            text=result.text,
            finish_reason=result.finish_reason,
            tool_calls=list(result.tool_calls),
            error=result.error,
            error_details=result.error_details,
        )


def run_tool_loop(  # noqa: PLR0913
    *,
    adapter: ModelAdapter,
    request: LlmGenerateRequest,
    registry: ToolRegistry,
    entity_id: str,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    timeout_seconds: float = DEFAULT_LOOP_TIMEOUT_SECONDS,
    allowlist: Iterable[str] | None = None,
    recorder: RuntimeEventRecorder | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ToolLoopResult:
    """Drive the model until it answers with text or a budget runs out.

    Tool results accumulate on the request of each following round. The loop
    never raises; the returned output may be empty.
    """

    per_call = list(allowlist or ())
    max_iterations = max(1, max_iterations)
    deadline = clock() + max(0.0, timeout_seconds)
    tools = registry.list_for_model(per_call)
    result = ToolLoopResult(output=LlmGenerateResult(text="", finish_reason=FinishReason.STOP))

    while True:
        if clock() >= deadline:
            _mark_timed_out(result, entity_id=entity_id, recorder=recorder)
            return result

        result.iterations += 1
        round_request = replace(request, tools=tools, tool_results=list(result.tool_results))
        try:
            output = adapter.generate(round_request)
        except Exception as error:  # noqa: BLE001
            logger.warning("Model adapter failed in tool loop for %s: %s", entity_id, error)
            result.output = LlmGenerateResult(
                text="",
                finish_reason=FinishReason.ERROR,
                error=str(error) or type(error).__name__,
            )
            return result
        result.output = output

        if not output.tool_calls:
            return result
        if result.iterations >= max_iterations:
            result.hit_max_iterations = True
            _record(
                recorder,
                entity_id=entity_id,
                operation="LOOP",
                reason_code=ToolRuntimeReasonCode.LOOP_MAX_ITERATIONS,
                metadata={"iterations": result.iterations, "maxIterations": max_iterations},
            )
            return result

        for call in output.tool_calls:
            if clock() >= deadline:
                _mark_timed_out(result, entity_id=entity_id, recorder=recorder)
                return result
            tool_result = registry.execute(
                name=call.name,
                arguments=call.arguments,
                context=ToolHandlerContext(entity_id=entity_id),
                allowlist=per_call,
                call_id=call.id,
            )
            result.tool_results.append(tool_result)
            reason_code = _failure_reason(tool_result)
            if reason_code is not None:
                _record(
                    recorder,
                    entity_id=entity_id,
                    operation="TOOL_CALL",
                    reason_code=reason_code,
                    metadata={
                        "tool": tool_result.name,
                        "error": tool_result.error,
                        "validationError": tool_result.validation_error,
                    },
                )


def _failure_reason(tool_result: LlmToolResult) -> ToolRuntimeReasonCode | None:
    if tool_result.ok:
        return None
    if tool_result.validation_error is not None:
        return ToolRuntimeReasonCode.VALIDATION_FAILED
    error = tool_result.error or ""
    if error.startswith("tool not allowed:"):
        return ToolRuntimeReasonCode.NOT_ALLOWED
    if error.startswith("tool not found:"):
        return ToolRuntimeReasonCode.NOT_FOUND
    return ToolRuntimeReasonCode.HANDLER_FAILED


def _mark_timed_out(
    result: ToolLoopResult,
    *,
    entity_id: str,
    recorder: RuntimeEventRecorder | None,
) -> None:
    result.timed_out = True
    _record(
        recorder,
        entity_id=entity_id,
        operation="LOOP",
        reason_code=ToolRuntimeReasonCode.LOOP_TIMEOUT,
        metadata={"iterations": result.iterations},
    )


def _record(
    recorder: RuntimeEventRecorder | None,
    *,
    entity_id: str,
    operation: str,
    reason_code: ToolRuntimeReasonCode,
    metadata: dict[str, object],
) -> None:
    if recorder is None:
        return
    recorder.record(
        layer=RuntimeLayer.TOOL_RUNTIME,
        operation=operation,
        reason_code=reason_code.value,
        entity_id=entity_id,
        metadata=metadata,
    )
