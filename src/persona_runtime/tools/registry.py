"""Tool registry with a two-level allow-list and schema-checked arguments."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from persona_runtime.llm.models import LlmToolResult, ToolParameters, ToolProperty, ToolSchema
from persona_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)


class ToolRuntimeReasonCode(str, Enum):
    VALIDATION_FAILED = "toolValidationFailed"
    HANDLER_FAILED = "toolHandlerFailed"
    NOT_ALLOWED = "toolNotAllowed"
    NOT_FOUND = "toolNotFound"
    LOOP_TIMEOUT = "toolLoopTimeout"
    LOOP_MAX_ITERATIONS = "toolLoopMaxIterations"


@dataclass(slots=True, frozen=True)
class ToolHandlerContext:
    entity_id: str
    occurred_at: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[dict[str, Any], ToolHandlerContext], Any]


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: ToolParameters
    handler: ToolHandler

    def to_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


@dataclass(slots=True, frozen=True)
class ToolValidationResult:
    ok: bool
    arguments: dict[str, Any] = field(default_factory=dict)
    message: str | None = None


def validate_tool_args(parameters: ToolParameters, raw: object) -> ToolValidationResult:
    """Check raw model arguments against a tool's parameter spec."""

    if not isinstance(raw, dict):
        return ToolValidationResult(ok=False, message="tool args must be an object")

    arguments = dict(raw)
    for key in parameters.required:
        if key not in arguments:
            return ToolValidationResult(ok=False, message=f"missing required arg: {key}")

    for key, value in arguments.items():
        spec = parameters.properties.get(key)
        if spec is None:
            if not parameters.additional_properties:
                return ToolValidationResult(ok=False, message=f"unknown arg: {key}")
            continue
        if not _matches_type(value, spec):
            return ToolValidationResult(
                ok=False,
                message=f"invalid arg type for {key}; expected {spec.type}",
            )
        if spec.enum and _enum_text(value) not in spec.enum:
            return ToolValidationResult(
                ok=False,
                message=f"invalid arg value for {key}; expected one of: {', '.join(spec.enum)}",
            )
    return ToolValidationResult(ok=True, arguments=arguments)


class ToolRegistry:
    """Registered tools keyed by name.

    An empty allow-list allows everything; otherwise a tool must be allowed by
    both the registry-wide list and the per-call list.
    """

    def __init__(self, *, allowlist: Iterable[str] = ()) -> None:
        self.allowlist = frozenset(allowlist)
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if not tool.name:
            raise ValueError("tool name is required")
        if tool.name in self._tools:
            raise ValueError(f"tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def is_allowed(self, name: str, allowlist: Iterable[str] | None = None) -> bool:
        registry_allowed = not self.allowlist or name in self.allowlist
        per_call = frozenset(allowlist or ())
        call_allowed = not per_call or name in per_call
        return registry_allowed and call_allowed

    def list_for_model(self, allowlist: Iterable[str] | None = None) -> list[ToolSchema]:
        per_call = list(allowlist or ())
        return [
            tool.to_schema() for tool in self._tools.values() if self.is_allowed(tool.name, per_call)
        ]

    def execute(
        self,
        *,
        name: str,
        arguments: object,
        context: ToolHandlerContext,
        allowlist: Iterable[str] | None = None,
        call_id: str | None = None,
    ) -> LlmToolResult:
        """Run one tool call. Never raises; every failure is in the result."""

        raw_arguments = dict(arguments) if isinstance(arguments, dict) else {}
        if not self.is_allowed(name, allowlist):
            return LlmToolResult(
                name=name,
                ok=False,
                arguments=raw_arguments,
                error=f"tool not allowed: {name}",
                id=call_id,
            )

        tool = self._tools.get(name)
        if tool is None:
            return LlmToolResult(
                name=name,
                ok=False,
                arguments=raw_arguments,
                error=f"tool not found: {name}",
                id=call_id,
            )

        validated = validate_tool_args(tool.parameters, arguments)
        if not validated.ok:
            return LlmToolResult(
                name=name,
                ok=False,
                arguments=raw_arguments,
                validation_error=validated.message,
                id=call_id,
            )

        try:
            result = tool.handler(validated.arguments, context)
        except Exception as error:  # noqa: BLE001
            logger.warning("Tool %s failed for %s: %s", name, context.entity_id, error)
            return LlmToolResult(
                name=name,
                ok=False,
                arguments=validated.arguments,
                error=str(error) or type(error).__name__,
                id=call_id,
            )
        return LlmToolResult(
            name=name,
            ok=True,
            arguments=validated.arguments,
            result=result,
            id=call_id,
        )


def _matches_type(value: object, spec: ToolProperty) -> bool:
    if spec.type == "string":
        return isinstance(value, str)
    if spec.type == "number":
        return (
            isinstance(value, int | float)
            and not isinstance(value, bool)
            and math.isfinite(value)
        )
    if spec.type == "boolean":
        return isinstance(value, bool)
    return False


def _enum_text(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
