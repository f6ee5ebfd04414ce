"""Types shared by the LLM provider layer and the tool loop."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

ERROR_BODY_LIMIT = 600


class LlmTaskType(str, Enum):
    REPLY = "reply"
    VOTE = "vote"
    DISPATCH = "dispatch"
    GENERIC = "generic"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"


class ProviderRuntimeReasonCode(str, Enum):
    CALL_SUCCEEDED = "providerCallSucceeded"
    CALL_FAILED = "providerCallFailed"
    TIMEOUT = "providerTimeout"
    RETRYING = "providerRetrying"
    FALLBACK_USED = "providerFallbackUsed"
    FAIL_SAFE_RETURNED = "providerFailSafeReturned"
    USAGE_NORMALIZED = "providerUsageNormalized"


@dataclass(slots=True, frozen=True)
class LlmErrorDetails:
    """Structured provider error preserved for operators."""

    status_code: int | None = None
    code: str | None = None
    type: str | None = None
    body: str | None = None

    @classmethod
    def build(
        cls,
        *,
        status_code: int | None = None,
        code: str | None = None,
        type_: str | None = None,
        body: str | None = None,
    ) -> LlmErrorDetails | None:
        details = cls(
            status_code=status_code,
            code=code.strip() if code and code.strip() else None,
            type=type_.strip() if type_ and type_.strip() else None,
            body=body[:ERROR_BODY_LIMIT] if body and body.strip() else None,
        )
        if details == cls():
            return None
        return details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.status_code is not None:
            payload["statusCode"] = self.status_code
        if self.code is not None:
            payload["code"] = self.code
        if self.type is not None:
            payload["type"] = self.type
        if self.body is not None:
            payload["body"] = self.body
        return payload


@dataclass(slots=True, frozen=True)
class ProviderUsage:
    """Token counts as reported by a provider; any of them may be missing."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(slots=True, frozen=True)
class LlmUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    normalized: bool = True


def normalize_usage(usage: ProviderUsage | None) -> LlmUsage:
    """Zero-fill missing counts and flag the result as normalized."""

    raw = usage or ProviderUsage()
    input_tokens = _finite_int(raw.input_tokens)
    output_tokens = _finite_int(raw.output_tokens)
    total_candidate = _finite_int(raw.total_tokens, default=input_tokens + output_tokens)
    return LlmUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=max(total_candidate, input_tokens + output_tokens),
        normalized=(
            raw.input_tokens is None or raw.output_tokens is None or raw.total_tokens is None
        ),
    )


@dataclass(slots=True, frozen=True)
class ToolProperty:
    type: str
    description: str = ""
    enum: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ToolParameters:
    """JSON-Schema-like object spec for tool arguments."""

    properties: dict[str, ToolProperty] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    additional_properties: bool = True


@dataclass(slots=True, frozen=True)
class ToolSchema:
    name: str
    description: str
    parameters: ToolParameters = field(default_factory=ToolParameters)


@dataclass(slots=True, frozen=True)
class LlmToolCall:
    name: str
    arguments: Any
    id: str | None = None


@dataclass(slots=True)
class LlmToolResult:
    name: str
    ok: bool
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    validation_error: str | None = None
    id: str | None = None


@dataclass(slots=True, frozen=True)
class LlmMessage:
    role: str
    content: str


@dataclass(slots=True)
class LlmGenerateRequest:
    """Model input; `model_id` is filled per route target by the invoker."""

    prompt: str = ""
    messages: list[LlmMessage] = field(default_factory=list)
    model_id: str = ""
    max_output_tokens: int | None = None
    temperature: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tools: list[ToolSchema] = field(default_factory=list)
    tool_results: list[LlmToolResult] = field(default_factory=list)

    def prompt_text(self) -> str:
        if self.prompt.strip():
            return self.prompt
        return "\n\n".join(f"[{message.role}] {message.content}" for message in self.messages)


@dataclass(slots=True)
class LlmGenerateResult:
    text: str
    finish_reason: FinishReason = FinishReason.STOP
    usage: ProviderUsage | None = None
    tool_calls: list[LlmToolCall] = field(default_factory=list)
    error: str | None = None
    error_details: LlmErrorDetails | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.finish_reason == FinishReason.ERROR


@dataclass(slots=True, frozen=True)
class ProviderCapabilities:
    supports_tool_calls: bool = False


class LlmProvider(Protocol):
    """One model backend."""

    provider_id: str
    capabilities: ProviderCapabilities

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult: ...


@dataclass(slots=True, frozen=True)
class RouteTarget:
    provider_id: str
    model_id: str

    @property
    def label(self) -> str:
        return f"{self.provider_id}:{self.model_id}"

    def to_dict(self) -> dict[str, str]:
        return {"providerId": self.provider_id, "modelId": self.model_id}


@dataclass(slots=True, frozen=True)
class ProviderRoute:
    task_type: LlmTaskType
    primary: RouteTarget
    secondary: RouteTarget | None = None


@dataclass(slots=True, frozen=True)
class RouteOverride:
    """Partial route; set fields replace the resolved ones."""

    primary: RouteTarget | None = None
    secondary: RouteTarget | None = None


@dataclass(slots=True)
class InvokeLlmResult:
    """Always well-formed, even when every provider failed."""

    text: str
    finish_reason: FinishReason
    provider_id: str | None
    model_id: str | None
    usage: LlmUsage
    used_fallback: bool
    attempts: int
    path: list[str]
    tool_calls: list[LlmToolCall] = field(default_factory=list)
    error: str | None = None
    error_details: LlmErrorDetails | None = None

    @property
    def ok(self) -> bool:
        return self.finish_reason != FinishReason.ERROR and self.error is None


def _finite_int(value: float | None, *, default: int = 0) -> int:
    if value is None:
        return default
    number = float(value)
    if not math.isfinite(number):
        return default
    return int(number)
