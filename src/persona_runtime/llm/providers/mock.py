"""Deterministic in-process provider for tests and smoke runs."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterable
from enum import Enum

from persona_runtime.llm.models import (
    FinishReason,
    LlmGenerateRequest,
    LlmGenerateResult,
    ProviderCapabilities,
    ProviderUsage,
)

MOCK_PROVIDER_ID = "mock"
DEFAULT_MOCK_TEXT = "Mock provider response"


class MockProviderMode(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"
    RAISE = "raise"


class MockProviderError(RuntimeError):
    """Raised by the mock provider in `raise` mode."""


class MockProvider:
    """Returns scripted outputs first, then falls back to `mode`.

    `delay_seconds` sleeps before answering, which lets tests exercise the
    invoker's timeout race.
    """

    capabilities = ProviderCapabilities(supports_tool_calls=True)

    def __init__(  # noqa: PLR0913
        self,
        *,
        provider_id: str = MOCK_PROVIDER_ID,
        mode: MockProviderMode = MockProviderMode.SUCCESS,
        fixed_text: str | None = None,
        scripted_outputs: Iterable[LlmGenerateResult] = (),
        delay_seconds: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self.mode = mode
        self.fixed_text = fixed_text
        self.delay_seconds = delay_seconds
        self.requests: list[LlmGenerateRequest] = []
        self._scripted = deque(scripted_outputs)
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult:
        with self._lock:
            self.requests.append(request)
            scripted = self._scripted.popleft() if self._scripted else None
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        if scripted is not None:
            return scripted

        if self.mode == MockProviderMode.RAISE:
            raise MockProviderError("Mock provider configured to raise")
        if self.mode == MockProviderMode.ERROR:
            return LlmGenerateResult(
                text="",
                finish_reason=FinishReason.ERROR,
                error="MOCK_PROVIDER_ERROR",
            )
        if self.mode == MockProviderMode.EMPTY:
            return LlmGenerateResult(
                text="",
                usage=ProviderUsage(input_tokens=8, output_tokens=0, total_tokens=8),
            )
        return LlmGenerateResult(
            text=self.fixed_text if self.fixed_text is not None else DEFAULT_MOCK_TEXT,
            usage=ProviderUsage(input_tokens=12, output_tokens=6, total_tokens=18),
        )
