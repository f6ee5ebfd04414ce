from __future__ import annotations

import json

import allure
import httpx

from persona_runtime.llm.models import FinishReason, LlmGenerateRequest
from persona_runtime.llm.providers.xai import XaiProvider

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Provider Runtime"),
]


def _provider(handler, *, api_key: str | None = "test-key") -> XaiProvider:
    return XaiProvider(
        api_key=api_key,
        base_url="https://xai.test/v1/",
        transport=httpx.MockTransport(handler),
    )


def test_completed_response_is_parsed() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "status": "completed",
                "output": [
                    {"type": "reasoning", "content": []},
                    {
                        "type": "message",
                        "content": [
                            {"type": "output_text", "text": "Hello "},
                            {"type": "output_text", "text": "forum\r\n"},
                        ],
                    },
                ],
                "usage": {"input_tokens": 11, "output_tokens": 4, "total_tokens": 15},
            },
        )

    with _provider(handler) as provider:
        result = provider.generate(
            LlmGenerateRequest(prompt="Say hi", model_id="grok-test", max_output_tokens=64),
        )

    assert result.failed is False
    assert result.text == "Hello forum"
    assert result.finish_reason == FinishReason.STOP
    assert result.usage is not None
    assert result.usage.total_tokens == 15
    assert str(seen[0].url) == "https://xai.test/v1/responses"
    assert seen[0].headers["Authorization"] == "Bearer test-key"
    assert json.loads(seen[0].content) == {
        "model": "grok-test",
        "input": "Say hi",
        "max_output_tokens": 64,
    }


def test_incomplete_response_maps_finish_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(
            200,
            json={
                "status": "incomplete",
                "incomplete_details": {"reason": "content_filter"},
                "output_text": "partial",
            },
        )

    with _provider(handler) as provider:
        result = provider.generate(LlmGenerateRequest(prompt="x"))

    assert result.finish_reason == FinishReason.CONTENT_FILTER
    assert result.text == "partial"


def test_http_error_keeps_status_and_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(
            401,
            json={"error": {"code": "invalid_api_key", "message": "Incorrect API key"}},
        )

    with _provider(handler) as provider:
        result = provider.generate(LlmGenerateRequest(prompt="x"))

    assert result.failed is True
    assert result.error == "Incorrect API key (status=401, code=invalid_api_key)"
    assert result.error_details is not None
    assert result.error_details.status_code == 401
    assert result.error_details.type == "http_error"


def test_transport_error_and_missing_key_fail_safe() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _provider(handler) as provider:
        transport = provider.generate(LlmGenerateRequest(prompt="x"))
    with _provider(handler, api_key="  ") as provider:
        missing = provider.generate(LlmGenerateRequest(prompt="x"))
        empty = provider.generate(LlmGenerateRequest(prompt="   "))

    assert transport.failed is True
    assert transport.error is not None
    assert transport.error.startswith("xAI request failed")
    assert missing.error == "MISSING_XAI_API_KEY"
    assert empty.error == "EMPTY_PROMPT"
