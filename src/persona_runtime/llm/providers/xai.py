"""xAI Responses API provider over httpx."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from persona_runtime.llm.models import (
    ERROR_BODY_LIMIT,
    FinishReason,
    LlmErrorDetails,
    LlmGenerateRequest,
    LlmGenerateResult,
    ProviderCapabilities,
    ProviderUsage,
)

logger = logging.getLogger(__name__)

XAI_PROVIDER_ID = "xai"
DEFAULT_XAI_BASE_URL = "https://api.x.ai/v1"
DEFAULT_XAI_MODEL = "grok-4-1-fast-reasoning"
DEFAULT_HTTP_TIMEOUT_SECONDS = 60.0

_INCOMPLETE_REASONS: dict[str, FinishReason] = {
    "max_output_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


class XaiProvider:
    """Text generation through `POST {base_url}/responses`.

    Every failure is returned as an error result; nothing is raised to the
    invoker for expected HTTP or payload problems.
    """

    provider_id = XAI_PROVIDER_ID
    capabilities = ProviderCapabilities(supports_tool_calls=False)

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_XAI_BASE_URL,
        default_model: str = DEFAULT_XAI_MODEL,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key.strip() if api_key and api_key.strip() else None
        self.default_model = default_model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> XaiProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def generate(self, request: LlmGenerateRequest) -> LlmGenerateResult:
        prompt = request.prompt_text()
        if not prompt.strip():
            return LlmGenerateResult(text="", finish_reason=FinishReason.ERROR, error="EMPTY_PROMPT")
        if self.api_key is None:
            return LlmGenerateResult(
                text="",
                finish_reason=FinishReason.ERROR,
                error="MISSING_XAI_API_KEY",
            )

        body: dict[str, Any] = {
            "model": request.model_id or self.default_model,
            "input": prompt,
        }
        if request.max_output_tokens is not None:
            body["max_output_tokens"] = request.max_output_tokens
        if request.temperature is not None:
            body["temperature"] = request.temperature

        try:
            response = self._client.post(
                "/responses",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling xAI responses API: %s", exc)
            details = LlmErrorDetails.build(type_=type(exc).__name__)
            return _error_result(f"xAI request timed out: {exc}", details)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling xAI responses API: %s", exc)
            details = LlmErrorDetails.build(type_=type(exc).__name__)
            return _error_result(f"xAI request failed: {exc}", details)

        if not response.is_success:
            return _http_error_result(response)

        try:
            payload = response.json()
        except json.JSONDecodeError:
            details = LlmErrorDetails.build(
                status_code=response.status_code,
                type_="invalid_json",
                body=response.text,
            )
            return _error_result("xAI returned a non-JSON response", details)
        if not isinstance(payload, dict):
            details = LlmErrorDetails.build(
                status_code=response.status_code,
                type_="invalid_payload",
                body=response.text,
            )
            return _error_result("xAI returned an unexpected payload", details)
        return _parse_response(payload)


def _parse_response(payload: dict[str, Any]) -> LlmGenerateResult:
    status = str(payload.get("status") or "completed")
    usage = _parse_usage(payload.get("usage"))
    text = normalize_text_output(_extract_output_text(payload))

    if status == "completed":
        finish_reason = FinishReason.STOP
    elif status == "incomplete":
        incomplete = payload.get("incomplete_details")
        reason = incomplete.get("reason") if isinstance(incomplete, dict) else None
        finish_reason = _INCOMPLETE_REASONS.get(str(reason), FinishReason.LENGTH)
    else:
        error_code, error_message = _error_fields(payload.get("error"))
        details = LlmErrorDetails.build(code=error_code, type_=f"status_{status}")
        return LlmGenerateResult(
            text="",
            finish_reason=FinishReason.ERROR,
            usage=usage,
            error=_build_error_message(error_message or f"xAI response {status}", details),
            error_details=details,
        )
    return LlmGenerateResult(text=text, finish_reason=finish_reason, usage=usage)


def _extract_output_text(payload: dict[str, Any]) -> str:
    direct = payload.get("output_text")
    if isinstance(direct, str):
        return direct
    chunks: list[str] = []
    output = payload.get("output")
    if not isinstance(output, list):
        return ""
    for item in output:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, dict) and part.get("type") == "output_text":
                chunk = part.get("text")
                if isinstance(chunk, str):
                    chunks.append(chunk)
    return "".join(chunks)


def _parse_usage(raw: object) -> ProviderUsage | None:
    if not isinstance(raw, dict):
        return None
    return ProviderUsage(
        input_tokens=_optional_int(raw.get("input_tokens")),
        output_tokens=_optional_int(raw.get("output_tokens")),
        total_tokens=_optional_int(raw.get("total_tokens")),
    )


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _http_error_result(response: httpx.Response) -> LlmGenerateResult:
    code: str | None = None
    message: str | None = None
    try:
        parsed = response.json()
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        code, message = _error_fields(parsed.get("error"))
        if code is None and isinstance(parsed.get("code"), str):
            code = parsed["code"]
    details = LlmErrorDetails.build(
        status_code=response.status_code,
        code=code,
        type_="http_error",
        body=response.text[:ERROR_BODY_LIMIT],
    )
    logger.warning("xAI responses API returned HTTP %s", response.status_code)
    return _error_result(message or f"HTTP {response.status_code}", details)


def _error_fields(raw: object) -> tuple[str | None, str | None]:
    if isinstance(raw, str):
        return None, raw
    if isinstance(raw, dict):
        code = raw.get("code")
        message = raw.get("message")
        return (
            str(code) if code is not None else None,
            message if isinstance(message, str) else None,
        )
    return None, None


def _error_result(base: str, details: LlmErrorDetails | None) -> LlmGenerateResult:
    return LlmGenerateResult(
        text="",
        finish_reason=FinishReason.ERROR,
        error=_build_error_message(base, details),
        error_details=details,
    )


def _build_error_message(base: str, details: LlmErrorDetails | None) -> str:
    if details is None:
        return base
    tokens: list[str] = []
    if details.status_code is not None:
        tokens.append(f"status={details.status_code}")
    if details.code:
        tokens.append(f"code={details.code}")
    return f"{base} ({', '.join(tokens)})" if tokens else base


def normalize_text_output(text: str) -> str:
    return text.replace("\r\n", "\n").strip()
