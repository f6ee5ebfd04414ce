"""Route-aware LLM invocation with timeout races, retries, and one fallback hop."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from typing import Any

from persona_runtime.llm.models import (
    FinishReason,
    InvokeLlmResult,
    LlmErrorDetails,
    LlmGenerateRequest,
    LlmGenerateResult,
    LlmTaskType,
    ProviderRuntimeReasonCode,
    RouteOverride,
    RouteTarget,
    normalize_usage,
)
from persona_runtime.llm.registry import ProviderRegistry
from persona_runtime.llm.runtime_config import LlmRuntimeConfigProvider, LlmRuntimeRouteConfig
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 12.0
DEFAULT_RETRIES = 1
TIMEOUT_ERROR_PREFIX = "LLM_TIMEOUT_"


@dataclass(slots=True)
class _TargetOutcome:
    output: LlmGenerateResult | None
    error: str | None
    error_details: LlmErrorDetails | None
    attempts: int


class LlmInvoker:
    """Calls the primary route target, then the secondary once, else fails safe.

    Each attempt runs on a worker thread and is raced against
    `timeout_seconds`; an abandoned call is left to finish on its own.

    Timeout, retries and route come from the call arguments first, then
    from the live runtime config, then from the invoker defaults.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: ProviderRegistry,
        recorder: RuntimeEventRecorder | None = None,
        runtime_config: LlmRuntimeConfigProvider | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        default_retries: int = DEFAULT_RETRIES,
        max_concurrent_calls: int = 8,
    ) -> None:
        self.registry = registry
        self.recorder = recorder
        self.runtime_config = runtime_config
        self.default_timeout_seconds = default_timeout_seconds
        self.default_retries = default_retries
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_concurrent_calls),
            thread_name_prefix="llm-call",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> LlmInvoker:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def invoke(  # noqa: PLR0913
        self,
        *,
        task_type: LlmTaskType,
        entity_id: str,
        request: LlmGenerateRequest,
        timeout_seconds: float | None = None,
        retries: int | None = None,
        route_override: RouteOverride | None = None,
    ) -> InvokeLlmResult:
        live = self._live_config(task_type)
        if timeout_seconds is None:
            timeout_seconds = (
                live.timeout_seconds
                if live is not None and live.timeout_seconds is not None
                else self.default_timeout_seconds
            )
        if retries is None:
            retries = (
                live.retries
                if live is not None and live.retries is not None
                else self.default_retries
            )
        if live is not None and live.route is not None:
            route_override = _layer_override(live.route, route_override)
        timeout_seconds = max(0.001, timeout_seconds)
        retries = max(0, retries)
        route = self.registry.resolve_route(task_type, route_override)
        path: list[str] = []

        primary = self._run_on_target(
            target=route.primary,
            request=request,
            timeout_seconds=timeout_seconds,
            retries=retries,
            entity_id=entity_id,
            path=path,
        )
        if primary.output is not None:
            return self._success(
                output=primary.output,
                target=route.primary,
                entity_id=entity_id,
                used_fallback=False,
                attempts=primary.attempts,
                path=path,
            )

        if route.secondary is None:
            return self._fail_safe(
                target=route.primary,
                task_type=task_type,
                entity_id=entity_id,
                error=primary.error or "PROVIDER_CALL_FAILED",
                error_details=primary.error_details,
                used_fallback=False,
                attempts=primary.attempts,
                path=path,
            )

        self._record(
            entity_id=entity_id,
            operation="FALLBACK",
            reason_code=ProviderRuntimeReasonCode.FALLBACK_USED,
            metadata={
                "taskType": task_type.value,
                "from": route.primary.to_dict(),
                "to": route.secondary.to_dict(),
                "primaryError": primary.error,
                "primaryErrorDetails": _details_dict(primary.error_details),
            },
        )
        secondary = self._run_on_target(
            target=route.secondary,
            request=request,
            timeout_seconds=timeout_seconds,
            retries=retries,
            entity_id=entity_id,
            path=path,
        )
        attempts = primary.attempts + secondary.attempts
        if secondary.output is not None:
            return self._success(
                output=secondary.output,
                target=route.secondary,
                entity_id=entity_id,
                used_fallback=True,
                attempts=attempts,
                path=path,
            )
        return self._fail_safe(
            target=route.secondary,
            task_type=task_type,
            entity_id=entity_id,
            error=secondary.error or primary.error or "PROVIDER_FALLBACK_FAILED",
            error_details=secondary.error_details or primary.error_details,
            used_fallback=True,
            attempts=attempts,
            path=path,
        )

    def _live_config(self, task_type: LlmTaskType) -> LlmRuntimeRouteConfig | None:
        if self.runtime_config is None:
            return None
        try:
            config = self.runtime_config.get_config(task_type)
        except Exception as error:  # noqa: BLE001
            logger.warning("LLM runtime config unavailable, using defaults: %s", error)
            return None
        if config is None or not config.active:
            return None
        return config

    def _run_on_target(  # noqa: PLR0913
        self,
        *,
        target: RouteTarget,
        request: LlmGenerateRequest,
        timeout_seconds: float,
        retries: int,
        entity_id: str,
        path: list[str],
    ) -> _TargetOutcome:
        provider = self.registry.get_provider(target.provider_id)
        if provider is None:
            return _TargetOutcome(
                output=None,
                error=f"PROVIDER_NOT_FOUND:{target.provider_id}",
                error_details=None,
                attempts=0,
            )

        attempts = 0
        last_error: str | None = None
        last_details: LlmErrorDetails | None = None
        target_request = replace(request, model_id=target.model_id)
        for index in range(retries + 1):
            attempts += 1
            reason_code = ProviderRuntimeReasonCode.CALL_FAILED
            future = self._executor.submit(provider.generate, target_request)
            try:
                output = future.result(timeout=timeout_seconds)
            except FutureTimeoutError:
                future.cancel()
                last_error = f"{TIMEOUT_ERROR_PREFIX}{int(timeout_seconds * 1000)}MS"
                last_details = None
                reason_code = ProviderRuntimeReasonCode.TIMEOUT
            except Exception as error:  # noqa: BLE001
                last_error = str(error) or type(error).__name__
                last_details = _details_from_exception(error)
            else:
                if not output.failed:
                    self._record(
                        entity_id=entity_id,
                        operation="CALL",
                        reason_code=ProviderRuntimeReasonCode.CALL_SUCCEEDED,
                        metadata={**target.to_dict(), "attempts": attempts},
                    )
                    path.append(target.label)
                    return _TargetOutcome(
                        output=output,
                        error=None,
                        error_details=None,
                        attempts=attempts,
                    )
                last_error = output.error or "PROVIDER_ERROR_OUTPUT"
                last_details = output.error_details

            logger.warning(
                "LLM call failed on %s (attempt %d): %s",
                target.label,
                attempts,
                last_error,
            )
            self._record(
                entity_id=entity_id,
                operation="CALL",
                reason_code=reason_code,
                metadata={
                    **target.to_dict(),
                    "attempts": attempts,
                    "error": last_error,
                    "errorDetails": _details_dict(last_details),
                },
            )
            if index < retries:
                self._record(
                    entity_id=entity_id,
                    operation="RETRY",
                    reason_code=ProviderRuntimeReasonCode.RETRYING,
                    metadata={**target.to_dict(), "nextAttempt": attempts + 1},
                )

        path.append(target.label)
        return _TargetOutcome(
            output=None,
            error=last_error,
            error_details=last_details,
            attempts=attempts,
        )

    def _success(  # noqa: PLR0913
        self,
        *,
        output: LlmGenerateResult,
        target: RouteTarget,
        entity_id: str,
        used_fallback: bool,
        attempts: int,
        path: list[str],
    ) -> InvokeLlmResult:
        usage = normalize_usage(output.usage)
        if usage.normalized:
            self._record(
                entity_id=entity_id,
                operation="CALL",
                reason_code=ProviderRuntimeReasonCode.USAGE_NORMALIZED,
                metadata=target.to_dict(),
            )
        return InvokeLlmResult(
            text=output.text,
            finish_reason=output.finish_reason,
            provider_id=target.provider_id,
            model_id=target.model_id,
            usage=usage,
            used_fallback=used_fallback,
            attempts=attempts,
            path=path,
            tool_calls=list(output.tool_calls),
        )

    def _fail_safe(  # noqa: PLR0913
        self,
        *,
        target: RouteTarget,
        task_type: LlmTaskType,
        entity_id: str,
        error: str,
        error_details: LlmErrorDetails | None,
        used_fallback: bool,
        attempts: int,
        path: list[str],
    ) -> InvokeLlmResult:
        self._record(
            entity_id=entity_id,
            operation="FALLBACK",
            reason_code=ProviderRuntimeReasonCode.FAIL_SAFE_RETURNED,
            metadata={
                "error": error,
                "errorDetails": _details_dict(error_details),
                "taskType": task_type.value,
            },
        )
        return InvokeLlmResult(
            text="",
            finish_reason=FinishReason.ERROR,
            provider_id=target.provider_id,
            model_id=target.model_id,
            usage=normalize_usage(None),
            used_fallback=used_fallback,
            attempts=attempts,
            path=path,
            error=error,
            error_details=error_details,
        )

    def _record(
        self,
        *,
        entity_id: str,
        operation: str,
        reason_code: ProviderRuntimeReasonCode,
        metadata: dict[str, Any],
    ) -> None:
        if self.recorder is None:
            return
        self.recorder.record(
            layer=RuntimeLayer.PROVIDER_RUNTIME,
            operation=operation,
            reason_code=reason_code.value,
            entity_id=entity_id,
            metadata=metadata,
        )


def is_timeout_error(error: str | None) -> bool:
    return bool(error) and error.startswith(TIMEOUT_ERROR_PREFIX)  # type: ignore[union-attr]


def _layer_override(base: RouteOverride, top: RouteOverride | None) -> RouteOverride:
    if top is None:
        return base
    return RouteOverride(
        primary=top.primary or base.primary,
        secondary=top.secondary or base.secondary,
    )


def _details_dict(details: LlmErrorDetails | None) -> dict[str, Any] | None:
    return details.to_dict() if details is not None else None


def _details_from_exception(error: BaseException) -> LlmErrorDetails | None:
    status_code = getattr(error, "status_code", None)
    body = getattr(error, "body", None)
    code = getattr(error, "code", None)
    return LlmErrorDetails.build(
        status_code=status_code if isinstance(status_code, int) else None,
        code=code if isinstance(code, str) else None,
        type_=type(error).__name__,
        body=body if isinstance(body, str) else None,
    )
