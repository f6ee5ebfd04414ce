from __future__ import annotations

import allure

from persona_runtime.llm.invoker import LlmInvoker, is_timeout_error
from persona_runtime.llm.models import (
    FinishReason,
    LlmGenerateRequest,
    LlmGenerateResult,
    LlmTaskType,
    ProviderRoute,
    ProviderUsage,
    RouteOverride,
    RouteTarget,
)
from persona_runtime.llm.providers.mock import MockProvider, MockProviderMode
from persona_runtime.llm.registry import ProviderRegistry, ProviderRoutes
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Provider Runtime"),
]

PRIMARY = RouteTarget(provider_id="primary", model_id="model-a")
SECONDARY = RouteTarget(provider_id="secondary", model_id="model-b")


def _registry(*providers: MockProvider, with_secondary: bool = True) -> ProviderRegistry:
    routes = ProviderRoutes(
        default=PRIMARY,
        task_routes={
            LlmTaskType.REPLY: ProviderRoute(
                task_type=LlmTaskType.REPLY,
                primary=PRIMARY,
                secondary=SECONDARY if with_secondary else None,
            ),
        },
    )
    registry = ProviderRegistry(routes)
    for provider in providers:
        registry.register(provider)
    return registry


def _invoke(invoker: LlmInvoker, **kwargs: object):
    return invoker.invoke(
        task_type=LlmTaskType.REPLY,
        entity_id="task-1",
        request=LlmGenerateRequest(prompt="Say hello"),
        **kwargs,  # type: ignore[arg-type]
    )


def test_primary_success_passes_model_id_and_normalizes_usage() -> None:
    primary = MockProvider(
        provider_id="primary",
        scripted_outputs=[LlmGenerateResult(text="hi", usage=ProviderUsage(input_tokens=3))],
    )
    sink = InMemoryRuntimeEventSink()

    with LlmInvoker(registry=_registry(primary), recorder=RuntimeEventRecorder(sink)) as invoker:
        result = _invoke(invoker)

    assert result.ok is True
    assert result.text == "hi"
    assert result.path == ["primary:model-a"]
    assert result.used_fallback is False
    assert result.attempts == 1
    assert (result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens) == (
        3,
        0,
        3,
    )
    assert result.usage.normalized is True
    assert primary.requests[0].model_id == "model-a"
    assert sink.reason_codes() == ["providerCallSucceeded", "providerUsageNormalized"]


def test_retries_then_falls_back_to_secondary() -> None:
    primary = MockProvider(provider_id="primary", mode=MockProviderMode.ERROR)
    secondary = MockProvider(provider_id="secondary", fixed_text="from secondary")
    sink = InMemoryRuntimeEventSink()

    with LlmInvoker(
        registry=_registry(primary, secondary),
        recorder=RuntimeEventRecorder(sink),
    ) as invoker:
        result = _invoke(invoker, retries=1)

    assert result.ok is True
    assert result.text == "from secondary"
    assert result.used_fallback is True
    assert result.attempts == 3
    assert result.path == ["primary:model-a", "secondary:model-b"]
    assert primary.call_count == 2
    assert "providerRetrying" in sink.reason_codes()
    assert "providerFallbackUsed" in sink.reason_codes()


def test_all_targets_failing_returns_fail_safe_result() -> None:
    primary = MockProvider(provider_id="primary", mode=MockProviderMode.RAISE)
    secondary = MockProvider(provider_id="secondary", mode=MockProviderMode.ERROR)

    with LlmInvoker(registry=_registry(primary, secondary)) as invoker:
        result = _invoke(invoker, retries=0)

    assert result.ok is False
    assert result.finish_reason == FinishReason.ERROR
    assert result.text == ""
    assert result.error == "MOCK_PROVIDER_ERROR"
    assert result.used_fallback is True
    assert result.attempts == 2
    assert result.usage.total_tokens == 0


def test_timeout_race_abandons_slow_provider() -> None:
    slow = MockProvider(provider_id="primary", delay_seconds=0.5)

    with LlmInvoker(registry=_registry(slow, with_secondary=False)) as invoker:
        result = _invoke(invoker, timeout_seconds=0.05, retries=0)

    assert result.ok is False
    assert result.error == "LLM_TIMEOUT_50MS"
    assert is_timeout_error(result.error) is True
    assert result.path == ["primary:model-a"]


def test_unknown_provider_and_route_override() -> None:
    mock = MockProvider(provider_id="mock", fixed_text="override ok")

    with LlmInvoker(registry=_registry(mock, with_secondary=False)) as invoker:
        missing = _invoke(invoker, retries=0)
        overridden = _invoke(
            invoker,
            route_override=RouteOverride(primary=RouteTarget(provider_id="mock", model_id="m")),
        )

    assert missing.ok is False
    assert missing.error == "PROVIDER_NOT_FOUND:primary"
    assert missing.attempts == 0
    assert overridden.text == "override ok"
    assert overridden.path == ["mock:m"]
