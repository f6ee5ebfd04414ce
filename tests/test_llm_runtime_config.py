from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
from sqlalchemy.engine import Engine

from persona_runtime.llm.invoker import LlmInvoker
from persona_runtime.llm.models import (
    LlmGenerateRequest,
    LlmTaskType,
    ProviderRoute,
    RouteOverride,
    RouteTarget,
)
from persona_runtime.llm.providers.mock import MockProvider, MockProviderMode
from persona_runtime.llm.registry import ProviderRegistry, ProviderRoutes
from persona_runtime.llm.runtime_config import (
    LLM_RUNTIME_ENTITY_ID,
    CachedLlmRuntimeConfigProvider,
    LlmRuntimeRouteConfig,
)
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder
from persona_runtime.policy.control_plane import diff_policy_documents, validate_policy_document
from persona_runtime.policy.models import PolicyDiffEntry, PolicyReasonCode, PolicyRelease
from persona_runtime.policy.store import SqlPolicyReleaseStore

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Provider Runtime"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
PRIMARY = RouteTarget(provider_id="primary", model_id="model-a")
SECONDARY = RouteTarget(provider_id="secondary", model_id="model-b")

LIVE_DOCUMENT = {
    "capabilities": {
        "reply": {
            "perPersonaHourlyReplyLimit": 4,
            "llmRuntime": {
                "timeoutMs": 2500,
                "retries": 0,
                "default": {"primary": {"providerId": "live", "modelId": "live-default"}},
                "taskRoutes": {
                    "reply": {
                        "primary": {"providerId": " live ", "modelId": "live-reply"},
                        "secondary": {"providerId": "secondary", "modelId": "model-b"},
                    },
                },
            },
        },
    },
}


class _FakeStore:
    def __init__(self) -> None:
        self.release: PolicyRelease | None = None
        self.error: Exception | None = None
        self.calls = 0

    def fetch_latest_active(self) -> PolicyRelease | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.release


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


class _StaticConfig:
    def __init__(self, config: LlmRuntimeRouteConfig | None) -> None:
        self.config = config
        self.task_types: list[LlmTaskType] = []

    def get_config(self, task_type: LlmTaskType) -> LlmRuntimeRouteConfig | None:
        self.task_types.append(task_type)
        return self.config


class _BrokenConfig:
    def get_config(self, task_type: LlmTaskType) -> LlmRuntimeRouteConfig | None:  # noqa: ARG002
        raise RuntimeError("config store unreachable")


def _release(version: int, raw: dict) -> PolicyRelease:
    return PolicyRelease(
        version=version,
        is_active=True,
        created_at=NOW,
        document=validate_policy_document(raw).document,
    )


def _runtime(**fields: object) -> dict:
    return {"capabilities": {"reply": {"llmRuntime": fields}}}


def _registry(*providers: MockProvider) -> ProviderRegistry:
    registry = ProviderRegistry(
        ProviderRoutes(
            default=PRIMARY,
            task_routes={
                LlmTaskType.REPLY: ProviderRoute(
                    task_type=LlmTaskType.REPLY,
                    primary=PRIMARY,
                    secondary=SECONDARY,
                ),
            },
        ),
    )
    for provider in providers:
        registry.register(provider)
    return registry


def _invoke(invoker: LlmInvoker, task_type: LlmTaskType = LlmTaskType.REPLY, **kwargs: object):
    return invoker.invoke(
        task_type=task_type,
        entity_id="task-1",
        request=LlmGenerateRequest(prompt="Say hello"),
        **kwargs,  # type: ignore[arg-type]
    )


def test_llm_runtime_block_is_parsed_and_resolved_per_task_type() -> None:
    result = validate_policy_document(LIVE_DOCUMENT)

    assert result.ok, result.issues
    runtime = result.document.llm_runtime
    assert runtime is not None
    assert runtime.timeout_ms == 2500
    assert runtime.route_for("reply") == RouteOverride(
        primary=RouteTarget(provider_id="live", model_id="live-reply"),
        secondary=SECONDARY,
    )
    assert runtime.route_for("vote") == RouteOverride(
        primary=RouteTarget(provider_id="live", model_id="live-default"),
    )
    assert result.document.capabilities["reply"].per_persona_hourly_reply_limit == 4
    assert validate_policy_document({}).document.llm_runtime is None


def test_llm_runtime_validation_collects_every_issue() -> None:
    result = validate_policy_document(
        _runtime(
            enabled="yes",
            timeoutMs=0,
            retries=-1,
            default={"primary": {"providerId": "xai"}},
            taskRoutes={
                "summarize": {"primary": {"providerId": "xai", "modelId": "m"}},
                "vote": "xai",
            },
        ),
    )

    prefix = "capabilities.reply.llmRuntime"
    assert [(issue.path, issue.message) for issue in result.issues] == [
        (f"{prefix}.enabled", "enabled must be a boolean"),
        (f"{prefix}.timeoutMs", "timeoutMs must be a positive number"),
        (f"{prefix}.retries", "retries must be a non-negative number"),
        (f"{prefix}.default.primary", "route target needs providerId and modelId"),
        (f"{prefix}.default", "route needs a primary or secondary target"),
        (f"{prefix}.taskRoutes.summarize", "unsupported task type"),
        (f"{prefix}.taskRoutes.vote", "route must be an object"),
    ]
    assert validate_policy_document(
        {"capabilities": {"reply": {"llmRuntime": []}}},
    ).issues[0].message == "llmRuntime must be an object"


def test_llm_runtime_changes_show_up_in_policy_diff() -> None:
    before = validate_policy_document(_runtime(timeoutMs=1000)).document
    after = validate_policy_document(
        _runtime(
            timeoutMs=1000,
            default={"primary": {"providerId": "mock", "modelId": "m"}},
        ),
    ).document

    assert diff_policy_documents(before, after) == [
        PolicyDiffEntry(
            path="capabilities.reply.llmRuntime.default.primary",
            previous=None,
            next="mock:m",
        ),
    ]


def test_llm_runtime_survives_publish_and_fetch(engine: Engine) -> None:
    store = SqlPolicyReleaseStore(engine)

    store.publish_release(LIVE_DOCUMENT, created_by="ops")
    provider = CachedLlmRuntimeConfigProvider(store=store)

    config = provider.get_config(LlmTaskType.REPLY)

    assert config == LlmRuntimeRouteConfig(
        enabled=None,
        timeout_seconds=2.5,
        retries=0,
        route=RouteOverride(
            primary=RouteTarget(provider_id="live", model_id="live-reply"),
            secondary=SECONDARY,
        ),
    )
    assert config.active is True


def test_config_is_reloaded_after_ttl_expiry() -> None:
    store = _FakeStore()
    store.release = _release(1, _runtime(timeoutMs=1000))
    clock = _Clock()
    sink = InMemoryRuntimeEventSink()
    provider = CachedLlmRuntimeConfigProvider(
        store=store,
        recorder=RuntimeEventRecorder(sink),
        ttl_seconds=30,
        clock=clock,
    )

    assert provider.get_config(LlmTaskType.REPLY).timeout_seconds == 1.0  # type: ignore[union-attr]
    store.release = _release(2, _runtime(timeoutMs=4000))
    clock.now = NOW + timedelta(seconds=29)
    assert provider.get_config(LlmTaskType.REPLY).timeout_seconds == 1.0  # type: ignore[union-attr]
    assert store.calls == 1

    clock.now = NOW + timedelta(seconds=31)

    assert provider.get_config(LlmTaskType.REPLY).timeout_seconds == 4.0  # type: ignore[union-attr]
    assert store.calls == 2
    assert sink.reason_codes() == [
        PolicyReasonCode.CACHE_REFRESH.value,
        PolicyReasonCode.CACHE_HIT.value,
        PolicyReasonCode.CACHE_REFRESH.value,
    ]
    assert {event.entity_id for event in sink.events} == {LLM_RUNTIME_ENTITY_ID}


def test_load_failure_keeps_last_known_good_config() -> None:
    store = _FakeStore()
    store.release = _release(3, _runtime(retries=2))
    clock = _Clock()
    sink = InMemoryRuntimeEventSink()
    provider = CachedLlmRuntimeConfigProvider(
        store=store,
        recorder=RuntimeEventRecorder(sink),
        ttl_seconds=5,
        clock=clock,
    )
    assert provider.get_config(LlmTaskType.VOTE).retries == 2  # type: ignore[union-attr]

    clock.now = NOW + timedelta(seconds=6)
    store.error = OSError("database is locked")

    assert provider.get_config(LlmTaskType.VOTE).retries == 2  # type: ignore[union-attr]
    assert sink.reason_codes()[-2:] == [
        PolicyReasonCode.LOAD_FAILED.value,
        PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD.value,
    ]
    status = provider.get_status()
    assert status.last_known_good_version == 3
    assert status.last_load_error == "database is locked"

    empty = CachedLlmRuntimeConfigProvider(store=_FakeStore(), clock=clock)
    assert empty.get_config(LlmTaskType.VOTE) is None
    assert empty.get_status().last_fallback_reason_code == PolicyReasonCode.FALLBACK_DEFAULT


def test_invoker_uses_live_route_timeout_and_retries() -> None:
    live = MockProvider(provider_id="live", mode=MockProviderMode.ERROR)
    secondary = MockProvider(provider_id="secondary", fixed_text="from secondary")
    config = _StaticConfig(
        LlmRuntimeRouteConfig(
            timeout_seconds=3.0,
            retries=0,
            route=RouteOverride(primary=RouteTarget(provider_id="live", model_id="live-reply")),
        ),
    )

    with LlmInvoker(
        registry=_registry(live, secondary),
        runtime_config=config,
        default_retries=3,
    ) as invoker:
        result = _invoke(invoker)

    assert result.text == "from secondary"
    assert result.path == ["live:live-reply", "secondary:model-b"]
    assert live.call_count == 1
    assert live.requests[0].model_id == "live-reply"
    assert config.task_types == [LlmTaskType.REPLY]


def test_explicit_call_arguments_win_over_live_config() -> None:
    primary = MockProvider(provider_id="primary", mode=MockProviderMode.ERROR)
    live = MockProvider(provider_id="live")
    config = _StaticConfig(
        LlmRuntimeRouteConfig(
            retries=0,
            route=RouteOverride(
                primary=RouteTarget(provider_id="live", model_id="live-reply"),
                secondary=RouteTarget(provider_id="live", model_id="live-backup"),
            ),
        ),
    )

    with LlmInvoker(registry=_registry(primary, live), runtime_config=config) as invoker:
        result = _invoke(
            invoker,
            retries=1,
            route_override=RouteOverride(primary=PRIMARY),
        )

    assert result.path == ["primary:model-a", "live:live-backup"]
    assert primary.call_count == 2
    assert result.attempts == 3


def test_disabled_or_unavailable_config_falls_back_to_defaults() -> None:
    primary = MockProvider(provider_id="primary", fixed_text="env route")
    disabled = _StaticConfig(
        LlmRuntimeRouteConfig(
            enabled=False,
            route=RouteOverride(primary=RouteTarget(provider_id="live", model_id="x")),
        ),
    )

    with LlmInvoker(registry=_registry(primary), runtime_config=disabled) as invoker:
        first = _invoke(invoker)
    with LlmInvoker(registry=_registry(primary), runtime_config=_BrokenConfig()) as invoker:
        second = _invoke(invoker)

    assert (first.text, first.path) == ("env route", ["primary:model-a"])
    assert (second.text, second.path) == ("env route", ["primary:model-a"])
