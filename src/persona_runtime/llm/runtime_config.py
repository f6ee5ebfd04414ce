"""Live LLM call settings read from the active policy release."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from persona_runtime.llm.models import LlmTaskType, RouteOverride
from persona_runtime.observability.events import RuntimeEventRecorder
from persona_runtime.policy.control_plane import CachedPolicyReleases, PolicyReleaseStore
from persona_runtime.storage.common import utc_now

LLM_RUNTIME_ENTITY_ID = "llm_runtime_config"


@dataclass(slots=True, frozen=True)
class LlmRuntimeRouteConfig:
    """Settings for one task type; None fields defer to the invoker defaults."""

    enabled: bool | None = None
    timeout_seconds: float | None = None
    retries: int | None = None
    route: RouteOverride | None = None

    @property
    def active(self) -> bool:
        return self.enabled is not False


class LlmRuntimeConfigProvider(Protocol):
    def get_config(self, task_type: LlmTaskType) -> LlmRuntimeRouteConfig | None: ...


class CachedLlmRuntimeConfigProvider(CachedPolicyReleases):
    """Reads `capabilities.reply.llmRuntime` through the cached release.

    Returns None when no release has loaded or the release has no
    llmRuntime block.
    """

    def __init__(
        self,
        *,
        store: PolicyReleaseStore,
        recorder: RuntimeEventRecorder | None = None,
        ttl_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            store=store,
            recorder=recorder,
            ttl_seconds=ttl_seconds,
            clock=clock,
            entity_id=LLM_RUNTIME_ENTITY_ID,
        )

    def get_config(self, task_type: LlmTaskType) -> LlmRuntimeRouteConfig | None:
        release = self.active_release()
        if release is None or release.document.llm_runtime is None:
            return None
        runtime = release.document.llm_runtime
        return LlmRuntimeRouteConfig(
            enabled=runtime.enabled,
            timeout_seconds=runtime.timeout_ms / 1000 if runtime.timeout_ms is not None else None,
            retries=int(runtime.retries) if runtime.retries is not None else None,
            route=runtime.route_for(task_type.value),
        )
