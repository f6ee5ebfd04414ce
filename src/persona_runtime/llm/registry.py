"""Provider registry and per-task route resolution."""

from __future__ import annotations

from dataclasses import dataclass, field

from persona_runtime.config import LlmSettings
from persona_runtime.llm.models import (
    LlmProvider,
    LlmTaskType,
    ProviderRoute,
    RouteOverride,
    RouteTarget,
)


@dataclass(slots=True)
class ProviderRoutes:
    """Default route plus optional per-task routes."""

    default: RouteTarget
    task_routes: dict[LlmTaskType, ProviderRoute] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: LlmSettings) -> ProviderRoutes:
        default = RouteTarget(
            provider_id=settings.default_provider,
            model_id=settings.default_model,
        )
        task_routes: dict[LlmTaskType, ProviderRoute] = {}
        for task_name, configured in settings.task_routes.items():
            task_type = LlmTaskType(task_name)
            primary = (
                RouteTarget(
                    provider_id=configured.primary.provider_id,
                    model_id=configured.primary.model_id,
                )
                if configured.primary is not None
                else default
            )
            secondary = (
                RouteTarget(
                    provider_id=configured.secondary.provider_id,
                    model_id=configured.secondary.model_id,
                )
                if configured.secondary is not None
                else None
            )
            if secondary == primary:
                secondary = None
            task_routes[task_type] = ProviderRoute(
                task_type=task_type,
                primary=primary,
                secondary=secondary,
            )
        return cls(default=default, task_routes=task_routes)


class ProviderRegistry:
    """Explicitly constructed registry; tests build isolated instances."""

    def __init__(self, routes: ProviderRoutes) -> None:
        self.routes = routes
        self._providers: dict[str, LlmProvider] = {}

    def register(self, provider: LlmProvider) -> None:
        self._providers[provider.provider_id] = provider

    def get_provider(self, provider_id: str) -> LlmProvider | None:
        return self._providers.get(provider_id)

    def provider_ids(self) -> list[str]:
        return sorted(self._providers)

    def resolve_route(
        self,
        task_type: LlmTaskType,
        override: RouteOverride | None = None,
    ) -> ProviderRoute:
        base = self.routes.task_routes.get(task_type) or ProviderRoute(
            task_type=task_type,
            primary=self.routes.default,
        )
        if override is None:
            return base
        return ProviderRoute(
            task_type=task_type,
            primary=override.primary or base.primary,
            secondary=override.secondary or base.secondary,
        )
