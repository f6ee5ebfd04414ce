"""Policy documents, releases, and eligibility results."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any

from persona_runtime.llm.models import RouteOverride

# Wire key -> dataclass attribute, in canonical order.
PATCH_KEYS: tuple[tuple[str, str], ...] = (
    ("replyEnabled", "reply_enabled"),
    ("precheckEnabled", "precheck_enabled"),
    ("perPersonaHourlyReplyLimit", "per_persona_hourly_reply_limit"),
    ("perPostCooldownSeconds", "per_post_cooldown_seconds"),
    ("precheckSimilarityThreshold", "precheck_similarity_threshold"),
)
BOOLEAN_PATCH_KEYS = frozenset({"replyEnabled", "precheckEnabled"})
SUPPORTED_CAPABILITIES = frozenset({"reply"})
LLM_RUNTIME_KEY = "llmRuntime"
LLM_RUNTIME_TASK_TYPES: tuple[str, ...] = ("reply", "vote", "dispatch", "generic")


class PolicyReasonCode(str, Enum):
    """Reason codes emitted by the cached policy provider."""

    CACHE_HIT = "cacheHit"
    CACHE_REFRESH = "cacheRefresh"
    NO_ACTIVE_RELEASE = "noActiveRelease"
    LOAD_FAILED = "loadFailed"
    FALLBACK_LAST_KNOWN_GOOD = "fallbackLastKnownGood"
    FALLBACK_DEFAULT = "fallbackDefault"


FALLBACK_REASON_CODES = frozenset(
    {PolicyReasonCode.FALLBACK_DEFAULT, PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD},
)


class EligibilityReasonCode(str, Enum):
    """Why a persona may not interact with a target."""

    PERSONA_NOT_ACTIVE = "PERSONA_NOT_ACTIVE"
    TARGET_POST_NOT_INTERACTABLE = "TARGET_POST_NOT_INTERACTABLE"
    TARGET_BOARD_ARCHIVED = "TARGET_BOARD_ARCHIVED"
    PERSONA_BOARD_BANNED = "PERSONA_BOARD_BANNED"
    ELIGIBILITY_CHECK_FAILED = "ELIGIBILITY_CHECK_FAILED"


@dataclass(slots=True, frozen=True)
class DispatcherPolicy:
    """Fully resolved dispatch policy."""

    reply_enabled: bool = True
    precheck_enabled: bool = True
    per_persona_hourly_reply_limit: int = 8
    per_post_cooldown_seconds: int = 180
    precheck_similarity_threshold: float = 0.9

    def normalize(self) -> DispatcherPolicy:
        """Clamp limits to non-negative integers and the threshold to [0, 1]."""

        return replace(
            self,
            reply_enabled=bool(self.reply_enabled),
            precheck_enabled=bool(self.precheck_enabled),
            per_persona_hourly_reply_limit=_non_negative_int(self.per_persona_hourly_reply_limit),
            per_post_cooldown_seconds=_non_negative_int(self.per_post_cooldown_seconds),
            precheck_similarity_threshold=min(
                1.0,
                max(0.0, float(self.precheck_similarity_threshold)),
            ),
        )

    def to_document_patch(self) -> dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in PATCH_KEYS}


DEFAULT_DISPATCHER_POLICY = DispatcherPolicy()


@dataclass(slots=True, frozen=True)
class PolicyPatch:
    """Partial policy; only fields that are set override the layer below."""

    reply_enabled: bool | None = None
    precheck_enabled: bool | None = None
    per_persona_hourly_reply_limit: float | None = None
    per_post_cooldown_seconds: float | None = None
    precheck_similarity_threshold: float | None = None

    def apply_to(self, policy: DispatcherPolicy) -> DispatcherPolicy:
        overrides = {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }
        return replace(policy, **overrides) if overrides else policy

    def items(self) -> list[tuple[str, bool | float]]:
        """Set fields as (wire key, value) pairs in canonical order."""

        values: list[tuple[str, bool | float]] = []
        for wire, attr in PATCH_KEYS:
            value = getattr(self, attr)
            if value is not None:
                values.append((wire, value))
        return values

    def to_dict(self) -> dict[str, Any]:
        return dict(self.items())


@dataclass(slots=True, frozen=True)
class LlmRuntimeDocument:
    """Live LLM call settings carried at `capabilities.reply.llmRuntime`.

    Unset fields leave the environment settings in charge. A task route
    replaces the `default` route for that task type.
    """

    enabled: bool | None = None
    timeout_ms: float | None = None
    retries: float | None = None
    default: RouteOverride | None = None
    task_routes: dict[str, RouteOverride] = field(default_factory=dict)

    def route_for(self, task_type: str) -> RouteOverride | None:
        return self.task_routes.get(task_type) or self.default

    def items(self) -> list[tuple[str, bool | float | str]]:
        """Set values as (dotted key, value) pairs; targets render as `provider:model`."""

        values: list[tuple[str, bool | float | str]] = []
        for key, value in (
            ("enabled", self.enabled),
            ("timeoutMs", self.timeout_ms),
            ("retries", self.retries),
        ):
            if value is not None:
                values.append((key, value))
        routes = [("default", self.default)] + [
            (f"taskRoutes.{name}", self.task_routes[name]) for name in sorted(self.task_routes)
        ]
        for prefix, route in routes:
            if route is None:
                continue
            for slot, target in (("primary", route.primary), ("secondary", route.secondary)):
                if target is not None:
                    values.append((f"{prefix}.{slot}", target.label))
        return values

    def to_dict(self) -> dict[str, Any]:
        raw: dict[str, Any] = {}
        if self.enabled is not None:
            raw["enabled"] = self.enabled
        if self.timeout_ms is not None:
            raw["timeoutMs"] = self.timeout_ms
        if self.retries is not None:
            raw["retries"] = self.retries
        if self.default is not None:
            raw["default"] = _route_to_dict(self.default)
        if self.task_routes:
            raw["taskRoutes"] = {
                name: _route_to_dict(route) for name, route in self.task_routes.items()
            }
        return raw


@dataclass(slots=True, frozen=True)
class PolicyDocument:
    """Scoped policy patches of one release."""

    global_patch: PolicyPatch = field(default_factory=PolicyPatch)
    capabilities: dict[str, PolicyPatch] = field(default_factory=dict)
    personas: dict[str, PolicyPatch] = field(default_factory=dict)
    boards: dict[str, PolicyPatch] = field(default_factory=dict)
    llm_runtime: LlmRuntimeDocument | None = None

    def to_dict(self) -> dict[str, Any]:
        capabilities = {key: patch.to_dict() for key, patch in self.capabilities.items()}
        if self.llm_runtime is not None:
            capabilities.setdefault("reply", {})[LLM_RUNTIME_KEY] = self.llm_runtime.to_dict()
        return {
            "global": self.global_patch.to_dict(),
            "capabilities": capabilities,
            "personas": {key: patch.to_dict() for key, patch in self.personas.items()},
            "boards": {key: patch.to_dict() for key, patch in self.boards.items()},
        }


@dataclass(slots=True, frozen=True)
class ReplyPolicyScope:
    persona_id: str | None = None
    board_id: str | None = None


@dataclass(slots=True, frozen=True)
class PolicyValidationIssue:
    path: str
    message: str


@dataclass(slots=True)
class PolicyValidationResult:
    document: PolicyDocument
    issues: list[PolicyValidationIssue]

    @property
    def ok(self) -> bool:
        return not self.issues


@dataclass(slots=True, frozen=True)
class PolicyDiffEntry:
    path: str
    previous: bool | float | str | None
    next: bool | float | str | None


@dataclass(slots=True, frozen=True)
class PolicyRelease:
    """One immutable, versioned policy document."""

    version: int
    is_active: bool
    created_at: datetime
    document: PolicyDocument
    created_by: str | None = None
    note: str | None = None


@dataclass(slots=True)
class PolicyProviderStatus:
    """Diagnostics of the cached policy provider."""

    cached_version: int | None
    last_known_good_version: int | None
    cache_expires_at: datetime | None
    ttl_seconds: float
    last_reason_code: PolicyReasonCode | None
    last_load_error: str | None
    last_fallback_reason_code: PolicyReasonCode | None
    last_fallback_at: datetime | None


@dataclass(slots=True, frozen=True)
class EligibilityResult:
    allowed: bool
    reason_code: EligibilityReasonCode | None = None


def _non_negative_int(value: float) -> int:
    number = float(value)
    if not math.isfinite(number):
        return 0
    return max(0, math.floor(number))


def _route_to_dict(route: RouteOverride) -> dict[str, Any]:
    raw: dict[str, Any] = {}
    if route.primary is not None:
        raw["primary"] = route.primary.to_dict()
    if route.secondary is not None:
        raw["secondary"] = route.secondary.to_dict()
    return raw
