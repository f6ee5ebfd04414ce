"""Scoped policy documents with TTL caching and last-known-good fallback."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, Protocol

from persona_runtime.llm.models import RouteOverride, RouteTarget
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer
from persona_runtime.policy.models import (
    BOOLEAN_PATCH_KEYS,
    DEFAULT_DISPATCHER_POLICY,
    FALLBACK_REASON_CODES,
    LLM_RUNTIME_KEY,
    LLM_RUNTIME_TASK_TYPES,
    PATCH_KEYS,
    SUPPORTED_CAPABILITIES,
    DispatcherPolicy,
    LlmRuntimeDocument,
    PolicyDiffEntry,
    PolicyDocument,
    PolicyPatch,
    PolicyProviderStatus,
    PolicyReasonCode,
    PolicyRelease,
    PolicyValidationIssue,
    PolicyValidationResult,
    ReplyPolicyScope,
)
from persona_runtime.storage.common import utc_now

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 1.0
POLICY_ENTITY_ID = "reply_policy"

_OPERATION_BY_REASON = {
    PolicyReasonCode.CACHE_HIT: "CACHE_HIT",
    PolicyReasonCode.CACHE_REFRESH: "LOAD_SUCCESS",
    PolicyReasonCode.NO_ACTIVE_RELEASE: "LOAD",
    PolicyReasonCode.LOAD_FAILED: "LOAD_FAILED",
    PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD: "FALLBACK",
    PolicyReasonCode.FALLBACK_DEFAULT: "FALLBACK",
}


class PolicyReleaseStore(Protocol):
    """Source of the currently active policy release."""

    def fetch_latest_active(self) -> PolicyRelease | None: ...


class ReplyPolicyProvider(Protocol):
    def get_reply_policy(self, scope: ReplyPolicyScope | None = None) -> DispatcherPolicy: ...


def validate_policy_document(raw: object) -> PolicyValidationResult:
    """Parse a raw JSON-like policy document, collecting every issue found."""

    issues: list[PolicyValidationIssue] = []
    if not isinstance(raw, Mapping):
        issues.append(
            PolicyValidationIssue(path="root", message="policy document must be an object"),
        )
        return PolicyValidationResult(document=PolicyDocument(), issues=issues)

    global_patch = _patch_with_issues(raw.get("global"), "global", issues)

    scopes: dict[str, Mapping[str, Any]] = {}
    for scope_name in ("capabilities", "personas", "boards"):
        value = raw.get(scope_name)
        if value is None:
            scopes[scope_name] = {}
        elif isinstance(value, Mapping):
            scopes[scope_name] = value
        else:
            issues.append(
                PolicyValidationIssue(path=scope_name, message=f"{scope_name} must be an object"),
            )
            scopes[scope_name] = {}

    capabilities: dict[str, PolicyPatch] = {}
    llm_runtime: LlmRuntimeDocument | None = None
    for capability, value in scopes["capabilities"].items():
        path = f"capabilities.{capability}"
        if capability not in SUPPORTED_CAPABILITIES:
            issues.append(PolicyValidationIssue(path=path, message="unsupported capability key"))
            continue
        capabilities[str(capability)] = _patch_with_issues(value, path, issues)
        if isinstance(value, Mapping) and value.get(LLM_RUNTIME_KEY) is not None:
            llm_runtime = _llm_runtime_with_issues(
                value[LLM_RUNTIME_KEY],
                f"{path}.{LLM_RUNTIME_KEY}",
                issues,
            )

    personas = {
        str(persona_id): _patch_with_issues(value, f"personas.{persona_id}", issues)
        for persona_id, value in scopes["personas"].items()
    }
    boards = {
        str(board_id): _patch_with_issues(value, f"boards.{board_id}", issues)
        for board_id, value in scopes["boards"].items()
    }
    return PolicyValidationResult(
        document=PolicyDocument(
            global_patch=global_patch,
            capabilities=capabilities,
            personas=personas,
            boards=boards,
            llm_runtime=llm_runtime,
        ),
        issues=issues,
    )


def diff_policy_documents(
    previous: PolicyDocument | None,
    next_document: PolicyDocument | None,
) -> list[PolicyDiffEntry]:
    """Compare two documents over their flattened `scope.field` paths."""

    previous_map = _flatten(previous or PolicyDocument())
    next_map = _flatten(next_document or PolicyDocument())
    entries: list[PolicyDiffEntry] = []
    for path in sorted(set(previous_map) | set(next_map)):
        before = previous_map.get(path)
        after = next_map.get(path)
        if not _same_value(before, after):
            entries.append(PolicyDiffEntry(path=path, previous=before, next=after))
    return entries


def resolve_reply_policy(
    document: PolicyDocument | None,
    scope: ReplyPolicyScope | None,
    fallback: DispatcherPolicy,
) -> DispatcherPolicy:
    """Fold global, capability, persona, and board patches over the fallback."""

    if document is None:
        return fallback
    scope = scope or ReplyPolicyScope()
    layers: list[PolicyPatch] = [
        document.global_patch,
        document.capabilities.get("reply", PolicyPatch()),
    ]
    if scope.persona_id:
        layers.append(document.personas.get(scope.persona_id, PolicyPatch()))
    if scope.board_id:
        layers.append(document.boards.get(scope.board_id, PolicyPatch()))

    resolved = fallback
    for patch in layers:
        resolved = patch.apply_to(resolved)
    return resolved.normalize()


class CachedPolicyReleases:
    """TTL cache over the release store with last-known-good fallback.

    A failed or empty load keeps serving the last release that loaded;
    before any release has loaded it serves nothing.
    """

    def __init__(
        self,
        *,
        store: PolicyReleaseStore,
        recorder: RuntimeEventRecorder | None = None,
        ttl_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
        entity_id: str = POLICY_ENTITY_ID,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.ttl_seconds = max(MIN_TTL_SECONDS, ttl_seconds)
        self.clock = clock
        self.entity_id = entity_id
        self._lock = threading.Lock()
        self._cached_release: PolicyRelease | None = None
        self._last_known_good: PolicyRelease | None = None
        self._cache_expires_at: datetime | None = None
        self._last_reason_code: PolicyReasonCode | None = None
        self._last_load_error: str | None = None
        self._last_fallback_reason_code: PolicyReasonCode | None = None
        self._last_fallback_at: datetime | None = None

    def active_release(self) -> PolicyRelease | None:
        with self._lock:
            now = self.clock()
            if (
                self._cached_release is not None
                and self._cache_expires_at is not None
                and now < self._cache_expires_at
            ):
                self._emit(
                    PolicyReasonCode.CACHE_HIT,
                    now=now,
                    metadata={
                        "version": self._cached_release.version,
                        "cacheExpiresAt": self._cache_expires_at.isoformat(),
                    },
                )
                return self._cached_release
            return self._refresh(now=now)

    def get_status(self) -> PolicyProviderStatus:
        with self._lock:
            return PolicyProviderStatus(
                cached_version=(
                    self._cached_release.version if self._cached_release is not None else None
                ),
                last_known_good_version=(
                    self._last_known_good.version if self._last_known_good is not None else None
                ),
                cache_expires_at=self._cache_expires_at,
                ttl_seconds=self.ttl_seconds,
                last_reason_code=self._last_reason_code,
                last_load_error=self._last_load_error,
                last_fallback_reason_code=self._last_fallback_reason_code,
                last_fallback_at=self._last_fallback_at,
            )

    def invalidate(self) -> None:
        """Force the next read to hit the store."""

        with self._lock:
            self._cache_expires_at = None

    def _refresh(self, *, now: datetime) -> PolicyRelease | None:
        try:
            latest = self.store.fetch_latest_active()
        except Exception as error:  # noqa: BLE001
            self._last_load_error = str(error)
            logger.warning("Policy release load failed for %s: %s", self.entity_id, error)
            self._emit(PolicyReasonCode.LOAD_FAILED, now=now, metadata={"error": str(error)})
            self._fall_back(now=now)
        else:
            if latest is not None:
                self._cached_release = latest
                self._last_known_good = latest
                self._last_load_error = None
                self._emit(
                    PolicyReasonCode.CACHE_REFRESH,
                    now=now,
                    metadata={
                        "version": latest.version,
                        "createdAt": latest.created_at.isoformat(),
                    },
                )
            else:
                self._emit(PolicyReasonCode.NO_ACTIVE_RELEASE, now=now)
                self._fall_back(now=now)
        finally:
            self._cache_expires_at = now + timedelta(seconds=self.ttl_seconds)
        return self._cached_release

    def _fall_back(self, *, now: datetime) -> None:
        if self._last_known_good is not None:
            self._cached_release = self._last_known_good
            self._emit(
                PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD,
                now=now,
                metadata={"version": self._last_known_good.version},
            )
            return
        self._cached_release = None
        self._emit(PolicyReasonCode.FALLBACK_DEFAULT, now=now)

    def _emit(
        self,
        reason_code: PolicyReasonCode,
        *,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._last_reason_code = reason_code
        if reason_code in FALLBACK_REASON_CODES:
            self._last_fallback_reason_code = reason_code
            self._last_fallback_at = now
        if self.recorder is None:
            return
        self.recorder.record(
            layer=RuntimeLayer.POLICY_CONTROL_PLANE,
            operation=_OPERATION_BY_REASON[reason_code],
            reason_code=reason_code.value,
            entity_id=self.entity_id,
            occurred_at=now,
            metadata=metadata,
        )


class CachedReplyPolicyProvider(CachedPolicyReleases):
    """Serves resolved reply policies from a TTL cache over the release store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: PolicyReleaseStore,
        recorder: RuntimeEventRecorder | None = None,
        ttl_seconds: float = 30.0,
        fallback_policy: DispatcherPolicy = DEFAULT_DISPATCHER_POLICY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(store=store, recorder=recorder, ttl_seconds=ttl_seconds, clock=clock)
        self.fallback_policy = fallback_policy

    def get_reply_policy(self, scope: ReplyPolicyScope | None = None) -> DispatcherPolicy:
        release = self.active_release()
        return resolve_reply_policy(
            release.document if release is not None else None,
            scope,
            self.fallback_policy,
        )


def _patch_with_issues(
    value: object,
    path: str,
    issues: list[PolicyValidationIssue],
) -> PolicyPatch:
    if value is None and path == "global":
        return PolicyPatch()
    if not isinstance(value, Mapping):
        issues.append(PolicyValidationIssue(path=path, message="policy patch must be an object"))
        return PolicyPatch()

    overrides: dict[str, bool | float] = {}
    for wire, attr in PATCH_KEYS:
        if wire not in value:
            continue
        raw = value[wire]
        parsed = _read_boolean(raw) if wire in BOOLEAN_PATCH_KEYS else _read_number(raw)
        if parsed is None:
            issues.append(
                PolicyValidationIssue(
                    path=f"{path}.{wire}",
                    message=f"invalid value type for {wire}",
                ),
            )
            continue
        overrides[attr] = parsed
    return PolicyPatch(**overrides)  # type: ignore[arg-type]


def _read_boolean(value: object) -> bool | None:
    return value if isinstance(value, bool) else None


def _read_number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return value


def _llm_runtime_with_issues(
    value: object,
    path: str,
    issues: list[PolicyValidationIssue],
) -> LlmRuntimeDocument | None:
    if not isinstance(value, Mapping):
        issues.append(PolicyValidationIssue(path=path, message="llmRuntime must be an object"))
        return None

    enabled: bool | None = None
    if "enabled" in value:
        enabled = _read_boolean(value["enabled"])
        if enabled is None:
            issues.append(
                PolicyValidationIssue(path=f"{path}.enabled", message="enabled must be a boolean"),
            )

    timeout_ms: float | None = None
    if "timeoutMs" in value:
        timeout_ms = _read_number(value["timeoutMs"])
        if timeout_ms is None or timeout_ms <= 0:
            issues.append(
                PolicyValidationIssue(
                    path=f"{path}.timeoutMs",
                    message="timeoutMs must be a positive number",
                ),
            )
            timeout_ms = None

    retries: float | None = None
    if "retries" in value:
        retries = _read_number(value["retries"])
        if retries is None or retries < 0:
            issues.append(
                PolicyValidationIssue(
                    path=f"{path}.retries",
                    message="retries must be a non-negative number",
                ),
            )
            retries = None

    default = None
    if value.get("default") is not None:
        default = _route_with_issues(value["default"], f"{path}.default", issues)

    task_routes: dict[str, RouteOverride] = {}
    raw_routes = value.get("taskRoutes")
    if raw_routes is not None and not isinstance(raw_routes, Mapping):
        issues.append(
            PolicyValidationIssue(
                path=f"{path}.taskRoutes",
                message="taskRoutes must be an object",
            ),
        )
    elif raw_routes is not None:
        for task_type, raw_route in raw_routes.items():
            route_path = f"{path}.taskRoutes.{task_type}"
            if task_type not in LLM_RUNTIME_TASK_TYPES:
                issues.append(
                    PolicyValidationIssue(path=route_path, message="unsupported task type"),
                )
                continue
            route = _route_with_issues(raw_route, route_path, issues)
            if route is not None:
                task_routes[str(task_type)] = route

    return LlmRuntimeDocument(
        enabled=enabled,
        timeout_ms=timeout_ms,
        retries=retries,
        default=default,
        task_routes=task_routes,
    )


def _route_with_issues(
    value: object,
    path: str,
    issues: list[PolicyValidationIssue],
) -> RouteOverride | None:
    if not isinstance(value, Mapping):
        issues.append(PolicyValidationIssue(path=path, message="route must be an object"))
        return None
    targets: dict[str, RouteTarget | None] = {"primary": None, "secondary": None}
    for slot in targets:
        raw = value.get(slot)
        if raw is None:
            continue
        target = _read_target(raw)
        if target is None:
            issues.append(
                PolicyValidationIssue(
                    path=f"{path}.{slot}",
                    message="route target needs providerId and modelId",
                ),
            )
            continue
        targets[slot] = target
    if targets["primary"] is None and targets["secondary"] is None:
        issues.append(
            PolicyValidationIssue(path=path, message="route needs a primary or secondary target"),
        )
        return None
    return RouteOverride(primary=targets["primary"], secondary=targets["secondary"])


def _read_target(value: object) -> RouteTarget | None:
    if not isinstance(value, Mapping):
        return None
    provider_id = value.get("providerId")
    model_id = value.get("modelId")
    if not isinstance(provider_id, str) or not isinstance(model_id, str):
        return None
    if not provider_id.strip() or not model_id.strip():
        return None
    return RouteTarget(provider_id=provider_id.strip(), model_id=model_id.strip())


def _flatten(document: PolicyDocument) -> dict[str, bool | float | str]:
    flattened: dict[str, bool | float | str] = {}

    def append(prefix: str, patch: PolicyPatch | None) -> None:
        if patch is None:
            return
        for wire, value in patch.items():
            flattened[f"{prefix}.{wire}"] = value

    append("global", document.global_patch)
    append("capabilities.reply", document.capabilities.get("reply"))
    if document.llm_runtime is not None:
        for key, value in document.llm_runtime.items():
            flattened[f"capabilities.reply.{LLM_RUNTIME_KEY}.{key}"] = value
    for persona_id in sorted(document.personas):
        append(f"personas.{persona_id}", document.personas[persona_id])
    for board_id in sorted(document.boards):
        append(f"boards.{board_id}", document.boards[board_id])
    return flattened


def _same_value(left: bool | float | str | None, right: bool | float | str | None) -> bool:
    if left is None or right is None:
        return left is right
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, str) != isinstance(right, str):
        return False
    return left == right
