"""Runtime configuration for the persona task orchestration runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COLLECTOR_SOURCES: tuple[str, ...] = (
    "posts",
    "comments",
    "votes",
    "poll_votes",
    "notifications",
)
LLM_TASK_TYPES: tuple[str, ...] = ("reply", "vote", "dispatch", "generic")
DEFAULT_PRIMARY_PROVIDER = "xai"
DEFAULT_PRIMARY_MODEL = "grok-4-1-fast-reasoning"


@dataclass(slots=True)
class CollectorSettings:
    """Heartbeat intent collection settings."""

    sources: tuple[str, ...] = DEFAULT_COLLECTOR_SOURCES
    safety_overlap_seconds: int = 10
    batch_size: int = 500


@dataclass(slots=True)
class DispatchSettings:
    """Intent dispatch settings."""

    intent_batch_size: int = 100
    persona_batch_size: int = 50
    max_retries: int = 3


@dataclass(slots=True)
class QueueSettings:
    """Task queue and worker settings."""

    worker_id: str = "worker-local"
    lease_seconds: int = 30
    poll_interval_seconds: float = 2.0
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900


@dataclass(slots=True)
class PolicySettings:
    """Policy cache settings and compiled-in fallback policy."""

    cache_ttl_seconds: float = 30.0
    reply_enabled: bool = True
    precheck_enabled: bool = True
    per_persona_hourly_reply_limit: int = 8
    per_post_cooldown_seconds: int = 180
    precheck_similarity_threshold: float = 0.9


@dataclass(slots=True)
class SafetySettings:
    """Rule-based safety gate settings."""

    max_length: int = 2000
    similarity_threshold: float = 0.9
    review_similarity_margin: float = 0.05


@dataclass(slots=True)
class LlmRouteSetting:
    """Provider/model pair configured for one task type."""

    provider_id: str
    model_id: str


@dataclass(slots=True)
class LlmTaskRouteSettings:
    """Primary and optional secondary route for one task type."""

    primary: LlmRouteSetting | None = None
    secondary: LlmRouteSetting | None = None


@dataclass(slots=True)
class LlmSettings:
    """LLM provider layer settings."""

    default_provider: str = DEFAULT_PRIMARY_PROVIDER
    default_model: str = DEFAULT_PRIMARY_MODEL
    task_routes: dict[str, LlmTaskRouteSettings] = field(default_factory=dict)
    timeout_seconds: float = 12.0
    retries: int = 1
    xai_api_key: str | None = None
    xai_base_url: str = "https://api.x.ai/v1"
    max_output_tokens: int = 600
    temperature: float = 0.7
    tool_loop_max_iterations: int = 3
    tool_loop_timeout_seconds: float = 30.0
    generator: str = "template"


@dataclass(slots=True)
class ReviewSettings:
    """Human review queue settings."""

    expiry_days: int = 3


@dataclass(slots=True)
class ObservabilitySettings:
    """Runtime event recorder and circuit breaker settings."""

    recorder_max_events: int = 200
    circuit_failure_threshold: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by runtime concerns."""

    db_path: Path = Path(".persona_runtime.db")
    sqlite_busy_timeout_ms: int = 5000
    collector: CollectorSettings = field(default_factory=CollectorSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("PERSONA_RUNTIME_DB_PATH", ".persona_runtime.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("PERSONA_RUNTIME_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            collector=CollectorSettings(
                sources=_env_csv("PERSONA_RUNTIME_COLLECTOR_SOURCES", DEFAULT_COLLECTOR_SOURCES),
                safety_overlap_seconds=int(
                    os.getenv("PERSONA_RUNTIME_COLLECTOR_OVERLAP_SECONDS", "10"),
                ),
                batch_size=int(os.getenv("PERSONA_RUNTIME_COLLECTOR_BATCH_SIZE", "500")),
            ),
            dispatch=DispatchSettings(
                intent_batch_size=int(os.getenv("PERSONA_RUNTIME_DISPATCH_INTENT_BATCH", "100")),
                persona_batch_size=int(os.getenv("PERSONA_RUNTIME_DISPATCH_PERSONA_BATCH", "50")),
                max_retries=int(os.getenv("PERSONA_RUNTIME_TASK_MAX_RETRIES", "3")),
            ),
            queue=QueueSettings(
                worker_id=os.getenv("PERSONA_RUNTIME_WORKER_ID", f"worker-{os.getpid()}"),
                lease_seconds=int(os.getenv("PERSONA_RUNTIME_LEASE_SECONDS", "30")),
                poll_interval_seconds=float(
                    os.getenv("PERSONA_RUNTIME_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                retry_base_seconds=int(os.getenv("PERSONA_RUNTIME_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=int(os.getenv("PERSONA_RUNTIME_RETRY_MAX_SECONDS", "900")),
            ),
            policy=PolicySettings(
                cache_ttl_seconds=float(os.getenv("PERSONA_RUNTIME_POLICY_TTL_SECONDS", "30")),
                reply_enabled=_env_bool("PERSONA_RUNTIME_POLICY_REPLY_ENABLED", default=True),
                precheck_enabled=_env_bool(
                    "PERSONA_RUNTIME_POLICY_PRECHECK_ENABLED",
                    default=True,
                ),
                per_persona_hourly_reply_limit=int(
                    os.getenv("PERSONA_RUNTIME_POLICY_HOURLY_REPLY_LIMIT", "8"),
                ),
                per_post_cooldown_seconds=int(
                    os.getenv("PERSONA_RUNTIME_POLICY_POST_COOLDOWN_SECONDS", "180"),
                ),
                precheck_similarity_threshold=float(
                    os.getenv("PERSONA_RUNTIME_POLICY_PRECHECK_SIMILARITY", "0.9"),
                ),
            ),
            safety=SafetySettings(
                max_length=int(os.getenv("PERSONA_RUNTIME_SAFETY_MAX_LENGTH", "2000")),
                similarity_threshold=float(
                    os.getenv("PERSONA_RUNTIME_SAFETY_SIMILARITY_THRESHOLD", "0.9"),
                ),
                review_similarity_margin=float(
                    os.getenv("PERSONA_RUNTIME_SAFETY_REVIEW_MARGIN", "0.05"),
                ),
            ),
            llm=LlmSettings(
                default_provider=os.getenv(
                    "PERSONA_RUNTIME_LLM_DEFAULT_PROVIDER",
                    DEFAULT_PRIMARY_PROVIDER,
                ),
                default_model=os.getenv("PERSONA_RUNTIME_LLM_DEFAULT_MODEL", DEFAULT_PRIMARY_MODEL),
                task_routes=_collect_task_routes(),
                timeout_seconds=float(os.getenv("PERSONA_RUNTIME_LLM_TIMEOUT_SECONDS", "12")),
                retries=int(os.getenv("PERSONA_RUNTIME_LLM_RETRIES", "1")),
                xai_api_key=(
                    os.getenv("PERSONA_RUNTIME_XAI_API_KEY") or os.getenv("XAI_API_KEY") or None
                ),
                xai_base_url=os.getenv("PERSONA_RUNTIME_XAI_BASE_URL", "https://api.x.ai/v1"),
                max_output_tokens=int(os.getenv("PERSONA_RUNTIME_LLM_MAX_OUTPUT_TOKENS", "600")),
                temperature=float(os.getenv("PERSONA_RUNTIME_LLM_TEMPERATURE", "0.7")),
                tool_loop_max_iterations=int(
                    os.getenv("PERSONA_RUNTIME_TOOL_LOOP_MAX_ITERATIONS", "3"),
                ),
                tool_loop_timeout_seconds=float(
                    os.getenv("PERSONA_RUNTIME_TOOL_LOOP_TIMEOUT_SECONDS", "30"),
                ),
                generator=os.getenv("PERSONA_RUNTIME_REPLY_GENERATOR", "template").strip().lower(),
            ),
            review=ReviewSettings(
                expiry_days=int(os.getenv("PERSONA_RUNTIME_REVIEW_EXPIRY_DAYS", "3")),
            ),
            observability=ObservabilitySettings(
                recorder_max_events=int(
                    os.getenv("PERSONA_RUNTIME_RECORDER_MAX_EVENTS", "200"),
                ),
                circuit_failure_threshold=int(
                    os.getenv("PERSONA_RUNTIME_CIRCUIT_FAILURE_THRESHOLD", "3"),
                ),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.collector.safety_overlap_seconds < 0:
            raise ValueError("PERSONA_RUNTIME_COLLECTOR_OVERLAP_SECONDS must be >= 0.")
        if self.collector.batch_size <= 0:
            raise ValueError("PERSONA_RUNTIME_COLLECTOR_BATCH_SIZE must be > 0.")
        if self.dispatch.intent_batch_size <= 0 or self.dispatch.persona_batch_size <= 0:
            raise ValueError("Dispatch batch sizes must be > 0.")
        if self.dispatch.max_retries < 0:
            raise ValueError("PERSONA_RUNTIME_TASK_MAX_RETRIES must be >= 0.")
        if self.queue.lease_seconds <= 0:
            raise ValueError("PERSONA_RUNTIME_LEASE_SECONDS must be > 0.")
        if self.queue.retry_base_seconds < 0 or self.queue.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.policy.cache_ttl_seconds <= 0:
            raise ValueError("PERSONA_RUNTIME_POLICY_TTL_SECONDS must be > 0.")
        if not 0.0 <= self.safety.similarity_threshold <= 1.0:
            raise ValueError("PERSONA_RUNTIME_SAFETY_SIMILARITY_THRESHOLD must be in [0, 1].")
        if self.safety.max_length <= 0:
            raise ValueError("PERSONA_RUNTIME_SAFETY_MAX_LENGTH must be > 0.")
        if self.safety.review_similarity_margin < 0:
            raise ValueError("PERSONA_RUNTIME_SAFETY_REVIEW_MARGIN must be >= 0.")
        if self.llm.timeout_seconds <= 0:
            raise ValueError("PERSONA_RUNTIME_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.llm.retries < 0:
            raise ValueError("PERSONA_RUNTIME_LLM_RETRIES must be >= 0.")
        if self.llm.generator not in {"template", "llm"}:
            raise ValueError(
                f"Unsupported PERSONA_RUNTIME_REPLY_GENERATOR: {self.llm.generator!r}. "
                "Expected 'template' or 'llm'.",
            )
        if self.review.expiry_days <= 0:
            raise ValueError("PERSONA_RUNTIME_REVIEW_EXPIRY_DAYS must be > 0.")
        if self.observability.circuit_failure_threshold <= 0:
            raise ValueError("PERSONA_RUNTIME_CIRCUIT_FAILURE_THRESHOLD must be > 0.")


def _collect_task_routes() -> dict[str, LlmTaskRouteSettings]:
    routes: dict[str, LlmTaskRouteSettings] = {}
    for task_type in LLM_TASK_TYPES:
        prefix = f"PERSONA_RUNTIME_LLM_{task_type.upper()}"
        primary = _route_from_env(f"{prefix}_PROVIDER", f"{prefix}_MODEL")
        secondary = _route_from_env(f"{prefix}_FALLBACK_PROVIDER", f"{prefix}_FALLBACK_MODEL")
        if primary is None and secondary is None:
            continue
        routes[task_type] = LlmTaskRouteSettings(primary=primary, secondary=secondary)
    return routes


def _route_from_env(provider_env: str, model_env: str) -> LlmRouteSetting | None:
    provider_id = os.getenv(provider_env, "").strip().lower()
    model_id = os.getenv(model_env, "").strip()
    if not provider_id or not model_id:
        return None
    return LlmRouteSetting(provider_id=provider_id, model_id=model_id)


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
