"""Deterministic provider failure classification for worker retry and breaker policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from persona_runtime.llm.models import LlmErrorDetails

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"


CIRCUIT_OPENING_CLASSES = frozenset({FailureClass.ACCESS_OR_AUTH, FailureClass.BILLING_OR_QUOTA})

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "llm_timeout_",
    "timed out",
    "timeout",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "missing_xai_api_key",
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "provider_not_found",
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network error",
    "overloaded",
)

_STATUS_CLASSES: dict[int, tuple[FailureClass, str]] = {
    401: (FailureClass.ACCESS_OR_AUTH, "status_access_or_auth"),
    402: (FailureClass.BILLING_OR_QUOTA, "status_billing_or_quota"),
    403: (FailureClass.ACCESS_OR_AUTH, "status_access_or_auth"),
    404: (FailureClass.MODEL_NOT_AVAILABLE, "status_model_not_available"),
    408: (FailureClass.TIMEOUT, "status_timeout"),
    429: (FailureClass.BACKEND_TRANSIENT, "status_rate_limit_transient"),
}


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in (FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT)

    @property
    def opens_circuit(self) -> bool:
        return self.failure_class in CIRCUIT_OPENING_CLASSES

    def to_event_details(self, *, provider_id: str | None, model_id: str | None) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider_id": provider_id,
            "model_id": model_id,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(
    error: str | None,
    error_details: LlmErrorDetails | None = None,
) -> ProviderFailureClassification:
    """Classify a fail-safe provider result into a deterministic retry class.

    HTTP status wins over message text; message patterns are checked from the
    most to the least specific class.
    """

    status_code = error_details.status_code if error_details is not None else None
    if status_code is not None:
        if status_code in _STATUS_CLASSES:
            failure_class, rule = _STATUS_CLASSES[status_code]
            return _classified(failure_class, rule, None)
        if status_code >= 500:  # noqa: PLR2004
            return _classified(FailureClass.BACKEND_TRANSIENT, "status_server_error", None)

    haystack = _normalize_text(error=error, error_details=error_details)
    rules: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
        (FailureClass.TIMEOUT, "timeout", _TIMEOUT_PATTERNS),
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "generic_transient", _GENERIC_TRANSIENT_PATTERNS),
    )
    for failure_class, rule, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classified(failure_class, rule, pattern)

    return _classified(FailureClass.BACKEND_NON_RETRYABLE, "fallback_non_retryable", None)


def _classified(
    failure_class: FailureClass,
    rule: str,
    pattern: str | None,
) -> ProviderFailureClassification:
    return ProviderFailureClassification(
        failure_class=failure_class,
        reason_code=f"provider_{failure_class.value}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _normalize_text(*, error: str | None, error_details: LlmErrorDetails | None) -> str:
    parts = [error or ""]
    if error_details is not None:
        parts.extend([error_details.code or "", error_details.type or "", error_details.body or ""])
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
