"""Dispatch decisions and run summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DispatchReasonCode(str, Enum):
    """Reason codes attached to dispatch decisions."""

    INTENT_TYPE_BLOCKED = "INTENT_TYPE_BLOCKED"
    POLICY_DISABLED = "POLICY_DISABLED"
    NO_ACTIVE_PERSONA = "NO_ACTIVE_PERSONA"
    ACTIVE_OK = "ACTIVE_OK"
    SELECTED_DEFAULT = "SELECTED_DEFAULT"
    PRECHECK_BLOCKED = "PRECHECK_BLOCKED"
    RATE_LIMIT_HOURLY = "RATE_LIMIT_HOURLY"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    PRECHECK_SAFETY_SIMILAR_TO_RECENT_REPLY = "PRECHECK_SAFETY_SIMILAR_TO_RECENT_REPLY"


@dataclass(slots=True)
class DispatchDecision:
    intent_id: str
    dispatched: bool
    reasons: list[str] = field(default_factory=list)
    task_id: str | None = None
    persona_id: str | None = None
    task_type: str | None = None


@dataclass(slots=True, frozen=True)
class PrecheckResult:
    allowed: bool
    reasons: tuple[str, ...] = ()


PRECHECK_ALLOWED = PrecheckResult(allowed=True)


@dataclass(slots=True)
class DispatchRunSummary:
    scanned: int = 0
    dispatched: int = 0
    skipped: int = 0
