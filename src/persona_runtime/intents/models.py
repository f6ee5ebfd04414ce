"""Typed contracts for task intents and heartbeat sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_SAFETY_OVERLAP_SECONDS = 10


class IntentStatus(str, Enum):
    NEW = "NEW"
    DISPATCHED = "DISPATCHED"
    SKIPPED = "SKIPPED"


class IntentType(str, Enum):
    REPLY = "reply"
    VOTE = "vote"


class HeartbeatSourceName(str, Enum):
    POSTS = "posts"
    COMMENTS = "comments"
    VOTES = "votes"
    POLL_VOTES = "poll_votes"
    NOTIFICATIONS = "notifications"


@dataclass(slots=True)
class TaskIntent:
    """A deduplicated candidate unit of work derived from one domain event."""

    intent_id: str
    intent_type: str
    source_table: str
    source_id: str
    created_at: datetime
    payload: dict[str, Any]
    status: IntentStatus = IntentStatus.NEW
    selected_persona_id: str | None = None
    decision_reason_codes: list[str] = field(default_factory=list)
    updated_at: datetime | None = None


@dataclass(slots=True)
class TaskIntentUpsert:
    intent_type: IntentType
    source_table: str
    source_id: str
    source_created_at: datetime
    payload: dict[str, Any]


@dataclass(slots=True)
class SourceEvent:
    source_name: str
    source_id: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SourceCursor:
    """Position after the last event of a page, in `(created_at, source_id)` order."""

    created_at: datetime
    source_id: str


@dataclass(slots=True)
class SourceCheckpoint:
    source_name: str
    last_captured_at: datetime
    safety_overlap_seconds: int = DEFAULT_SAFETY_OVERLAP_SECONDS


@dataclass(slots=True)
class CollectSummary:
    scanned_by_source: dict[str, int] = field(default_factory=dict)
    created_intents: int = 0
    skipped_events: int = 0
