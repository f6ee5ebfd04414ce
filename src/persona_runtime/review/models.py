"""Review queue items, events and decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_REVIEW_EXPIRY_DAYS = 3
REVIEW_TIMEOUT_REASON = "review_timeout_expired"
REVIEW_APPROVED_PAYLOAD_KEY = "reviewApproved"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


OPEN_REVIEW_STATUSES: tuple[ReviewStatus, ...] = (ReviewStatus.PENDING, ReviewStatus.IN_REVIEW)


class ReviewDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ReviewEventType(str, Enum):
    ENQUEUED = "ENQUEUED"
    CLAIMED = "CLAIMED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ReviewReasonCode(str, Enum):
    """Why a task was held for review."""

    SAFETY_REVIEW_REQUIRED = "SAFETY_REVIEW_REQUIRED"
    SAFETY_CHECK_FAILED = "SAFETY_CHECK_FAILED"
    REVIEW_TIMEOUT_EXPIRED = REVIEW_TIMEOUT_REASON


@dataclass(slots=True)
class ReviewQueueItem:
    review_id: str
    task_id: str
    persona_id: str
    risk_level: str
    status: ReviewStatus
    enqueue_reason_code: str
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    decision: ReviewDecision | None = None
    decision_reason_code: str | None = None
    reviewer_id: str | None = None
    note: str | None = None
    claimed_at: datetime | None = None
    decided_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReviewEvent:
    review_id: str
    task_id: str
    event_type: ReviewEventType
    created_at: datetime
    reason_code: str | None = None
    reviewer_id: str | None = None
    note: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ReviewPage:
    """One page of review items; `next_cursor` is the last item's `created_at`."""

    items: list[ReviewQueueItem]
    next_cursor: datetime | None = None
