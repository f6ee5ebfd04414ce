"""Rule-based reply admissibility checks."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")
_REPEATED_CHAR_RE = re.compile(r"(.)\1{10,}", re.DOTALL)


class SafetyReasonCode(str, Enum):
    EMPTY_TEXT = "SAFETY_EMPTY_TEXT"
    TOO_LONG = "SAFETY_TOO_LONG"
    SPAM_PATTERN = "SAFETY_SPAM_PATTERN"
    SIMILAR_TO_RECENT_REPLY = "SAFETY_SIMILAR_TO_RECENT_REPLY"
    REVIEW_BORDERLINE_SIMILARITY = "SAFETY_REVIEW_BORDERLINE_SIMILARITY"


class RiskLevel(str, Enum):
    """Risk bucket attached to review escalations."""

    HIGH = "HIGH"
    GRAY = "GRAY"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True, frozen=True)
class SafetyContext:
    recent_persona_replies: Sequence[str] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class SafetyGateResult:
    allowed: bool
    reason_code: SafetyReasonCode | None = None
    reason: str | None = None
    similarity: float | None = None
    needs_review: bool = False
    risk_level: RiskLevel | None = None


SAFETY_ALLOWED = SafetyGateResult(allowed=True)


class ReplySafetyGate(Protocol):
    """Pure admissibility check; implementations must not have side effects."""

    def check(self, text: str, context: SafetyContext | None = None) -> SafetyGateResult: ...


class AllowAllReplySafetyGate:
    def check(self, text: str, context: SafetyContext | None = None) -> SafetyGateResult:  # noqa: ARG002
        return SAFETY_ALLOWED


class RuleBasedReplySafetyGate:
    """Empty, length, spam-run, and near-duplicate checks."""

    def __init__(
        self,
        *,
        max_length: int = 2000,
        similarity_threshold: float = 0.9,
        review_similarity_margin: float = 0.05,
    ) -> None:
        self.max_length = max_length
        self.similarity_threshold = similarity_threshold
        self.review_similarity_margin = max(0.0, review_similarity_margin)

    def check(self, text: str, context: SafetyContext | None = None) -> SafetyGateResult:
        if not text.strip():
            return SafetyGateResult(
                allowed=False,
                reason_code=SafetyReasonCode.EMPTY_TEXT,
                reason="reply text is empty",
            )
        if len(text) > self.max_length:
            return SafetyGateResult(
                allowed=False,
                reason_code=SafetyReasonCode.TOO_LONG,
                reason=f"reply length {len(text)} > {self.max_length}",
            )
        if _REPEATED_CHAR_RE.search(text):
            return SafetyGateResult(
                allowed=False,
                reason_code=SafetyReasonCode.SPAM_PATTERN,
                reason="reply contains a long run of one repeated character",
            )

        recent = context.recent_persona_replies if context is not None else ()
        similarity = max_similarity(text, recent)
        if similarity is None:
            return SAFETY_ALLOWED
        if similarity >= self.similarity_threshold:
            return SafetyGateResult(
                allowed=False,
                reason_code=SafetyReasonCode.SIMILAR_TO_RECENT_REPLY,
                reason=f"similarity {similarity:.2f} >= {self.similarity_threshold:.2f}",
                similarity=similarity,
                risk_level=RiskLevel.HIGH,
            )
        if (
            self.review_similarity_margin > 0
            and similarity >= self.similarity_threshold - self.review_similarity_margin
        ):
            return SafetyGateResult(
                allowed=True,
                reason_code=SafetyReasonCode.REVIEW_BORDERLINE_SIMILARITY,
                reason=f"similarity {similarity:.2f} near {self.similarity_threshold:.2f}",
                similarity=similarity,
                needs_review=True,
                risk_level=RiskLevel.GRAY,
            )
        return SafetyGateResult(allowed=True, similarity=similarity)


def normalize_tokens(text: str) -> frozenset[str]:
    """Lower-case, strip punctuation, collapse whitespace, split into a token set."""

    stripped = _PUNCTUATION_RE.sub(" ", text.lower())
    collapsed = _WHITESPACE_RE.sub(" ", stripped).strip()
    if not collapsed:
        return frozenset()
    return frozenset(collapsed.split(" "))


def jaccard_similarity(left: str, right: str) -> float:
    left_tokens = normalize_tokens(left)
    right_tokens = normalize_tokens(right)
    if not left_tokens and not right_tokens:
        return 1.0
    if not left_tokens or not right_tokens:
        return 0.0
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


def max_similarity(text: str, candidates: Sequence[str]) -> float | None:
    best: float | None = None
    for candidate in candidates:
        score = jaccard_similarity(text, candidate)
        if best is None or score > best:
            best = score
    return best
