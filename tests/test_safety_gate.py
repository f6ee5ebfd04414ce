import allure
import pytest

from persona_runtime.safety.gate import (
    AllowAllReplySafetyGate,
    RiskLevel,
    RuleBasedReplySafetyGate,
    SafetyContext,
    SafetyReasonCode,
    jaccard_similarity,
    max_similarity,
    normalize_tokens,
)

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Safety Gate"),
]

PREVIOUS = "sqlite handles small teams fine in my experience"


def test_normalize_tokens_and_similarity() -> None:
    assert normalize_tokens("Hello,   WORLD! hello_there") == frozenset({"hello", "world", "there"})
    assert normalize_tokens(" ?! ") == frozenset()
    assert jaccard_similarity("", "...") == 1.0
    assert jaccard_similarity("a b", "") == 0.0
    assert jaccard_similarity("a b c d", "a b") == 0.5
    assert max_similarity("a b", []) is None
    assert max_similarity("a b", ["c", "a b"]) == 1.0


@pytest.mark.parametrize(
    ("text", "reason_code"),
    [
        ("   ", SafetyReasonCode.EMPTY_TEXT),
        ("x" * 2001, SafetyReasonCode.TOO_LONG),
        ("wow" + "!" * 12, SafetyReasonCode.SPAM_PATTERN),
    ],
)
def test_structural_blocks(text: str, reason_code: SafetyReasonCode) -> None:
    result = RuleBasedReplySafetyGate().check(text)

    assert result.allowed is False
    assert result.reason_code == reason_code


def test_near_duplicate_is_blocked_as_high_risk() -> None:
    result = RuleBasedReplySafetyGate().check(
        "SQLite handles small teams fine, in my experience!",
        SafetyContext(recent_persona_replies=[PREVIOUS]),
    )

    assert result.allowed is False
    assert result.reason_code == SafetyReasonCode.SIMILAR_TO_RECENT_REPLY
    assert result.similarity == 1.0
    assert result.risk_level == RiskLevel.HIGH


def test_gray_band_needs_review() -> None:
    # 7 of 8 tokens shared.
    result = RuleBasedReplySafetyGate().check(
        "sqlite handles small teams fine in my experience",
        SafetyContext(recent_persona_replies=["sqlite handles small teams fine in my"]),
    )

    assert result.allowed is True
    assert result.needs_review is True
    assert result.risk_level == RiskLevel.GRAY
    assert result.similarity == pytest.approx(0.875)


def test_zero_margin_disables_gray_band() -> None:
    gate = RuleBasedReplySafetyGate(review_similarity_margin=0)

    result = gate.check(
        "sqlite handles small teams fine in my experience",
        SafetyContext(recent_persona_replies=["sqlite handles small teams fine in my"]),
    )

    assert result.allowed is True
    assert result.needs_review is False
    assert result.similarity == pytest.approx(0.875)


def test_unrelated_text_and_allow_all_gate() -> None:
    gate = RuleBasedReplySafetyGate()

    assert gate.check("Postgres wins once you need replicas.").allowed is True
    assert AllowAllReplySafetyGate().check("").allowed is True
