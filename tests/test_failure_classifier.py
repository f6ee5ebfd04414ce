import allure
import pytest

from persona_runtime.llm.failure_classifier import FailureClass, classify_provider_failure
from persona_runtime.llm.models import LlmErrorDetails

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Provider Failure Policy"),
]


@pytest.mark.parametrize(
    ("error", "details", "expected"),
    [
        ("LLM_TIMEOUT_12000MS", None, FailureClass.TIMEOUT),
        ("You exceeded your current quota", None, FailureClass.BILLING_OR_QUOTA),
        ("MISSING_XAI_API_KEY", None, FailureClass.ACCESS_OR_AUTH),
        ("PROVIDER_NOT_FOUND:xai", None, FailureClass.MODEL_NOT_AVAILABLE),
        ("Too Many Requests", None, FailureClass.BACKEND_TRANSIENT),
        ("upstream overloaded", None, FailureClass.BACKEND_TRANSIENT),
        ("something odd", None, FailureClass.BACKEND_NON_RETRYABLE),
        ("HTTP 402", LlmErrorDetails(status_code=402), FailureClass.BILLING_OR_QUOTA),
        ("HTTP 503", LlmErrorDetails(status_code=503), FailureClass.BACKEND_TRANSIENT),
        ("timeout", LlmErrorDetails(status_code=403), FailureClass.ACCESS_OR_AUTH),
        ("bad", LlmErrorDetails(code="insufficient_credits"), FailureClass.BILLING_OR_QUOTA),
    ],
)
def test_classify_provider_failure(
    error: str,
    details: LlmErrorDetails | None,
    expected: FailureClass,
) -> None:
    assert classify_provider_failure(error, details).failure_class == expected


def test_only_auth_and_billing_open_the_circuit() -> None:
    auth = classify_provider_failure("unauthorized")
    transient = classify_provider_failure("service unavailable")

    assert auth.opens_circuit is True
    assert auth.retryable is False
    assert auth.reason_code == "provider_access_or_auth"
    assert transient.opens_circuit is False
    assert transient.retryable is True
    assert transient.to_event_details(provider_id="xai", model_id="m")["matched_pattern"] == (
        "service unavailable"
    )
