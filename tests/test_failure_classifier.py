from __future__ import annotations

import allure
import pytest

from tdd_conductor.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    FailureKind,
    classify_failure,
    detect_failure_signature,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("error_text", "kind"),
    [
        ("Error: RESOURCE_EXHAUSTED: quota for model", FailureKind.RESOURCE_EXHAUSTED),
        ("The model is overloaded", FailureKind.RESOURCE_EXHAUSTED),
        ("ConnectError: [Errno 111]", FailureKind.CONNECTION),
        ("read ECONNRESET", FailureKind.CONNECTION),
        ("429 Too Many Requests", FailureKind.RATE_LIMIT),
        ("rate limit reached, try again later", FailureKind.RATE_LIMIT),
    ],
)
def test_transient_failures_are_retryable(error_text: str, kind: FailureKind) -> None:
    classification = classify_failure(error_text)

    assert classification.transient is True
    assert classification.kind == kind
    assert classification.matched_pattern is not None


@pytest.mark.parametrize(
    "error_text",
    [None, "", "SyntaxError: invalid syntax", "Agent exited with code 2", "permission denied"],
)
def test_unknown_failures_are_fatal(error_text: str | None) -> None:
    classification = classify_failure(error_text)

    assert classification.transient is False
    assert classification.kind == FailureKind.FATAL


def test_timeouts_are_not_retried() -> None:
    assert classify_failure("anything", timed_out=True).kind == FailureKind.TIMEOUT
    assert classify_failure("anything", timed_out=True).transient is False
    assert classify_failure("Command timeout after 600s").kind == FailureKind.TIMEOUT
    assert classify_failure("Command timeout after 600s").transient is False


def test_embedded_failure_signature_detection() -> None:
    assert detect_failure_signature("done.\n[error] resource_exhausted upstream") == (
        "resource_exhausted"
    )
    assert detect_failure_signature("httpx.ConnectError while streaming") == "connecterror"
    assert detect_failure_signature("All tests passed") is None


def test_event_details_are_versioned() -> None:
    details = classify_failure("rate limit").to_event_details()

    assert details == {
        "classifier_version": FAILURE_CLASSIFIER_VERSION,
        "failure_kind": "rate_limit",
        "transient": True,
        "matched_pattern": "rate limit",
    }
