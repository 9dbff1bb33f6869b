from __future__ import annotations

import allure
import pytest

from codegen_queue.generation.errors import GenerationError
from codegen_queue.queue.errors import JobTimeoutError, PermanentJobError, TransientJobError
from codegen_queue.queue.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_exception,
    classify_message,
)
from codegen_queue.queue.models import FailureClass

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_billing_wins_over_rate_limit() -> None:
    classified = classify_message("429 Too Many Requests: quota exceeded for this key")

    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert not classified.transient


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("401 Unauthorized", FailureClass.ACCESS_OR_AUTH),
        ("Unknown model: claude-x", FailureClass.MODEL_NOT_AVAILABLE),
        ("rate limit reached, please retry", FailureClass.PROVIDER_RATE_LIMITED),
        ("upstream overloaded", FailureClass.PROVIDER_TRANSIENT),
        ("KeyError: 'code'", FailureClass.UNEXPECTED_ERROR),
    ],
)
def test_message_patterns(message: str, expected: FailureClass) -> None:
    assert classify_message(message).failure_class == expected


def test_unmatched_message_falls_back_to_retryable_unexpected() -> None:
    classified = classify_message("something odd happened")

    assert classified.failure_class == FailureClass.UNEXPECTED_ERROR
    assert classified.matched_rule == "fallback_unexpected"
    assert classified.transient


def test_typed_errors_keep_their_class() -> None:
    generation = classify_exception(
        GenerationError("bad request", failure_class=FailureClass.INPUT_CONTRACT_ERROR),
    )
    permanent = classify_exception(PermanentJobError("missing prompt"))
    transient = classify_exception(TransientJobError("try later"))
    timeout = classify_exception(JobTimeoutError("took too long"))

    assert generation.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert generation.message == "bad request"
    assert permanent.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert not permanent.transient
    assert transient.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert timeout.failure_class == FailureClass.TIMEOUT
    assert timeout.transient


def test_builtin_timeout_is_transient() -> None:
    classified = classify_exception(TimeoutError("read timed out"))

    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.to_event_details()["failure_class"] == "timeout"
