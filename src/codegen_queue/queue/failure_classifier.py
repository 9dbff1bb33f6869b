"""Deterministic failure classification for executor retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from codegen_queue.generation.errors import GenerationError
from codegen_queue.queue.errors import JobError
from codegen_queue.queue.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid x-api-key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
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
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "could not resolve host",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None
    message: str

    @property
    def transient(self) -> bool:
        return self.failure_class.retryable

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify a handler exception.

    Typed errors keep the class they were raised with; anything else is
    matched against ordered text patterns and falls back to a retryable
    ``unexpected_error``.
    """

    if isinstance(error, GenerationError):
        return FailureClassification(
            failure_class=error.failure_class,
            matched_rule="generation_error",
            matched_pattern=None,
            message=str(error),
        )
    if isinstance(error, JobError):
        return FailureClassification(
            failure_class=error.failure_class,
            matched_rule="job_error",
            matched_pattern=None,
            message=str(error),
        )
    if isinstance(error, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout_error",
            matched_pattern=None,
            message=_describe(error),
        )
    return classify_message(_describe(error))


def classify_message(message: str) -> FailureClassification:
    """Classify free-form error text into a deterministic failure class."""

    haystack = message.lower()
    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS, FailureClass.PROVIDER_RATE_LIMITED),
        ("generic_transient", _GENERIC_TRANSIENT_PATTERNS, FailureClass.PROVIDER_TRANSIENT),
    )
    for rule_name, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule_name,
                matched_pattern=pattern,
                message=message,
            )

    return FailureClassification(
        failure_class=FailureClass.UNEXPECTED_ERROR,
        matched_rule="fallback_unexpected",
        matched_pattern=None,
        message=message,
    )


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    if not text:
        return type(error).__name__
    return f"{type(error).__name__}: {text}"


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
