"""Deterministic exception classification for step and retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from agentform.orchestrator.errors import OrchestrationError
from agentform.orchestrator.models import ErrorCategory

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "ratelimit",
    "429",
    "throttl",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for queue events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "category": self.category.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an exception by type first, then by message patterns."""

    if isinstance(error, OrchestrationError):
        return _typed(error.category, error, rule="typed_error")
    if isinstance(error, httpx.TimeoutException | TimeoutError):
        return _typed(ErrorCategory.TIMEOUT, error, rule="timeout_type")
    if isinstance(error, httpx.HTTPStatusError):
        category = classify_http_status(error.response.status_code)
        return FailureClassification(
            category=category,
            reason_code=f"http_{error.response.status_code}",
            matched_rule="http_status",
            matched_pattern=None,
        )
    if isinstance(error, httpx.HTTPError | ConnectionError):
        return _typed(ErrorCategory.EXTERNAL_API_ERROR, error, rule="transport_type")
    if isinstance(error, ValueError | TypeError):
        return _typed(ErrorCategory.VALIDATION, error, rule="validation_type")
    if isinstance(error, LookupError):
        return _typed(ErrorCategory.NOT_FOUND, error, rule="lookup_type")

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.RATE_LIMITED,
            reason_code="rate_limited_message",
            matched_rule="rate_limit_pattern",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.TIMEOUT,
            reason_code="timeout_message",
            matched_rule="timeout_pattern",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            category=ErrorCategory.EXTERNAL_API_ERROR,
            reason_code="transient_message",
            matched_rule="transient_pattern",
            matched_pattern=pattern,
        )

    return FailureClassification(
        category=ErrorCategory.UNKNOWN,
        reason_code=type(error).__name__,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def classify_http_status(status_code: int) -> ErrorCategory:
    """Map an unsuccessful HTTP status to an error category.

    429 is rate limited, 404 is not found, other 4xx are fatal validation
    errors and everything else (5xx, unexpected codes) is a retryable
    external API error.
    """

    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code == 404:
        return ErrorCategory.NOT_FOUND
    if 400 <= status_code < 500:
        return ErrorCategory.VALIDATION
    return ErrorCategory.EXTERNAL_API_ERROR


def _typed(
    category: ErrorCategory,
    error: BaseException,
    *,
    rule: str,
) -> FailureClassification:
    return FailureClassification(
        category=category,
        reason_code=type(error).__name__,
        matched_rule=rule,
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
