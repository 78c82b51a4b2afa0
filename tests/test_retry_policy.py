from __future__ import annotations

import allure
import pytest

from agentform.orchestrator.models import ErrorCategory
from agentform.orchestrator.retry_policy import (
    BackoffStrategy,
    RetryPolicy,
    RetryRules,
)

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Retry Policy"),
]


@pytest.mark.parametrize("category", [ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND])
def test_fatal_categories_never_retry(category: ErrorCategory) -> None:
    policy = RetryPolicy(
        max_attempts=3,
        fatal_categories=frozenset({ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND}),
    )

    for attempt in range(0, policy.max_attempts + 6):
        assert policy.should_retry(category, attempt) is False


def test_exponential_backoff_doubles_from_base() -> None:
    policy = RetryPolicy(max_attempts=4, base_delay_seconds=5.0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_fixed_and_polynomial_backoff() -> None:
    fixed = RetryPolicy(base_delay_seconds=5.0, backoff=BackoffStrategy.FIXED)
    polynomial = RetryPolicy(base_delay_seconds=3.0, backoff=BackoffStrategy.POLYNOMIAL)

    assert [fixed.delay_for(attempt) for attempt in (1, 2, 3)] == [5.0, 5.0, 5.0]
    assert [polynomial.delay_for(attempt) for attempt in (1, 2, 3)] == [3.0, 12.0, 27.0]


def test_retry_stops_at_max_attempts() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=5.0)

    first = policy.evaluate(ErrorCategory.TIMEOUT, 1)
    second = policy.evaluate(ErrorCategory.TIMEOUT, 2)
    third = policy.evaluate(ErrorCategory.TIMEOUT, 3)

    assert first.should_retry and first.delay_seconds == 5.0
    assert second.should_retry and second.delay_seconds == 10.0
    assert third.should_retry is False


def test_rate_limited_defers_without_consuming_attempt() -> None:
    policy = RetryPolicy(max_attempts=1, rate_limit_delay_seconds=30.0)

    decision = policy.evaluate(ErrorCategory.RATE_LIMITED, 10)

    assert decision.should_retry is True
    assert decision.consumes_attempt is False
    assert decision.delay_seconds == 30.0


def test_circuit_open_is_left_to_caller() -> None:
    policy = RetryPolicy(max_attempts=5)

    assert policy.should_retry(ErrorCategory.CIRCUIT_OPEN, 1) is False


def test_policy_with_categories_only_covers_listed_ones() -> None:
    policy = RetryPolicy(
        max_attempts=5,
        retryable_categories=frozenset({ErrorCategory.TIMEOUT}),
    )

    assert policy.should_retry(ErrorCategory.TIMEOUT, 1) is True
    assert policy.should_retry(ErrorCategory.EXTERNAL_API_ERROR, 1) is False


def test_rules_pick_specific_policy_before_catch_all() -> None:
    rules = RetryRules(
        policies=(
            RetryPolicy(
                max_attempts=5,
                base_delay_seconds=5.0,
                backoff=BackoffStrategy.FIXED,
                retryable_categories=frozenset({ErrorCategory.TIMEOUT}),
            ),
            RetryPolicy(
                max_attempts=2,
                base_delay_seconds=3.0,
                backoff=BackoffStrategy.POLYNOMIAL,
            ),
        ),
    )

    timeout = rules.evaluate(ErrorCategory.TIMEOUT, 4)
    external = rules.evaluate(ErrorCategory.EXTERNAL_API_ERROR, 1)
    exhausted = rules.evaluate(ErrorCategory.EXTERNAL_API_ERROR, 2)

    assert timeout.should_retry and timeout.delay_seconds == 5.0
    assert external.should_retry and external.delay_seconds == 3.0
    assert exhausted.should_retry is False
    assert rules.max_attempts == 5


def test_rules_fatal_categories_win_over_policies() -> None:
    rules = RetryRules(
        policies=(RetryPolicy(max_attempts=5),),
        fatal_categories=frozenset({ErrorCategory.NOT_FOUND}),
    )

    assert rules.evaluate(ErrorCategory.NOT_FOUND, 1).should_retry is False


def test_rules_without_policies_retry_unknown_errors_once() -> None:
    rules = RetryRules()

    assert rules.evaluate(ErrorCategory.UNKNOWN, 1).should_retry is True
    assert rules.evaluate(ErrorCategory.UNKNOWN, 2).should_retry is False
    assert rules.evaluate(ErrorCategory.TIMEOUT, 1).should_retry is False
