"""Retry policies: whether and when to retry a failed attempt."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from agentform.orchestrator.models import ErrorCategory

DEFAULT_FATAL_CATEGORIES = frozenset({ErrorCategory.VALIDATION})
DEFAULT_RATE_LIMIT_DELAY_SECONDS = 30.0


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    POLYNOMIAL = "polynomial"


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Evaluation result. Deferrals do not consume an attempt."""

    should_retry: bool
    delay_seconds: float = 0.0
    consumes_attempt: bool = True


NO_RETRY = RetryDecision(should_retry=False)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Retry rule for one family of error categories.

    `attempt` is the 1-based number of the attempt that just failed. An
    empty `retryable_categories` set means every non-fatal category is
    retryable. Fatal categories are checked first and never retry;
    `rate_limited` always retries after `rate_limit_delay_seconds` without
    consuming an attempt; `circuit_open` is left to the caller, which knows
    when the circuit will admit a trial call.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retryable_categories: frozenset[ErrorCategory] = field(default_factory=frozenset)
    fatal_categories: frozenset[ErrorCategory] = DEFAULT_FATAL_CATEGORIES
    rate_limit_delay_seconds: float = DEFAULT_RATE_LIMIT_DELAY_SECONDS

    def evaluate(self, category: ErrorCategory, attempt: int) -> RetryDecision:
        if category in self.fatal_categories:
            return NO_RETRY
        if category == ErrorCategory.RATE_LIMITED:
            return RetryDecision(
                should_retry=True,
                delay_seconds=self.rate_limit_delay_seconds,
                consumes_attempt=False,
            )
        if category == ErrorCategory.CIRCUIT_OPEN:
            return NO_RETRY
        if attempt >= self.max_attempts or not self.covers(category):
            return NO_RETRY
        return RetryDecision(should_retry=True, delay_seconds=self.delay_for(attempt))

    def should_retry(self, category: ErrorCategory, attempt: int) -> bool:
        return self.evaluate(category, attempt).should_retry

    def covers(self, category: ErrorCategory) -> bool:
        return not self.retryable_categories or category in self.retryable_categories

    def delay_for(self, attempt: int) -> float:
        attempt = max(attempt, 1)
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            return self.base_delay_seconds * (2 ** (attempt - 1))
        if self.backoff == BackoffStrategy.POLYNOMIAL:
            return self.base_delay_seconds * attempt**2
        return self.base_delay_seconds


DEFAULT_UNKNOWN_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay_seconds=5.0,
    backoff=BackoffStrategy.FIXED,
)


@dataclass(slots=True, frozen=True)
class RetryRules:
    """Ordered retry policies for one job plus job-wide fatal categories.

    The first policy that lists the category wins; a catch-all policy (no
    categories listed) is consulted after all specific ones.
    """

    policies: tuple[RetryPolicy, ...] = ()
    fatal_categories: frozenset[ErrorCategory] = DEFAULT_FATAL_CATEGORIES
    rate_limit_delay_seconds: float = DEFAULT_RATE_LIMIT_DELAY_SECONDS

    @property
    def max_attempts(self) -> int:
        if not self.policies:
            return DEFAULT_UNKNOWN_POLICY.max_attempts
        return max(policy.max_attempts for policy in self.policies)

    def policy_for(self, category: ErrorCategory) -> RetryPolicy | None:
        for policy in self.policies:
            if category in policy.retryable_categories:
                return policy
        for policy in self.policies:
            if not policy.retryable_categories:
                return policy
        if category == ErrorCategory.UNKNOWN:
            return DEFAULT_UNKNOWN_POLICY
        return None

    def evaluate(self, category: ErrorCategory, attempt: int) -> RetryDecision:
        if category in self.fatal_categories:
            return NO_RETRY
        if category == ErrorCategory.RATE_LIMITED:
            return RetryDecision(
                should_retry=True,
                delay_seconds=self.rate_limit_delay_seconds,
                consumes_attempt=False,
            )
        policy = self.policy_for(category)
        if policy is None:
            return NO_RETRY
        return policy.evaluate(category, attempt)
