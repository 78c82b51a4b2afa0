"""Execute one workflow step and capture its outcome as data."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agentform.orchestrator.failure_classifier import classify_exception
from agentform.orchestrator.models import StepError, StepResult, StepStatus
from agentform.orchestrator.retry_policy import RetryPolicy, RetryRules
from agentform.orchestrator.sanitization import error_message
from agentform.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepOutcome:
    """Optional structured return value of a step function."""

    side_effects: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False
    reason: str | None = None

    @classmethod
    def skip(cls, reason: str, **side_effects: Any) -> StepOutcome:
        return cls(side_effects=dict(side_effects), skipped=True, reason=reason)


StepFn = Callable[[], StepOutcome | Mapping[str, Any] | None]


class StepRunner:
    """Runs step functions; exceptions never escape `run`."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        max_inline_sleep_seconds: float = 30.0,
    ) -> None:
        self.clock = clock
        self.sleep = sleep
        self.max_inline_sleep_seconds = max_inline_sleep_seconds

    def run(self, step_name: str, required: bool, fn: StepFn, *, attempt: int = 1) -> StepResult:
        started_at = self.clock()
        try:
            returned = fn()
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            message = error_message(error)
            logger.warning(
                "Step %s failed on attempt %d (%s): %s",
                step_name,
                attempt,
                classification.category.value,
                message,
            )
            return StepResult(
                step_name=step_name,
                status=StepStatus.FAILURE,
                required=required,
                attempt=attempt,
                error=StepError(
                    category=classification.category,
                    message=message,
                    retry_after_seconds=_retry_after(error),
                ),
                started_at=started_at,
                finished_at=self.clock(),
            )

        outcome = _as_outcome(returned)
        side_effects = dict(outcome.side_effects)
        if outcome.skipped:
            if outcome.reason:
                side_effects.setdefault("skip_reason", outcome.reason)
            logger.info("Step %s skipped: %s", step_name, outcome.reason or "-")
        return StepResult(
            step_name=step_name,
            status=StepStatus.SKIPPED if outcome.skipped else StepStatus.SUCCESS,
            required=required,
            attempt=attempt,
            side_effects=side_effects,
            started_at=started_at,
            finished_at=self.clock(),
        )

    def run_with_retry(
        self,
        step_name: str,
        required: bool,
        fn: StepFn,
        retry_policy: RetryPolicy | RetryRules | None = None,
    ) -> list[StepResult]:
        """Run a step, re-running it inline while `retry_policy` allows.

        Each attempt yields its own result. Deferrals (rate limits) and open
        circuits are not retried inline; they are left to the scheduler.
        """

        results: list[StepResult] = []
        attempt = 1
        while True:
            result = self.run(step_name, required, fn, attempt=attempt)
            results.append(result)
            if not result.failed or retry_policy is None or result.error is None:
                return results
            decision = retry_policy.evaluate(result.error.category, attempt)
            if not decision.should_retry or not decision.consumes_attempt:
                return results
            delay = min(decision.delay_seconds, self.max_inline_sleep_seconds)
            logger.info(
                "Retrying step %s inline in %.1fs (attempt %d/%d)",
                step_name,
                delay,
                attempt + 1,
                retry_policy.max_attempts,
            )
            if delay > 0:
                self.sleep(delay)
            attempt += 1


def _as_outcome(returned: StepOutcome | Mapping[str, Any] | None) -> StepOutcome:
    if returned is None:
        return StepOutcome()
    if isinstance(returned, StepOutcome):
        return returned
    return StepOutcome(side_effects=dict(returned))


def _retry_after(error: Exception) -> float | None:
    value = getattr(error, "retry_after", None)
    if isinstance(value, int | float):
        return float(value)
    return None
