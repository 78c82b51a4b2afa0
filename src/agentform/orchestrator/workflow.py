"""Sequential workflow execution with partial-failure isolation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from agentform.orchestrator.models import RunRecord, WorkUnit
from agentform.orchestrator.retry_policy import RetryPolicy, RetryRules
from agentform.orchestrator.step_runner import StepFn, StepRunner
from agentform.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StepDescriptor:
    name: str
    required: bool
    fn: StepFn
    retry_policy: RetryPolicy | RetryRules | None = None


class WorkflowOrchestrator:
    """Runs an ordered list of steps for one work unit.

    Steps run strictly in order. The first required step whose final attempt
    fails stops the run; later steps are not invoked and leave no result.
    Optional step failures are recorded and the run continues. The returned
    record's status is derived from its step results.
    """

    def __init__(
        self,
        *,
        step_runner: StepRunner | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.step_runner = step_runner or StepRunner(clock=clock)
        self.clock = clock

    def run_workflow(
        self,
        work_unit: WorkUnit,
        steps: Sequence[StepDescriptor],
        *,
        attempt_number: int = 1,
    ) -> RunRecord:
        record = RunRecord(
            run_id=str(uuid4()),
            work_unit_id=work_unit.work_unit_id,
            attempt_number=attempt_number,
            started_at=self.clock(),
        )
        logger.info(
            "Running %s for %s (attempt %d, %d steps)",
            work_unit.event_type.value,
            work_unit.work_unit_id,
            attempt_number,
            len(steps),
        )

        for step in steps:
            results = self.step_runner.run_with_retry(
                step.name,
                step.required,
                step.fn,
                step.retry_policy,
            )
            record.step_results.extend(results)
            if step.required and results[-1].failed:
                logger.warning(
                    "Required step %s failed for %s; stopping run",
                    step.name,
                    work_unit.work_unit_id,
                )
                break

        record.finished_at = self.clock()
        logger.info(
            "Run %s for %s finished with status=%s",
            record.run_id,
            work_unit.work_unit_id,
            record.status.value,
        )
        return record
