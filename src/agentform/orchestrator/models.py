"""Domain models for work units, step results and run records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Domain events that start a workflow."""

    FORM_COMPLETED = "form_completed"
    RESPONSE_ANALYZED = "response_analyzed"
    DYNAMIC_QUESTION_REQUESTED = "dynamic_question_requested"
    INTEGRATION_TRIGGERED = "integration_triggered"


class WorkUnitStatus(str, Enum):
    """Durable queue lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ErrorCategory(str, Enum):
    """Normalized error categories used by retry policies."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    EXTERNAL_API_ERROR = "external_api_error"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Workflow run lifecycle; terminal values are derived from step results."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class WorkUnit:
    """One domain event to process. Retries reuse the same unit."""

    work_unit_id: str
    event_type: EventType
    payload: dict[str, Any]
    enqueued_at: datetime


@dataclass(slots=True, frozen=True)
class StepError:
    category: ErrorCategory
    message: str
    retry_after_seconds: float | None = None


@dataclass(slots=True, frozen=True)
class StepResult:
    """Outcome of a single step attempt. Inline retries append new results."""

    step_name: str
    status: StepStatus
    required: bool
    attempt: int = 1
    error: StepError | None = None
    side_effects: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILURE


def derive_run_status(step_results: list[StepResult]) -> RunStatus:
    """Overall status from the last result of every step that ran."""

    last_by_step: dict[str, StepResult] = {}
    for result in step_results:
        last_by_step[result.step_name] = result

    partial = False
    for result in last_by_step.values():
        if not result.failed:
            continue
        if result.required:
            return RunStatus.FAILED
        partial = True
    return RunStatus.PARTIAL if partial else RunStatus.COMPLETED


@dataclass(slots=True)
class RunRecord:
    """One execution of a workflow for a work unit."""

    run_id: str
    work_unit_id: str
    attempt_number: int
    started_at: datetime | None = None
    finished_at: datetime | None = None
    step_results: list[StepResult] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        if self.started_at is None:
            return RunStatus.PENDING
        if self.finished_at is None:
            return RunStatus.RUNNING
        return derive_run_status(self.step_results)

    @property
    def failed_step(self) -> StepResult | None:
        """Last result of the required step that stopped the run, if any."""

        for result in reversed(self.step_results):
            if result.failed and result.required:
                return result
        return None

    def results_for(self, step_name: str) -> list[StepResult]:
        return [result for result in self.step_results if result.step_name == step_name]

    def raise_for_failure(self) -> None:
        """Raise `RequiredStepFailed` when the run ended in `failed`."""

        from agentform.orchestrator.errors import RequiredStepFailed

        failed_step = self.failed_step
        if self.status != RunStatus.FAILED or failed_step is None or failed_step.error is None:
            return
        raise RequiredStepFailed(
            step_name=failed_step.step_name,
            category=failed_step.error.category,
            message=failed_step.error.message,
            retry_after_seconds=failed_step.error.retry_after_seconds,
        )


@dataclass(slots=True)
class WorkUnitCreate:
    """Input payload for enqueuing a work unit."""

    event_type: EventType
    payload: dict[str, Any]
    work_unit_id: str | None = None
    queue_name: str = "default"
    priority: int = 100
    max_attempts: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class WorkUnitView:
    """Readable queue row for CLI and worker logic."""

    work_unit_id: str
    event_type: EventType
    queue_name: str
    payload: dict[str, Any]
    priority: int
    status: WorkUnitStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    error_category: ErrorCategory | None
    error_summary: str | None
    worker_id: str | None
    enqueued_at: datetime
    updated_at: datetime

    @property
    def work_unit(self) -> WorkUnit:
        return WorkUnit(
            work_unit_id=self.work_unit_id,
            event_type=self.event_type,
            payload=self.payload,
            enqueued_at=self.enqueued_at,
        )


@dataclass(slots=True)
class WorkUnitEventView:
    """Queue event entry for audit trail."""

    event_id: int
    work_unit_id: str
    event_type: str
    status_from: WorkUnitStatus | None
    status_to: WorkUnitStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunRecordView:
    run_id: str
    work_unit_id: str
    attempt_number: int
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None
    step_results: list[StepResult]


@dataclass(slots=True)
class WorkUnitDetails:
    """Work unit with event stream and run history."""

    work_unit: WorkUnitView
    events: list[WorkUnitEventView]
    runs: list[RunRecordView]


@dataclass(slots=True)
class StatusEventView:
    event_id: int
    channel_key: str
    event_type: str
    work_unit_id: str | None
    payload: dict[str, Any]
    created_at: datetime
