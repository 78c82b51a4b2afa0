"""Queue worker that runs form workflows for claimed work units."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from agentform.orchestrator.errors import OrchestrationError
from agentform.orchestrator.failure_classifier import FailureClassification, classify_exception
from agentform.orchestrator.models import ErrorCategory, RunRecord, RunStatus, WorkUnitView
from agentform.orchestrator.notifier import Notifier
from agentform.orchestrator.registry import WorkflowHandler, WorkflowRegistry
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.orchestrator.retry_policy import RetryRules
from agentform.orchestrator.sanitization import error_message
from agentform.orchestrator.state_store import StateStore
from agentform.orchestrator.workflow import WorkflowOrchestrator
from agentform.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_PERSISTED_ERRORS = 3


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.partial += other.partial
        self.failed += other.failed
        self.retried += other.retried
        self.deferred += other.deferred
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    deferred: bool
    failed: bool


@dataclass(slots=True)
class _Failure:
    category: ErrorCategory
    message: str
    retry_after_seconds: float | None
    details: dict[str, object]


class OrchestratorWorker:
    """Claims work units and executes their workflows."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        registry: WorkflowRegistry,
        orchestrator: WorkflowOrchestrator,
        notifier: Notifier,
        worker_id: str,
        queues: Sequence[str] | None = None,
        poll_interval_seconds: float = 2.0,
        stale_after_seconds: int = 1_800,
        state_store: StateStore | None = None,
        purge_interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.worker_id = worker_id
        self.queues = tuple(queues) if queues else None
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.state_store = state_store
        self.purge_interval_seconds = purge_interval_seconds
        self._last_purge_at: datetime | None = None
        self.clock = clock
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one work unit from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        unit = self._claim_unit()
        if unit is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            handler = self.registry.resolve(unit.event_type)
        except OrchestrationError as error:
            self._record_outcome(
                summary,
                self._handle_failure(
                    unit=unit,
                    handler=None,
                    rules=RetryRules(),
                    failure=_failure_from_exception(error),
                ),
            )
            return summary

        try:
            plan = handler.prepare(unit)
        except Exception as error:  # noqa: BLE001
            self._record_outcome(
                summary,
                self._handle_failure(
                    unit=unit,
                    handler=handler,
                    rules=handler.retry_rules,
                    failure=_failure_from_exception(error),
                ),
            )
            return summary

        self.repository.touch(work_unit_id=unit.work_unit_id)
        record = self.orchestrator.run_workflow(
            unit.work_unit,
            plan.steps,
            attempt_number=self._run_number(unit),
        )
        self.repository.record_run(record)

        run_status = record.status
        if run_status in {RunStatus.COMPLETED, RunStatus.PARTIAL}:
            self._complete(unit=unit, handler=handler, record=record)
            if run_status == RunStatus.PARTIAL:
                summary.partial = 1
            else:
                summary.succeeded = 1
            return summary

        self._record_outcome(
            summary,
            self._handle_failure(
                unit=unit,
                handler=handler,
                rules=handler.retry_rules,
                failure=_failure_from_run(record),
            ),
        )
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many units (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if self._stop_requested:
            return
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info(
            "Worker %s stopping after current unit (signal=%s)",
            self.worker_id,
            signal_name or "-",
        )

    def _claim_unit(self) -> WorkUnitView | None:
        self._recover_stale_units()
        self._purge_expired_state()
        if self._stop_requested:
            return None
        return self.repository.claim_next_ready(worker_id=self.worker_id, queues=self.queues)

    def _recover_stale_units(self) -> None:
        if self.stale_after_seconds <= 0:
            return
        recovered = self.repository.recover_stale_running(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        if recovered:
            logger.warning("Recovered %d stale running work units", recovered)

    def _purge_expired_state(self) -> None:
        if self.state_store is None:
            return
        now = self.clock()
        if (
            self._last_purge_at is not None
            and (now - self._last_purge_at).total_seconds() < self.purge_interval_seconds
        ):
            return
        self._last_purge_at = now
        purged = self.state_store.purge_expired()
        if purged:
            logger.info("Purged %d expired state entries", purged)

    def _run_number(self, unit: WorkUnitView) -> int:
        # Deferrals and manual retries rewind `attempt`; run numbers never repeat.
        last = self.repository.last_run_number(work_unit_id=unit.work_unit_id)
        return max(unit.attempt, last + 1)

    def _complete(
        self,
        *,
        unit: WorkUnitView,
        handler: WorkflowHandler,
        record: RunRecord,
    ) -> None:
        if not self.repository.complete(work_unit_id=unit.work_unit_id, run_status=record.status):
            logger.warning("Work unit %s left running state before completion", unit.work_unit_id)
            return
        logger.info("Work unit %s %s", unit.work_unit_id, record.status.value)
        self._notify(
            handler,
            unit,
            {
                "type": "completed",
                "work_unit_id": unit.work_unit_id,
                "status": record.status.value,
            },
        )

    def _handle_failure(
        self,
        *,
        unit: WorkUnitView,
        handler: WorkflowHandler | None,
        rules: RetryRules,
        failure: _Failure,
    ) -> RetryOutcome:
        now = self.clock()
        if failure.category == ErrorCategory.RATE_LIMITED:
            delay = max(failure.retry_after_seconds or 0.0, rules.rate_limit_delay_seconds)
            self.repository.defer(
                work_unit_id=unit.work_unit_id,
                run_after=now + timedelta(seconds=delay),
                category=failure.category,
                reason=failure.message,
            )
            logger.info("Deferred %s by %.1fs: %s", unit.work_unit_id, delay, failure.message)
            return RetryOutcome(retried=False, deferred=True, failed=False)

        attempts_left = unit.attempt < unit.max_attempts
        delay_seconds: float | None = None
        if failure.category == ErrorCategory.CIRCUIT_OPEN:
            if attempts_left:
                delay_seconds = failure.retry_after_seconds or rules.rate_limit_delay_seconds
        else:
            decision = rules.evaluate(failure.category, unit.attempt)
            if decision.should_retry and attempts_left:
                delay_seconds = decision.delay_seconds

        if delay_seconds is not None:
            self.repository.schedule_retry(
                work_unit_id=unit.work_unit_id,
                run_after=now + timedelta(seconds=delay_seconds),
                category=failure.category,
                error_summary=failure.message,
                details=failure.details,
            )
            logger.info(
                "Retry %d/%d for %s scheduled in %.1fs (%s)",
                unit.attempt + 1,
                unit.max_attempts,
                unit.work_unit_id,
                delay_seconds,
                failure.category.value,
            )
            return RetryOutcome(retried=True, deferred=False, failed=False)

        self.repository.fail(
            work_unit_id=unit.work_unit_id,
            category=failure.category,
            error_summary=failure.message,
            details=failure.details,
        )
        logger.error(
            "Work unit %s failed after %d attempt(s) (%s): %s",
            unit.work_unit_id,
            unit.attempt,
            failure.category.value,
            failure.message,
        )
        if handler is not None:
            self._persist_error(unit=unit, handler=handler, failure=failure, failed_at=now)
            self._notify(
                handler,
                unit,
                {
                    "type": "failed",
                    "work_unit_id": unit.work_unit_id,
                    "error_type": failure.category.value,
                    "message": failure.message,
                },
            )
        return RetryOutcome(retried=False, deferred=False, failed=True)

    def _persist_error(
        self,
        *,
        unit: WorkUnitView,
        handler: WorkflowHandler,
        failure: _Failure,
        failed_at: datetime,
    ) -> None:
        entity_key = handler.error_entity_key(unit)
        if entity_key is None:
            return
        entry = {
            "work_unit_id": unit.work_unit_id,
            "event_type": unit.event_type.value,
            "error_type": failure.category.value,
            "message": failure.message,
            "failed_at": failed_at.isoformat(),
        }

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            errors = list(current.get("processing_errors") or [])
            errors.append(entry)
            current["processing_errors"] = errors[-MAX_PERSISTED_ERRORS:]
            return current

        self.repository.persist_entity(entity_key, _merge)

    def _notify(
        self,
        handler: WorkflowHandler,
        unit: WorkUnitView,
        event: dict[str, Any],
    ) -> None:
        channel_key = handler.channel_key(unit)
        if channel_key is None:
            return
        self.notifier.notify(channel_key, event)

    def _record_outcome(self, summary: WorkerRunSummary, outcome: RetryOutcome) -> None:
        summary.retried += int(outcome.retried)
        summary.deferred += int(outcome.deferred)
        summary.failed += int(outcome.failed)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _failure_from_exception(error: BaseException) -> _Failure:
    classification: FailureClassification = classify_exception(error)
    retry_after = getattr(error, "retry_after", None)
    return _Failure(
        category=classification.category,
        message=error_message(error),
        retry_after_seconds=float(retry_after) if isinstance(retry_after, int | float) else None,
        details={"stage": "prepare", "classifier": classification.to_event_details()},
    )


def _failure_from_run(record: RunRecord) -> _Failure:
    failed_step = record.failed_step
    if failed_step is None or failed_step.error is None:
        return _Failure(
            category=ErrorCategory.UNKNOWN,
            message="Run failed without a failing required step.",
            retry_after_seconds=None,
            details={"run_id": record.run_id},
        )
    return _Failure(
        category=failed_step.error.category,
        message=failed_step.error.message,
        retry_after_seconds=failed_step.error.retry_after_seconds,
        details={
            "run_id": record.run_id,
            "step_name": failed_step.step_name,
            "step_attempt": failed_step.attempt,
        },
    )
