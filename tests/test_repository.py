from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from agentform.orchestrator.models import (
    ErrorCategory,
    EventType,
    RunRecord,
    RunStatus,
    StepError,
    StepResult,
    StepStatus,
    WorkUnitCreate,
    WorkUnitStatus,
)
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Work Unit Repository"),
]


def _create(
    work_unit_id: str,
    *,
    queue_name: str = "default",
    priority: int = 100,
    max_attempts: int = 3,
    delay_seconds: float = 0.0,
) -> WorkUnitCreate:
    return WorkUnitCreate(
        event_type=EventType.FORM_COMPLETED,
        payload={"response": {"id": f"resp-{work_unit_id}"}},
        work_unit_id=work_unit_id,
        queue_name=queue_name,
        priority=priority,
        max_attempts=max_attempts,
        run_after=utc_now() + timedelta(seconds=delay_seconds) if delay_seconds else None,
    )


def test_enqueue_and_claim(repository: OrchestratorRepository) -> None:
    created = repository.enqueue(_create("wu-1"))

    claimed = repository.claim_next_ready(worker_id="worker-a")

    assert created.status == WorkUnitStatus.QUEUED
    assert created.attempt == 0
    assert claimed is not None
    assert claimed.work_unit_id == "wu-1"
    assert claimed.status == WorkUnitStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "worker-a"
    assert repository.claim_next_ready(worker_id="worker-b") is None


def test_duplicate_work_unit_id_rejected(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))

    with pytest.raises(RuntimeError, match="already exists"):
        repository.enqueue(_create("wu-1"))


def test_claim_respects_priority_queue_and_run_after(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("later", priority=1, delay_seconds=3_600))
    repository.enqueue(_create("low", priority=200))
    repository.enqueue(_create("high", priority=10))
    repository.enqueue(_create("hooks", priority=1, queue_name="integrations"))

    first = repository.claim_next_ready(worker_id="w", queues=["default"])
    second = repository.claim_next_ready(worker_id="w", queues=["default"])
    third = repository.claim_next_ready(worker_id="w", queues=["default"])
    hooks = repository.claim_next_ready(worker_id="w", queues=["integrations"])

    assert first is not None and first.work_unit_id == "high"
    assert second is not None and second.work_unit_id == "low"
    assert third is None
    assert hooks is not None and hooks.work_unit_id == "hooks"


def test_schedule_retry_keeps_attempt_and_defer_refunds_it(
    repository: OrchestratorRepository,
) -> None:
    repository.enqueue(_create("retry-me"))
    repository.enqueue(_create("defer-me"))
    repository.claim_next_ready(worker_id="w")
    repository.claim_next_ready(worker_id="w")
    run_after = utc_now() + timedelta(seconds=30)

    assert repository.schedule_retry(
        work_unit_id="retry-me",
        run_after=run_after,
        category=ErrorCategory.TIMEOUT,
        error_summary="llm timed out",
    )
    assert repository.defer(
        work_unit_id="defer-me",
        run_after=run_after,
        category=ErrorCategory.RATE_LIMITED,
        reason="rate limit reached",
    )

    retried = repository.get(work_unit_id="retry-me")
    deferred = repository.get(work_unit_id="defer-me")
    assert retried is not None and deferred is not None
    assert retried.status == WorkUnitStatus.QUEUED
    assert retried.attempt == 1
    assert retried.error_category == ErrorCategory.TIMEOUT
    assert deferred.status == WorkUnitStatus.QUEUED
    assert deferred.attempt == 0
    assert repository.claim_next_ready(worker_id="w") is None


def test_finish_requires_running_state(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))

    assert repository.complete(work_unit_id="wu-1", run_status=RunStatus.COMPLETED) is False

    repository.claim_next_ready(worker_id="w")
    assert repository.complete(work_unit_id="wu-1", run_status=RunStatus.PARTIAL) is True
    unit = repository.get(work_unit_id="wu-1")
    assert unit is not None
    assert unit.status == WorkUnitStatus.SUCCEEDED
    assert unit.finished_at is not None


def test_manual_retry_and_cancel(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))
    repository.claim_next_ready(worker_id="w")
    repository.fail(
        work_unit_id="wu-1",
        category=ErrorCategory.VALIDATION,
        error_summary="response not completed",
    )

    repository.retry(work_unit_id="wu-1")
    requeued = repository.get(work_unit_id="wu-1")
    repository.cancel(work_unit_id="wu-1")
    canceled = repository.get(work_unit_id="wu-1")

    assert requeued is not None
    assert requeued.status == WorkUnitStatus.QUEUED
    assert requeued.attempt == 0
    assert requeued.error_category is None
    assert canceled is not None and canceled.status == WorkUnitStatus.CANCELED
    with pytest.raises(RuntimeError, match="cannot be canceled"):
        repository.cancel(work_unit_id="wu-1")


def test_retry_rejects_active_units(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))

    with pytest.raises(RuntimeError, match="Only failed/canceled"):
        repository.retry(work_unit_id="wu-1")
    with pytest.raises(RuntimeError, match="not found"):
        repository.retry(work_unit_id="missing")


def test_recover_stale_running(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))
    repository.claim_next_ready(worker_id="crashed")

    recovered = repository.recover_stale_running(stale_after=timedelta(seconds=-1))

    unit = repository.get(work_unit_id="wu-1")
    assert recovered == 1
    assert unit is not None
    assert unit.status == WorkUnitStatus.QUEUED
    assert unit.worker_id is None


def test_record_run_and_details(repository: OrchestratorRepository) -> None:
    repository.enqueue(_create("wu-1"))
    now = utc_now()
    record = RunRecord(
        run_id="run-1",
        work_unit_id="wu-1",
        attempt_number=1,
        started_at=now,
        finished_at=now,
        step_results=[
            StepResult(
                step_name="update_analytics",
                status=StepStatus.SUCCESS,
                required=True,
                side_effects={"completions": 1},
            ),
            StepResult(
                step_name="trigger_integrations",
                status=StepStatus.FAILURE,
                required=False,
                error=StepError(category=ErrorCategory.TIMEOUT, message="timeout"),
            ),
        ],
    )

    repository.record_run(record)
    details = repository.get_details(work_unit_id="wu-1")

    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued", "run_finished"]
    assert len(details.runs) == 1
    run = details.runs[0]
    assert run.status == RunStatus.PARTIAL
    assert [result.step_name for result in run.step_results] == [
        "update_analytics",
        "trigger_integrations",
    ]
    assert run.step_results[0].side_effects == {"completions": 1}
    assert run.step_results[1].error is not None
    assert run.step_results[1].error.category == ErrorCategory.TIMEOUT
    assert len(repository.list_runs_since(since=now - timedelta(minutes=1))) == 1


def test_parent_rows_written_before_children_with_foreign_keys_on(
    repository: OrchestratorRepository,
) -> None:
    with repository.engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1

    repository.enqueue(_create("wu-1"))
    now = utc_now()
    steps = [
        StepResult(step_name=f"step-{index}", status=StepStatus.SUCCESS, required=True)
        for index in range(5)
    ]
    repository.record_run(
        RunRecord(
            run_id="run-1",
            work_unit_id="wu-1",
            attempt_number=1,
            started_at=now,
            finished_at=now,
            step_results=steps,
        ),
    )

    runs = repository.list_runs(work_unit_id="wu-1")
    assert [result.step_name for result in runs[0].step_results] == [
        f"step-{index}" for index in range(5)
    ]
    with pytest.raises(IntegrityError):
        repository.record_run(
            RunRecord(
                run_id="run-orphan",
                work_unit_id="wu-missing",
                attempt_number=1,
                started_at=now,
            ),
        )


def test_record_run_requires_start(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValueError, match="has not started"):
        repository.record_run(RunRecord(run_id="r", work_unit_id="wu", attempt_number=1))


def test_persist_entity_merges_documents(repository: OrchestratorRepository) -> None:
    def _increment(current: dict) -> dict:
        current["completions"] = int(current.get("completions", 0)) + 1
        return current

    repository.persist_entity("form:form-1", _increment)
    stored = repository.persist_entity("form:form-1", _increment)

    assert stored == {"completions": 2}
    assert repository.get_entity("form:form-1") == {"completions": 2}
    assert repository.get_entity("form:missing") is None


def test_status_events_filtering(repository: OrchestratorRepository) -> None:
    repository.add_status_event(
        channel_key="form_response:resp-1",
        event={"type": "completed", "work_unit_id": "wu-1"},
    )
    repository.add_status_event(
        channel_key="form_response:resp-2",
        event={"type": "failed", "work_unit_id": "wu-2"},
    )

    by_channel = repository.list_status_events(channel_key="form_response:resp-1")
    by_unit = repository.list_status_events(work_unit_id="wu-2")

    assert [event.event_type for event in by_channel] == ["completed"]
    assert by_unit[0].payload == {"type": "failed", "work_unit_id": "wu-2"}
    assert len(repository.list_status_events()) == 2


def test_payload_key_order_survives_storage(repository: OrchestratorRepository) -> None:
    settings = {"webhook": {"enabled": True}, "slack": {"enabled": True}, "email": {}}
    repository.enqueue(
        WorkUnitCreate(
            event_type=EventType.INTEGRATION_TRIGGERED,
            payload={"form": {"integration_settings": settings}},
            work_unit_id="wu-order",
        ),
    )

    stored = repository.get(work_unit_id="wu-order")

    assert stored is not None
    assert list(stored.payload["form"]["integration_settings"]) == ["webhook", "slack", "email"]
