from __future__ import annotations

from typing import Any

import allure
import pytest

from agentform.forms.base import FormWorkflowDeps
from agentform.forms.completion import CompletionWorkflow, running_average
from agentform.orchestrator.errors import DependencyTimeoutError, ValidationError
from agentform.orchestrator.models import (
    ErrorCategory,
    EventType,
    RunRecord,
    RunStatus,
    StepStatus,
    WorkUnitCreate,
    WorkUnitView,
)
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.orchestrator.step_runner import StepRunner
from agentform.orchestrator.workflow import WorkflowOrchestrator

pytestmark = [
    allure.epic("Form Jobs"),
    allure.feature("Form Completion"),
]

ANALYTICS_KEY = "form_analytics:form-1:2026-10-16"


def _unit(repository: OrchestratorRepository, payload: dict[str, Any]) -> WorkUnitView:
    return repository.enqueue(WorkUnitCreate(event_type=EventType.FORM_COMPLETED, payload=payload))


def _run(deps: FormWorkflowDeps, unit: WorkUnitView) -> RunRecord:
    plan = CompletionWorkflow(deps).prepare(unit)
    orchestrator = WorkflowOrchestrator(step_runner=StepRunner(sleep=lambda _delay: None))
    return orchestrator.run_workflow(unit.work_unit, plan.steps)


def _side_effects(record: RunRecord, step_name: str) -> dict[str, Any]:
    return record.results_for(step_name)[-1].side_effects


def test_completion_updates_analytics_and_queues_analysis(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
    enqueue,
) -> None:
    record = _run(form_deps, _unit(repository, make_payload()))

    assert record.status == RunStatus.COMPLETED
    assert [result.step_name for result in record.step_results] == [
        "update_analytics",
        "update_question_analytics",
        "trigger_integrations",
        "queue_ai_analysis",
        "update_completion_metrics",
        "send_notifications",
    ]
    analytics = repository.get_entity(ANALYTICS_KEY)
    assert analytics is not None
    assert analytics["completions"] == 1
    assert analytics["avg_completion_time"] == pytest.approx(10.0)
    assert analytics["questions"]["q-1"]["answered"] == 1
    assert _side_effects(record, "trigger_integrations") == {
        "skip_reason": "integrations_disabled",
    }
    assert [call[0] for call in enqueue.calls] == [EventType.RESPONSE_ANALYZED]
    assert enqueue.calls[0][1]["question_response_id"] == "qr-1"
    assert repository.get_entity("form:form-1") == {
        "completion_count": 1,
        "completion_rate": 10.0,
        "last_completion_at": "2026-10-16T11:55:00+00:00",
    }
    assert record.results_for("send_notifications")[0].status == StepStatus.SKIPPED


def test_analytics_counted_once_per_response(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = make_payload()
    _run(form_deps, _unit(repository, payload))

    second = _run(form_deps, _unit(repository, payload))

    assert _side_effects(second, "update_analytics") == {"skip_reason": "already_counted"}
    analytics = repository.get_entity(ANALYTICS_KEY)
    assert analytics is not None and analytics["completions"] == 1


def test_completion_folds_response_ai_scores_into_daily_averages(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    repository.persist_entity(
        "form_response:resp-1",
        lambda current: {
            **current,
            "ai_analysis": {"overall_sentiment": 0.8, "overall_quality": 0.6},
        },
    )

    _run(form_deps, _unit(repository, make_payload()))

    analytics = repository.get_entity(ANALYTICS_KEY)
    assert analytics is not None
    assert analytics["avg_sentiment"] == pytest.approx(0.8)
    assert analytics["avg_quality"] == pytest.approx(0.6)


def test_transient_integration_failure_is_retried_inline(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
    enqueue,
) -> None:
    enqueue.errors.append(DependencyTimeoutError("queue write timed out"))

    record = _run(form_deps, _unit(repository, make_payload(integrations_enabled=True)))

    attempts = record.results_for("trigger_integrations")
    assert record.status == RunStatus.COMPLETED
    assert [result.status for result in attempts] == [StepStatus.FAILURE, StepStatus.SUCCESS]
    assert attempts[0].error is not None
    assert attempts[0].error.category == ErrorCategory.TIMEOUT
    assert enqueue.calls[0][0] == EventType.INTEGRATION_TRIGGERED
    assert enqueue.calls[0][1]["trigger_event"] == "form_completed"


def test_fatal_optional_failure_yields_partial(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    form_deps.enqueue.errors.append(ValidationError("queue rejected payload"))

    record = _run(form_deps, _unit(repository, make_payload(integrations_enabled=True)))

    assert record.status == RunStatus.PARTIAL
    assert len(record.results_for("trigger_integrations")) == 1
    assert record.results_for("update_completion_metrics")[0].status == StepStatus.SUCCESS


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"ai_enhanced": False}, "ai_disabled"),
        ({"can_use_ai": False}, "user_cannot_use_ai"),
        ({"responses_count": 3}, "not_enough_responses"),
        ({"answers": []}, "no_ai_enhanced_answers"),
    ],
)
def test_ai_analysis_skip_reasons(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
    enqueue,
    overrides: dict[str, Any],
    reason: str,
) -> None:
    record = _run(form_deps, _unit(repository, make_payload(**overrides)))

    result = record.results_for("queue_ai_analysis")[0]
    assert result.status == StepStatus.SKIPPED
    assert result.side_effects["skip_reason"] == reason
    assert enqueue.calls == []


def test_completion_notifications_report_channels(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = make_payload(
        notification_settings={
            "completion": {
                "enabled": True,
                "email_recipients": ["owner@example.com"],
                "slack_channel": "#forms",
            },
        },
    )

    record = _run(form_deps, _unit(repository, payload))

    assert _side_effects(record, "send_notifications") == {"channels": ["email", "slack"]}


def test_enabled_notifications_without_channels_are_skipped(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = make_payload(notification_settings={"completion": {"enabled": True}})

    record = _run(form_deps, _unit(repository, payload))

    assert _side_effects(record, "send_notifications") == {
        "skip_reason": "no_channels_configured",
    }


@pytest.mark.parametrize("status", ["in_progress", "abandoned"])
def test_incomplete_response_is_rejected(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
    make_payload,
    status: str,
) -> None:
    unit = _unit(repository, make_payload(status=status))

    with pytest.raises(ValidationError, match="is not completed"):
        CompletionWorkflow(form_deps).prepare(unit)


def test_malformed_payload_is_rejected(
    form_deps: FormWorkflowDeps,
    repository: OrchestratorRepository,
) -> None:
    unit = _unit(repository, {"form": {"id": "form-1"}})

    with pytest.raises(ValidationError, match="payload.user"):
        CompletionWorkflow(form_deps).prepare(unit)


def test_running_average() -> None:
    assert running_average(None, 1, 10.0) == 10.0
    assert running_average(10.0, 2, 20.0) == 15.0
    assert running_average(15.0, 3, 0.0) == 10.0
