from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

import allure
import httpx
import pytest

from agentform.forms.base import FormWorkflowDeps
from agentform.forms.integration_trigger import (
    IntegrationTriggerWorkflow,
    enabled_integrations,
)
from agentform.http.client import HttpPoster
from agentform.integrations.dispatcher import WebhookDispatcher, sign_payload
from agentform.integrations.registry import IntegrationRegistry, IntegrationType
from agentform.orchestrator.errors import ValidationError
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
    allure.feature("Integration Trigger"),
]

WEBHOOK_URL = "https://hooks.example.com/agentform"
SLACK_URL = "https://slack.example.com/services/T/B/X"


class _Endpoints:
    """Mock transport that records requests and answers per URL."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responders: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.responders.get(str(request.url))
        if responder is None:
            return httpx.Response(200, text="ok")
        return responder(request)

    def to(self, url: str) -> list[httpx.Request]:
        return [request for request in self.requests if str(request.url) == url]


@pytest.fixture()
def endpoints() -> _Endpoints:
    return _Endpoints()


@pytest.fixture()
def workflow(
    form_deps: FormWorkflowDeps,
    endpoints: _Endpoints,
) -> Iterator[IntegrationTriggerWorkflow]:
    poster = HttpPoster(transport=httpx.MockTransport(endpoints))
    yield IntegrationTriggerWorkflow(
        form_deps,
        IntegrationRegistry.default(WebhookDispatcher(poster)),
    )
    poster.close()


def _settings(**extra: dict[str, Any]) -> dict[str, Any]:
    settings: dict[str, Any] = {
        "webhook": {"enabled": True, "url": WEBHOOK_URL, "secret": "s3cret"},
        "slack": {"enabled": True, "url": SLACK_URL, "channel": "#forms"},
    }
    settings.update(extra)
    return settings


def _unit(repository: OrchestratorRepository, payload: dict[str, Any]) -> WorkUnitView:
    return repository.enqueue(
        WorkUnitCreate(event_type=EventType.INTEGRATION_TRIGGERED, payload=payload),
    )


def _run(workflow: IntegrationTriggerWorkflow, unit: WorkUnitView) -> RunRecord:
    plan = workflow.prepare(unit)
    orchestrator = WorkflowOrchestrator(step_runner=StepRunner(sleep=lambda _delay: None))
    return orchestrator.run_workflow(unit.work_unit, plan.steps)


def _payload(make_payload, **settings: dict[str, Any]) -> dict[str, Any]:
    return make_payload(
        integrations_enabled=True,
        integration_settings=_settings(**settings),
        trigger_event="form_completed",
    )


def test_delivers_signed_webhook_and_slack_message(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    record = _run(workflow, _unit(repository, _payload(make_payload)))

    assert record.status == RunStatus.COMPLETED
    assert [result.step_name for result in record.step_results] == [
        "integration:webhook",
        "integration:slack",
        "update_integration_tracking",
    ]
    webhook = endpoints.to(WEBHOOK_URL)[0]
    assert webhook.headers["X-Signature"] == sign_payload(webhook.content, "s3cret")
    assert webhook.headers["X-AgentForm-Event"] == "form_completed"
    assert webhook.headers["X-AgentForm-Response-Id"] == "resp-1"
    body = json.loads(webhook.content)
    assert body["event"] == "form_completed"
    assert body["form"]["id"] == "form-1"
    assert set(body["answers"]) == {"q-1", "q-2"}

    slack = json.loads(endpoints.to(SLACK_URL)[0].content)
    assert slack["text"] == "New form submission received for 'Customer Onboarding'"
    assert slack["channel"] == "#forms"
    assert "X-Signature" not in endpoints.to(SLACK_URL)[0].headers

    response_state = repository.get_entity("form_response:resp-1")
    assert response_state is not None
    history = response_state["integration_history"]
    assert history[0]["results"] == {
        "webhook": {"status": "success"},
        "slack": {"status": "success"},
    }


def test_server_errors_retry_then_isolate_failure(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    endpoints.responders[WEBHOOK_URL] = lambda _request: httpx.Response(503, text="down")

    record = _run(workflow, _unit(repository, _payload(make_payload)))

    attempts = record.results_for("integration:webhook")
    assert record.status == RunStatus.PARTIAL
    assert len(attempts) == 3
    assert all(
        result.error is not None and result.error.category == ErrorCategory.EXTERNAL_API_ERROR
        for result in attempts
    )
    assert record.results_for("integration:slack")[0].status == StepStatus.SUCCESS
    tracking = record.results_for("update_integration_tracking")[0].side_effects
    assert tracking == {"succeeded": 1, "failed": 1, "history_entries": 1}
    response_state = repository.get_entity("form_response:resp-1")
    assert response_state is not None
    assert response_state["integration_history"][0]["results"]["webhook"] == {
        "status": "failed",
        "error_type": "external_api_error",
    }


def test_timeouts_retry_up_to_five_attempts(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    endpoints.responders[WEBHOOK_URL] = _timeout

    record = _run(workflow, _unit(repository, _payload(make_payload)))

    attempts = record.results_for("integration:webhook")
    assert len(attempts) == 5
    assert attempts[-1].error is not None
    assert attempts[-1].error.category == ErrorCategory.TIMEOUT


@pytest.mark.parametrize(
    ("status_code", "category"),
    [(404, ErrorCategory.NOT_FOUND), (400, ErrorCategory.VALIDATION)],
)
def test_client_errors_are_not_retried(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
    status_code: int,
    category: ErrorCategory,
) -> None:
    endpoints.responders[WEBHOOK_URL] = lambda _request: httpx.Response(status_code)

    record = _run(workflow, _unit(repository, _payload(make_payload)))

    attempts = record.results_for("integration:webhook")
    assert len(attempts) == 1
    assert attempts[0].error is not None
    assert attempts[0].error.category == category


def test_unknown_integration_type_fails_its_step_only(
    workflow: IntegrationTriggerWorkflow,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = _payload(make_payload, teams={"enabled": True, "url": "https://teams.example.com"})

    record = _run(workflow, _unit(repository, payload))

    teams = record.results_for("integration:teams")
    assert record.status == RunStatus.PARTIAL
    assert len(teams) == 1
    assert teams[0].error is not None
    assert "Unknown integration type: teams" in teams[0].error.message


def test_email_and_crm_integrations(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = make_payload(
        integrations_enabled=True,
        integration_settings={
            "hubspot": {"enabled": True, "url": "https://crm.example.com/relay"},
            "email": {"enabled": True, "email_type": "admin_alert", "recipients": ["a", "b"]},
        },
        trigger_event="form_completed",
    )

    record = _run(workflow, _unit(repository, payload))

    assert record.status == RunStatus.COMPLETED
    assert record.results_for("integration:email")[0].side_effects == {
        "email_type": "admin_alert",
        "recipients": 2,
        "recorded": True,
    }
    crm_body = json.loads(endpoints.to("https://crm.example.com/relay")[0].content)
    assert crm_body["provider"] == "hubspot"
    assert crm_body["object_type"] == "lead"
    assert crm_body["record"]["response"]["id"] == "resp-1"


def test_no_subscribed_integrations_skips(
    workflow: IntegrationTriggerWorkflow,
    endpoints: _Endpoints,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = make_payload(
        integrations_enabled=True,
        integration_settings={
            "webhook": {"enabled": False, "url": WEBHOOK_URL},
            "slack": {"enabled": True, "url": SLACK_URL, "trigger_events": ["form_abandoned"]},
        },
        trigger_event="form_completed",
    )

    record = _run(workflow, _unit(repository, payload))

    assert record.status == RunStatus.COMPLETED
    assert [result.step_name for result in record.step_results] == ["integrations"]
    assert record.step_results[0].side_effects == {"skip_reason": "no_enabled_integrations"}
    assert endpoints.requests == []


@pytest.mark.parametrize(
    ("overrides", "match"),
    [
        ({"integrations_enabled": False}, "Integrations are disabled"),
        ({"can_use_integrations": False}, "does not have integrations available"),
        ({"trigger_event": "form_deleted"}, "Invalid trigger event"),
        ({"trigger_event": "form_abandoned"}, "requires an abandoned response"),
        ({"status": "in_progress"}, "requires a completed response"),
    ],
)
def test_prerequisites(
    workflow: IntegrationTriggerWorkflow,
    repository: OrchestratorRepository,
    make_payload,
    overrides: dict[str, Any],
    match: str,
) -> None:
    params: dict[str, Any] = {
        "integrations_enabled": True,
        "integration_settings": _settings(),
        "trigger_event": "form_completed",
    }
    params.update(overrides)
    unit = _unit(repository, make_payload(**params))

    with pytest.raises(ValidationError, match=match):
        workflow.prepare(unit)


def test_history_keeps_last_ten_entries(
    workflow: IntegrationTriggerWorkflow,
    repository: OrchestratorRepository,
    make_payload,
) -> None:
    payload = _payload(make_payload)
    for _ in range(12):
        _run(workflow, _unit(repository, payload))

    response_state = repository.get_entity("form_response:resp-1")
    assert response_state is not None
    assert len(response_state["integration_history"]) == 10


def test_enabled_integrations_default_to_form_completed() -> None:
    settings = {
        "webhook": {"enabled": True},
        "zapier": {"enabled": True, "trigger_events": ["form_abandoned"]},
        "slack": {"enabled": False},
    }

    assert [name for name, _ in enabled_integrations(settings, "form_completed")] == ["webhook"]
    assert [name for name, _ in enabled_integrations(settings, "form_abandoned")] == ["zapier"]


@pytest.mark.parametrize(
    ("name", "config", "expected"),
    [
        ("webhook", {}, IntegrationType.WEBHOOK),
        ("salesforce", {}, IntegrationType.CRM),
        ("ops-hook", {"type": "Zapier"}, IntegrationType.ZAPIER),
    ],
)
def test_integration_type_resolution(
    name: str,
    config: dict[str, Any],
    expected: IntegrationType,
) -> None:
    assert IntegrationRegistry.type_for(name, config) == expected
