"""Fan-out of one form event to the form's configured integrations (`integration_triggered`)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentform.forms.base import (
    FormWorkflowDeps,
    FormWorkflowHandler,
    question_response_key,
    response_key,
)
from agentform.forms.contracts import FormEventPayload
from agentform.integrations.registry import IntegrationContext, IntegrationRegistry
from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.failure_classifier import classify_exception
from agentform.orchestrator.models import ErrorCategory, EventType, WorkUnitView
from agentform.orchestrator.registry import WorkflowPlan
from agentform.orchestrator.retry_policy import BackoffStrategy, RetryPolicy, RetryRules
from agentform.orchestrator.step_runner import StepOutcome
from agentform.orchestrator.workflow import StepDescriptor

logger = logging.getLogger(__name__)

VALID_TRIGGER_EVENTS = (
    "form_completed",
    "response_updated",
    "question_answered",
    "form_abandoned",
)
DEFAULT_TRIGGER_EVENTS = ("form_completed",)
MAX_HISTORY_ENTRIES = 10

_FATAL = frozenset({ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND})

INTEGRATION_STEP_RULES = RetryRules(
    policies=(
        RetryPolicy(
            max_attempts=5,
            base_delay_seconds=5.0,
            backoff=BackoffStrategy.FIXED,
            retryable_categories=frozenset({ErrorCategory.TIMEOUT}),
            fatal_categories=_FATAL,
        ),
        RetryPolicy(
            max_attempts=3,
            base_delay_seconds=10.0,
            backoff=BackoffStrategy.FIXED,
            retryable_categories=frozenset({ErrorCategory.EXTERNAL_API_ERROR}),
            fatal_categories=_FATAL,
        ),
    ),
    fatal_categories=_FATAL,
)

INTEGRATION_TRIGGER_RULES = RetryRules(
    policies=(
        *INTEGRATION_STEP_RULES.policies,
        RetryPolicy(
            max_attempts=3,
            base_delay_seconds=3.0,
            backoff=BackoffStrategy.POLYNOMIAL,
            fatal_categories=_FATAL,
        ),
    ),
    fatal_categories=_FATAL,
)


def enabled_integrations(
    integration_settings: dict[str, Any],
    trigger_event: str,
) -> list[tuple[str, dict[str, Any]]]:
    """Enabled integrations subscribed to `trigger_event`, in configuration order."""

    selected: list[tuple[str, dict[str, Any]]] = []
    for name, config in integration_settings.items():
        if not isinstance(config, dict) or not config.get("enabled"):
            continue
        trigger_events = config.get("trigger_events") or list(DEFAULT_TRIGGER_EVENTS)
        if trigger_event in trigger_events:
            selected.append((str(name), config))
    return selected


@dataclass(slots=True)
class _TriggerRun:
    event: FormEventPayload
    trigger_event: str
    outcomes: dict[str, dict[str, Any]] = field(default_factory=dict)


class IntegrationTriggerWorkflow(FormWorkflowHandler):
    event_type = EventType.INTEGRATION_TRIGGERED
    queue_name = "integrations"
    retry_rules = INTEGRATION_TRIGGER_RULES

    def __init__(self, deps: FormWorkflowDeps, integrations: IntegrationRegistry) -> None:
        super().__init__(deps)
        self.integrations = integrations

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan:
        event = self.parse(unit)
        trigger_event = event.require_extra("trigger_event")
        self._validate(event, trigger_event)

        run = _TriggerRun(event=event, trigger_event=trigger_event)
        selected = enabled_integrations(event.form.integration_settings, trigger_event)
        if not selected:
            logger.info(
                "No integrations subscribed to %s for form %s",
                trigger_event,
                event.form.form_id,
            )
            return WorkflowPlan(
                steps=[
                    StepDescriptor(
                        "integrations",
                        False,
                        lambda: StepOutcome.skip("no_enabled_integrations"),
                    ),
                ],
                metadata={"trigger_event": trigger_event},
            )

        steps = [
            StepDescriptor(
                f"integration:{name}",
                False,
                self._integration_step(run, name, config),
                retry_policy=INTEGRATION_STEP_RULES,
            )
            for name, config in selected
        ]
        steps.append(
            StepDescriptor("update_integration_tracking", False, lambda: self._track(run)),
        )
        return WorkflowPlan(
            steps=steps,
            metadata={
                "trigger_event": trigger_event,
                "integrations": [name for name, _config in selected],
            },
        )

    def _validate(self, event: FormEventPayload, trigger_event: str) -> None:
        if not event.form.integrations_enabled:
            raise ValidationError(f"Integrations are disabled for form {event.form.form_id}")
        if not event.user.can_use_integrations:
            raise ValidationError(
                f"User {event.user.user_id} does not have integrations available",
            )
        if trigger_event not in VALID_TRIGGER_EVENTS:
            raise ValidationError(f"Invalid trigger event: {trigger_event}")
        if trigger_event == "form_completed" and not event.response.completed:
            raise ValidationError("Form completed trigger requires a completed response")
        if trigger_event == "form_abandoned" and not event.response.abandoned:
            raise ValidationError("Form abandoned trigger requires an abandoned response")

    def _integration_step(
        self,
        run: _TriggerRun,
        name: str,
        config: dict[str, Any],
    ) -> Callable[[], StepOutcome]:
        def _deliver() -> StepOutcome:
            context = IntegrationContext(
                name=name,
                trigger_event=run.trigger_event,
                config=config,
                event=run.event,
                timestamp=self.now(),
                answer_analyses=self._answer_analyses(run.event),
                response_analysis=self._response_analysis(run.event),
            )
            try:
                handler = self.integrations.resolve(name, config)
                side_effects = handler(context)
            except Exception as error:
                run.outcomes[name] = {
                    "status": "failed",
                    "error_type": classify_exception(error).category.value,
                }
                raise
            run.outcomes[name] = {"status": "success"}
            logger.info(
                "Integration %s delivered %s for response %s",
                name,
                run.trigger_event,
                run.event.response.response_id,
            )
            return StepOutcome(side_effects=side_effects)

        return _deliver

    def _track(self, run: _TriggerRun) -> StepOutcome:
        if not run.outcomes:
            return StepOutcome.skip("no_integration_results")
        entry = {
            "trigger_event": run.trigger_event,
            "timestamp": self.now().isoformat(),
            "results": dict(run.outcomes),
        }

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            history = list(current.get("integration_history") or [])
            history.append(entry)
            current["integration_history"] = history[-MAX_HISTORY_ENTRIES:]
            return current

        stored = self.deps.entities.persist_entity(
            response_key(run.event.response.response_id),
            _merge,
        )
        succeeded = sum(1 for item in run.outcomes.values() if item["status"] == "success")
        return StepOutcome(
            side_effects={
                "succeeded": succeeded,
                "failed": len(run.outcomes) - succeeded,
                "history_entries": len(stored["integration_history"]),
            },
        )

    def _answer_analyses(self, event: FormEventPayload) -> dict[str, dict[str, Any]]:
        analyses: dict[str, dict[str, Any]] = {}
        for answer in event.answers:
            stored = self.deps.entities.get_entity(
                question_response_key(answer.question_response_id),
            )
            if stored and stored.get("ai_analysis_results"):
                analysis = stored["ai_analysis_results"]
                analyses[answer.question_response_id] = {
                    "sentiment": analysis.get("sentiment"),
                    "quality": analysis.get("quality"),
                    "confidence_score": stored.get("ai_confidence_score"),
                }
        return analyses

    def _response_analysis(self, event: FormEventPayload) -> dict[str, Any] | None:
        stored = self.deps.entities.get_entity(response_key(event.response.response_id)) or {}
        analysis = stored.get("ai_analysis")
        return analysis if isinstance(analysis, dict) else None
