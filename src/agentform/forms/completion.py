"""Post-completion processing of a form response (`form_completed`)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agentform.forms.base import (
    FormWorkflowHandler,
    analytics_key,
    form_key,
    response_key,
)
from agentform.forms.contracts import FormEventPayload
from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.models import ErrorCategory, EventType, WorkUnitView
from agentform.orchestrator.registry import WorkflowPlan
from agentform.orchestrator.retry_policy import BackoffStrategy, RetryPolicy, RetryRules
from agentform.orchestrator.step_runner import StepOutcome
from agentform.orchestrator.workflow import StepDescriptor

logger = logging.getLogger(__name__)

MIN_RESPONSES_FOR_AI_ANALYSIS = 5

COMPLETION_RULES = RetryRules(
    policies=(
        RetryPolicy(
            max_attempts=3,
            base_delay_seconds=5.0,
            backoff=BackoffStrategy.FIXED,
            retryable_categories=frozenset({ErrorCategory.NOT_FOUND}),
            fatal_categories=frozenset({ErrorCategory.VALIDATION}),
        ),
        RetryPolicy(
            max_attempts=2,
            base_delay_seconds=3.0,
            backoff=BackoffStrategy.POLYNOMIAL,
        ),
    ),
    fatal_categories=frozenset({ErrorCategory.VALIDATION}),
)

TRIGGER_INTEGRATIONS_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_seconds=5.0,
    backoff=BackoffStrategy.FIXED,
    retryable_categories=frozenset({ErrorCategory.TIMEOUT, ErrorCategory.EXTERNAL_API_ERROR}),
)


def running_average(previous: float | None, count: int, value: float) -> float:
    """Average after adding `value` as the `count`-th sample."""

    if previous is None or count <= 1:
        return round(value, 4)
    return round((previous * (count - 1) + value) / count, 4)


@dataclass(slots=True)
class _CompletionRun:
    unit: WorkUnitView
    event: FormEventPayload
    marker_key: str


class CompletionWorkflow(FormWorkflowHandler):
    event_type = EventType.FORM_COMPLETED
    queue_name = "default"
    retry_rules = COMPLETION_RULES

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan:
        event = self.parse(unit)
        response = event.response
        if not response.completed:
            raise ValidationError(
                f"Form response {response.response_id} is not completed "
                f"(status: {response.status})",
            )
        if response.completed_at is None:
            raise ValidationError(
                f"Form response {response.response_id} has no completion timestamp",
            )

        run = _CompletionRun(
            unit=unit,
            event=event,
            marker_key=self.deps.idempotency.marker_key(response.response_id, "update_analytics"),
        )
        return WorkflowPlan(
            steps=[
                StepDescriptor("update_analytics", True, lambda: self._update_analytics(run)),
                StepDescriptor(
                    "update_question_analytics",
                    False,
                    lambda: self._update_question_analytics(run),
                ),
                StepDescriptor(
                    "trigger_integrations",
                    False,
                    lambda: self._trigger_integrations(run),
                    retry_policy=TRIGGER_INTEGRATIONS_POLICY,
                ),
                StepDescriptor("queue_ai_analysis", False, lambda: self._queue_ai_analysis(run)),
                StepDescriptor(
                    "update_completion_metrics",
                    False,
                    lambda: self._update_completion_metrics(run),
                ),
                StepDescriptor("send_notifications", False, lambda: self._send_notifications(run)),
            ],
            metadata={"form_id": event.form.form_id},
        )

    def _update_analytics(self, run: _CompletionRun) -> StepOutcome:
        if not self.deps.idempotency.should_process(
            run.marker_key,
            self.deps.limits.idempotency_window_seconds,
        ):
            return StepOutcome.skip("already_counted")

        response = run.event.response
        completion_minutes: float | None = None
        if response.started_at is not None and response.completed_at is not None:
            elapsed = (response.completed_at - response.started_at).total_seconds()
            completion_minutes = max(elapsed, 0.0) / 60.0
        response_state = self.deps.entities.get_entity(response_key(response.response_id)) or {}
        ai_analysis = response_state.get("ai_analysis") or {}
        sentiment = ai_analysis.get("overall_sentiment")
        quality = ai_analysis.get("overall_quality")
        day = self.now().date().isoformat()

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            current.setdefault("form_id", run.event.form.form_id)
            current.setdefault("date", day)
            current["completions"] = int(current.get("completions", 0)) + 1
            if completion_minutes is not None:
                samples = int(current.get("completion_time_samples", 0)) + 1
                current["completion_time_samples"] = samples
                current["avg_completion_time"] = running_average(
                    current.get("avg_completion_time"),
                    samples,
                    completion_minutes,
                )
            if isinstance(sentiment, int | float):
                samples = int(current.get("sentiment_samples", 0)) + 1
                current["sentiment_samples"] = samples
                current["avg_sentiment"] = running_average(
                    current.get("avg_sentiment"),
                    samples,
                    float(sentiment),
                )
            if isinstance(quality, int | float):
                samples = int(current.get("quality_samples", 0)) + 1
                current["quality_samples"] = samples
                current["avg_quality"] = running_average(
                    current.get("avg_quality"),
                    samples,
                    float(quality),
                )
            return current

        stored = self.deps.entities.persist_entity(
            analytics_key(run.event.form.form_id, day),
            _merge,
        )
        self.deps.idempotency.mark_processed(
            run.marker_key,
            self.deps.limits.idempotency_window_seconds,
        )
        return StepOutcome(
            side_effects={
                "completions": stored["completions"],
                "avg_completion_time": stored.get("avg_completion_time"),
            },
        )

    def _update_question_analytics(self, run: _CompletionRun) -> StepOutcome:
        if not run.event.answers:
            return StepOutcome.skip("no_answers")
        day = self.now().date().isoformat()

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            stats = dict(current.get("questions") or {})
            for answer in run.event.answers:
                question_id = answer.question.question_id
                entry = dict(stats.get(question_id) or {"answered": 0, "skipped": 0})
                entry["title"] = answer.question.title
                entry["answered" if answer.has_answer else "skipped"] += 1
                stats[question_id] = entry
            current["questions"] = stats
            return current

        self.deps.entities.persist_entity(analytics_key(run.event.form.form_id, day), _merge)
        return StepOutcome(side_effects={"questions_updated": len(run.event.answers)})

    def _trigger_integrations(self, run: _CompletionRun) -> StepOutcome:
        form = run.event.form
        if not form.integrations_enabled:
            return StepOutcome.skip("integrations_disabled")
        payload = dict(run.unit.payload)
        payload["trigger_event"] = "form_completed"
        work_unit_id = self.deps.enqueue(EventType.INTEGRATION_TRIGGERED, payload)
        logger.info("Queued integrations %s for form %s", work_unit_id, form.form_id)
        return StepOutcome(side_effects={"work_unit_id": work_unit_id})

    def _queue_ai_analysis(self, run: _CompletionRun) -> StepOutcome:
        form = run.event.form
        if not form.ai_enhanced:
            return StepOutcome.skip("ai_disabled")
        if not run.event.user.can_use_ai:
            return StepOutcome.skip("user_cannot_use_ai")
        if form.responses_count < MIN_RESPONSES_FOR_AI_ANALYSIS:
            return StepOutcome.skip("not_enough_responses", responses_count=form.responses_count)

        queued: list[str] = []
        for answer in run.event.answers:
            if not answer.question.ai_enhanced or not answer.has_answer:
                continue
            payload = dict(run.unit.payload)
            payload["question_response_id"] = answer.question_response_id
            queued.append(self.deps.enqueue(EventType.RESPONSE_ANALYZED, payload))
        if not queued:
            return StepOutcome.skip("no_ai_enhanced_answers")
        logger.info("Queued %d answer analyses for form %s", len(queued), form.form_id)
        return StepOutcome(side_effects={"queued": len(queued), "work_unit_ids": queued})

    def _update_completion_metrics(self, run: _CompletionRun) -> StepOutcome:
        form = run.event.form
        completed_at = run.event.response.completed_at
        last_completion_at = completed_at.isoformat() if completed_at else None

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            completions = int(current.get("completion_count", 0)) + 1
            responses = max(form.responses_count, completions)
            current["completion_count"] = completions
            current["completion_rate"] = round(completions / responses * 100, 2)
            current["last_completion_at"] = last_completion_at
            return current

        stored = self.deps.entities.persist_entity(form_key(form.form_id), _merge)
        return StepOutcome(
            side_effects={
                "completion_count": stored["completion_count"],
                "completion_rate": stored["completion_rate"],
            },
        )

    def _send_notifications(self, run: _CompletionRun) -> StepOutcome:
        settings = run.event.form.notification_settings.get("completion") or {}
        if not isinstance(settings, dict) or not settings.get("enabled"):
            return StepOutcome.skip("notifications_disabled")

        channels: list[str] = []
        recipients = settings.get("email_recipients") or []
        if recipients:
            logger.info(
                "Completion email for form %s queued for %d recipients",
                run.event.form.form_id,
                len(recipients),
            )
            channels.append("email")
        if settings.get("slack_channel"):
            logger.info(
                "Completion Slack notice for form %s to %s",
                run.event.form.form_id,
                settings["slack_channel"],
            )
            channels.append("slack")
        if settings.get("webhook_url"):
            logger.info("Completion webhook notice for form %s", run.event.form.form_id)
            channels.append("webhook")
        if not channels:
            return StepOutcome.skip("no_channels_configured")
        return StepOutcome(side_effects={"channels": channels})
