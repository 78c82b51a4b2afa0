"""Follow-up question generation for an in-progress response (`dynamic_question_requested`)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from agentform.forms.base import (
    FormWorkflowHandler,
    analytics_key,
    dynamic_question_key,
    response_key,
)
from agentform.forms.contracts import AnswerSnapshot, FormEventPayload
from agentform.forms.llm import DYNAMIC_QUESTION_WORKFLOW
from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.models import ErrorCategory, EventType, WorkUnitView
from agentform.orchestrator.registry import WorkflowPlan
from agentform.orchestrator.retry_policy import BackoffStrategy, RetryPolicy, RetryRules
from agentform.orchestrator.step_runner import StepOutcome
from agentform.orchestrator.workflow import StepDescriptor

logger = logging.getLogger(__name__)

ESTIMATED_QUESTION_COST = 0.025
COMPLETED_RESPONSE_GRACE = timedelta(hours=1)
EXISTING_TITLE_SIMILARITY = 0.8
SOURCE_TITLE_SIMILARITY = 0.7

DYNAMIC_QUESTION_RULES = RetryRules(
    policies=(
        RetryPolicy(
            max_attempts=2,
            base_delay_seconds=3.0,
            backoff=BackoffStrategy.POLYNOMIAL,
        ),
    ),
    fatal_categories=frozenset({ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND}),
)

_WORD_SPLIT = re.compile(r"\W+")


def text_similarity(left: str, right: str) -> float:
    """Word-set overlap ratio (shared words / distinct words)."""

    left_words = {word for word in _WORD_SPLIT.split(left.lower()) if word}
    right_words = {word for word in _WORD_SPLIT.split(right.lower()) if word}
    if not left_words or not right_words:
        return 0.0
    return len(left_words & right_words) / len(left_words | right_words)


@dataclass(slots=True)
class _GenerationRun:
    unit: WorkUnitView
    event: FormEventPayload
    source: AnswerSnapshot
    existing_titles: list[str]
    question: dict[str, Any] | None = None
    dynamic_question_id: str | None = None


class DynamicQuestionWorkflow(FormWorkflowHandler):
    event_type = EventType.DYNAMIC_QUESTION_REQUESTED
    queue_name = "ai_processing"
    retry_rules = DYNAMIC_QUESTION_RULES

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan:
        event = self.parse(unit)
        source = event.answer_for_question(event.require_extra("source_question_id"))
        question = source.question
        form = event.form

        if not form.ai_enhanced:
            raise ValidationError(f"Form {form.form_id} does not have AI features enabled")
        if not question.generates_followups:
            raise ValidationError(
                f"Source question {question.question_id} is not configured "
                "for follow-up generation",
            )
        if not event.user.can_use_ai:
            raise ValidationError(
                f"User {event.user.user_id} does not have AI features available",
            )

        response_state = self.deps.entities.get_entity(
            response_key(event.response.response_id),
        ) or {}
        generated = [
            item for item in response_state.get("dynamic_questions") or [] if isinstance(item, dict)
        ]
        if len(generated) >= form.max_dynamic_questions:
            raise ValidationError(
                "Maximum dynamic questions limit reached "
                f"({len(generated)}/{form.max_dynamic_questions})",
            )
        from_source = sum(
            1 for item in generated if item.get("source_question_id") == question.question_id
        )
        if from_source >= question.max_followups:
            raise ValidationError(
                "Maximum follow-ups for this question reached "
                f"({from_source}/{question.max_followups})",
            )
        completed_at = event.response.completed_at
        if (
            event.response.completed
            and completed_at is not None
            and completed_at < self.now() - COMPLETED_RESPONSE_GRACE
        ):
            raise ValidationError("Form response was completed too long ago for dynamic questions")
        if not source.has_answer:
            raise ValidationError("Source question response has no answer data")
        self.acquire_form_slot(event)

        run = _GenerationRun(
            unit=unit,
            event=event,
            source=source,
            existing_titles=[item.title for item in form.questions]
            + [str(item.get("title", "")) for item in generated],
        )
        return WorkflowPlan(
            steps=[
                StepDescriptor("generate_question", True, lambda: self._generate(run)),
                StepDescriptor("store_question", True, lambda: self._store(run)),
                StepDescriptor("update_form_analytics", False, lambda: self._analytics(run)),
                StepDescriptor("notify_client", False, lambda: self._notify(run)),
            ],
            metadata={"source_question_id": question.question_id},
        )

    def _generate(self, run: _GenerationRun) -> StepOutcome:
        user_id = run.event.user.user_id
        if not self.has_credits(user_id):
            return StepOutcome.skip("insufficient_credits")
        remaining = self.deps.credits.remaining(user_id)
        if remaining < ESTIMATED_QUESTION_COST:
            return StepOutcome.skip("insufficient_budget", remaining_credits=remaining)

        output = self.call_llm(
            DYNAMIC_QUESTION_WORKFLOW,
            {
                "form_response_id": run.event.response.response_id,
                "source_question_id": run.source.question.question_id,
                "source_question_title": run.source.question.title,
                "source_answer": run.source.answer_text,
                "generation_trigger": str(run.event.extra.get("trigger", "manual")),
            },
        )
        title = str(output.get("title") or "").strip()
        if not title:
            return StepOutcome.skip(str(output.get("reason") or "generation_skipped"))
        run.question = {
            "title": title,
            "question_type": str(output.get("question_type") or "text_short"),
            "strategy": output.get("strategy") or {},
            "reasoning": output.get("reasoning", ""),
            "ai_cost": float(output.get("ai_cost") or ESTIMATED_QUESTION_COST),
        }
        return StepOutcome(side_effects={"title": title})

    def _store(self, run: _GenerationRun) -> StepOutcome:
        question = run.question
        if question is None:
            return StepOutcome.skip("no_question_generated")
        title = question["title"]
        if any(
            text_similarity(title, existing) > EXISTING_TITLE_SIMILARITY
            for existing in run.existing_titles
        ):
            logger.info("Generated question too similar to an existing question: %s", title)
            return StepOutcome.skip("too_similar_to_existing")
        if text_similarity(title, run.source.question.title) > SOURCE_TITLE_SIMILARITY:
            logger.info("Generated question too similar to its source question: %s", title)
            return StepOutcome.skip("too_similar_to_source")

        dynamic_question_id = f"dq-{run.unit.work_unit_id}"
        created_at = self.now().isoformat()
        source_question_id = run.source.question.question_id
        document = {
            "id": dynamic_question_id,
            "form_response_id": run.event.response.response_id,
            "source_question_id": source_question_id,
            "created_at": created_at,
            **question,
        }
        self.deps.entities.persist_entity(
            dynamic_question_key(dynamic_question_id),
            lambda current: {**current, **document},
        )

        def _link(current: dict[str, Any]) -> dict[str, Any]:
            links = [
                item
                for item in current.get("dynamic_questions") or []
                if item.get("id") != dynamic_question_id
            ]
            links.append(
                {
                    "id": dynamic_question_id,
                    "source_question_id": source_question_id,
                    "title": title,
                },
            )
            current["dynamic_questions"] = links
            return current

        self.deps.entities.persist_entity(response_key(run.event.response.response_id), _link)
        remaining = self.deps.credits.debit(run.event.user.user_id, question["ai_cost"])
        run.dynamic_question_id = dynamic_question_id
        return StepOutcome(
            side_effects={
                "dynamic_question_id": dynamic_question_id,
                "ai_cost": question["ai_cost"],
                "remaining_credits": remaining,
            },
        )

    def _analytics(self, run: _GenerationRun) -> StepOutcome:
        if run.dynamic_question_id is None or run.question is None:
            return StepOutcome.skip("no_question_stored")
        now = self.now()
        question = run.question
        strategy_type = (question.get("strategy") or {}).get("type")

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            metrics = dict(current.get("dynamic_questions") or {})
            metrics["generated_count"] = int(metrics.get("generated_count", 0)) + 1
            metrics["total_ai_cost"] = round(
                float(metrics.get("total_ai_cost", 0.0)) + question["ai_cost"],
                6,
            )
            metrics["last_generated_at"] = now.isoformat()
            if strategy_type:
                counts = dict(metrics.get("strategy_counts") or {})
                counts[strategy_type] = int(counts.get(strategy_type, 0)) + 1
                metrics["strategy_counts"] = counts
            current["dynamic_questions"] = metrics
            return current

        stored = self.deps.entities.persist_entity(
            analytics_key(run.event.form.form_id, now.date().isoformat()),
            _merge,
        )
        return StepOutcome(
            side_effects={"generated_count": stored["dynamic_questions"]["generated_count"]},
        )

    def _notify(self, run: _GenerationRun) -> StepOutcome:
        if run.dynamic_question_id is None or run.question is None:
            return StepOutcome.skip("no_question_stored")
        channel_key = self.channel_key(run.unit)
        if channel_key is None:
            return StepOutcome.skip("no_channel")
        self.deps.notifier.notify(
            channel_key,
            {
                "type": "dynamic_question_ready",
                "work_unit_id": run.unit.work_unit_id,
                "dynamic_question_id": run.dynamic_question_id,
                "title": run.question["title"],
                "question_type": run.question["question_type"],
            },
        )
        return StepOutcome(side_effects={"channel_key": channel_key})
