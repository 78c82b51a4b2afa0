"""AI analysis of one answered question (`response_analyzed`)."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

from agentform.forms.base import (
    FormWorkflowHandler,
    question_response_key,
    response_key,
)
from agentform.forms.contracts import AnswerSnapshot, FormEventPayload
from agentform.forms.llm import RESPONSE_ANALYSIS_WORKFLOW
from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.models import ErrorCategory, EventType, WorkUnitView
from agentform.orchestrator.registry import WorkflowPlan
from agentform.orchestrator.retry_policy import BackoffStrategy, RetryPolicy, RetryRules
from agentform.orchestrator.step_runner import StepOutcome
from agentform.orchestrator.workflow import StepDescriptor

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = 1
BASE_ANALYSIS_COST = 0.02
MAX_COMPLEXITY_MULTIPLIER = 3.0
MAX_KEY_INSIGHTS = 5
_TEXT_TYPES = {"text_short", "text_long"}
_CHOICE_TYPES = {"multiple_choice", "single_choice"}

RESPONSE_ANALYSIS_RULES = RetryRules(
    policies=(
        RetryPolicy(
            max_attempts=2,
            base_delay_seconds=3.0,
            backoff=BackoffStrategy.POLYNOMIAL,
        ),
    ),
    fatal_categories=frozenset({ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND}),
)


def analysis_cost(answer_text: str) -> float:
    multiplier = min(1.0 + len(answer_text) / 1000.0, MAX_COMPLEXITY_MULTIPLIER)
    return round(BASE_ANALYSIS_COST * multiplier, 4)


def completeness_score(answer: AnswerSnapshot, output: dict[str, Any]) -> float:
    reported = output.get("completeness_score")
    base = float(reported) if isinstance(reported, int | float) and reported else 0.5
    if answer.question.question_type in _TEXT_TYPES:
        length_score = min(len(answer.answer_text) / 100.0, 1.0)
        base = (base + length_score) / 2.0
    elif answer.question.question_type in _CHOICE_TYPES:
        base = 1.0 if answer.has_answer else 0.0
    return round(min(base, 1.0), 3)


def confidence_score(output: dict[str, Any]) -> float:
    indicators = [
        value
        for value in (
            _dig(output, "sentiment", "confidence"),
            _dig(output, "quality", "overall_score"),
            output.get("completeness_score"),
        )
        if isinstance(value, int | float)
    ]
    if not indicators:
        return 0.5
    return round(sum(indicators) / len(indicators), 3)


def suggests_followup(output: dict[str, Any]) -> bool:
    """Moderate quality with a confident sentiment read is worth a follow-up."""

    if output.get("generate_followup"):
        return True
    quality = _dig(output, "quality", "overall_score")
    confidence = _dig(output, "sentiment", "confidence")
    quality = quality if isinstance(quality, int | float) else 0.5
    confidence = confidence if isinstance(confidence, int | float) else 0.5
    return 0.4 <= quality <= 0.8 and confidence > 0.6


def _section(value: Any, kind: type[dict] | type[list]) -> Any:
    return value if isinstance(value, kind) else kind()


def extract_analysis(output: dict[str, Any], answer: AnswerSnapshot) -> dict[str, Any]:
    """Normalize engine output into the stored analysis document."""

    nested = output.get("ai_analysis") if isinstance(output.get("ai_analysis"), dict) else {}
    raw_sentiment = nested.get("sentiment") or output.get("sentiment")
    if isinstance(raw_sentiment, str):
        raw_sentiment = {"label": raw_sentiment}
    sentiment = _section(raw_sentiment, dict)
    quality = _section(nested.get("quality") or output.get("quality"), dict)
    insights = _section(nested.get("insights") or output.get("insights"), list)
    flags = _section(nested.get("flags") or output.get("flags"), dict)
    completeness = completeness_score(answer, output)
    return {
        "ai_analysis": {
            "sentiment": {
                "label": sentiment.get("label", "neutral"),
                "confidence": sentiment.get("confidence", 0.5),
                "score": sentiment.get("score", 0.0),
                "reasoning": sentiment.get("reasoning", ""),
            },
            "quality": {
                "completeness": quality.get("completeness", 0.5),
                "relevance": quality.get("relevance", 0.5),
                "clarity": quality.get("clarity", 0.5),
                "overall_score": quality.get("overall_score", 0.5),
                "issues": quality.get("issues", []),
                "strengths": quality.get("strengths", []),
            },
            "insights": [
                {"text": item, "confidence": 0.7, "category": "general"}
                if isinstance(item, str)
                else item
                for item in insights
            ],
            "flags": {
                name: bool(flags.get(name, False))
                for name in (
                    "needs_review",
                    "potential_spam",
                    "incomplete_answer",
                    "unusual_pattern",
                    "high_quality",
                )
            },
            "completeness": completeness,
        },
        "confidence_score": output.get("confidence_score") or confidence_score(output),
        "completeness_score": completeness,
        "generate_followup": suggests_followup(output),
        "analysis_version": ANALYSIS_VERSION,
    }


def aggregate_analyses(analyses: list[dict[str, Any]], analyzed_at: str) -> dict[str, Any]:
    """Roll per-answer analyses up to one response-level summary."""

    if not analyses:
        return {
            "overall_sentiment": 0.5,
            "overall_quality": 0.5,
            "key_insights": [],
            "flags": {},
            "analysis_count": 0,
            "analyzed_at": analyzed_at,
        }

    sentiments = [
        value
        for value in (_dig(item, "sentiment", "confidence") for item in analyses)
        if isinstance(value, int | float)
    ]
    qualities = [
        value
        for value in (_dig(item, "quality", "overall_score") for item in analyses)
        if isinstance(value, int | float)
    ]
    insights: list[Any] = []
    for item in analyses:
        for insight in item.get("insights") or []:
            if insight not in insights:
                insights.append(insight)
    flags: dict[str, bool] = {}
    for item in analyses:
        for name, value in (item.get("flags") or {}).items():
            flags[name] = flags.get(name, False) or bool(value)

    return {
        "overall_sentiment": round(sum(sentiments) / len(sentiments), 3) if sentiments else 0.5,
        "overall_quality": round(sum(qualities) / len(qualities), 3) if qualities else 0.5,
        "key_insights": insights[:MAX_KEY_INSIGHTS],
        "flags": flags,
        "analysis_count": len(analyses),
        "analyzed_at": analyzed_at,
        "completeness_distribution": _completeness_distribution(analyses),
        "sentiment_distribution": _sentiment_distribution(analyses),
    }


@dataclass(slots=True)
class _AnalysisRun:
    event: FormEventPayload
    answer: AnswerSnapshot
    marker_key: str
    raw_payload: dict[str, Any]
    done: bool = False
    analysis: dict[str, Any] | None = None


class ResponseAnalysisWorkflow(FormWorkflowHandler):
    event_type = EventType.RESPONSE_ANALYZED
    queue_name = "ai_processing"
    retry_rules = RESPONSE_ANALYSIS_RULES

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan:
        event = self.parse(unit)
        answer = event.answer(event.require_extra("question_response_id"))
        if not answer.question.ai_enhanced:
            raise ValidationError(
                f"Question {answer.question.question_id} does not have AI enhancement enabled",
            )
        if not event.user.can_use_ai:
            raise ValidationError(f"User {event.user.user_id} cannot use AI features")
        if not answer.has_answer:
            raise ValidationError(
                f"Question response {answer.question_response_id} has no answer data to analyze",
            )
        self.acquire_form_slot(event)

        run = _AnalysisRun(
            event=event,
            answer=answer,
            marker_key=self.deps.idempotency.marker_key(
                answer.question_response_id,
                "analyze_response",
            ),
            raw_payload=unit.payload,
        )
        return WorkflowPlan(
            steps=[
                StepDescriptor("check_recent_analysis", True, lambda: self._check_recent(run)),
                StepDescriptor("analyze_response", True, lambda: self._analyze(run)),
                StepDescriptor("store_analysis", True, lambda: self._store(run)),
                StepDescriptor("schedule_followup", False, lambda: self._schedule_followup(run)),
                StepDescriptor("update_aggregate", False, lambda: self._update_aggregate(run)),
            ],
            metadata={"question_response_id": answer.question_response_id},
        )

    def _check_recent(self, run: _AnalysisRun) -> StepOutcome:
        if self.deps.idempotency.should_process(
            run.marker_key,
            self.deps.limits.idempotency_window_seconds,
        ):
            return StepOutcome()
        run.done = True
        logger.info(
            "Question response %s was recently analyzed, skipping",
            run.answer.question_response_id,
        )
        return StepOutcome.skip("recently_analyzed")

    def _analyze(self, run: _AnalysisRun) -> StepOutcome:
        if run.done:
            return StepOutcome.skip("recently_analyzed")
        if not self.has_credits(run.event.user.user_id):
            run.done = True
            return StepOutcome.skip("insufficient_credits")
        output = self.call_llm(
            RESPONSE_ANALYSIS_WORKFLOW,
            {
                "question_response_id": run.answer.question_response_id,
                "question_title": run.answer.question.title,
                "question_type": run.answer.question.question_type,
                "answer_text": run.answer.answer_text,
            },
        )
        run.analysis = extract_analysis(output, run.answer)
        return StepOutcome(
            side_effects={
                "confidence_score": run.analysis["confidence_score"],
                "sentiment": run.analysis["ai_analysis"]["sentiment"]["label"],
            },
        )

    def _store(self, run: _AnalysisRun) -> StepOutcome:
        analysis = run.analysis
        if analysis is None:
            return StepOutcome.skip("no_analysis")
        cost = analysis_cost(run.answer.answer_text)
        analyzed_at = self.now().isoformat()

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            current.update(
                {
                    "question_response_id": run.answer.question_response_id,
                    "question_id": run.answer.question.question_id,
                    "form_response_id": run.event.response.response_id,
                    "ai_analysis_results": analysis["ai_analysis"],
                    "ai_confidence_score": analysis["confidence_score"],
                    "ai_completeness_score": analysis["completeness_score"],
                    "ai_cost": cost,
                    "analyzed_at": analyzed_at,
                },
            )
            return current

        self.deps.entities.persist_entity(
            question_response_key(run.answer.question_response_id),
            _merge,
        )
        remaining = self.deps.credits.debit(run.event.user.user_id, cost)
        self.deps.idempotency.mark_processed(
            run.marker_key,
            self.deps.limits.idempotency_window_seconds,
        )
        return StepOutcome(side_effects={"ai_cost": cost, "remaining_credits": remaining})

    def _schedule_followup(self, run: _AnalysisRun) -> StepOutcome:
        if run.analysis is None or not run.analysis["generate_followup"]:
            return StepOutcome.skip("no_followup_suggested")
        question = run.answer.question
        response_state = self.deps.entities.get_entity(
            response_key(run.event.response.response_id),
        ) or {}
        existing = sum(
            1
            for item in response_state.get("dynamic_questions") or []
            if item.get("source_question_id") == question.question_id
        )
        if existing >= question.max_followups:
            return StepOutcome.skip("followup_limit_reached", existing_followups=existing)

        payload = {
            key: value
            for key, value in run.raw_payload.items()
            if key != "question_response_id"
        }
        payload["source_question_id"] = question.question_id
        payload["trigger"] = "response_analysis"
        work_unit_id = self.deps.enqueue(EventType.DYNAMIC_QUESTION_REQUESTED, payload)
        logger.info(
            "Scheduled dynamic question generation %s for question %s",
            work_unit_id,
            question.question_id,
        )
        return StepOutcome(
            side_effects={"work_unit_id": work_unit_id, "existing_followups": existing},
        )

    def _update_aggregate(self, run: _AnalysisRun) -> StepOutcome:
        analyses: list[dict[str, Any]] = []
        for answer in run.event.answers:
            stored = self.deps.entities.get_entity(
                question_response_key(answer.question_response_id),
            )
            if stored and stored.get("ai_analysis_results"):
                analyses.append(stored["ai_analysis_results"])
        analyzed_at = self.now().isoformat()
        aggregate = aggregate_analyses(analyses, analyzed_at)

        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            current["ai_analysis"] = aggregate
            current["ai_analysis_updated_at"] = analyzed_at
            return current

        self.deps.entities.persist_entity(response_key(run.event.response.response_id), _merge)
        return StepOutcome(side_effects={"analysis_count": aggregate["analysis_count"]})


def _dig(source: dict[str, Any], *keys: str) -> Any:
    current: Any = source
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _completeness_distribution(analyses: list[dict[str, Any]]) -> dict[str, Any]:
    scores = [
        item["completeness"]
        for item in analyses
        if isinstance(item.get("completeness"), int | float)
    ]
    if not scores:
        return {}
    return {
        "high": sum(1 for score in scores if score > 0.8),
        "medium": sum(1 for score in scores if 0.4 <= score <= 0.8),
        "low": sum(1 for score in scores if score < 0.4),
        "average": round(sum(scores) / len(scores), 3),
    }


def _sentiment_distribution(analyses: list[dict[str, Any]]) -> dict[str, float]:
    labels = [label for label in (_dig(item, "sentiment", "label") for item in analyses) if label]
    if not labels:
        return {}
    total = len(labels)
    return {label: round(count / total * 100, 1) for label, count in Counter(labels).items()}
