"""LLM workflow engine boundary.

The engine is a black box: it takes a workflow name plus inputs and returns
either structured output or an error description. `call_llm` is the only way
workflows reach it, so every call goes through the `llm_workflow` circuit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from agentform.http.client import HttpPoster, raise_for_result
from agentform.orchestrator.circuit_breaker import CircuitBreaker
from agentform.orchestrator.errors import (
    DependencyTimeoutError,
    ExternalApiError,
    RateLimitedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

LLM_DEPENDENCY_KEY = "llm_workflow"
RESPONSE_ANALYSIS_WORKFLOW = "response_analysis"
DYNAMIC_QUESTION_WORKFLOW = "dynamic_question"

_POSITIVE_WORDS = ("great", "love", "excellent", "good", "happy", "amazing", "helpful")
_NEGATIVE_WORDS = ("bad", "hate", "terrible", "poor", "slow", "broken", "awful")


@dataclass(slots=True)
class LlmWorkflowResult:
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    error_type: str | None = None


class LlmWorkflowEngine(Protocol):
    def execute(self, workflow: str, inputs: dict[str, Any]) -> LlmWorkflowResult: ...


class HttpLlmWorkflowEngine:
    """Posts `{workflow, inputs}` to a remote engine and reads back a result object."""

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str | None = None,
        poster: HttpPoster | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.poster = poster or HttpPoster(timeout_seconds=timeout_seconds)

    def execute(self, workflow: str, inputs: dict[str, Any]) -> LlmWorkflowResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        body = json.dumps({"workflow": workflow, "inputs": inputs}, ensure_ascii=False)
        result = self.poster.post(self.endpoint, body.encode("utf-8"), headers=headers)
        raise_for_result(result, context=f"LLM workflow {workflow}")
        try:
            payload = json.loads(result.body)
        except json.JSONDecodeError as error:
            raise ExternalApiError(f"LLM workflow {workflow} returned invalid JSON") from error
        if not isinstance(payload, dict):
            raise ExternalApiError(f"LLM workflow {workflow} returned a non-object payload")
        output = payload.get("output")
        return LlmWorkflowResult(
            success=bool(payload.get("success", False)),
            output=output if isinstance(output, dict) else {},
            error_message=payload.get("error_message"),
            error_type=payload.get("error_type"),
        )


class EchoLlmWorkflowEngine:
    """Deterministic local engine for demos, smoke runs and tests."""

    def execute(self, workflow: str, inputs: dict[str, Any]) -> LlmWorkflowResult:
        if workflow == RESPONSE_ANALYSIS_WORKFLOW:
            return LlmWorkflowResult(success=True, output=_echo_analysis(inputs))
        if workflow == DYNAMIC_QUESTION_WORKFLOW:
            return LlmWorkflowResult(success=True, output=_echo_question(inputs))
        return LlmWorkflowResult(
            success=False,
            error_message=f"Unknown workflow: {workflow}",
            error_type="validation",
        )


def call_llm(
    engine: LlmWorkflowEngine,
    breaker: CircuitBreaker,
    workflow: str,
    inputs: dict[str, Any],
) -> dict[str, Any]:
    """Run one engine call behind the circuit; unsuccessful results raise typed errors."""

    def _call() -> dict[str, Any]:
        result = engine.execute(workflow, inputs)
        if result.success:
            return result.output
        raise _error_for(workflow, result)

    output = breaker.call(LLM_DEPENDENCY_KEY, _call)
    logger.debug("LLM workflow %s returned keys: %s", workflow, sorted(output))
    return output


def _error_for(workflow: str, result: LlmWorkflowResult) -> Exception:
    message = f"LLM workflow {workflow} failed: {result.error_message or 'no error message'}"
    error_type = (result.error_type or "").lower()
    if error_type in {"rate_limited", "rate_limit"}:
        return RateLimitedError(message)
    if error_type == "timeout":
        return DependencyTimeoutError(message)
    if error_type in {"validation", "invalid_input"}:
        return ValidationError(message)
    return ExternalApiError(message)


def _echo_analysis(inputs: dict[str, Any]) -> dict[str, Any]:
    text = str(inputs.get("answer_text", ""))
    lowered = text.lower()
    positive = sum(lowered.count(word) for word in _POSITIVE_WORDS)
    negative = sum(lowered.count(word) for word in _NEGATIVE_WORDS)
    if positive > negative:
        label, score = "positive", 0.8
    elif negative > positive:
        label, score = "negative", 0.2
    else:
        label, score = "neutral", 0.5
    overall = round(min(0.3 + len(text) / 200.0, 0.95), 3)
    return {
        "sentiment": {"label": label, "confidence": 0.7, "score": score},
        "quality": {"overall_score": overall, "completeness": overall, "clarity": 0.6},
        "insights": [f"Answer to '{inputs.get('question_title', '')}' is {label}"],
        "flags": {"incomplete_answer": len(text) < 10, "high_quality": overall >= 0.8},
    }


def _echo_question(inputs: dict[str, Any]) -> dict[str, Any]:
    source_title = str(inputs.get("source_question_title", "")).strip().rstrip("?")
    answer = str(inputs.get("source_answer", "")).strip()
    subject = answer[:60] if answer else source_title
    return {
        "title": f"What made you answer '{subject}'?",
        "question_type": "text_long",
        "strategy": {"type": "clarification"},
        "reasoning": "Ask for the motivation behind the previous answer.",
    }
