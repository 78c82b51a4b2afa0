"""Shared plumbing for form workflow handlers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Protocol

from agentform.config import LimitsSettings
from agentform.forms.contracts import FormEventPayload, parse_form_event
from agentform.forms.llm import LlmWorkflowEngine, call_llm
from agentform.orchestrator.circuit_breaker import CircuitBreaker
from agentform.orchestrator.credits import CreditLedger
from agentform.orchestrator.errors import RateLimitedError
from agentform.orchestrator.idempotency import IdempotencyGuard
from agentform.orchestrator.models import EventType, WorkUnitView
from agentform.orchestrator.notifier import Notifier
from agentform.orchestrator.rate_limiter import RateLimiter
from agentform.orchestrator.registry import WorkflowPlan
from agentform.orchestrator.retry_policy import RetryRules
from agentform.storage.common import utc_now

logger = logging.getLogger(__name__)


class EntityStore(Protocol):
    def persist_entity(
        self,
        entity_key: str,
        merge: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any]: ...

    def get_entity(self, entity_key: str) -> dict[str, Any] | None: ...


class Enqueue(Protocol):
    def __call__(self, event_type: EventType, payload: dict[str, Any]) -> str: ...


def form_key(form_id: str) -> str:
    return f"form:{form_id}"


def response_key(response_id: str) -> str:
    return f"form_response:{response_id}"


def question_response_key(question_response_id: str) -> str:
    return f"question_response:{question_response_id}"


def analytics_key(form_id: str, day: str) -> str:
    return f"form_analytics:{form_id}:{day}"


def dynamic_question_key(dynamic_question_id: str) -> str:
    return f"dynamic_question:{dynamic_question_id}"


@dataclass(slots=True)
class FormWorkflowDeps:
    """Collaborators every form workflow receives by injection."""

    entities: EntityStore
    enqueue: Enqueue
    rate_limiter: RateLimiter
    credits: CreditLedger
    idempotency: IdempotencyGuard
    circuit_breaker: CircuitBreaker
    llm_engine: LlmWorkflowEngine
    notifier: Notifier
    limits: LimitsSettings
    clock: Callable[[], datetime] = utc_now


class FormWorkflowHandler:
    """Base handler: payload parsing, status channel and common gates."""

    event_type: ClassVar[EventType]
    queue_name: ClassVar[str] = "default"
    retry_rules: ClassVar[RetryRules] = RetryRules()

    def __init__(self, deps: FormWorkflowDeps) -> None:
        self.deps = deps

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan:
        raise NotImplementedError

    def channel_key(self, unit: WorkUnitView) -> str | None:
        response = unit.payload.get("response")
        if not isinstance(response, dict) or response.get("id") is None:
            return None
        return response_key(str(response["id"]))

    def error_entity_key(self, unit: WorkUnitView) -> str | None:
        return self.channel_key(unit)

    def parse(self, unit: WorkUnitView) -> FormEventPayload:
        return parse_form_event(unit.payload)

    def acquire_form_slot(self, event: FormEventPayload) -> None:
        """Per-form rate gate; raises `RateLimitedError` to defer the unit."""

        tenant_key = form_key(event.form.form_id)
        limit = event.form.rate_limit_per_minute
        if self.deps.rate_limiter.try_acquire(tenant_key, limit):
            return
        retry_after = max(
            self.deps.rate_limiter.retry_after(tenant_key),
            self.deps.limits.rate_limit_defer_seconds,
        )
        raise RateLimitedError(
            f"Rate limit reached for form {event.form.form_id}",
            retry_after=retry_after,
        )

    def has_credits(self, user_id: str) -> bool:
        """Paid-step gate: below the floor the step is skipped, not failed."""

        if self.deps.credits.has_sufficient(user_id, self.deps.limits.min_credits):
            return True
        logger.info(
            "Skipping paid step for %s: fewer than %.2f credits remaining",
            user_id,
            self.deps.limits.min_credits,
        )
        return False

    def call_llm(self, workflow: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return call_llm(self.deps.llm_engine, self.deps.circuit_breaker, workflow, inputs)

    def now(self) -> datetime:
        return self.deps.clock()
