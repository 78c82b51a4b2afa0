"""Wires settings, storage and the form workflows into a runnable worker."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from agentform.config import Settings
from agentform.forms.base import FormWorkflowDeps
from agentform.forms.completion import CompletionWorkflow
from agentform.forms.dynamic_questions import DynamicQuestionWorkflow
from agentform.forms.integration_trigger import IntegrationTriggerWorkflow
from agentform.forms.llm import (
    LLM_DEPENDENCY_KEY,
    EchoLlmWorkflowEngine,
    HttpLlmWorkflowEngine,
    LlmWorkflowEngine,
)
from agentform.forms.response_analysis import ResponseAnalysisWorkflow
from agentform.http.client import HttpPoster
from agentform.integrations.dispatcher import WebhookDispatcher
from agentform.integrations.registry import IntegrationRegistry
from agentform.orchestrator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from agentform.orchestrator.credits import CreditLedger
from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.idempotency import IdempotencyGuard
from agentform.orchestrator.notifier import Notifier, RepositoryNotifier
from agentform.orchestrator.rate_limiter import RateLimiter
from agentform.orchestrator.registry import WorkflowRegistry
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.orchestrator.services import OrchestratorService
from agentform.orchestrator.state_store import SqliteStateStore, StateStore
from agentform.orchestrator.step_runner import StepRunner
from agentform.orchestrator.worker import OrchestratorWorker
from agentform.orchestrator.workflow import WorkflowOrchestrator
from agentform.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Fully wired components sharing one repository and state store."""

    settings: Settings
    repository: OrchestratorRepository
    state_store: StateStore
    rate_limiter: RateLimiter
    credits: CreditLedger
    idempotency: IdempotencyGuard
    circuit_breaker: CircuitBreaker
    registry: WorkflowRegistry
    service: OrchestratorService
    worker: OrchestratorWorker
    poster: HttpPoster

    def close(self) -> None:
        self.poster.close()


def build_llm_engine(settings: Settings, poster: HttpPoster) -> LlmWorkflowEngine:
    if not settings.llm.endpoint:
        logger.info("No LLM endpoint configured; using the local echo engine")
        return EchoLlmWorkflowEngine()
    return HttpLlmWorkflowEngine(
        endpoint=settings.llm.endpoint,
        api_key=settings.llm.api_key,
        poster=poster,
        timeout_seconds=settings.llm.timeout_seconds,
    )


def build_circuit_breaker(settings: Settings, store: StateStore) -> CircuitBreaker:
    """Breaker with the configured thresholds; engine validation errors do not trip it."""

    def _config(*excluded: type[Exception]) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=settings.circuit.failure_threshold,
            cooldown_seconds=settings.circuit.cooldown_seconds,
            excluded_exceptions=excluded,
        )

    return CircuitBreaker(
        store,
        default_config=_config(),
        configs={LLM_DEPENDENCY_KEY: _config(ValidationError)},
    )

def build_runtime(  # noqa: PLR0913
    settings: Settings,
    repository: OrchestratorRepository,
    *,
    state_store: StateStore | None = None,
    llm_engine: LlmWorkflowEngine | None = None,
    poster: HttpPoster | None = None,
    notifier: Notifier | None = None,
    step_runner: StepRunner | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Runtime:
    store = state_store or SqliteStateStore(repository.engine, clock=clock)
    http = poster or HttpPoster(
        timeout_seconds=settings.integrations.http_timeout_seconds,
        user_agent=settings.integrations.user_agent,
    )
    circuit_breaker = build_circuit_breaker(settings, store)
    rate_limiter = RateLimiter(store, default_limit=settings.limits.rate_limit_per_minute)
    credits = CreditLedger(store, default_monthly_limit=settings.limits.default_monthly_credits)
    idempotency = IdempotencyGuard(
        store,
        default_window_seconds=settings.limits.idempotency_window_seconds,
    )
    status_notifier = notifier or RepositoryNotifier(repository)

    registry = WorkflowRegistry()
    service = OrchestratorService(repository=repository, registry=registry)
    deps = FormWorkflowDeps(
        entities=repository,
        enqueue=service.enqueue,
        rate_limiter=rate_limiter,
        credits=credits,
        idempotency=idempotency,
        circuit_breaker=circuit_breaker,
        llm_engine=llm_engine or build_llm_engine(settings, http),
        notifier=status_notifier,
        limits=settings.limits,
        clock=clock,
    )
    registry.register(CompletionWorkflow(deps))
    registry.register(ResponseAnalysisWorkflow(deps))
    registry.register(DynamicQuestionWorkflow(deps))
    registry.register(
        IntegrationTriggerWorkflow(deps, IntegrationRegistry.default(WebhookDispatcher(http))),
    )

    orchestrator = WorkflowOrchestrator(
        step_runner=step_runner
        or StepRunner(
            clock=clock,
            max_inline_sleep_seconds=settings.worker.inline_retry_max_sleep_seconds,
        ),
        clock=clock,
    )
    worker = OrchestratorWorker(
        repository=repository,
        registry=registry,
        orchestrator=orchestrator,
        notifier=status_notifier,
        worker_id=settings.worker.worker_id,
        queues=settings.worker.queues,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        stale_after_seconds=settings.worker.stale_after_seconds,
        state_store=store,
        clock=clock,
    )
    return Runtime(
        settings=settings,
        repository=repository,
        state_store=store,
        rate_limiter=rate_limiter,
        credits=credits,
        idempotency=idempotency,
        circuit_breaker=circuit_breaker,
        registry=registry,
        service=service,
        worker=worker,
        poster=http,
    )
