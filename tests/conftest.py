"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from agentform.config import LimitsSettings
from agentform.forms.base import FormWorkflowDeps
from agentform.forms.llm import EchoLlmWorkflowEngine
from agentform.orchestrator.circuit_breaker import CircuitBreaker
from agentform.orchestrator.credits import CreditLedger
from agentform.orchestrator.idempotency import IdempotencyGuard
from agentform.orchestrator.models import EventType
from agentform.orchestrator.notifier import RecordingNotifier
from agentform.orchestrator.rate_limiter import RateLimiter
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.orchestrator.state_store import MemoryStateStore

START = datetime(2026, 10, 16, 12, 0, tzinfo=UTC)


class ManualClock:
    """Clock advanced explicitly by tests."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingEnqueue:
    """Captures follow-up work instead of queueing it."""

    def __init__(self) -> None:
        self.calls: list[tuple[EventType, dict[str, Any]]] = []
        self.errors: list[Exception] = []

    def __call__(self, event_type: EventType, payload: dict[str, Any]) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.calls.append((event_type, payload))
        return f"wu-{len(self.calls)}"


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def state_store(clock: ManualClock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "agentform.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def enqueue() -> RecordingEnqueue:
    return RecordingEnqueue()


@pytest.fixture()
def form_deps(
    repository: OrchestratorRepository,
    state_store: MemoryStateStore,
    enqueue: RecordingEnqueue,
    clock: ManualClock,
) -> FormWorkflowDeps:
    return FormWorkflowDeps(
        entities=repository,
        enqueue=enqueue,
        rate_limiter=RateLimiter(state_store, default_limit=10),
        credits=CreditLedger(state_store, default_monthly_limit=100.0),
        idempotency=IdempotencyGuard(state_store),
        circuit_breaker=CircuitBreaker(state_store),
        llm_engine=EchoLlmWorkflowEngine(),
        notifier=RecordingNotifier(),
        limits=LimitsSettings(),
        clock=clock,
    )


@pytest.fixture()
def make_payload(clock: ManualClock) -> Callable[..., dict[str, Any]]:
    """Factory for form work unit payloads with overridable sections."""

    def _make(  # noqa: PLR0913
        *,
        status: str = "completed",
        ai_enhanced: bool = True,
        integrations_enabled: bool = False,
        integration_settings: dict[str, Any] | None = None,
        notification_settings: dict[str, Any] | None = None,
        responses_count: int = 10,
        can_use_ai: bool = True,
        can_use_integrations: bool = True,
        completed_minutes_ago: float = 5.0,
        answers: list[dict[str, Any]] | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        now = clock()
        completed_at = now - timedelta(minutes=completed_minutes_ago)
        started_at = completed_at - timedelta(minutes=10)
        questions = [
            {
                "id": "q-1",
                "title": "How was your onboarding experience?",
                "question_type": "text_long",
                "ai_enhanced": True,
                "generates_followups": True,
                "max_followups": 2,
                "position": 1,
            },
            {
                "id": "q-2",
                "title": "Would you recommend us?",
                "question_type": "single_choice",
                "position": 2,
            },
        ]
        default_answers = [
            {
                "id": "qr-1",
                "question": questions[0],
                "answer": "The onboarding was great but the docs were slow to load on mobile",
                "answered_at": started_at.isoformat(),
            },
            {
                "id": "qr-2",
                "question": questions[1],
                "answer": "Yes",
                "answered_at": started_at.isoformat(),
            },
        ]
        payload: dict[str, Any] = {
            "user": {
                "id": "user-1",
                "can_use_ai": can_use_ai,
                "can_use_integrations": can_use_integrations,
            },
            "form": {
                "id": "form-1",
                "name": "Customer Onboarding",
                "user_id": "user-1",
                "description": "Post-signup survey",
                "ai_enhanced": ai_enhanced,
                "integrations_enabled": integrations_enabled,
                "integration_settings": integration_settings or {},
                "notification_settings": notification_settings or {},
                "responses_count": responses_count,
                "questions": questions,
            },
            "response": {
                "id": "resp-1",
                "form_id": "form-1",
                "status": status,
                "started_at": started_at.isoformat(),
                "completed_at": completed_at.isoformat() if status == "completed" else None,
                "submitted_at": completed_at.isoformat() if status == "completed" else None,
                "progress_percentage": 100.0 if status == "completed" else 50.0,
                "metadata": {"user_agent": "pytest", "ip_address": "127.0.0.1"},
            },
            "answers": default_answers if answers is None else answers,
        }
        payload.update(extra)
        return payload

    return _make
