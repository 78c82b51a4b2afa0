from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agentform.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from agentform.orchestrator.errors import CircuitOpenError, ExternalApiError, ValidationError
from agentform.orchestrator.state_store import MemoryStateStore

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Circuit Breaker"),
]


def _failing() -> None:
    raise ExternalApiError("upstream 503", status_code=503)


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ExternalApiError):
            breaker.call("llm_workflow", _failing)


def test_opens_after_threshold_and_rejects_without_invoking(state_store: MemoryStateStore) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=60),
    )
    _trip(breaker, 5)
    invoked: list[bool] = []

    with pytest.raises(CircuitOpenError) as exc_info:
        breaker.call("llm_workflow", lambda: invoked.append(True))

    assert invoked == []
    assert exc_info.value.retry_after == pytest.approx(60.0)
    assert breaker.state("llm_workflow").state == CircuitState.OPEN


def test_successful_trial_after_cooldown_closes_circuit(
    state_store: MemoryStateStore,
    clock,
) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=60),
    )
    _trip(breaker, 5)
    clock.advance(60)

    assert breaker.state("llm_workflow").state == CircuitState.HALF_OPEN
    assert breaker.call("llm_workflow", lambda: "ok") == "ok"
    snapshot = breaker.state("llm_workflow")
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.consecutive_failures == 0


def test_failed_trial_reopens_circuit(state_store: MemoryStateStore, clock) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=30),
    )
    _trip(breaker, 2)
    clock.advance(30)

    _trip(breaker, 1)

    assert breaker.state("llm_workflow").state == CircuitState.OPEN
    assert breaker.retry_at("llm_workflow") == clock() + timedelta(seconds=30)


def test_success_resets_consecutive_failures(state_store: MemoryStateStore) -> None:
    breaker = CircuitBreaker(state_store)
    _trip(breaker, 4)

    breaker.call("llm_workflow", lambda: None)
    _trip(breaker, 4)

    assert breaker.state("llm_workflow").state == CircuitState.CLOSED
    assert breaker.state("llm_workflow").consecutive_failures == 4


def test_excluded_exceptions_do_not_count(state_store: MemoryStateStore) -> None:
    breaker = CircuitBreaker(
        state_store,
        configs={
            "llm_workflow": CircuitBreakerConfig(
                failure_threshold=1,
                excluded_exceptions=(ValidationError,),
            ),
        },
    )

    def _invalid() -> None:
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        breaker.call("llm_workflow", _invalid)

    assert breaker.state("llm_workflow").state == CircuitState.CLOSED


def test_manual_reset_closes_open_circuit(state_store: MemoryStateStore) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=1),
    )
    _trip(breaker, 1)

    breaker.reset("llm_workflow")

    assert breaker.state("llm_workflow").state == CircuitState.CLOSED
    assert breaker.retry_at("llm_workflow") is None


def test_half_open_admits_single_trial(state_store: MemoryStateStore, clock) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=10),
    )
    _trip(breaker, 1)
    clock.advance(10)
    concurrent: list[Exception] = []

    def _trial() -> str:
        try:
            breaker.call("llm_workflow", lambda: "second")
        except CircuitOpenError as exc:
            concurrent.append(exc)
        return "first"

    assert breaker.call("llm_workflow", _trial) == "first"
    assert len(concurrent) == 1
    assert breaker.state("llm_workflow").state == CircuitState.CLOSED


def test_interrupted_trial_is_released(state_store: MemoryStateStore, clock) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=60),
    )
    _trip(breaker, 5)
    clock.advance(61)

    def _interrupted() -> None:
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        breaker.call("llm_workflow", _interrupted)

    snapshot = breaker.state("llm_workflow")
    assert snapshot.state == CircuitState.HALF_OPEN
    assert snapshot.trial_in_flight is False
    assert breaker.call("llm_workflow", lambda: "ok") == "ok"
    assert breaker.state("llm_workflow").state == CircuitState.CLOSED


def test_stale_trial_is_replaced_after_cooldown(state_store: MemoryStateStore, clock) -> None:
    breaker = CircuitBreaker(
        state_store,
        default_config=CircuitBreakerConfig(failure_threshold=1, cooldown_seconds=60),
    )
    _trip(breaker, 1)
    clock.advance(60)
    outcomes: list[str] = []

    def _hung_trial() -> str:
        clock.advance(30)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call("llm_workflow", lambda: "too early")
        assert exc_info.value.retry_after == pytest.approx(30.0)
        clock.advance(timedelta(hours=24).total_seconds())
        outcomes.append(breaker.call("llm_workflow", lambda: "replacement"))
        return "late"

    assert breaker.call("llm_workflow", _hung_trial) == "late"
    assert outcomes == ["replacement"]
    assert breaker.state("llm_workflow").state == CircuitState.CLOSED
