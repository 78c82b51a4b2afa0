"""Per-dependency circuit breaker over shared state.

States:
- closed: calls pass through, consecutive failures are counted;
- open: calls fail fast with `CircuitOpenError` until the cooldown elapses;
- half_open: exactly one trial call is admitted; success closes the
  circuit, failure reopens it. A trial still unresolved after a full
  cooldown is treated as abandoned and another trial is admitted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TypeVar

from agentform.orchestrator.errors import CircuitOpenError
from agentform.orchestrator.state_store import StateStore, StateValue
from agentform.storage.common import from_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_PREFIX = "circuit:"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one dependency.

    Exceptions listed in `excluded_exceptions` propagate without counting
    as failures.
    """

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    excluded_exceptions: tuple[type[Exception], ...] = ()


@dataclass(slots=True, frozen=True)
class CircuitSnapshot:
    dependency_key: str
    state: CircuitState
    consecutive_failures: int
    opened_at: datetime | None
    cooldown_seconds: float
    trial_in_flight: bool


class CircuitBreaker:
    """Guards calls to external dependencies keyed by dependency name."""

    def __init__(
        self,
        store: StateStore,
        *,
        default_config: CircuitBreakerConfig | None = None,
        configs: Mapping[str, CircuitBreakerConfig] | None = None,
    ) -> None:
        self.store = store
        self.default_config = default_config or CircuitBreakerConfig()
        self.configs = dict(configs or {})

    def config_for(self, dependency_key: str) -> CircuitBreakerConfig:
        return self.configs.get(dependency_key, self.default_config)

    def call(self, dependency_key: str, fn: Callable[[], T]) -> T:
        """Invoke `fn` unless the circuit rejects it.

        Raises:
            CircuitOpenError: circuit is open, or half-open with its trial
                call already in flight. `fn` is not invoked.
        """

        config = self.config_for(dependency_key)
        self._admit(dependency_key, config)
        try:
            result = fn()
        except config.excluded_exceptions:
            self._release_trial(dependency_key)
            raise
        except Exception:
            self._record_failure(dependency_key, config)
            raise
        except BaseException:
            self._release_trial(dependency_key)
            raise
        self._record_success(dependency_key)
        return result

    def state(self, dependency_key: str) -> CircuitSnapshot:
        config = self.config_for(dependency_key)
        raw = self.store.get(_KEY_PREFIX + dependency_key) or _closed_state()
        state = CircuitState(raw["state"])
        opened_at = from_iso(raw["opened_at"]) if raw.get("opened_at") else None
        if (
            state == CircuitState.OPEN
            and opened_at is not None
            and self._cooldown_elapsed(opened_at, config)
        ):
            state = CircuitState.HALF_OPEN
        return CircuitSnapshot(
            dependency_key=dependency_key,
            state=state,
            consecutive_failures=int(raw["consecutive_failures"]),
            opened_at=opened_at,
            cooldown_seconds=config.cooldown_seconds,
            trial_in_flight=bool(raw.get("trial_in_flight", False)),
        )

    def retry_at(self, dependency_key: str) -> datetime | None:
        """When an open circuit will admit its trial call; None if closed."""

        snapshot = self.state(dependency_key)
        if snapshot.state != CircuitState.OPEN or snapshot.opened_at is None:
            return None
        return snapshot.opened_at + timedelta(seconds=snapshot.cooldown_seconds)

    def reset(self, dependency_key: str) -> None:
        self.store.update(_KEY_PREFIX + dependency_key, lambda _current: _closed_state())
        logger.info("Circuit %s reset to closed", dependency_key)

    def _admit(self, dependency_key: str, config: CircuitBreakerConfig) -> None:
        now = self.store.now()
        trial = {"trial_in_flight": True, "trial_started_at": now.isoformat()}

        def _mutate(current: StateValue | None) -> StateValue:
            state = current or _closed_state()
            status = CircuitState(state["state"])
            if status == CircuitState.CLOSED:
                return state
            if status == CircuitState.OPEN:
                opened_at = from_iso(state["opened_at"])
                if not self._cooldown_elapsed(opened_at, config):
                    raise CircuitOpenError(
                        dependency_key,
                        retry_after=self._remaining_cooldown(opened_at, config),
                    )
                logger.info("Circuit %s entering half-open state", dependency_key)
                return {**state, "state": CircuitState.HALF_OPEN.value, **trial}
            if state.get("trial_in_flight"):
                started_raw = state.get("trial_started_at")
                started_at = from_iso(started_raw) if started_raw else None
                if started_at is not None and not self._cooldown_elapsed(started_at, config):
                    raise CircuitOpenError(
                        dependency_key,
                        retry_after=self._remaining_cooldown(started_at, config),
                    )
                logger.warning(
                    "Circuit %s trial call abandoned; admitting a new trial",
                    dependency_key,
                )
            return {**state, **trial}

        self.store.update(_KEY_PREFIX + dependency_key, _mutate)

    def _record_success(self, dependency_key: str) -> None:
        def _mutate(current: StateValue | None) -> StateValue:
            if current is not None and current["state"] != CircuitState.CLOSED.value:
                logger.info("Circuit %s closed after successful trial call", dependency_key)
            return _closed_state()

        self.store.update(_KEY_PREFIX + dependency_key, _mutate)

    def _record_failure(self, dependency_key: str, config: CircuitBreakerConfig) -> None:
        now_iso = self.store.now().isoformat()

        def _mutate(current: StateValue | None) -> StateValue:
            state = current or _closed_state()
            failures = int(state["consecutive_failures"]) + 1
            status = CircuitState(state["state"])
            if status == CircuitState.HALF_OPEN:
                logger.warning("Circuit %s reopened after failed trial call", dependency_key)
                return _open_state(failures, now_iso)
            if status == CircuitState.CLOSED and failures >= config.failure_threshold:
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    dependency_key,
                    failures,
                )
                return _open_state(failures, now_iso)
            return {**state, "consecutive_failures": failures}

        self.store.update(_KEY_PREFIX + dependency_key, _mutate)

    def _release_trial(self, dependency_key: str) -> None:
        def _mutate(current: StateValue | None) -> StateValue | None:
            if current is None:
                return None
            return {**current, "trial_in_flight": False, "trial_started_at": None}

        self.store.update(_KEY_PREFIX + dependency_key, _mutate)

    def _cooldown_elapsed(self, opened_at: datetime, config: CircuitBreakerConfig) -> bool:
        return self._remaining_cooldown(opened_at, config) <= 0

    def _remaining_cooldown(self, opened_at: datetime, config: CircuitBreakerConfig) -> float:
        elapsed = (self.store.now() - opened_at).total_seconds()
        return max(config.cooldown_seconds - elapsed, 0.0)


def _closed_state() -> StateValue:
    return {
        "state": CircuitState.CLOSED.value,
        "consecutive_failures": 0,
        "opened_at": None,
        "trial_in_flight": False,
        "trial_started_at": None,
    }


def _open_state(failures: int, opened_at_iso: str) -> StateValue:
    return {
        "state": CircuitState.OPEN.value,
        "consecutive_failures": failures,
        "opened_at": opened_at_iso,
        "trial_in_flight": False,
        "trial_started_at": None,
    }
