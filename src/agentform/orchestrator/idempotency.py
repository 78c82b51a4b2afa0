"""Best-effort duplicate suppression for step side effects."""

from __future__ import annotations

import logging

from agentform.orchestrator.state_store import StateStore
from agentform.storage.common import from_iso

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 300.0
_KEY_PREFIX = "idempotency:"


class IdempotencyGuard:
    """Time-window markers keyed by work unit and step.

    This is not a lock: two concurrent executions can both observe "not
    processed" and both proceed.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        default_window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> None:
        self.store = store
        self.default_window_seconds = default_window_seconds

    @staticmethod
    def marker_key(work_unit_id: str, step_name: str) -> str:
        return f"{work_unit_id}:{step_name}"

    def should_process(self, key: str, window_seconds: float | None = None) -> bool:
        window = self._window(window_seconds)
        marker = self.store.get(_KEY_PREFIX + key)
        if marker is None:
            return True
        age = (self.store.now() - from_iso(str(marker["marked_at"]))).total_seconds()
        if age < window:
            logger.debug("Skipping %s: processed %.1fs ago", key, age)
            return False
        return True

    def mark_processed(self, key: str, window_seconds: float | None = None) -> None:
        window = self._window(window_seconds)
        marked_at = self.store.now().isoformat()
        self.store.update(
            _KEY_PREFIX + key,
            lambda _current: {"marked_at": marked_at},
            ttl_seconds=window,
        )

    def _window(self, window_seconds: float | None) -> float:
        return self.default_window_seconds if window_seconds is None else window_seconds
