"""Per-tenant request limiting over a rolling one-minute window."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from agentform.orchestrator.state_store import StateStore, StateValue
from agentform.storage.common import from_iso

logger = logging.getLogger(__name__)

DEFAULT_LIMIT_PER_MINUTE = 10
WINDOW_SECONDS = 60.0
_KEY_PREFIX = "rate_window:"


class RateLimiter:
    """Counts acquisitions per tenant key.

    A window opens on the first acquisition and expires `WINDOW_SECONDS`
    later; it is not aligned to clock minutes. Acquisition is denied once the
    window count reaches the limit, and denied calls are not counted.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        default_limit: int = DEFAULT_LIMIT_PER_MINUTE,
        tenant_limits: Mapping[str, int] | None = None,
        window_seconds: float = WINDOW_SECONDS,
    ) -> None:
        self.store = store
        self.default_limit = default_limit
        self.tenant_limits = dict(tenant_limits or {})
        self.window_seconds = window_seconds

    def limit_for(self, tenant_key: str, limit: int | None = None) -> int:
        if limit is not None:
            return limit
        return self.tenant_limits.get(tenant_key, self.default_limit)

    def try_acquire(self, tenant_key: str, limit: int | None = None) -> bool:
        effective_limit = self.limit_for(tenant_key, limit)
        now = self.store.now()
        acquired = False

        def _mutate(current: StateValue | None) -> StateValue:
            nonlocal acquired
            if current is None or self._window_elapsed(current, now=now):
                acquired = effective_limit > 0
                return {
                    "window_start": now.isoformat(),
                    "count": 1 if acquired else 0,
                    "limit": effective_limit,
                }
            count = int(current["count"])
            if count >= effective_limit:
                acquired = False
                return current
            acquired = True
            return {**current, "count": count + 1, "limit": effective_limit}

        self.store.update(_KEY_PREFIX + tenant_key, _mutate, ttl_seconds=self.window_seconds)
        if not acquired:
            logger.info("Rate limit reached for %s (limit=%d/min)", tenant_key, effective_limit)
        return acquired

    def retry_after(self, tenant_key: str) -> float:
        """Seconds until the current window for `tenant_key` expires."""

        window = self.store.get(_KEY_PREFIX + tenant_key)
        if window is None:
            return 0.0
        elapsed = (self.store.now() - from_iso(str(window["window_start"]))).total_seconds()
        return max(self.window_seconds - elapsed, 0.0)

    def _window_elapsed(self, window: StateValue, *, now: datetime) -> bool:
        elapsed = (now - from_iso(str(window["window_start"]))).total_seconds()
        return elapsed >= self.window_seconds
