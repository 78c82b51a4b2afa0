"""Monthly AI credit accounting per user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from agentform.orchestrator.errors import InsufficientCreditsError
from agentform.orchestrator.state_store import StateStore, StateValue

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_LIMIT = 100.0
_KEY_PREFIX = "credits:"


@dataclass(slots=True, frozen=True)
class CreditAccount:
    user_id: str
    used: float
    monthly_limit: float
    period_start: date

    @property
    def remaining(self) -> float:
        return max(self.monthly_limit - self.used, 0.0)


class CreditLedger:
    """Tracks monthly usage; the period resets lazily on first access in a new month.

    `debit` never refuses by default, so usage may exceed the limit and
    `remaining` clamps to zero. Callers gate paid work with
    `has_sufficient` before doing it; the check and the later debit are not
    atomic together.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        default_monthly_limit: float = DEFAULT_MONTHLY_LIMIT,
    ) -> None:
        self.store = store
        self.default_monthly_limit = default_monthly_limit

    def account(self, user_id: str) -> CreditAccount:
        state = self.store.update(_KEY_PREFIX + user_id, self._current_period)
        return _to_account(user_id, state)

    def remaining(self, user_id: str) -> float:
        return self.account(user_id).remaining

    def has_sufficient(self, user_id: str, minimum: float = 1.0) -> bool:
        return self.remaining(user_id) >= minimum

    def debit(self, user_id: str, amount: float, *, strict: bool = False) -> float:
        """Record usage and return the new remaining balance."""

        if amount < 0:
            raise ValueError(f"Debit amount must be >= 0, got {amount!r}")

        def _mutate(current: StateValue | None) -> StateValue:
            state = self._current_period(current)
            used = float(state["used"])
            remaining = max(float(state["monthly_limit"]) - used, 0.0)
            if strict and remaining < amount:
                raise InsufficientCreditsError(user_id, remaining=remaining, requested=amount)
            return {**state, "used": round(used + amount, 6)}

        account = _to_account(user_id, self.store.update(_KEY_PREFIX + user_id, _mutate))
        logger.info(
            "Debited %.4f credits from %s (used=%.4f limit=%.2f)",
            amount,
            user_id,
            account.used,
            account.monthly_limit,
        )
        return account.remaining

    def grant(self, user_id: str, monthly_limit: float) -> CreditAccount:
        """Set the monthly limit for a user, keeping current-period usage."""

        if monthly_limit < 0:
            raise ValueError(f"Monthly limit must be >= 0, got {monthly_limit!r}")

        def _mutate(current: StateValue | None) -> StateValue:
            return {**self._current_period(current), "monthly_limit": float(monthly_limit)}

        return _to_account(user_id, self.store.update(_KEY_PREFIX + user_id, _mutate))

    def _current_period(self, current: StateValue | None) -> StateValue:
        period_start = _month_start(self.store.now())
        if current is None:
            return {
                "used": 0.0,
                "monthly_limit": float(self.default_monthly_limit),
                "period_start": period_start.isoformat(),
            }
        if date.fromisoformat(str(current["period_start"])) < period_start:
            return {**current, "used": 0.0, "period_start": period_start.isoformat()}
        return current


def _month_start(moment: datetime) -> date:
    return date(moment.year, moment.month, 1)


def _to_account(user_id: str, state: StateValue | None) -> CreditAccount:
    if state is None:
        raise RuntimeError(f"Credit account state missing for {user_id}")
    return CreditAccount(
        user_id=user_id,
        used=float(state["used"]),
        monthly_limit=float(state["monthly_limit"]),
        period_start=date.fromisoformat(str(state["period_start"])),
    )
