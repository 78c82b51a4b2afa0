"""Runtime configuration for the job orchestration core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_QUEUES = ("default", "ai_processing", "integrations")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    queues: tuple[str, ...] = DEFAULT_QUEUES
    stale_after_seconds: int = 1_800
    inline_retry_max_sleep_seconds: float = 30.0


@dataclass(slots=True)
class LimitsSettings:
    """Rate limit, idempotency and AI credit defaults."""

    rate_limit_per_minute: int = 10
    rate_limit_defer_seconds: float = 30.0
    idempotency_window_seconds: float = 300.0
    default_monthly_credits: float = 100.0
    min_credits: float = 1.0


@dataclass(slots=True)
class CircuitSettings:
    """Circuit breaker defaults for external dependencies."""

    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(slots=True)
class LlmSettings:
    """LLM workflow engine endpoint settings."""

    endpoint: str = ""
    api_key: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class IntegrationSettings:
    """Outbound integration delivery settings."""

    http_timeout_seconds: float = 30.0
    user_agent: str = "AgentForm/1.0"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agentform.db")
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    limits: LimitsSettings = field(default_factory=LimitsSettings)
    circuit: CircuitSettings = field(default_factory=CircuitSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    integrations: IntegrationSettings = field(default_factory=IntegrationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENTFORM_DB_PATH", ".agentform.db")),
            log_level=os.getenv("AGENTFORM_LOG_LEVEL", "INFO").strip().upper(),
            sqlite_busy_timeout_ms=int(os.getenv("AGENTFORM_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                worker_id=os.getenv("AGENTFORM_WORKER_ID", f"worker-{os.getpid()}"),
                poll_interval_seconds=float(
                    os.getenv("AGENTFORM_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                queues=_csv_tuple(os.getenv("AGENTFORM_WORKER_QUEUES")) or DEFAULT_QUEUES,
                stale_after_seconds=int(os.getenv("AGENTFORM_WORKER_STALE_SECONDS", "1800")),
                inline_retry_max_sleep_seconds=float(
                    os.getenv("AGENTFORM_INLINE_RETRY_MAX_SLEEP_SECONDS", "30"),
                ),
            ),
            limits=LimitsSettings(
                rate_limit_per_minute=int(os.getenv("AGENTFORM_RATE_LIMIT_PER_MINUTE", "10")),
                rate_limit_defer_seconds=float(
                    os.getenv("AGENTFORM_RATE_LIMIT_DEFER_SECONDS", "30"),
                ),
                idempotency_window_seconds=float(
                    os.getenv("AGENTFORM_IDEMPOTENCY_WINDOW_SECONDS", "300"),
                ),
                default_monthly_credits=float(
                    os.getenv("AGENTFORM_DEFAULT_MONTHLY_CREDITS", "100"),
                ),
                min_credits=float(os.getenv("AGENTFORM_MIN_CREDITS", "1.0")),
            ),
            circuit=CircuitSettings(
                failure_threshold=int(os.getenv("AGENTFORM_CIRCUIT_THRESHOLD", "5")),
                cooldown_seconds=float(os.getenv("AGENTFORM_CIRCUIT_COOLDOWN_SECONDS", "60")),
            ),
            llm=LlmSettings(
                endpoint=os.getenv("AGENTFORM_LLM_ENDPOINT", "").strip(),
                api_key=os.getenv("AGENTFORM_LLM_API_KEY") or None,
                timeout_seconds=float(os.getenv("AGENTFORM_LLM_TIMEOUT_SECONDS", "30")),
            ),
            integrations=IntegrationSettings(
                http_timeout_seconds=float(os.getenv("AGENTFORM_HTTP_TIMEOUT_SECONDS", "30")),
                user_agent=os.getenv("AGENTFORM_USER_AGENT", "AgentForm/1.0"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid AGENTFORM_LOG_LEVEL: {self.log_level!r}")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENTFORM_SQLITE_BUSY_TIMEOUT_MS must be a positive integer.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("AGENTFORM_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if not self.worker.queues:
            raise ValueError("AGENTFORM_WORKER_QUEUES must name at least one queue.")
        if self.limits.rate_limit_per_minute <= 0:
            raise ValueError("AGENTFORM_RATE_LIMIT_PER_MINUTE must be a positive integer.")
        if self.limits.idempotency_window_seconds <= 0:
            raise ValueError("AGENTFORM_IDEMPOTENCY_WINDOW_SECONDS must be > 0.")
        if self.limits.default_monthly_credits < 0:
            raise ValueError("AGENTFORM_DEFAULT_MONTHLY_CREDITS must be >= 0.")
        if self.circuit.failure_threshold <= 0:
            raise ValueError("AGENTFORM_CIRCUIT_THRESHOLD must be a positive integer.")
        if self.circuit.cooldown_seconds <= 0:
            raise ValueError("AGENTFORM_CIRCUIT_COOLDOWN_SECONDS must be > 0.")
        if self.llm.endpoint:
            parsed = urlparse(self.llm.endpoint)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid AGENTFORM_LLM_ENDPOINT: "
                    f"{self.llm.endpoint!r}. Expected an absolute http(s) URL.",
                )


def _csv_tuple(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)
