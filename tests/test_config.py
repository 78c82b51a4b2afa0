from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agentform.config import (
    DEFAULT_QUEUES,
    CircuitSettings,
    LimitsSettings,
    LlmSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENTFORM_DB_PATH",
        "AGENTFORM_LOG_LEVEL",
        "AGENTFORM_WORKER_QUEUES",
        "AGENTFORM_RATE_LIMIT_PER_MINUTE",
        "AGENTFORM_LLM_ENDPOINT",
        "AGENTFORM_LLM_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agentform.db")
    assert settings.log_level == "INFO"
    assert settings.worker.queues == DEFAULT_QUEUES
    assert settings.limits.rate_limit_per_minute == 10
    assert settings.llm.endpoint == ""
    assert settings.llm.api_key is None
    settings.validate()


def test_from_env_parses_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENTFORM_LOG_LEVEL", " debug ")
    monkeypatch.setenv("AGENTFORM_WORKER_QUEUES", "ai_processing, integrations,ai_processing,")
    monkeypatch.setenv("AGENTFORM_RATE_LIMIT_PER_MINUTE", "25")
    monkeypatch.setenv("AGENTFORM_DEFAULT_MONTHLY_CREDITS", "12.5")
    monkeypatch.setenv("AGENTFORM_CIRCUIT_COOLDOWN_SECONDS", "90")
    monkeypatch.setenv("AGENTFORM_LLM_ENDPOINT", " https://llm.example.com/workflows ")
    monkeypatch.setenv("AGENTFORM_SQLITE_BUSY_TIMEOUT_MS", "12345")

    settings = Settings.from_env()

    assert settings.log_level == "DEBUG"
    assert settings.worker.queues == ("ai_processing", "integrations")
    assert settings.limits.rate_limit_per_minute == 25
    assert settings.limits.default_monthly_credits == 12.5
    assert settings.circuit.cooldown_seconds == 90.0
    assert settings.llm.endpoint == "https://llm.example.com/workflows"
    assert settings.sqlite_busy_timeout_ms == 12345
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENTFORM_DB_PATH", "/tmp/ignored.db")

    settings = Settings.from_env(db_path=tmp_path / "jobs.db")

    assert settings.db_path == tmp_path / "jobs.db"


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(log_level="LOUD"), "AGENTFORM_LOG_LEVEL"),
        (Settings(sqlite_busy_timeout_ms=0), "AGENTFORM_SQLITE_BUSY_TIMEOUT_MS"),
        (
            Settings(worker=WorkerSettings(poll_interval_seconds=-1)),
            "AGENTFORM_WORKER_POLL_INTERVAL_SECONDS",
        ),
        (Settings(worker=WorkerSettings(queues=())), "AGENTFORM_WORKER_QUEUES"),
        (
            Settings(limits=LimitsSettings(rate_limit_per_minute=0)),
            "AGENTFORM_RATE_LIMIT_PER_MINUTE",
        ),
        (
            Settings(limits=LimitsSettings(idempotency_window_seconds=0)),
            "AGENTFORM_IDEMPOTENCY_WINDOW_SECONDS",
        ),
        (
            Settings(limits=LimitsSettings(default_monthly_credits=-1)),
            "AGENTFORM_DEFAULT_MONTHLY_CREDITS",
        ),
        (Settings(circuit=CircuitSettings(failure_threshold=0)), "AGENTFORM_CIRCUIT_THRESHOLD"),
        (
            Settings(circuit=CircuitSettings(cooldown_seconds=0)),
            "AGENTFORM_CIRCUIT_COOLDOWN_SECONDS",
        ),
        (Settings(llm=LlmSettings(endpoint="ftp://llm.example.com")), "AGENTFORM_LLM_ENDPOINT"),
        (Settings(llm=LlmSettings(endpoint="llm.example.com")), "Expected an absolute"),
    ],
)
def test_validate_rejects_invalid_values(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()


def test_validate_accepts_http_llm_endpoint() -> None:
    Settings(llm=LlmSettings(endpoint="http://localhost:8080/run")).validate()
