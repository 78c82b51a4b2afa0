"""Controllers for the jobs, credits and circuits CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from agentform.config import Settings
from agentform.forms.runtime import Runtime, build_circuit_breaker, build_runtime
from agentform.orchestrator.credits import CreditLedger
from agentform.orchestrator.metrics import build_orchestrator_metrics, render_stats_lines
from agentform.orchestrator.models import WorkUnitStatus
from agentform.orchestrator.repository import OrchestratorRepository
from agentform.orchestrator.state_store import SqliteStateStore


@dataclass(slots=True)
class JobsEnqueueCommand:
    """CLI input for enqueuing one domain event."""

    db_path: Path | None
    event_type: str
    payload_path: Path | None
    payload_json: str | None
    priority: int
    max_attempts: int | None
    work_unit_id: str | None = None


@dataclass(slots=True)
class JobsWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    queues: tuple[str, ...] = ()


@dataclass(slots=True)
class JobsStatsCommand:
    db_path: Path | None
    hours: int


@dataclass(slots=True)
class JobsListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    db_path: Path | None
    work_unit_id: str


@dataclass(slots=True)
class JobsMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    work_unit_id: str


@dataclass(slots=True)
class JobsEventsCommand:
    """CLI input for outbound status event listing."""

    db_path: Path | None
    channel_key: str | None
    work_unit_id: str | None
    limit: int


@dataclass(slots=True)
class CreditsCommand:
    db_path: Path | None
    user_id: str
    monthly_limit: float | None = None


@dataclass(slots=True)
class CircuitCommand:
    db_path: Path | None
    dependency_key: str


class OrchestratorCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def enqueue(self, command: JobsEnqueueCommand) -> list[str]:
        payload = _load_payload(command)
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            work_unit_id = runtime.service.enqueue(
                command.event_type,
                payload,
                work_unit_id=command.work_unit_id,
                priority=command.priority,
                max_attempts=command.max_attempts,
            )
            unit = runtime.service.get(work_unit_id)
        if unit is None:
            return [f"Work unit enqueued: {work_unit_id}"]
        return [
            "Work unit enqueued: "
            f"work_unit_id={unit.work_unit_id} event={unit.event_type.value} "
            f"queue={unit.queue_name} status={unit.status.value}",
        ]

    def run_worker(self, command: JobsWorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.queues:
            settings.worker.queues = command.queues
        with _runtime(settings) as runtime:
            worker = runtime.worker
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"partial={summary.partial} failed={summary.failed} "
            f"retried={summary.retried} deferred={summary.deferred} "
            f"idle_polls={summary.idle_polls}",
        ]

    def stats(self, command: JobsStatsCommand) -> list[str]:
        """Show operator-facing queue health and workflow outcome metrics."""

        settings = _settings(command.db_path)
        cutoff = datetime.now(tz=UTC) - timedelta(hours=max(1, command.hours))
        with _repository(settings) as repository:
            snapshot = build_orchestrator_metrics(
                active_units=repository.list_active_work_units(),
                window_units=repository.list_work_units_since(since=cutoff),
                window_events=repository.list_events_since(since=cutoff),
                window_runs=repository.list_runs_since(since=cutoff),
            )
        return render_stats_lines(snapshot=snapshot, hours=command.hours)

    def list_work_units(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = WorkUnitStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            units = repository.list_work_units(status=status_filter, limit=command.limit)

        lines = [f"Work units: {len(units)}"]
        for unit in units:
            lines.append(
                f"  {unit.work_unit_id} event={unit.event_type.value} queue={unit.queue_name} "
                f"status={unit.status.value} priority={unit.priority} "
                f"attempt={unit.attempt}/{unit.max_attempts} "
                f"run_after={unit.run_after.isoformat()}",
            )
        return lines

    def inspect(self, command: JobsInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_details(work_unit_id=command.work_unit_id)
        if details is None:
            return [f"Work unit not found: {command.work_unit_id}"]

        unit = details.work_unit
        lines = [
            f"Work unit: {unit.work_unit_id}",
            f"Event: {unit.event_type.value}",
            f"Queue: {unit.queue_name}",
            f"Status: {unit.status.value}",
            f"Attempt: {unit.attempt}/{unit.max_attempts}",
            f"Error category: {unit.error_category.value if unit.error_category else '-'}",
            f"Error: {unit.error_summary or '-'}",
            f"Runs: {len(details.runs)}",
        ]
        for run in details.runs:
            lines.append(
                f"  run {run.run_id} attempt={run.attempt_number} status={run.status.value}",
            )
            for result in run.step_results:
                error = f" error={result.error.category.value}" if result.error else ""
                lines.append(
                    f"    {result.step_name} status={result.status.value} "
                    f"attempt={result.attempt} required={result.required}{error}",
                )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry(self, command: JobsMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            repository.retry(work_unit_id=command.work_unit_id)
        return [f"Work unit re-queued: {command.work_unit_id}"]

    def cancel(self, command: JobsMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            repository.cancel(work_unit_id=command.work_unit_id)
        return [f"Work unit canceled: {command.work_unit_id}"]

    def status_events(self, command: JobsEventsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            events = repository.list_status_events(
                channel_key=command.channel_key,
                work_unit_id=command.work_unit_id,
                limit=command.limit,
            )
        lines = [f"Status events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.channel_key} {event.event_type} "
                f"{json.dumps(event.payload, ensure_ascii=False, sort_keys=True)}",
            )
        return lines

    def show_credits(self, command: CreditsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            ledger = _ledger(settings, repository)
            account = ledger.account(command.user_id)
        return [
            f"Credits for {account.user_id}: used={account.used:.4f} "
            f"limit={account.monthly_limit:.2f} remaining={account.remaining:.4f} "
            f"period_start={account.period_start.isoformat()}",
        ]

    def grant_credits(self, command: CreditsCommand) -> list[str]:
        if command.monthly_limit is None or command.monthly_limit < 0:
            raise ValueError("Monthly limit must be a non-negative number.")
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            account = _ledger(settings, repository).grant(command.user_id, command.monthly_limit)
        return [
            f"Monthly limit for {account.user_id} set to {account.monthly_limit:.2f} "
            f"(remaining={account.remaining:.4f})",
        ]

    def show_circuit(self, command: CircuitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            breaker = build_circuit_breaker(settings, SqliteStateStore(repository.engine))
            snapshot = breaker.state(command.dependency_key)
        opened_at = snapshot.opened_at.isoformat() if snapshot.opened_at else "-"
        return [
            f"Circuit {snapshot.dependency_key}: state={snapshot.state.value} "
            f"failures={snapshot.consecutive_failures} opened_at={opened_at} "
            f"trial_in_flight={snapshot.trial_in_flight}",
        ]

    def reset_circuit(self, command: CircuitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            breaker = build_circuit_breaker(settings, SqliteStateStore(repository.engine))
            breaker.reset(command.dependency_key)
        return [f"Circuit reset: {command.dependency_key}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _load_payload(command: JobsEnqueueCommand) -> dict[str, Any]:
    if command.payload_path is not None:
        raw = command.payload_path.read_text(encoding="utf-8")
    elif command.payload_json is not None:
        raw = command.payload_json
    else:
        raise ValueError("Provide the event payload with --payload-file or --payload.")
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object.")
    return payload


def _ledger(settings: Settings, repository: OrchestratorRepository) -> CreditLedger:
    return CreditLedger(
        SqliteStateStore(repository.engine),
        default_monthly_limit=settings.limits.default_monthly_credits,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    with _repository(settings) as repository:
        runtime = build_runtime(settings, repository)
        try:
            yield runtime
        finally:
            runtime.close()
