"""CLI entrypoint for agentform-jobs."""

import logging
import os
from pathlib import Path

import rich_click as click

from agentform import __version__
from agentform.forms.llm import LLM_DEPENDENCY_KEY
from agentform.orchestrator.controllers import (
    CircuitCommand,
    CreditsCommand,
    JobsEnqueueCommand,
    JobsEventsCommand,
    JobsInspectCommand,
    JobsListCommand,
    JobsMutateCommand,
    JobsStatsCommand,
    JobsWorkerCommand,
    OrchestratorCliController,
)
from agentform.orchestrator.models import EventType

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agentform")
def agentform() -> None:
    """Job orchestration CLI for AI form workflows."""

    logging.basicConfig(
        level=os.getenv("AGENTFORM_LOG_LEVEL", "INFO").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agentform.group()
def jobs() -> None:
    """Work unit queue commands."""


@jobs.command("enqueue")
@_DB_PATH_OPTION
@click.option(
    "--event-type",
    type=click.Choice([event.value for event in EventType]),
    required=True,
    help="Domain event that starts the workflow.",
)
@click.option(
    "--payload-file",
    "payload_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with the event payload.",
)
@click.option("--payload", "payload_json", default=None, help="Inline JSON event payload.")
@click.option("--work-unit-id", default=None, help="Explicit work unit id.")
@click.option("--priority", type=int, default=100, show_default=True, help="Lower runs first.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Override the workflow's default attempt budget.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    event_type: str,
    payload_path: Path | None,
    payload_json: str | None,
    work_unit_id: str | None,
    priority: int,
    max_attempts: int | None,
) -> None:
    """Queue one domain event for processing."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.enqueue(
            JobsEnqueueCommand(
                db_path=db_path,
                event_type=event_type,
                payload_path=payload_path,
                payload_json=payload_json,
                priority=priority,
                max_attempts=max_attempts,
                work_unit_id=work_unit_id,
            ),
        ),
    )


@jobs.command("worker")
@_DB_PATH_OPTION
@click.option("--once", is_flag=True, default=False, help="Process at most one work unit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many work units.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
@click.option("--queue", "queues", multiple=True, help="Queue to consume. Can be repeated.")
def jobs_worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    queues: tuple[str, ...],
) -> None:
    """Run the queue worker."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.run_worker(
            JobsWorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                queues=queues,
            ),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option("--status", default=None, help="Filter by status (queued, running, failed, ...).")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of work units to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List work units, newest first."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_work_units(
            JobsListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.argument("work_unit_id")
def jobs_inspect(db_path: Path | None, work_unit_id: str) -> None:
    """Show one work unit with its runs and event stream."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect(
            JobsInspectCommand(db_path=db_path, work_unit_id=work_unit_id),
        ),
    )


@jobs.command("retry")
@_DB_PATH_OPTION
@click.argument("work_unit_id")
def jobs_retry(db_path: Path | None, work_unit_id: str) -> None:
    """Re-queue a failed or canceled work unit."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.retry(
            JobsMutateCommand(db_path=db_path, work_unit_id=work_unit_id),
        ),
    )


@jobs.command("cancel")
@_DB_PATH_OPTION
@click.argument("work_unit_id")
def jobs_cancel(db_path: Path | None, work_unit_id: str) -> None:
    """Cancel a queued or running work unit."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.cancel(
            JobsMutateCommand(db_path=db_path, work_unit_id=work_unit_id),
        ),
    )


@jobs.command("stats")
@_DB_PATH_OPTION
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def jobs_stats(db_path: Path | None, hours: int) -> None:
    """Show queue health and workflow outcome metrics."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.stats(JobsStatsCommand(db_path=db_path, hours=hours)))


@jobs.command("events")
@_DB_PATH_OPTION
@click.option(
    "--channel",
    "channel_key",
    default=None,
    help="Status channel, e.g. form_response:ID.",
)
@click.option("--work-unit-id", default=None, help="Only events of this work unit.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max number of events to print.",
)
def jobs_events(
    db_path: Path | None,
    channel_key: str | None,
    work_unit_id: str | None,
    limit: int,
) -> None:
    """List outbound status events (completed, failed, dynamic_question_ready)."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.status_events(
            JobsEventsCommand(
                db_path=db_path,
                channel_key=channel_key,
                work_unit_id=work_unit_id,
                limit=limit,
            ),
        ),
    )


@agentform.group("credits")
def credits_group() -> None:
    """Monthly AI credit commands."""


@credits_group.command("show")
@_DB_PATH_OPTION
@click.argument("user_id")
def credits_show(db_path: Path | None, user_id: str) -> None:
    """Show the current period's usage for a user."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.show_credits(CreditsCommand(db_path=db_path, user_id=user_id)),
    )


@credits_group.command("grant")
@_DB_PATH_OPTION
@click.argument("user_id")
@click.option(
    "--monthly-limit",
    type=click.FloatRange(min=0),
    required=True,
    help="New monthly credit limit.",
)
def credits_grant(db_path: Path | None, user_id: str, monthly_limit: float) -> None:
    """Set a user's monthly credit limit."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.grant_credits(
            CreditsCommand(db_path=db_path, user_id=user_id, monthly_limit=monthly_limit),
        ),
    )


@agentform.group("circuits")
def circuits_group() -> None:
    """Dependency circuit breaker commands."""


@circuits_group.command("show")
@_DB_PATH_OPTION
@click.argument("dependency_key", default=LLM_DEPENDENCY_KEY)
def circuits_show(db_path: Path | None, dependency_key: str) -> None:
    """Show the circuit state of a dependency."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.show_circuit(
            CircuitCommand(db_path=db_path, dependency_key=dependency_key),
        ),
    )


@circuits_group.command("reset")
@_DB_PATH_OPTION
@click.argument("dependency_key")
def circuits_reset(db_path: Path | None, dependency_key: str) -> None:
    """Force a dependency circuit back to closed."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.reset_circuit(
            CircuitCommand(db_path=db_path, dependency_key=dependency_key),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agentform()
