"""Queue health and workflow outcome metrics for the stats command."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import UTC

from agentform.orchestrator.models import (
    RunRecordView,
    StepStatus,
    WorkUnitEventView,
    WorkUnitStatus,
    WorkUnitView,
)

_TERMINAL_STATUSES = {
    WorkUnitStatus.SUCCEEDED,
    WorkUnitStatus.FAILED,
    WorkUnitStatus.CANCELED,
}


@dataclass(slots=True)
class RetryCategoryMetric:
    """Automatic retries scheduled for one error category."""

    category: str
    scheduled: int
    succeeded_after_retry: int

    @property
    def success_ratio(self) -> float:
        if self.scheduled == 0:
            return 0.0
        return self.succeeded_after_retry / self.scheduled


@dataclass(slots=True)
class LatencyPercentiles:
    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class OrchestratorMetricsSnapshot:
    """Aggregated metrics over active units and one time window."""

    active_status_counts: dict[str, int]
    active_queue_counts: dict[str, int]
    window_unit_count: int
    terminal_status_counts: dict[str, int]
    failure_category_counts: dict[str, int]
    run_status_counts: dict[str, int]
    retry_metrics: list[RetryCategoryMetric]
    deferred_total: int
    step_failure_counts: dict[str, int]
    step_skip_reasons: dict[str, int]
    latency_by_event_type: dict[str, LatencyPercentiles]


def build_orchestrator_metrics(
    *,
    active_units: list[WorkUnitView],
    window_units: list[WorkUnitView],
    window_events: list[WorkUnitEventView],
    window_runs: list[RunRecordView] | None = None,
) -> OrchestratorMetricsSnapshot:
    """Build one metrics snapshot from queue, event and run views."""

    active_status_counts = Counter(unit.status.value for unit in active_units)
    active_queue_counts = Counter(unit.queue_name for unit in active_units)

    final_status = {unit.work_unit_id: unit.status for unit in window_units}
    retry_totals = Counter[str]()
    retry_successes = Counter[str]()
    deferred_total = 0
    for event in window_events:
        if event.event_type == "deferred":
            deferred_total += 1
            continue
        if event.event_type != "retry_scheduled":
            continue
        category = str(event.details.get("error_category", "unknown"))
        retry_totals[category] += 1
        if final_status.get(event.work_unit_id) == WorkUnitStatus.SUCCEEDED:
            retry_successes[category] += 1

    terminal_status_counts = Counter[str]()
    failure_category_counts = Counter[str]()
    latency_values: dict[str, list[float]] = defaultdict(list)
    for unit in window_units:
        if unit.status not in _TERMINAL_STATUSES:
            continue
        terminal_status_counts[unit.status.value] += 1
        if unit.status == WorkUnitStatus.FAILED and unit.error_category is not None:
            failure_category_counts[unit.error_category.value] += 1
        if unit.finished_at is not None:
            latency_values[unit.event_type.value].append(
                max(
                    0.0,
                    (
                        unit.finished_at.astimezone(UTC) - unit.enqueued_at.astimezone(UTC)
                    ).total_seconds(),
                ),
            )

    run_status_counts = Counter[str]()
    step_failure_counts = Counter[str]()
    step_skip_reasons = Counter[str]()
    for run in window_runs or []:
        run_status_counts[run.status.value] += 1
        for result in run.step_results:
            if result.status == StepStatus.FAILURE:
                step_failure_counts[result.step_name] += 1
            elif result.status == StepStatus.SKIPPED:
                reason = str(result.side_effects.get("skip_reason", "unspecified"))
                step_skip_reasons[reason] += 1

    return OrchestratorMetricsSnapshot(
        active_status_counts=dict(sorted(active_status_counts.items())),
        active_queue_counts=dict(sorted(active_queue_counts.items())),
        window_unit_count=len(window_units),
        terminal_status_counts=dict(sorted(terminal_status_counts.items())),
        failure_category_counts=dict(sorted(failure_category_counts.items())),
        run_status_counts=dict(sorted(run_status_counts.items())),
        retry_metrics=[
            RetryCategoryMetric(
                category=category,
                scheduled=count,
                succeeded_after_retry=retry_successes[category],
            )
            for category, count in sorted(retry_totals.items())
        ],
        deferred_total=deferred_total,
        step_failure_counts=dict(sorted(step_failure_counts.items())),
        step_skip_reasons=dict(sorted(step_skip_reasons.items())),
        latency_by_event_type={
            event_type: LatencyPercentiles(
                sample_size=len(values),
                p50_seconds=_percentile(values, 0.50),
                p90_seconds=_percentile(values, 0.90),
                p99_seconds=_percentile(values, 0.99),
            )
            for event_type, values in sorted(latency_values.items())
        },
    )


def render_stats_lines(*, snapshot: OrchestratorMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Work queue health (window={hours}h)",
        "Queue status: " + (_fmt_key_value(snapshot.active_status_counts) or "queued=0 running=0"),
        "Active by queue: " + (_fmt_key_value(snapshot.active_queue_counts) or "none"),
        f"Window work units: {snapshot.window_unit_count}",
        "Terminal status: " + (_fmt_key_value(snapshot.terminal_status_counts) or "none"),
        "Run status: " + (_fmt_key_value(snapshot.run_status_counts) or "none"),
        f"Deferred (rate limited): {snapshot.deferred_total}",
    ]

    if snapshot.retry_metrics:
        lines.append("Retry metrics:")
        for metric in snapshot.retry_metrics:
            lines.append(
                "  "
                f"category={metric.category} scheduled={metric.scheduled} "
                f"succeeded_after_retry={metric.succeeded_after_retry} "
                f"success_ratio={metric.success_ratio:.1%}",
            )
    else:
        lines.append("Retry metrics: none")

    lines.append(
        "Failure categories: " + (_fmt_key_value(snapshot.failure_category_counts) or "none"),
    )
    lines.append("Step failures: " + (_fmt_key_value(snapshot.step_failure_counts) or "none"))
    lines.append("Skip reasons: " + (_fmt_key_value(snapshot.step_skip_reasons) or "none"))

    if snapshot.latency_by_event_type:
        lines.append("Latency percentiles (enqueued_at -> finished_at):")
        for event_type, metrics in snapshot.latency_by_event_type.items():
            lines.append(
                "  "
                f"event_type={event_type} n={metrics.sample_size} "
                f"p50={metrics.p50_seconds:.2f}s "
                f"p90={metrics.p90_seconds:.2f}s "
                f"p99={metrics.p99_seconds:.2f}s",
            )
    else:
        lines.append("Latency percentiles: none")
    return lines


def _percentile(values: list[float], quantile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, round((len(ordered) - 1) * quantile)))
    return ordered[index]


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())
