"""Persistent queue, run audit and entity repository."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agentform.orchestrator.models import (
    ErrorCategory,
    EventType,
    RunRecord,
    RunRecordView,
    RunStatus,
    StatusEventView,
    StepError,
    StepResult,
    StepStatus,
    WorkUnitCreate,
    WorkUnitDetails,
    WorkUnitEventView,
    WorkUnitStatus,
    WorkUnitView,
)
from agentform.storage.alembic_runner import upgrade_head
from agentform.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agentform.storage.sqlmodel_models import (
    EntityRecordRow,
    RunRecordRow,
    StatusEventRow,
    StepResultRow,
    WorkUnitEventRow,
    WorkUnitRow,
)

EntityMerge = Callable[[dict[str, Any]], dict[str, Any]]


class OrchestratorRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: WorkUnitCreate) -> WorkUnitView:
        """Create a queued work unit."""

        now = utc_now()
        work_unit_id = payload.work_unit_id or str(uuid4())
        with Session(self.engine) as session:
            existing = session.exec(
                select(WorkUnitRow).where(WorkUnitRow.work_unit_id == work_unit_id),
            ).one_or_none()
            if existing is not None:
                raise RuntimeError(f"Work unit already exists: {work_unit_id}")
            row = WorkUnitRow(
                work_unit_id=work_unit_id,
                event_type=payload.event_type.value,
                queue_name=payload.queue_name,
                payload_json=dump_json(payload.payload),
                priority=payload.priority,
                status=WorkUnitStatus.QUEUED.value,
                attempt=0,
                max_attempts=payload.max_attempts,
                run_after=to_db_datetime(payload.run_after or now),
                enqueued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type="enqueued",
                status_from=None,
                status_to=WorkUnitStatus.QUEUED,
                details={
                    "event_type": payload.event_type.value,
                    "queue_name": payload.queue_name,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_work_unit_view(row)

    def claim_next_ready(
        self,
        *,
        worker_id: str,
        queues: Sequence[str] | None = None,
    ) -> WorkUnitView | None:
        """Atomically claim one work unit ready for execution."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(WorkUnitRow).where(
                    WorkUnitRow.status == WorkUnitStatus.QUEUED.value,
                    WorkUnitRow.run_after <= to_db_datetime(now),
                )
                if queues:
                    statement = statement.where(col(WorkUnitRow.queue_name).in_(list(queues)))
                candidate = session.exec(
                    statement.order_by(
                        col(WorkUnitRow.priority).asc(),
                        col(WorkUnitRow.run_after).asc(),
                        col(WorkUnitRow.enqueued_at).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(WorkUnitRow)
                    .where(
                        col(WorkUnitRow.work_unit_id) == candidate.work_unit_id,
                        col(WorkUnitRow.status) == WorkUnitStatus.QUEUED.value,
                    )
                    .values(
                        status=WorkUnitStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(WorkUnitRow).where(
                        WorkUnitRow.work_unit_id == candidate.work_unit_id,
                    ),
                ).one()
                self._add_event(
                    session=session,
                    work_unit_id=claimed.work_unit_id,
                    event_type="claimed",
                    status_from=WorkUnitStatus.QUEUED,
                    status_to=WorkUnitStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                return _to_work_unit_view(claimed)

    def touch(self, *, work_unit_id: str) -> None:
        """Update heartbeat for a running work unit."""

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkUnitRow)
                .where(
                    col(WorkUnitRow.work_unit_id) == work_unit_id,
                    col(WorkUnitRow.status) == WorkUnitStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()

    def complete(self, *, work_unit_id: str, run_status: RunStatus) -> bool:
        """Mark a running work unit as succeeded."""

        return self._finish_running(
            work_unit_id=work_unit_id,
            status_to=WorkUnitStatus.SUCCEEDED,
            event_type="succeeded",
            values={"error_category": None, "error_summary": None},
            details={"run_status": run_status.value},
        )

    def fail(
        self,
        *,
        work_unit_id: str,
        category: ErrorCategory,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a running work unit as terminally failed."""

        return self._finish_running(
            work_unit_id=work_unit_id,
            status_to=WorkUnitStatus.FAILED,
            event_type="failed",
            values={"error_category": category.value, "error_summary": error_summary},
            details={
                "error_category": category.value,
                "error_summary": error_summary,
                **(details or {}),
            },
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        work_unit_id: str,
        run_after: datetime,
        category: ErrorCategory,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a running work unit for automatic retry."""

        return self._requeue_running(
            work_unit_id=work_unit_id,
            run_after=run_after,
            category=category,
            error_summary=error_summary,
            event_type="retry_scheduled",
            refund_attempt=False,
            details=details,
        )

    def defer(
        self,
        *,
        work_unit_id: str,
        run_after: datetime,
        category: ErrorCategory,
        reason: str,
    ) -> bool:
        """Requeue a running work unit without consuming an attempt."""

        return self._requeue_running(
            work_unit_id=work_unit_id,
            run_after=run_after,
            category=category,
            error_summary=reason,
            event_type="deferred",
            refund_attempt=True,
            details=None,
        )

    def retry(self, *, work_unit_id: str) -> None:
        """Manual operator retry for failed/canceled work units."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, work_unit_id=work_unit_id)
            previous = WorkUnitStatus(row.status)
            if previous not in {WorkUnitStatus.FAILED, WorkUnitStatus.CANCELED}:
                raise RuntimeError(
                    f"Only failed/canceled work units can be retried manually, got {row.status}.",
                )
            result = session.exec(
                sa_update(WorkUnitRow)
                .where(
                    col(WorkUnitRow.work_unit_id) == work_unit_id,
                    col(WorkUnitRow.status) == previous.value,
                )
                .values(
                    status=WorkUnitStatus.QUEUED.value,
                    attempt=0,
                    run_after=to_db_datetime(now),
                    started_at=None,
                    heartbeat_at=None,
                    finished_at=None,
                    error_category=None,
                    error_summary=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Work unit state changed concurrently while retrying; "
                    f"please retry command (work_unit_id={work_unit_id}).",
                )
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=WorkUnitStatus.QUEUED,
                details={},
            )
            session.commit()

    def cancel(self, *, work_unit_id: str) -> None:
        """Cancel a queued/running work unit."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, work_unit_id=work_unit_id)
            previous = WorkUnitStatus(row.status)
            if previous not in {WorkUnitStatus.QUEUED, WorkUnitStatus.RUNNING}:
                raise RuntimeError(f"Work unit cannot be canceled from status={row.status}")
            result = session.exec(
                sa_update(WorkUnitRow)
                .where(
                    col(WorkUnitRow.work_unit_id) == work_unit_id,
                    col(WorkUnitRow.status) == previous.value,
                )
                .values(
                    status=WorkUnitStatus.CANCELED.value,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Work unit state changed concurrently while canceling; "
                    f"please retry command (work_unit_id={work_unit_id}).",
                )
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type="canceled",
                status_from=previous,
                status_to=WorkUnitStatus.CANCELED,
                details={},
            )
            session.commit()

    def recover_stale_running(self, *, stale_after: timedelta) -> int:
        """Requeue running units whose heartbeat is older than `stale_after`."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(WorkUnitRow).where(
                    WorkUnitRow.status == WorkUnitStatus.RUNNING.value,
                    col(WorkUnitRow.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in stale_rows:
                result = session.exec(
                    sa_update(WorkUnitRow)
                    .where(
                        col(WorkUnitRow.work_unit_id) == row.work_unit_id,
                        col(WorkUnitRow.status) == WorkUnitStatus.RUNNING.value,
                        col(WorkUnitRow.heartbeat_at) == row.heartbeat_at,
                    )
                    .values(
                        status=WorkUnitStatus.QUEUED.value,
                        run_after=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    work_unit_id=row.work_unit_id,
                    event_type="stale_recovered",
                    status_from=WorkUnitStatus.RUNNING,
                    status_to=WorkUnitStatus.QUEUED,
                    details={"worker_id": row.worker_id},
                )
            session.commit()
        return recovered

    def get(self, *, work_unit_id: str) -> WorkUnitView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(WorkUnitRow).where(WorkUnitRow.work_unit_id == work_unit_id),
            ).one_or_none()
            return _to_work_unit_view(row) if row is not None else None

    def list_work_units(
        self,
        *,
        status: WorkUnitStatus | None = None,
        limit: int = 50,
    ) -> list[WorkUnitView]:
        """List recent work units, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(WorkUnitRow)
            if status is not None:
                statement = statement.where(WorkUnitRow.status == status.value)
            rows = session.exec(
                statement.order_by(col(WorkUnitRow.enqueued_at).desc()).limit(limit),
            ).all()
        return [_to_work_unit_view(row) for row in rows]

    def list_work_units_since(self, *, since: datetime) -> list[WorkUnitView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnitRow).where(col(WorkUnitRow.updated_at) >= to_db_datetime(since)),
            ).all()
        return [_to_work_unit_view(row) for row in rows]

    def get_details(self, *, work_unit_id: str) -> WorkUnitDetails | None:
        """Return work unit details with event stream and run history."""

        with Session(self.engine) as session:
            row = session.exec(
                select(WorkUnitRow).where(WorkUnitRow.work_unit_id == work_unit_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(WorkUnitEventRow)
                .where(WorkUnitEventRow.work_unit_id == work_unit_id)
                .order_by(col(WorkUnitEventRow.created_at).asc(), col(WorkUnitEventRow.id).asc()),
            ).all()
            view = _to_work_unit_view(row)

        events = [
            WorkUnitEventView(
                event_id=event.id or 0,
                work_unit_id=event.work_unit_id,
                event_type=event.event_type,
                status_from=(
                    WorkUnitStatus(event.status_from) if event.status_from is not None else None
                ),
                status_to=WorkUnitStatus(event.status_to) if event.status_to is not None else None,
                created_at=to_utc_aware(event.created_at),
                details=load_json_object(event.details_json),
            )
            for event in event_rows
        ]
        return WorkUnitDetails(
            work_unit=view,
            events=events,
            runs=self.list_runs(work_unit_id=work_unit_id),
        )

    def list_events_since(self, *, since: datetime) -> list[WorkUnitEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnitEventRow).where(
                    col(WorkUnitEventRow.created_at) >= to_db_datetime(since),
                ),
            ).all()
        return [
            WorkUnitEventView(
                event_id=row.id or 0,
                work_unit_id=row.work_unit_id,
                event_type=row.event_type,
                status_from=WorkUnitStatus(row.status_from) if row.status_from else None,
                status_to=WorkUnitStatus(row.status_to) if row.status_to else None,
                created_at=to_utc_aware(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def add_event(
        self,
        *,
        work_unit_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append a free-form audit event for a work unit."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details or {},
            )
            session.commit()

    def record_run(self, record: RunRecord) -> None:
        """Persist a finished run with its ordered step results."""

        if record.started_at is None:
            raise ValueError(f"Run {record.run_id} has not started.")
        with Session(self.engine) as session:
            session.add(
                RunRecordRow(
                    run_id=record.run_id,
                    work_unit_id=record.work_unit_id,
                    attempt_number=record.attempt_number,
                    status=record.status.value,
                    started_at=to_db_datetime(record.started_at),
                    finished_at=(
                        to_db_datetime(record.finished_at)
                        if record.finished_at is not None
                        else None
                    ),
                ),
            )
            session.flush()
            for position, result in enumerate(record.step_results):
                session.add(
                    StepResultRow(
                        run_id=record.run_id,
                        position=position,
                        step_name=result.step_name,
                        status=result.status.value,
                        required=result.required,
                        attempt=result.attempt,
                        error_category=result.error.category.value if result.error else None,
                        error_message=result.error.message if result.error else None,
                        side_effects_json=(
                            dump_json(result.side_effects) if result.side_effects else None
                        ),
                        started_at=(
                            to_db_datetime(result.started_at) if result.started_at else None
                        ),
                        finished_at=(
                            to_db_datetime(result.finished_at) if result.finished_at else None
                        ),
                    ),
                )
            self._add_event(
                session=session,
                work_unit_id=record.work_unit_id,
                event_type="run_finished",
                status_from=None,
                status_to=None,
                details={
                    "run_id": record.run_id,
                    "attempt_number": record.attempt_number,
                    "run_status": record.status.value,
                    "steps": len(record.step_results),
                },
            )
            session.commit()

    def last_run_number(self, *, work_unit_id: str) -> int:
        """Highest recorded run attempt number for the unit; 0 before the first run."""

        with Session(self.engine) as session:
            highest = session.exec(
                select(func.max(RunRecordRow.attempt_number)).where(
                    RunRecordRow.work_unit_id == work_unit_id,
                ),
            ).one()
        return int(highest or 0)

    def list_runs(self, *, work_unit_id: str) -> list[RunRecordView]:
        with Session(self.engine) as session:
            run_rows = session.exec(
                select(RunRecordRow)
                .where(RunRecordRow.work_unit_id == work_unit_id)
                .order_by(col(RunRecordRow.started_at).asc()),
            ).all()
            views: list[RunRecordView] = []
            for run in run_rows:
                step_rows = session.exec(
                    select(StepResultRow)
                    .where(StepResultRow.run_id == run.run_id)
                    .order_by(col(StepResultRow.position).asc()),
                ).all()
                views.append(
                    RunRecordView(
                        run_id=run.run_id,
                        work_unit_id=run.work_unit_id,
                        attempt_number=run.attempt_number,
                        status=RunStatus(run.status),
                        started_at=to_utc_aware(run.started_at),
                        finished_at=to_utc_aware(run.finished_at) if run.finished_at else None,
                        step_results=[_to_step_result(step) for step in step_rows],
                    ),
                )
        return views

    def list_runs_since(self, *, since: datetime) -> list[RunRecordView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunRecordRow).where(
                    col(RunRecordRow.started_at) >= to_db_datetime(since),
                ),
            ).all()
            steps_by_run: dict[str, list[StepResult]] = {row.run_id: [] for row in rows}
            if steps_by_run:
                step_rows = session.exec(
                    select(StepResultRow)
                    .where(col(StepResultRow.run_id).in_(list(steps_by_run)))
                    .order_by(col(StepResultRow.run_id), col(StepResultRow.position)),
                ).all()
                for step in step_rows:
                    steps_by_run[step.run_id].append(_to_step_result(step))
        return [
            RunRecordView(
                run_id=row.run_id,
                work_unit_id=row.work_unit_id,
                attempt_number=row.attempt_number,
                status=RunStatus(row.status),
                started_at=to_utc_aware(row.started_at),
                finished_at=to_utc_aware(row.finished_at) if row.finished_at else None,
                step_results=steps_by_run[row.run_id],
            )
            for row in rows
        ]

    def list_active_work_units(self) -> list[WorkUnitView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkUnitRow).where(
                    col(WorkUnitRow.status).in_(
                        [WorkUnitStatus.QUEUED.value, WorkUnitStatus.RUNNING.value],
                    ),
                ),
            ).all()
        return [_to_work_unit_view(row) for row in rows]

    def persist_entity(self, entity_key: str, merge: EntityMerge) -> dict[str, Any]:
        """Merge an entity document under compare-and-swap; returns the stored value."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(EntityRecordRow).where(EntityRecordRow.entity_key == entity_key),
                ).one_or_none()
                current = load_json_object(row.payload_json) if row is not None else {}
                merged = merge(dict(current))
                if row is None:
                    session.add(
                        EntityRecordRow(
                            entity_key=entity_key,
                            payload_json=dump_json(merged),
                            version=1,
                            created_at=to_db_datetime(now),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return json.loads(dump_json(merged))

                result = session.exec(
                    sa_update(EntityRecordRow)
                    .where(
                        col(EntityRecordRow.entity_key) == entity_key,
                        col(EntityRecordRow.version) == row.version,
                    )
                    .values(
                        payload_json=dump_json(merged),
                        version=row.version + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return json.loads(dump_json(merged))

    def get_entity(self, entity_key: str) -> dict[str, Any] | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(EntityRecordRow).where(EntityRecordRow.entity_key == entity_key),
            ).one_or_none()
            return load_json_object(row.payload_json) if row is not None else None

    def add_status_event(self, *, channel_key: str, event: dict[str, Any]) -> None:
        with Session(self.engine) as session:
            session.add(
                StatusEventRow(
                    channel_key=channel_key,
                    event_type=str(event.get("type", "unknown")),
                    work_unit_id=(
                        str(event["work_unit_id"]) if event.get("work_unit_id") else None
                    ),
                    payload_json=dump_json(event),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_status_events(
        self,
        *,
        channel_key: str | None = None,
        work_unit_id: str | None = None,
        limit: int = 100,
    ) -> list[StatusEventView]:
        with Session(self.engine) as session:
            statement = select(StatusEventRow)
            if channel_key is not None:
                statement = statement.where(StatusEventRow.channel_key == channel_key)
            if work_unit_id is not None:
                statement = statement.where(StatusEventRow.work_unit_id == work_unit_id)
            rows = session.exec(
                statement.order_by(col(StatusEventRow.id).asc()).limit(limit),
            ).all()
        return [
            StatusEventView(
                event_id=row.id or 0,
                channel_key=row.channel_key,
                event_type=row.event_type,
                work_unit_id=row.work_unit_id,
                payload=load_json_object(row.payload_json),
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def _finish_running(  # noqa: PLR0913
        self,
        *,
        work_unit_id: str,
        status_to: WorkUnitStatus,
        event_type: str,
        values: dict[str, object],
        details: dict[str, object],
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkUnitRow)
                .where(
                    col(WorkUnitRow.work_unit_id) == work_unit_id,
                    col(WorkUnitRow.status) == WorkUnitStatus.RUNNING.value,
                )
                .values(
                    status=status_to.value,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type=event_type,
                status_from=WorkUnitStatus.RUNNING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def _requeue_running(  # noqa: PLR0913
        self,
        *,
        work_unit_id: str,
        run_after: datetime,
        category: ErrorCategory,
        error_summary: str,
        event_type: str,
        refund_attempt: bool,
        details: dict[str, object] | None,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, work_unit_id=work_unit_id)
            attempt = max(row.attempt - 1, 0) if refund_attempt else row.attempt
            result = session.exec(
                sa_update(WorkUnitRow)
                .where(
                    col(WorkUnitRow.work_unit_id) == work_unit_id,
                    col(WorkUnitRow.status) == WorkUnitStatus.RUNNING.value,
                    col(WorkUnitRow.attempt) == row.attempt,
                )
                .values(
                    status=WorkUnitStatus.QUEUED.value,
                    attempt=attempt,
                    run_after=to_db_datetime(run_after),
                    error_category=category.value,
                    error_summary=error_summary,
                    started_at=None,
                    finished_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                work_unit_id=work_unit_id,
                event_type=event_type,
                status_from=WorkUnitStatus.RUNNING,
                status_to=WorkUnitStatus.QUEUED,
                details={
                    "run_after": to_utc_aware(run_after).isoformat(),
                    "error_category": category.value,
                    "attempt": attempt,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def _get_row(self, *, session: Session, work_unit_id: str) -> WorkUnitRow:
        row = session.exec(
            select(WorkUnitRow).where(WorkUnitRow.work_unit_id == work_unit_id),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Work unit not found: {work_unit_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        work_unit_id: str,
        event_type: str,
        status_from: WorkUnitStatus | None,
        status_to: WorkUnitStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkUnitEventRow(
                work_unit_id=work_unit_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_step_result(row: StepResultRow) -> StepResult:
    error = None
    if row.error_category is not None:
        error = StepError(
            category=ErrorCategory(row.error_category),
            message=row.error_message or "",
        )
    return StepResult(
        step_name=row.step_name,
        status=StepStatus(row.status),
        required=row.required,
        attempt=row.attempt,
        error=error,
        side_effects=load_json_object(row.side_effects_json),
        started_at=to_utc_aware(row.started_at) if row.started_at else None,
        finished_at=to_utc_aware(row.finished_at) if row.finished_at else None,
    )


def _to_work_unit_view(row: WorkUnitRow) -> WorkUnitView:
    return WorkUnitView(
        work_unit_id=row.work_unit_id,
        event_type=EventType(row.event_type),
        queue_name=row.queue_name,
        payload=load_json_object(row.payload_json),
        priority=row.priority,
        status=WorkUnitStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware(row.run_after),
        started_at=to_utc_aware(row.started_at) if row.started_at is not None else None,
        heartbeat_at=to_utc_aware(row.heartbeat_at) if row.heartbeat_at is not None else None,
        finished_at=to_utc_aware(row.finished_at) if row.finished_at is not None else None,
        error_category=(
            ErrorCategory(row.error_category) if row.error_category is not None else None
        ),
        error_summary=row.error_summary,
        worker_id=row.worker_id,
        enqueued_at=to_utc_aware(row.enqueued_at),
        updated_at=to_utc_aware(row.updated_at),
    )
