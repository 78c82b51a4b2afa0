"""SQLModel ORM tables for queue, run audit and shared orchestration state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkUnitRow(SQLModel, table=True):
    __tablename__ = "work_units"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_work_units_queue", "queue_name", "status", "priority", "run_after"),
    )

    work_unit_id: str = Field(primary_key=True)
    event_type: str = Field(index=True)
    queue_name: str = Field(default="default")
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=100)
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_category: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = None
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkUnitEventRow(SQLModel, table=True):
    __tablename__ = "work_unit_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_unit_events_unit_time", "work_unit_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    work_unit_id: str = Field(
        sa_column=Column(
            ForeignKey("work_units.work_unit_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunRecordRow(SQLModel, table=True):
    __tablename__ = "run_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_run_records_unit_attempt", "work_unit_id", "attempt_number"),)

    run_id: str = Field(primary_key=True)
    work_unit_id: str = Field(
        sa_column=Column(
            ForeignKey("work_units.work_unit_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    attempt_number: int
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class StepResultRow(SQLModel, table=True):
    __tablename__ = "step_results"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("run_id", "position", name="uq_step_results_run_position"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("run_records.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    step_name: str
    status: str
    required: bool
    attempt: int = Field(default=1)
    error_category: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    side_effects_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class StateEntryRow(SQLModel, table=True):
    __tablename__ = "state_entries"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    version: int = Field(default=1)
    expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EntityRecordRow(SQLModel, table=True):
    __tablename__ = "entity_records"  # type: ignore[bad-override]

    entity_key: str = Field(primary_key=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StatusEventRow(SQLModel, table=True):
    __tablename__ = "status_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_status_events_channel_time", "channel_key", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    channel_key: str
    event_type: str
    work_unit_id: str | None = Field(default=None, index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
