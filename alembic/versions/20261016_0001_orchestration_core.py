"""Initial orchestration core schema: queue, runs, shared state, entities."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_units",
        sa.Column("work_unit_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False, server_default="default"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("work_unit_id"),
    )
    op.create_index(
        "idx_work_units_queue",
        "work_units",
        ["queue_name", "status", "priority", "run_after"],
        unique=False,
    )
    op.create_index("ix_work_units_event_type", "work_units", ["event_type"], unique=False)
    op.create_index("ix_work_units_status", "work_units", ["status"], unique=False)
    op.create_index(
        "ix_work_units_error_category",
        "work_units",
        ["error_category"],
        unique=False,
    )

    op.create_table(
        "work_unit_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("work_unit_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["work_unit_id"],
            ["work_units.work_unit_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_work_unit_events_unit_time",
        "work_unit_events",
        ["work_unit_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_work_unit_events_event_type",
        "work_unit_events",
        ["event_type"],
        unique=False,
    )

    op.create_table(
        "run_records",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("work_unit_id", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["work_unit_id"],
            ["work_units.work_unit_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "idx_run_records_unit_attempt",
        "run_records",
        ["work_unit_id", "attempt_number"],
        unique=False,
    )
    op.create_index("ix_run_records_status", "run_records", ["status"], unique=False)

    op.create_table(
        "step_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("side_effects_json", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["run_records.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "position", name="uq_step_results_run_position"),
    )
    op.create_index("ix_step_results_run_id", "step_results", ["run_id"], unique=False)

    op.create_table(
        "state_entries",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_state_entries_expires_at", "state_entries", ["expires_at"], unique=False)

    op.create_table(
        "entity_records",
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entity_key"),
    )

    op.create_table(
        "status_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("channel_key", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("work_unit_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_status_events_channel_time",
        "status_events",
        ["channel_key", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_status_events_work_unit_id",
        "status_events",
        ["work_unit_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_status_events_work_unit_id", table_name="status_events")
    op.drop_index("idx_status_events_channel_time", table_name="status_events")
    op.drop_table("status_events")
    op.drop_table("entity_records")
    op.drop_index("ix_state_entries_expires_at", table_name="state_entries")
    op.drop_table("state_entries")
    op.drop_index("ix_step_results_run_id", table_name="step_results")
    op.drop_table("step_results")
    op.drop_index("ix_run_records_status", table_name="run_records")
    op.drop_index("idx_run_records_unit_attempt", table_name="run_records")
    op.drop_table("run_records")
    op.drop_index("ix_work_unit_events_event_type", table_name="work_unit_events")
    op.drop_index("idx_work_unit_events_unit_time", table_name="work_unit_events")
    op.drop_table("work_unit_events")
    op.drop_index("ix_work_units_error_category", table_name="work_units")
    op.drop_index("ix_work_units_status", table_name="work_units")
    op.drop_index("ix_work_units_event_type", table_name="work_units")
    op.drop_index("idx_work_units_queue", table_name="work_units")
    op.drop_table("work_units")
