"""Initial job queue schema with event audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="ck_queue_jobs_attempts_bounds",
        ),
    )
    op.create_index("ix_queue_jobs_job_type", "queue_jobs", ["job_type"])
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"])
    op.create_index("ix_queue_jobs_failure_class", "queue_jobs", ["failure_class"])
    op.create_index(
        "idx_queue_jobs_claim",
        "queue_jobs",
        ["status", "scheduled_for", "priority", "created_at"],
    )
    op.create_index(
        "idx_queue_jobs_status_completed",
        "queue_jobs",
        ["status", "completed_at"],
    )

    op.create_table(
        "queue_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["queue_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_queue_job_events_job_time",
        "queue_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_queue_job_events_job_time", table_name="queue_job_events")
    op.drop_table("queue_job_events")
    op.drop_index("idx_queue_jobs_status_completed", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_claim", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_failure_class", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_job_type", table_name="queue_jobs")
    op.drop_table("queue_jobs")
