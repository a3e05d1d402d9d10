"""Create render job, task, attempt and event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "render_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), server_default="default_owner", nullable=False),
        sa.Column("name", sa.String(), server_default="", nullable=False),
        sa.Column("frame_range", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), server_default="100", nullable=False),
        sa.Column("batch_size", sa.Integer(), server_default="1", nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default="3", nullable=False),
        sa.Column(
            "attempt_timeout_seconds",
            sa.Integer(),
            server_default="3600",
            nullable=False,
        ),
        sa.Column("render_params_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_render_jobs_owner_id", "render_jobs", ["owner_id"], unique=False)
    op.create_index("ix_render_jobs_status", "render_jobs", ["status"], unique=False)
    op.create_index(
        "idx_render_jobs_status_priority",
        "render_jobs",
        ["status", "priority"],
        unique=False,
    )

    op.create_table(
        "render_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_index", sa.Integer(), nullable=False),
        sa.Column("frames", sa.Text(), nullable=False),
        sa.Column("first_frame", sa.Integer(), nullable=False),
        sa.Column("last_frame", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failure_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_worker_id", sa.String(), nullable=True),
        sa.Column("current_attempt_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["render_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("job_id", "task_index", name="uq_render_tasks_job_index"),
    )
    op.create_index("ix_render_tasks_job_id", "render_tasks", ["job_id"], unique=False)
    op.create_index("ix_render_tasks_status", "render_tasks", ["status"], unique=False)
    op.create_index(
        "idx_render_tasks_status_run_after",
        "render_tasks",
        ["status", "run_after"],
        unique=False,
    )

    op.create_table(
        "render_task_attempts",
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column(
            "counts_against_budget",
            sa.Boolean(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["render_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint("task_id", "attempt_no", name="uq_render_task_attempts_task_no"),
    )
    op.create_index(
        "ix_render_task_attempts_task_id",
        "render_task_attempts",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_render_task_attempts_job_id",
        "render_task_attempts",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_render_task_attempts_worker_id",
        "render_task_attempts",
        ["worker_id"],
        unique=False,
    )
    op.create_index(
        "ix_render_task_attempts_status",
        "render_task_attempts",
        ["status"],
        unique=False,
    )
    op.create_index(
        "idx_render_task_attempts_worker_status",
        "render_task_attempts",
        ["worker_id", "status"],
        unique=False,
    )

    op.create_table(
        "render_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("attempt_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["render_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_render_job_events_job_time",
        "render_job_events",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_render_job_events_job_time", table_name="render_job_events")
    op.drop_table("render_job_events")
    op.drop_index("idx_render_task_attempts_worker_status", table_name="render_task_attempts")
    op.drop_index("ix_render_task_attempts_status", table_name="render_task_attempts")
    op.drop_index("ix_render_task_attempts_worker_id", table_name="render_task_attempts")
    op.drop_index("ix_render_task_attempts_job_id", table_name="render_task_attempts")
    op.drop_index("ix_render_task_attempts_task_id", table_name="render_task_attempts")
    op.drop_table("render_task_attempts")
    op.drop_index("idx_render_tasks_status_run_after", table_name="render_tasks")
    op.drop_index("ix_render_tasks_status", table_name="render_tasks")
    op.drop_index("ix_render_tasks_job_id", table_name="render_tasks")
    op.drop_table("render_tasks")
    op.drop_index("idx_render_jobs_status_priority", table_name="render_jobs")
    op.drop_index("ix_render_jobs_status", table_name="render_jobs")
    op.drop_index("ix_render_jobs_owner_id", table_name="render_jobs")
    op.drop_table("render_jobs")
