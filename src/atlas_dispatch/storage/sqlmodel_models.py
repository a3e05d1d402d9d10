"""SQLModel ORM tables for render dispatch storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_OWNER_ID = "default_owner"


class RenderJob(SQLModel, table=True):
    __tablename__ = "render_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_render_jobs_status_priority", "status", "priority"),)

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(default=DEFAULT_OWNER_ID, index=True)
    name: str = ""
    frame_range: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = 100
    batch_size: int = 1
    max_retries: int = 3
    attempt_timeout_seconds: int = 3600
    render_params_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    failure_detail: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RenderTask(SQLModel, table=True):
    __tablename__ = "render_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "task_index", name="uq_render_tasks_job_index"),
        Index("idx_render_tasks_status_run_after", "status", "run_after"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("render_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_index: int
    frames: str = Field(sa_column=Column(Text, nullable=False))
    first_frame: int
    last_frame: int
    status: str = Field(index=True)
    attempt_count: int = 0
    failure_count: int = 0
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_worker_id: str | None = None
    current_attempt_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RenderTaskAttempt(SQLModel, table=True):
    __tablename__ = "render_task_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "attempt_no", name="uq_render_task_attempts_task_no"),
        Index("idx_render_task_attempts_worker_status", "worker_id", "status"),
    )

    attempt_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("render_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str = Field(index=True)
    attempt_no: int
    worker_id: str = Field(index=True)
    status: str = Field(index=True)
    counts_against_budget: bool = False
    assigned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    deadline_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    result_ref: str | None = None
    error_detail: str | None = Field(default=None, sa_column=Column(Text))


class RenderTaskAttemptLog(SQLModel, table=True):
    __tablename__ = "render_task_attempt_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    attempt_id: str = Field(
        sa_column=Column(
            ForeignKey("render_task_attempts.attempt_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    level: str = "info"
    message: str = Field(sa_column=Column(Text, nullable=False))
    progress: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RenderJobEvent(SQLModel, table=True):
    __tablename__ = "render_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_render_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("render_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task_id: str | None = None
    attempt_id: str | None = None
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Slave(SQLModel, table=True):
    __tablename__ = "slaves"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    session_id: str | None = None
    capacity: int = 1
    capabilities_json: str | None = Field(default=None, sa_column=Column(Text))
    load: int = 0
    connected: bool = False
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    connected_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    disconnected_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
