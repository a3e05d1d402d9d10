"""Domain models for render jobs, tasks, attempts and workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle: pending -> running -> completed | failed, cancelled overrides."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_JOB_STATUSES


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATUSES

    @property
    def is_in_flight(self) -> bool:
        return self in {TaskStatus.DISPATCHED, TaskStatus.RUNNING}


class AttemptStatus(str, Enum):
    """Per-attempt states; everything except assigned/running is terminal."""

    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self not in {AttemptStatus.ASSIGNED, AttemptStatus.RUNNING}


_TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
_TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class AttemptEndReason(str, Enum):
    """Why an attempt stopped; drives retry accounting."""

    SUCCEEDED = "succeeded"
    RENDER_FAILED = "render_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    WORKER_DISCONNECTED = "worker_disconnected"
    REQUEUED = "requeued"


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a render job."""

    frame_range: str
    name: str = ""
    owner_id: str = "default_owner"
    job_id: str | None = None
    priority: int = 100
    batch_size: int | None = None
    max_retries: int | None = None
    attempt_timeout_seconds: int | None = None
    render_params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobRecord:
    """Fully resolved job row ready to persist."""

    job_id: str
    owner_id: str
    name: str
    frame_range: str
    priority: int
    batch_size: int
    max_retries: int
    attempt_timeout_seconds: int
    render_params: dict[str, Any]


@dataclass(slots=True)
class JobView:
    """Readable job view."""

    job_id: str
    owner_id: str
    name: str
    frame_range: str
    priority: int
    batch_size: int
    max_retries: int
    attempt_timeout_seconds: int
    render_params: dict[str, Any]
    status: JobStatus
    failure_detail: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class TaskView:
    """Readable task view."""

    task_id: str
    job_id: str
    task_index: int
    frames: str
    first_frame: int
    last_frame: int
    status: TaskStatus
    attempt_count: int
    failure_count: int
    run_after: datetime
    last_worker_id: str | None
    current_attempt_id: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def frame_numbers(self) -> tuple[int, ...]:
        return tuple(int(part) for part in self.frames.split())


@dataclass(slots=True)
class AttemptView:
    """One execution of a task on one worker."""

    attempt_id: str
    task_id: str
    job_id: str
    attempt_no: int
    worker_id: str
    status: AttemptStatus
    counts_against_budget: bool
    assigned_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    deadline_at: datetime
    result_ref: str | None
    error_detail: str | None


@dataclass(slots=True)
class AttemptLogView:
    """Progress or log line reported by a worker."""

    id: int
    attempt_id: str
    level: str
    message: str
    progress: float | None
    created_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job/task/attempt audit trail entry."""

    event_id: int
    job_id: str
    task_id: str | None
    attempt_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerView:
    """Registered slave with capacity and liveness."""

    worker_id: str
    session_id: str | None
    capacity: int
    capabilities: dict[str, Any]
    load: int
    connected: bool
    heartbeat_at: datetime | None
    connected_at: datetime | None
    disconnected_at: datetime | None


@dataclass(slots=True)
class JobProgress:
    """Task status counts for one job."""

    job: JobView
    total: int
    by_status: dict[TaskStatus, int]

    @property
    def completed(self) -> int:
        return self.by_status.get(TaskStatus.COMPLETED, 0)

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return round(100.0 * self.completed / self.total, 1)


@dataclass(slots=True, frozen=True)
class TaskDelivery:
    """Message pushed to a worker: render these frames as this attempt."""

    attempt_id: str
    task_id: str
    job_id: str
    frames: tuple[int, ...]
    render_params: dict[str, Any]
    timeout_seconds: int


@dataclass(slots=True, frozen=True)
class CancelAttempt:
    """Signal asking a worker to abort an attempt and free its slot."""

    attempt_id: str
    reason: str


@dataclass(slots=True, frozen=True)
class Shutdown:
    """Signal that the worker session is closed."""

    reason: str


WorkerMessage = TaskDelivery | CancelAttempt | Shutdown
