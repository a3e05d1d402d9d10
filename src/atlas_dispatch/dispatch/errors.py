"""Error taxonomy for the dispatch engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from atlas_dispatch.dispatch.models import AttemptView, TaskView


class DispatchEngineError(RuntimeError):
    """Base class for dispatch engine runtime errors."""


class ParseError(ValueError):
    """Malformed frame range specification."""

    def __init__(self, message: str, *, token: str | None = None) -> None:
        super().__init__(message)
        self.token = token


class JobValidationError(ValueError):
    """Job submission payload is invalid."""


class UnknownEntityError(LookupError):
    """Referenced job, task, attempt or worker does not exist."""


class InvalidTransition(DispatchEngineError):
    """Requested status change is not allowed by the state machine."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target


class DispatchError(DispatchEngineError):
    """No connected worker has spare capacity; the task stays queued."""


class AttemptFailure(DispatchEngineError):
    """Worker-reported render failure for one attempt."""

    def __init__(self, attempt_id: str, detail: str) -> None:
        super().__init__(f"Attempt {attempt_id} failed: {detail}")
        self.attempt_id = attempt_id
        self.detail = detail


class AttemptTimeout(AttemptFailure):
    """Attempt produced no terminal result within its deadline."""


class WorkerDisconnect(DispatchEngineError):
    """Worker session is closed; in-flight attempts were requeued."""

    def __init__(self, worker_id: str, reason: str = "") -> None:
        message = f"Worker disconnected: {worker_id}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.worker_id = worker_id
        self.reason = reason


class JobFailed(DispatchEngineError):
    """Job reached terminal failure; carries the failing task and its attempts."""

    def __init__(
        self,
        job_id: str,
        *,
        task: TaskView | None,
        attempts: list[AttemptView],
    ) -> None:
        detail = "no failing task recorded"
        if task is not None:
            detail = (
                f"task {task.task_id} (frames {task.frames}) "
                f"failed after {len(attempts)} attempts"
            )
            if attempts and attempts[-1].error_detail:
                detail = f"{detail}: {attempts[-1].error_detail}"
        super().__init__(f"Job {job_id} failed: {detail}")
        self.job_id = job_id
        self.task = task
        self.attempts = attempts
