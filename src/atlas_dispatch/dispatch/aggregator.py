"""Roll task statuses up into a job status."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from atlas_dispatch.dispatch.errors import UnknownEntityError
from atlas_dispatch.dispatch.models import JobStatus, TaskStatus, TaskView
from atlas_dispatch.dispatch.notifications import StatusChange, StatusNotifier
from atlas_dispatch.dispatch.repository import DispatchRepository
from atlas_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


def aggregate_job_status(
    statuses: Iterable[TaskStatus],
    *,
    previous: JobStatus = JobStatus.PENDING,
    cancelled: bool = False,
    fail_fast: bool = True,
) -> JobStatus:
    """Compute a job status from the multiset of its task statuses.

    The result depends only on which statuses occur, never on their order.
    Terminal job statuses are sticky, and a running job never returns to
    pending.
    """

    if previous.is_terminal:
        return previous
    if cancelled:
        return JobStatus.CANCELLED

    present = set(statuses)
    if TaskStatus.FAILED in present:
        if fail_fast or all(status.is_terminal for status in present):
            return JobStatus.FAILED
        return JobStatus.RUNNING
    if not present or present == {TaskStatus.COMPLETED}:
        return JobStatus.COMPLETED
    if all(status.is_terminal for status in present):
        return JobStatus.CANCELLED
    if previous == JobStatus.RUNNING or present != {TaskStatus.QUEUED}:
        return JobStatus.RUNNING
    return JobStatus.PENDING


class JobAggregator:
    """Recomputes and persists a job's status after a task changes."""

    def __init__(
        self,
        *,
        repository: DispatchRepository,
        notifier: StatusNotifier,
        fail_fast: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.fail_fast = fail_fast
        self._clock = clock

    def on_task_status_change(self, task: TaskView) -> JobStatus:
        """Apply the roll-up for the task's job; a no-op when nothing changed."""

        return self.refresh(task.job_id)

    def refresh(self, job_id: str) -> JobStatus:
        job = self.repository.get_job(job_id)
        if job is None:
            raise UnknownEntityError(f"Job not found: {job_id}")
        tasks = self.repository.list_tasks(job_id=job_id)
        target = aggregate_job_status(
            (task.status for task in tasks),
            previous=job.status,
            fail_fast=self.fail_fast,
        )
        if target == job.status:
            return target

        failure_detail = None
        if target == JobStatus.FAILED:
            failure_detail = self._failure_detail(tasks)
        if not self.repository.transition_job(
            job_id=job_id,
            status_from=job.status,
            status_to=target,
            failure_detail=failure_detail,
            now=self._clock(),
        ):
            # Someone else moved the job first; report what is stored now.
            current = self.repository.get_job(job_id)
            return current.status if current is not None else target

        logger.info("Job %s: %s -> %s", job_id, job.status.value, target.value)
        self.notifier.publish(
            StatusChange(
                entity="job",
                entity_id=job_id,
                job_id=job_id,
                status_from=job.status.value,
                status_to=target.value,
                details={"failure_detail": failure_detail} if failure_detail else {},
                occurred_at=self._clock(),
            ),
        )
        return target

    def _failure_detail(self, tasks: list[TaskView]) -> str:
        failed = [task for task in tasks if task.status == TaskStatus.FAILED]
        if not failed:
            return "job failed"
        task = failed[0]
        attempts = self.repository.list_attempts(task_id=task.task_id)
        detail = f"task {task.task_id} (frames {task.frames}) failed after {len(attempts)} attempts"
        if attempts and attempts[-1].error_detail:
            detail = f"{detail}: {attempts[-1].error_detail}"
        return detail
