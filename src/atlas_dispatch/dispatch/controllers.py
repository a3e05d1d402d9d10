"""Controllers for render dispatch CLI commands."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from atlas_dispatch.config import Settings
from atlas_dispatch.dispatch.backend import CommandRenderBackend
from atlas_dispatch.dispatch.engine import RenderDispatcher
from atlas_dispatch.dispatch.frames import describe_frames, resolve_frames
from atlas_dispatch.dispatch.models import JobCreate, JobStatus, TaskStatus
from atlas_dispatch.dispatch.repository import SqlDispatchRepository
from atlas_dispatch.dispatch.slave import SlaveRunSummary, SlaveWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    frame_range: str
    name: str
    job_id: str | None
    priority: int
    batch_size: int | None
    max_retries: int | None
    timeout_seconds: int | None
    params: tuple[str, ...]


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: str
    reason: str = ""


@dataclass(slots=True)
class SlaveListCommand:
    """CLI input for slave registry listing."""

    db_path: Path | None
    connected_only: bool


@dataclass(slots=True)
class FarmRunCommand:
    """CLI input for running a dispatcher with local slaves."""

    db_path: Path | None
    slaves: int
    capacity: int | None
    until_idle: bool
    max_seconds: float | None


class DispatchCliController:
    """Coordinates job, slave and farm CLI operations."""

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        request = JobCreate(
            frame_range=command.frame_range,
            name=command.name,
            job_id=command.job_id,
            priority=command.priority,
            batch_size=command.batch_size,
            max_retries=command.max_retries,
            attempt_timeout_seconds=command.timeout_seconds,
            render_params=_parse_params(command.params),
        )
        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            job = dispatcher.submit_job(request)
            progress = dispatcher.get_job_progress(job.job_id)
        return [
            f"Job submitted: job_id={job.job_id} status={job.status.value}",
            f"Frames: {describe_frames(resolve_frames(job.frame_range))} "
            f"tasks={progress.total} batch_size={job.batch_size} "
            f"max_retries={job.max_retries} priority={job.priority}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            rows = [
                (job, dispatcher.get_job_progress(job.job_id))
                for job in repository.list_jobs(status=status, limit=command.limit)
            ]
        if not rows:
            return ["No jobs found."]
        return [
            f"{job.job_id} status={job.status.value} priority={job.priority} "
            f"done={progress.completed}/{progress.total} ({progress.percent}%) "
            f"name={job.name or '-'}"
            for job, progress in rows
        ]

    def show_job(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            progress = dispatcher.get_job_progress(command.job_id)
            tasks = repository.list_tasks(job_id=command.job_id)
            failure = dispatcher.failure_chain(command.job_id)

        job = progress.job
        counts = " ".join(
            f"{status.value}={progress.by_status.get(status, 0)}" for status in TaskStatus
        )
        lines = [
            f"Job: {job.job_id}",
            f"Name: {job.name or '-'}",
            f"Status: {job.status.value}",
            f"Frames: {job.frame_range}",
            f"Progress: {progress.completed}/{progress.total} ({progress.percent}%)",
            f"Tasks: {counts}",
            f"Failure: {job.failure_detail or '-'}",
        ]
        if failure is not None:
            lines.append(f"Failure chain: {failure}")
            lines.extend(
                f"  attempt {attempt.attempt_no} on {attempt.worker_id}: "
                f"{attempt.status.value} {attempt.error_detail or ''}".rstrip()
                for attempt in failure.attempts
            )
        lines.extend(
            f"  {task.task_id} frames={describe_frames(task.frame_numbers)} "
            f"status={task.status.value} attempts={task.attempt_count} "
            f"failures={task.failure_count} worker={task.last_worker_id or '-'}"
            for task in tasks
        )
        return lines

    def cancel_job(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            job = dispatcher.cancel_job(command.job_id, command.reason or "cancelled from CLI")
        return [f"Job {job.job_id} status={job.status.value}"]

    def retry_job(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            job = dispatcher.retry_job(command.job_id)
        return [f"Job re-queued: {job.job_id} status={job.status.value}"]

    def job_events(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            if repository.get_job(command.job_id) is None:
                return [f"Job not found: {command.job_id}"]
            events = repository.list_events(job_id=command.job_id)
        return [
            f"{event.created_at.isoformat()} {event.event_type} "
            f"{event.task_id or event.attempt_id or event.job_id} "
            f"{event.status_from or '-'} -> {event.status_to or '-'}"
            for event in events
        ]

    def job_attempts(self, command: JobRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            attempts = repository.list_attempts(job_id=command.job_id)
            logs = {
                attempt.attempt_id: repository.list_attempt_logs(attempt_id=attempt.attempt_id)
                for attempt in attempts
            }
        if not attempts:
            return [f"No attempts for job {command.job_id}."]
        lines: list[str] = []
        for attempt in attempts:
            lines.append(
                f"{attempt.task_id} #{attempt.attempt_no} {attempt.attempt_id} "
                f"worker={attempt.worker_id} status={attempt.status.value} "
                f"counted={'yes' if attempt.counts_against_budget else 'no'} "
                f"error={attempt.error_detail or '-'}",
            )
            lines.extend(f"  [{log.level}] {log.message}" for log in logs[attempt.attempt_id])
        return lines

    def list_slaves(self, command: SlaveListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            workers = repository.list_workers(connected_only=command.connected_only)
        if not workers:
            return ["No slaves registered."]
        return [
            f"{worker.worker_id} connected={'yes' if worker.connected else 'no'} "
            f"load={worker.load}/{worker.capacity} "
            f"heartbeat={worker.heartbeat_at.isoformat() if worker.heartbeat_at else '-'}"
            for worker in workers
        ]

    def run_farm(self, command: FarmRunCommand) -> list[str]:
        """Run a dispatcher and local slaves until idle, timeout or interrupt."""

        settings = _settings(command.db_path)
        settings.validate_for_slave()
        capacity = command.capacity or settings.slave.capacity
        backend = CommandRenderBackend(settings.slave.command_template)

        with _repository(settings) as repository:
            dispatcher = RenderDispatcher(repository=repository, settings=settings.dispatch)
            enqueued = dispatcher.recover()
            dispatcher.start()

            stop = threading.Event()
            summaries: list[SlaveRunSummary] = []
            threads: list[threading.Thread] = []
            for index in range(command.slaves):
                slave = SlaveWorker(
                    session=dispatcher.connect_worker(
                        f"{settings.slave.worker_id}-{index + 1}",
                        capacity=capacity,
                    ),
                    backend=backend,
                    output_dir=settings.slave.output_dir,
                    heartbeat_interval_seconds=settings.slave.heartbeat_interval_seconds,
                    poll_interval_seconds=settings.slave.poll_interval_seconds,
                )
                thread = threading.Thread(
                    target=lambda worker=slave: summaries.append(worker.run(stop_event=stop)),
                    daemon=True,
                    name=f"farm-{slave.worker_id}",
                )
                thread.start()
                threads.append(thread)

            started = time.monotonic()
            try:
                while True:
                    if command.until_idle and not _active_jobs(repository):
                        break
                    if (
                        command.max_seconds is not None
                        and time.monotonic() - started >= command.max_seconds
                    ):
                        logger.warning("Farm stopped after %.1fs", command.max_seconds)
                        break
                    time.sleep(settings.dispatch.tick_interval_seconds)
            except KeyboardInterrupt:
                logger.info("Farm interrupted")
            finally:
                stop.set()
                for thread in threads:
                    thread.join(timeout=30)
                dispatcher.stop()

            jobs = repository.list_jobs(limit=None)

        total = SlaveRunSummary()
        for summary in summaries:
            total.delivered += summary.delivered
            total.succeeded += summary.succeeded
            total.failed += summary.failed
            total.timed_out += summary.timed_out
            total.cancelled += summary.cancelled
        by_status: dict[str, int] = {}
        for job in jobs:
            by_status[job.status.value] = by_status.get(job.status.value, 0) + 1
        return [
            f"Farm summary: slaves={command.slaves} capacity={capacity} recovered={enqueued}",
            f"Attempts: delivered={total.delivered} succeeded={total.succeeded} "
            f"failed={total.failed} timed_out={total.timed_out} cancelled={total.cancelled}",
            "Jobs: "
            + (" ".join(f"{key}={value}" for key, value in sorted(by_status.items())) or "none"),
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_params(values: tuple[str, ...]) -> dict[str, object]:
    params: dict[str, object] = {}
    for value in values:
        key, separator, raw = value.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid render param {value!r}. Expected KEY=VALUE.")
        params[key.strip()] = raw
    return params


def _active_jobs(repository: SqlDispatchRepository) -> bool:
    return any(
        repository.list_jobs(status=status, limit=1)
        for status in (JobStatus.PENDING, JobStatus.RUNNING)
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[SqlDispatchRepository]:
    repository = SqlDispatchRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
