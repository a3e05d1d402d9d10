"""Render dispatcher: owns the queue, the attempt state machine and job roll-up."""

from __future__ import annotations

import logging
import random
import threading
import time
import weakref
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from atlas_dispatch.config import DispatchSettings
from atlas_dispatch.dispatch.aggregator import JobAggregator, aggregate_job_status
from atlas_dispatch.dispatch.attempts import (
    RetryPolicy,
    attempt_status_for,
    ensure_attempt_transition,
    ensure_task_transition,
)
from atlas_dispatch.dispatch.decomposer import decompose, decompose_frames
from atlas_dispatch.dispatch.errors import (
    AttemptFailure,
    AttemptTimeout,
    DispatchError,
    InvalidTransition,
    JobFailed,
    JobValidationError,
    UnknownEntityError,
    WorkerDisconnect,
)
from atlas_dispatch.dispatch.frames import count_frames, resolve_frames
from atlas_dispatch.dispatch.models import (
    AttemptEndReason,
    AttemptStatus,
    AttemptView,
    CancelAttempt,
    JobCreate,
    JobProgress,
    JobRecord,
    JobStatus,
    JobView,
    TaskDelivery,
    TaskStatus,
    TaskView,
)
from atlas_dispatch.dispatch.notifications import NotificationHub, StatusChange, StatusNotifier
from atlas_dispatch.dispatch.queue import DispatchQueue, QueuedTask, Reservation
from atlas_dispatch.dispatch.repository import DispatchRepository
from atlas_dispatch.dispatch.session import WorkerSession
from atlas_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(slots=True)
class TickSummary:
    """What one maintenance pass did."""

    stale_workers: int = 0
    timed_out: int = 0
    promoted: int = 0
    dispatched: int = 0
    adopted: int = 0
    released: int = 0
    waiting: int = 0
    delayed: int = 0
    blocked: DispatchError | None = None
    expired: list[AttemptTimeout] = field(default_factory=list)


class RenderDispatcher:
    """Coordinates jobs, tasks, attempts and connected workers.

    All mutations of one job's task graph run under that job's lock. The
    dispatch queue has its own lock and is only ever taken after a job lock,
    never before one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: DispatchRepository,
        settings: DispatchSettings | None = None,
        notifier: StatusNotifier | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or DispatchSettings()
        self.notifier = notifier or NotificationHub()
        self.queue = DispatchQueue()
        self.aggregator = JobAggregator(
            repository=repository,
            notifier=self.notifier,
            fail_fast=self.settings.fail_fast,
            clock=clock,
        )
        self._clock = clock
        self._rng = rng
        self._new_id = id_factory or (lambda: uuid4().hex)
        self._job_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._tracked_jobs: set[str] = set()
        self._job_locks_guard = threading.Lock()
        self._sessions: dict[str, WorkerSession] = {}
        self._heartbeats: dict[str, datetime] = {}
        self._sessions_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- jobs -----------------------------------------------------------------

    def submit_job(self, request: JobCreate) -> JobView:
        """Validate, persist, decompose and enqueue a new render job.

        Raises:
            ParseError: ``frame_range`` is malformed; nothing is persisted.
            JobValidationError: Any other invalid field.
        """

        record, frames = self._validate(request)
        job = self.repository.create_job(record, now=self._now())
        self._track(job.job_id)
        self._publish("job", job.job_id, job.job_id, None, job.status.value)
        logger.info(
            "Submitted job %s: %d frames, batch size %d, priority %d",
            job.job_id,
            len(frames),
            job.batch_size,
            job.priority,
        )

        plans = decompose_frames(frames, batch_size=record.batch_size)
        with self._job_lock(job.job_id):
            tasks = self.repository.create_tasks(job_id=job.job_id, plans=plans, now=self._now())
            self._enqueue(job, tasks)
            self.aggregator.refresh(job.job_id)
        self._pump()
        return self._require_job(job.job_id)

    def resume_job(self, job_id: str) -> JobView:
        """Re-run decomposition idempotently and enqueue the job's queued tasks."""

        job = self._require_job(job_id)
        if not job.status.is_terminal:
            self._resume(job)
            self._pump()
        return self._require_job(job_id)

    def cancel_job(self, job_id: str, reason: str = "cancelled by operator") -> JobView:
        """Cancel queued tasks and in-flight attempts; the job ends cancelled."""

        with self._job_lock(job_id):
            job = self._require_job(job_id)
            if job.status.is_terminal:
                return job
            self._cancel_remaining(job_id, reason=reason)
            self._set_job_status(job, JobStatus.CANCELLED)
            logger.info("Cancelled job %s: %s", job_id, reason)
        self._pump()
        return self._require_job(job_id)

    def retry_job(self, job_id: str) -> JobView:
        """Operator retry: requeue failed/cancelled tasks with a fresh budget."""

        with self._job_lock(job_id):
            job = self._require_job(job_id)
            if job.status not in {JobStatus.FAILED, JobStatus.CANCELLED}:
                raise InvalidTransition("job", job.status.value, JobStatus.PENDING.value)
            requeued = set(self.repository.requeue_failed_tasks(job_id=job_id, now=self._now()))
            self._track(job_id)
            tasks = self.repository.list_tasks(job_id=job_id)
            target = aggregate_job_status(task.status for task in tasks)
            self._set_job_status(job, target)
            self._enqueue(job, [task for task in tasks if task.task_id in requeued])
            logger.info("Retrying job %s: %d tasks requeued", job_id, len(requeued))
        self._pump()
        return self._require_job(job_id)

    def get_job_progress(self, job_id: str) -> JobProgress:
        job = self._require_job(job_id)
        tasks = self.repository.list_tasks(job_id=job_id)
        return JobProgress(
            job=job,
            total=len(tasks),
            by_status=dict(Counter(task.status for task in tasks)),
        )

    def failure_chain(self, job_id: str) -> JobFailed | None:
        """Explain a failed job: its first failed task and that task's attempts."""

        job = self._require_job(job_id)
        if job.status != JobStatus.FAILED:
            return None
        failed = self.repository.list_tasks(job_id=job_id, statuses=[TaskStatus.FAILED])
        if not failed:
            return JobFailed(job_id, task=None, attempts=[])
        task = failed[0]
        return JobFailed(
            job_id,
            task=task,
            attempts=self.repository.list_attempts(task_id=task.task_id),
        )

    def wait_for_job(
        self,
        job_id: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float = 0.1,
    ) -> JobView:
        """Block until the job is terminal or the timeout elapses."""

        deadline = time.monotonic() + timeout_seconds
        while True:
            job = self._require_job(job_id)
            if job.status.is_terminal or time.monotonic() >= deadline:
                return job
            time.sleep(poll_interval_seconds)

    # -- workers --------------------------------------------------------------

    def connect_worker(
        self,
        worker_id: str,
        *,
        capacity: int = 1,
        capabilities: dict[str, Any] | None = None,
    ) -> WorkerSession:
        """Register a worker and open its delivery channel."""

        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if self.queue.has_worker(worker_id):
            self.disconnect_worker(worker_id, "replaced by a new session")

        now = self._now()
        session = WorkerSession(
            worker_id=worker_id,
            session_id=self._new_id(),
            capacity=capacity,
            reporter=self,
        )
        self.repository.register_worker(
            worker_id=worker_id,
            session_id=session.session_id,
            capacity=capacity,
            capabilities=capabilities or {},
            now=now,
        )
        with self._sessions_lock:
            self._sessions[worker_id] = session
            self._heartbeats[worker_id] = now
        self.queue.add_worker(worker_id, capacity)
        self._publish("worker", worker_id, "", None, "connected", capacity=capacity)
        logger.info("Worker %s connected with capacity %d", worker_id, capacity)
        self._pump()
        return session

    def disconnect_worker(self, worker_id: str, reason: str = "") -> list[str]:
        """Close a worker session and requeue its in-flight attempts."""

        in_flight = set(self.queue.remove_worker(worker_id))
        with self._sessions_lock:
            session = self._sessions.pop(worker_id, None)
            self._heartbeats.pop(worker_id, None)
        if session is None:
            return []

        in_flight.update(
            attempt.attempt_id
            for attempt in self.repository.list_open_attempts(worker_id=worker_id)
        )
        session.mark_closed(reason or "disconnected")
        self.repository.mark_worker_disconnected(worker_id=worker_id, now=self._now())
        self._publish("worker", worker_id, "", "connected", "disconnected", reason=reason)
        logger.warning(
            "Worker %s disconnected (%s); %d attempts in flight",
            worker_id,
            reason or "no reason",
            len(in_flight),
        )

        detail = f"worker {worker_id} disconnected"
        if reason:
            detail = f"{detail}: {reason}"
        requeued = [
            attempt_id
            for attempt_id in sorted(in_flight)
            if self._end_attempt(attempt_id, AttemptEndReason.WORKER_DISCONNECTED, detail=detail)
        ]
        self._pump()
        return requeued

    def heartbeat(self, worker_id: str) -> None:
        now = self._now()
        with self._sessions_lock:
            if worker_id not in self._sessions:
                raise WorkerDisconnect(worker_id, "not connected")
            self._heartbeats[worker_id] = now
        self.repository.touch_worker(worker_id=worker_id, now=now)

    def connected_workers(self) -> dict[str, tuple[int, int]]:
        """``worker_id -> (load, capacity)`` for every connected worker."""

        return self.queue.loads()

    # -- worker reports -------------------------------------------------------

    def report_started(self, attempt_id: str, *, worker_id: str | None = None) -> bool:
        """Start-ack: the worker began rendering the attempt."""

        attempt = self._require_attempt(attempt_id)
        if not self._owned_by(attempt, worker_id):
            return False
        with self._job_lock(attempt.job_id):
            if not self.repository.start_attempt(attempt_id=attempt_id, now=self._now()):
                return False
            self._publish(
                "attempt",
                attempt_id,
                attempt.job_id,
                AttemptStatus.ASSIGNED.value,
                AttemptStatus.RUNNING.value,
            )
            self._publish(
                "task",
                attempt.task_id,
                attempt.job_id,
                TaskStatus.DISPATCHED.value,
                TaskStatus.RUNNING.value,
            )
        return True

    def report_progress(
        self,
        attempt_id: str,
        message: str,
        *,
        progress: float | None = None,
        worker_id: str | None = None,
    ) -> None:
        attempt = self._require_attempt(attempt_id)
        if not self._owned_by(attempt, worker_id) or attempt.status.is_terminal:
            return
        self.repository.add_attempt_log(
            attempt_id=attempt_id,
            message=message,
            progress=progress,
            now=self._now(),
        )
        with self._sessions_lock:
            if attempt.worker_id in self._heartbeats:
                self._heartbeats[attempt.worker_id] = self._now()

    def report_succeeded(
        self,
        attempt_id: str,
        *,
        result_ref: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        attempt = self._require_attempt(attempt_id)
        if not self._owned_by(attempt, worker_id):
            return False
        changed = self._end_attempt(
            attempt_id,
            AttemptEndReason.SUCCEEDED,
            result_ref=result_ref,
        )
        self._pump()
        return changed

    def report_failed(
        self,
        attempt_id: str,
        error: str,
        *,
        timed_out: bool = False,
        worker_id: str | None = None,
    ) -> bool:
        attempt = self._require_attempt(attempt_id)
        if not self._owned_by(attempt, worker_id):
            return False
        reason = AttemptEndReason.TIMED_OUT if timed_out else AttemptEndReason.RENDER_FAILED
        changed = self._end_attempt(attempt_id, reason, detail=error)
        self._pump()
        return changed

    def requeue_attempt(
        self,
        attempt_id: str,
        reason: str = "requeued",
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Negative acknowledgement: give the task back without spending budget."""

        attempt = self._require_attempt(attempt_id)
        if not self._owned_by(attempt, worker_id):
            return False
        changed = self._end_attempt(attempt_id, AttemptEndReason.REQUEUED, detail=reason)
        self._pump()
        return changed

    # -- maintenance ----------------------------------------------------------

    def tick(self) -> TickSummary:
        """One maintenance pass over workers, attempts and storage.

        Stale workers and expired attempts are ended first. Jobs another
        process submitted are then adopted and jobs that ended elsewhere are
        released, before due retries are promoted and deliveries pumped.
        """

        summary = TickSummary()
        now = self._now()
        stale_after = timedelta(seconds=self.settings.heartbeat_timeout_seconds)
        with self._sessions_lock:
            stale = [
                worker_id
                for worker_id, seen_at in self._heartbeats.items()
                if now - seen_at > stale_after
            ]
        for worker_id in stale:
            self.disconnect_worker(worker_id, "heartbeat timeout")
            summary.stale_workers += 1

        for attempt in self.repository.list_open_attempts():
            if attempt.deadline_at > now:
                continue
            detail = f"no result before deadline {attempt.deadline_at.isoformat()}"
            if self._end_attempt(attempt.attempt_id, AttemptEndReason.TIMED_OUT, detail=detail):
                summary.timed_out += 1
                summary.expired.append(AttemptTimeout(attempt.attempt_id, detail))
                self._send(attempt.worker_id, CancelAttempt(attempt.attempt_id, "timed out"))

        summary.adopted = self._adopt_stored_jobs()
        summary.released = self._release_finished_jobs()
        summary.promoted = self.queue.promote_due(now=now)
        summary.dispatched, summary.blocked = self._pump()
        summary.waiting = self.queue.pending_count()
        summary.delayed = self.queue.delayed_count()
        return summary

    def recover(self) -> int:
        """Rebuild in-memory state from storage after a restart.

        Attempts left open by a previous process are abandoned and their
        tasks requeued. Returns the number of tasks waiting for dispatch.
        """

        for attempt in self.repository.list_open_attempts():
            if attempt.worker_id in self.connected_workers():
                continue
            self._end_attempt(
                attempt.attempt_id,
                AttemptEndReason.REQUEUED,
                detail="dispatcher restarted",
            )
        with self._sessions_lock:
            live = set(self._sessions)
        for worker in self.repository.list_workers(connected_only=True):
            if worker.worker_id not in live:
                self.repository.mark_worker_disconnected(worker_id=worker.worker_id)

        self._adopt_stored_jobs()
        waiting = self.queue.pending_count() + self.queue.delayed_count()
        logger.info("Recovered dispatcher state: %d tasks waiting", waiting)
        self._pump()
        return waiting

    def start(self) -> None:
        """Run ``tick`` periodically on a background thread."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._tick_loop,
            daemon=True,
            name="render-dispatcher",
        )
        self._thread.start()
        logger.info("Dispatcher thread started")

    def stop(self, *, disconnect_workers: bool = True) -> None:
        if self._thread is not None:
            self._stop.set()
            self._thread.join(timeout=15)
            self._thread = None
            logger.info("Dispatcher thread stopped")
        if disconnect_workers:
            with self._sessions_lock:
                worker_ids = list(self._sessions)
            for worker_id in worker_ids:
                self.disconnect_worker(worker_id, "dispatcher stopped")

    def _tick_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Dispatcher tick failed")
            self._stop.wait(timeout=self.settings.tick_interval_seconds)

    def _adopt_stored_jobs(self) -> int:
        """Resume pending and running jobs this dispatcher does not track yet.

        Picks up jobs submitted by another process, such as ``job submit``
        from the CLI while a farm is running.
        """

        adopted = 0
        for status in (JobStatus.PENDING, JobStatus.RUNNING):
            for job in self.repository.list_jobs(status=status, limit=None):
                if self._is_tracked(job.job_id):
                    continue
                self._resume(job)
                adopted += 1
        if adopted:
            logger.info("Adopted %d jobs from storage", adopted)
        return adopted

    def _release_finished_jobs(self) -> int:
        """Stop tracking jobs that ended, here or in another process.

        Queued tasks of such a job are dropped. Attempts still holding a
        worker slot are acked and their worker is told to stop rendering.
        """

        with self._job_locks_guard:
            tracked = list(self._tracked_jobs)
        released = 0
        for job_id in tracked:
            with self._job_lock(job_id):
                job = self.repository.get_job(job_id)
                if job is not None and not job.status.is_terminal:
                    continue
                reason = f"job {job.status.value}" if job is not None else "job not found"
                if job is not None:
                    self._cancel_remaining(job_id, reason=reason)
                else:
                    self.queue.discard_job(job_id)
                for attempt in self.repository.list_attempts(job_id=job_id):
                    worker_id = self.queue.ack(attempt.attempt_id)
                    if worker_id is None:
                        continue
                    self.repository.set_worker_load(
                        worker_id=worker_id,
                        load=self.queue.load(worker_id),
                    )
                    self._send(worker_id, CancelAttempt(attempt.attempt_id, reason))
                    logger.info(
                        "Stopping attempt %s on %s: %s",
                        attempt.attempt_id,
                        worker_id,
                        reason,
                    )
                with self._job_locks_guard:
                    self._tracked_jobs.discard(job_id)
            released += 1
        return released

    # -- internals ------------------------------------------------------------

    def _validate(self, request: JobCreate) -> tuple[JobRecord, set[int]]:
        settings = self.settings
        batch_size = _or_default(request.batch_size, settings.default_batch_size)
        max_retries = _or_default(request.max_retries, settings.default_max_retries)
        timeout = _or_default(
            request.attempt_timeout_seconds,
            settings.default_attempt_timeout_seconds,
        )
        if batch_size < 1:
            raise JobValidationError(f"batch_size must be >= 1, got {batch_size}")
        if max_retries < 0:
            raise JobValidationError(f"max_retries must be >= 0, got {max_retries}")
        if timeout <= 0:
            raise JobValidationError(f"attempt_timeout_seconds must be > 0, got {timeout}")

        total = count_frames(request.frame_range)
        if total > settings.max_frames_per_job:
            raise JobValidationError(
                f"Frame range resolves to {total} frames, "
                f"limit is {settings.max_frames_per_job}.",
            )
        frames = resolve_frames(request.frame_range)

        job_id = request.job_id or self._new_id()
        if self.repository.get_job(job_id) is not None:
            raise JobValidationError(f"Job already exists: {job_id}")
        record = JobRecord(
            job_id=job_id,
            owner_id=request.owner_id,
            name=request.name,
            frame_range=request.frame_range.strip(),
            priority=request.priority,
            batch_size=batch_size,
            max_retries=max_retries,
            attempt_timeout_seconds=timeout,
            render_params=dict(request.render_params),
        )
        return record, frames

    def _resume(self, job: JobView) -> None:
        with self._job_lock(job.job_id):
            self._track(job.job_id)
            tasks = self.repository.create_tasks(
                job_id=job.job_id,
                plans=decompose(job),
                now=self._now(),
            )
            enqueued = self._enqueue(job, tasks)
            self.aggregator.refresh(job.job_id)
        logger.debug("Resumed job %s: %d tasks enqueued", job.job_id, enqueued)

    def _enqueue(self, job: JobView, tasks: Iterable[TaskView]) -> int:
        now = self._now()
        enqueued = 0
        for task in tasks:
            if task.status != TaskStatus.QUEUED:
                continue
            if self.queue.push(self._queued_task(job, task), now=now):
                enqueued += 1
        return enqueued

    def _queued_task(self, job: JobView, task: TaskView) -> QueuedTask:
        return QueuedTask(
            task_id=task.task_id,
            job_id=job.job_id,
            task_index=task.task_index,
            priority=job.priority,
            job_created_at=job.created_at,
            run_after=task.run_after,
            avoid_worker_id=task.last_worker_id,
        )

    def _pump(self) -> tuple[int, DispatchError | None]:
        """Push ready tasks to workers with spare capacity.

        Must not be called while holding a job lock.
        """

        self.queue.promote_due(now=self._now())
        dispatched = 0
        while True:
            reservation = self.queue.reserve()
            if reservation is None:
                break
            if self._deliver(reservation):
                dispatched += 1

        blocked = None
        waiting = self.queue.pending_count()
        if waiting:
            blocked = DispatchError(f"{waiting} ready tasks waiting for worker capacity")
            logger.debug("%s", blocked)
        return dispatched, blocked

    def _deliver(self, reservation: Reservation) -> bool:
        queued = reservation.task
        with self._job_lock(queued.job_id):
            job = self.repository.get_job(queued.job_id)
            task = self.repository.get_task(queued.task_id)
            if (
                job is None
                or job.status.is_terminal
                or task is None
                or task.status != TaskStatus.QUEUED
            ):
                self.queue.release(reservation)
                return False
            with self._sessions_lock:
                session = self._sessions.get(reservation.worker_id)
            if session is None:
                self.queue.release(reservation)
                self.queue.push(queued, now=self._now())
                return False

            now = self._now()
            attempt = self.repository.dispatch_task(
                task_id=task.task_id,
                attempt_id=self._new_id(),
                worker_id=reservation.worker_id,
                deadline_at=now + timedelta(seconds=job.attempt_timeout_seconds),
                now=now,
            )
            if attempt is None:
                self.queue.release(reservation)
                return False
            if not self.queue.bind(reservation, attempt.attempt_id):
                self._end_attempt(
                    attempt.attempt_id,
                    AttemptEndReason.WORKER_DISCONNECTED,
                    detail=f"worker {reservation.worker_id} left before delivery",
                )
                return False

            self.repository.set_worker_load(
                worker_id=reservation.worker_id,
                load=self.queue.load(reservation.worker_id),
            )
            session.deliver(
                TaskDelivery(
                    attempt_id=attempt.attempt_id,
                    task_id=task.task_id,
                    job_id=job.job_id,
                    frames=task.frame_numbers,
                    render_params=dict(job.render_params),
                    timeout_seconds=job.attempt_timeout_seconds,
                ),
            )
            self._publish(
                "task",
                task.task_id,
                job.job_id,
                TaskStatus.QUEUED.value,
                TaskStatus.DISPATCHED.value,
                attempt_id=attempt.attempt_id,
                worker_id=reservation.worker_id,
            )
            logger.debug(
                "Dispatched task %s attempt %d to %s",
                task.task_id,
                attempt.attempt_no,
                reservation.worker_id,
            )
            self.aggregator.refresh(job.job_id)
        return True

    def _end_attempt(
        self,
        attempt_id: str,
        reason: AttemptEndReason,
        *,
        detail: str | None = None,
        result_ref: str | None = None,
    ) -> bool:
        """Close an attempt and decide its task's follow-up.

        Returns ``False`` for attempts that were already terminal.
        """

        job_id = self._require_attempt(attempt_id).job_id
        with self._job_lock(job_id):
            attempt = self._require_attempt(attempt_id)
            if attempt.status.is_terminal:
                self.queue.ack(attempt_id)
                return False
            job = self._require_job(job_id)
            task = self.repository.get_task(attempt.task_id)
            if task is None:
                raise UnknownEntityError(f"Task not found: {attempt.task_id}")

            now = self._now()
            current = attempt.status
            if reason == AttemptEndReason.SUCCEEDED and current == AttemptStatus.ASSIGNED:
                # Success reported before the start-ack implies the start.
                self.repository.start_attempt(attempt_id=attempt_id, now=now)
                current = AttemptStatus.RUNNING
            status = attempt_status_for(reason)
            ensure_attempt_transition(current, status)

            counted = False
            run_after = None
            if reason == AttemptEndReason.SUCCEEDED:
                task_status = TaskStatus.COMPLETED
            elif reason == AttemptEndReason.CANCELLED:
                task_status = TaskStatus.CANCELLED
            else:
                decision = self._policy_for(job).decide(
                    reason=reason,
                    failures_before=task.failure_count,
                )
                counted = decision.counted
                task_status = TaskStatus.QUEUED if decision.retry else TaskStatus.FAILED
                run_after = now + timedelta(seconds=decision.delay_seconds)
            if task.status.is_in_flight:
                ensure_task_transition(
                    TaskStatus.RUNNING if current == AttemptStatus.RUNNING else task.status,
                    task_status,
                )

            changed = self.repository.finish_attempt(
                attempt_id=attempt_id,
                status=status,
                task_status=task_status,
                counts_against_budget=counted,
                run_after=run_after,
                result_ref=result_ref,
                error_detail=detail,
                now=now,
            )
            freed_worker = self.queue.ack(attempt_id)
            if not changed:
                return False
            if freed_worker is not None:
                self.repository.set_worker_load(
                    worker_id=freed_worker,
                    load=self.queue.load(freed_worker),
                )

            self._publish(
                "attempt",
                attempt_id,
                job_id,
                current.value,
                status.value,
                reason=reason.value,
                error_detail=detail,
            )
            updated = self.repository.get_task(task.task_id) or task
            self._publish(
                "task",
                task.task_id,
                job_id,
                task.status.value,
                updated.status.value,
                failure_count=updated.failure_count,
            )
            self._log_attempt_end(attempt, status, updated, detail)

            if updated.status == TaskStatus.QUEUED:
                self.queue.push(self._queued_task(job, updated), now=now)
            job_status = self.aggregator.on_task_status_change(updated)
            if job_status == JobStatus.FAILED and self.settings.fail_fast:
                self._cancel_remaining(job_id, reason=f"job failed: task {task.task_id}")
        return True

    def _cancel_remaining(self, job_id: str, *, reason: str) -> None:
        """Cancel queued tasks and close in-flight attempts; caller holds the job lock."""

        now = self._now()
        self.queue.discard_job(job_id)
        for task_id in self.repository.cancel_queued_tasks(job_id=job_id, now=now):
            self._publish(
                "task",
                task_id,
                job_id,
                TaskStatus.QUEUED.value,
                TaskStatus.CANCELLED.value,
            )
        for attempt in self.repository.list_attempts(job_id=job_id):
            if attempt.status.is_terminal:
                continue
            changed = self.repository.finish_attempt(
                attempt_id=attempt.attempt_id,
                status=AttemptStatus.CANCELLED,
                task_status=TaskStatus.CANCELLED,
                counts_against_budget=False,
                error_detail=reason,
                now=now,
            )
            freed_worker = self.queue.ack(attempt.attempt_id)
            if freed_worker is not None:
                self.repository.set_worker_load(
                    worker_id=freed_worker,
                    load=self.queue.load(freed_worker),
                )
            if not changed:
                continue
            self._send(attempt.worker_id, CancelAttempt(attempt.attempt_id, reason))
            self._publish(
                "attempt",
                attempt.attempt_id,
                job_id,
                attempt.status.value,
                AttemptStatus.CANCELLED.value,
                reason=reason,
            )
            self._publish(
                "task",
                attempt.task_id,
                job_id,
                None,
                TaskStatus.CANCELLED.value,
            )

    def _set_job_status(self, job: JobView, target: JobStatus) -> None:
        if target == job.status:
            return
        if self.repository.transition_job(
            job_id=job.job_id,
            status_from=job.status,
            status_to=target,
            now=self._now(),
        ):
            self._publish("job", job.job_id, job.job_id, job.status.value, target.value)

    def _policy_for(self, job: JobView) -> RetryPolicy:
        return RetryPolicy(
            max_retries=job.max_retries,
            retry_base_seconds=self.settings.retry_base_seconds,
            retry_max_seconds=self.settings.retry_max_seconds,
            disconnect_counts_against_budget=self.settings.disconnect_counts_against_budget,
            rng=self._rng,
        )

    def _send(self, worker_id: str, message: CancelAttempt) -> None:
        with self._sessions_lock:
            session = self._sessions.get(worker_id)
        if session is not None:
            session.deliver(message)

    def _owned_by(self, attempt: AttemptView, worker_id: str | None) -> bool:
        if worker_id is None or attempt.worker_id == worker_id:
            return True
        logger.warning(
            "Ignoring report for attempt %s from %s; it belongs to %s",
            attempt.attempt_id,
            worker_id,
            attempt.worker_id,
        )
        return False

    def _log_attempt_end(
        self,
        attempt: AttemptView,
        status: AttemptStatus,
        task: TaskView,
        detail: str | None,
    ) -> None:
        if status == AttemptStatus.SUCCEEDED:
            logger.info("Task %s completed on %s", task.task_id, attempt.worker_id)
            return
        if status in {AttemptStatus.FAILED, AttemptStatus.TIMED_OUT}:
            error_type = AttemptTimeout if status == AttemptStatus.TIMED_OUT else AttemptFailure
            logger.warning(
                "%s (task %s, attempt %d on %s); task is now %s",
                error_type(attempt.attempt_id, detail or "no detail"),
                task.task_id,
                attempt.attempt_no,
                attempt.worker_id,
                task.status.value,
            )
            return
        logger.warning(
            "Attempt %d of task %s on %s ended %s (%s); task is now %s",
            attempt.attempt_no,
            task.task_id,
            attempt.worker_id,
            status.value,
            detail or "no detail",
            task.status.value,
        )

    def _publish(
        self,
        entity: str,
        entity_id: str,
        job_id: str,
        status_from: str | None,
        status_to: str,
        **details: Any,
    ) -> None:
        self.notifier.publish(
            StatusChange(
                entity=entity,
                entity_id=entity_id,
                job_id=job_id,
                status_from=status_from,
                status_to=status_to,
                details={key: value for key, value in details.items() if value is not None},
                occurred_at=self._now(),
            ),
        )

    def _job_lock(self, job_id: str) -> threading.RLock:
        """Lock for one job; it lives only while some caller holds a reference."""

        with self._job_locks_guard:
            lock = self._job_locks.get(job_id)
            if lock is None:
                lock = threading.RLock()
                self._job_locks[job_id] = lock
            return lock

    def _track(self, job_id: str) -> None:
        with self._job_locks_guard:
            self._tracked_jobs.add(job_id)

    def _is_tracked(self, job_id: str) -> bool:
        with self._job_locks_guard:
            return job_id in self._tracked_jobs

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise UnknownEntityError(f"Job not found: {job_id}")
        return job

    def _require_attempt(self, attempt_id: str) -> AttemptView:
        attempt = self.repository.get_attempt(attempt_id)
        if attempt is None:
            raise UnknownEntityError(f"Attempt not found: {attempt_id}")
        return attempt

    def _now(self) -> datetime:
        return self._clock()


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value
