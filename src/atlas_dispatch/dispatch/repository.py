"""Persistent storage for jobs, tasks, attempts and slaves."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from atlas_dispatch.dispatch.decomposer import TaskPlan, task_id_for
from atlas_dispatch.dispatch.errors import DispatchEngineError, UnknownEntityError
from atlas_dispatch.dispatch.models import (
    AttemptLogView,
    AttemptStatus,
    AttemptView,
    JobEventView,
    JobRecord,
    JobStatus,
    JobView,
    TaskStatus,
    TaskView,
    WorkerView,
)
from atlas_dispatch.storage.alembic_runner import upgrade_head
from atlas_dispatch.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from atlas_dispatch.storage.sqlmodel_models import (
    RenderJob,
    RenderJobEvent,
    RenderTask,
    RenderTaskAttempt,
    RenderTaskAttemptLog,
    Slave,
)

_OPEN_ATTEMPT_STATUSES = (AttemptStatus.ASSIGNED.value, AttemptStatus.RUNNING.value)
_IN_FLIGHT_TASK_STATUSES = (TaskStatus.DISPATCHED.value, TaskStatus.RUNNING.value)


class DispatchRepository(Protocol):
    """Storage interface consumed by the dispatch engine."""

    def create_job(self, record: JobRecord, *, now: datetime | None = None) -> JobView: ...

    def get_job(self, job_id: str) -> JobView | None: ...

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int | None = 50,
    ) -> list[JobView]: ...

    def transition_job(
        self,
        *,
        job_id: str,
        status_from: JobStatus,
        status_to: JobStatus,
        failure_detail: str | None = None,
        now: datetime | None = None,
    ) -> bool: ...

    def create_tasks(
        self,
        *,
        job_id: str,
        plans: Sequence[TaskPlan],
        now: datetime | None = None,
    ) -> list[TaskView]: ...

    def get_task(self, task_id: str) -> TaskView | None: ...

    def list_tasks(
        self,
        *,
        job_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskView]: ...

    def dispatch_task(
        self,
        *,
        task_id: str,
        attempt_id: str,
        worker_id: str,
        deadline_at: datetime,
        now: datetime | None = None,
    ) -> AttemptView | None: ...

    def start_attempt(self, *, attempt_id: str, now: datetime | None = None) -> bool: ...

    def finish_attempt(  # noqa: PLR0913
        self,
        *,
        attempt_id: str,
        status: AttemptStatus,
        task_status: TaskStatus,
        counts_against_budget: bool,
        run_after: datetime | None = None,
        result_ref: str | None = None,
        error_detail: str | None = None,
        now: datetime | None = None,
    ) -> bool: ...

    def cancel_queued_tasks(self, *, job_id: str, now: datetime | None = None) -> list[str]: ...

    def requeue_failed_tasks(self, *, job_id: str, now: datetime | None = None) -> list[str]: ...

    def get_attempt(self, attempt_id: str) -> AttemptView | None: ...

    def list_attempts(
        self,
        *,
        task_id: str | None = None,
        job_id: str | None = None,
    ) -> list[AttemptView]: ...

    def list_open_attempts(self, *, worker_id: str | None = None) -> list[AttemptView]: ...

    def add_attempt_log(
        self,
        *,
        attempt_id: str,
        message: str,
        level: str = "info",
        progress: float | None = None,
        now: datetime | None = None,
    ) -> None: ...

    def list_attempt_logs(self, *, attempt_id: str) -> list[AttemptLogView]: ...

    def add_event(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        event_type: str,
        task_id: str | None = None,
        attempt_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> None: ...

    def list_events(self, *, job_id: str) -> list[JobEventView]: ...

    def register_worker(
        self,
        *,
        worker_id: str,
        session_id: str,
        capacity: int,
        capabilities: dict[str, object],
        now: datetime | None = None,
    ) -> WorkerView: ...

    def touch_worker(self, *, worker_id: str, now: datetime | None = None) -> None: ...

    def set_worker_load(self, *, worker_id: str, load: int) -> None: ...

    def mark_worker_disconnected(self, *, worker_id: str, now: datetime | None = None) -> bool: ...

    def list_workers(self, *, connected_only: bool = False) -> list[WorkerView]: ...

    def get_worker(self, worker_id: str) -> WorkerView | None: ...


class SqlDispatchRepository:
    """Dispatch persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head; a no-op for an up-to-date database."""

        upgrade_head(self.db_path, engine=self.engine)

    # -- jobs -----------------------------------------------------------------

    def create_job(self, record: JobRecord, *, now: datetime | None = None) -> JobView:
        """Persist a pending job."""

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            row = RenderJob(
                job_id=record.job_id,
                owner_id=record.owner_id,
                name=record.name,
                frame_range=record.frame_range,
                priority=record.priority,
                batch_size=record.batch_size,
                max_retries=record.max_retries,
                attempt_timeout_seconds=record.attempt_timeout_seconds,
                render_params_json=dump_json(record.render_params),
                status=JobStatus.PENDING.value,
                created_at=moment,
                updated_at=moment,
            )
            session.add(row)
            self._add_event(
                session=session,
                now=moment,
                job_id=record.job_id,
                event_type="job_submitted",
                status_to=JobStatus.PENDING.value,
                details={
                    "frame_range": record.frame_range,
                    "priority": record.priority,
                    "batch_size": record.batch_size,
                    "max_retries": record.max_retries,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(RenderJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int | None = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(RenderJob).order_by(col(RenderJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(RenderJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def transition_job(
        self,
        *,
        job_id: str,
        status_from: JobStatus,
        status_to: JobStatus,
        failure_detail: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move a job between statuses if it is still in ``status_from``."""

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RenderJob)
                .where(
                    col(RenderJob.job_id) == job_id,
                    col(RenderJob.status) == status_from.value,
                )
                .values(
                    status=status_to.value,
                    failure_detail=failure_detail,
                    finished_at=moment if status_to.is_terminal else None,
                    updated_at=moment,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                now=moment,
                job_id=job_id,
                event_type=f"job_{status_to.value}",
                status_from=status_from.value,
                status_to=status_to.value,
                details={"failure_detail": failure_detail} if failure_detail else None,
            )
            session.commit()
            return True

    # -- tasks ----------------------------------------------------------------

    def create_tasks(
        self,
        *,
        job_id: str,
        plans: Sequence[TaskPlan],
        now: datetime | None = None,
    ) -> list[TaskView]:
        """Persist planned tasks; re-running with the same plans is a no-op."""

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            if session.get(RenderJob, job_id) is None:
                raise UnknownEntityError(f"Job not found: {job_id}")
            existing = {
                row.task_index: row
                for row in session.exec(
                    select(RenderTask).where(RenderTask.job_id == job_id),
                ).all()
            }
            planned_indexes = {plan.task_index for plan in plans}
            if existing and set(existing) - planned_indexes:
                raise DispatchEngineError(
                    f"Stored tasks of job {job_id} do not match its decomposition.",
                )
            created = 0
            for plan in plans:
                row = existing.get(plan.task_index)
                if row is not None:
                    if row.frames != plan.frames_text:
                        raise DispatchEngineError(
                            f"Task {row.task_id} covers frames {row.frames!r}, "
                            f"decomposition planned {plan.frames_text!r}.",
                        )
                    continue
                session.add(
                    RenderTask(
                        task_id=task_id_for(job_id, plan.task_index),
                        job_id=job_id,
                        task_index=plan.task_index,
                        frames=plan.frames_text,
                        first_frame=plan.first_frame,
                        last_frame=plan.last_frame,
                        status=TaskStatus.QUEUED.value,
                        run_after=moment,
                        created_at=moment,
                        updated_at=moment,
                    ),
                )
                created += 1
            if created:
                self._add_event(
                    session=session,
                    now=moment,
                    job_id=job_id,
                    event_type="tasks_created",
                    details={"created": created, "total": len(plans)},
                )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if not self.list_tasks(job_id=job_id):
                    raise
                # created concurrently by another dispatcher; validate against those rows
                return self.create_tasks(job_id=job_id, plans=plans, now=now)
        return self.list_tasks(job_id=job_id)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(RenderTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        job_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskView]:
        """List tasks in job order, optionally scoped to a job and statuses."""

        with Session(self.engine) as session:
            statement = select(RenderTask).order_by(
                col(RenderTask.job_id).asc(),
                col(RenderTask.task_index).asc(),
            )
            if job_id is not None:
                statement = statement.where(RenderTask.job_id == job_id)
            if statuses is not None:
                statement = statement.where(
                    col(RenderTask.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def dispatch_task(
        self,
        *,
        task_id: str,
        attempt_id: str,
        worker_id: str,
        deadline_at: datetime,
        now: datetime | None = None,
    ) -> AttemptView | None:
        """Atomically move a queued task to dispatched and open its next attempt.

        Returns ``None`` when the task is no longer queued.
        """

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            task = session.get(RenderTask, task_id)
            if task is None or task.status != TaskStatus.QUEUED.value:
                return None
            attempt_no = task.attempt_count + 1
            result = session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == task_id,
                    col(RenderTask.status) == TaskStatus.QUEUED.value,
                    col(RenderTask.attempt_count) == task.attempt_count,
                )
                .values(
                    status=TaskStatus.DISPATCHED.value,
                    attempt_count=attempt_no,
                    current_attempt_id=attempt_id,
                    updated_at=moment,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            attempt = RenderTaskAttempt(
                attempt_id=attempt_id,
                task_id=task_id,
                job_id=task.job_id,
                attempt_no=attempt_no,
                worker_id=worker_id,
                status=AttemptStatus.ASSIGNED.value,
                assigned_at=moment,
                deadline_at=to_db_datetime(deadline_at),
            )
            session.add(attempt)
            self._add_event(
                session=session,
                now=moment,
                job_id=task.job_id,
                task_id=task_id,
                attempt_id=attempt_id,
                event_type="task_dispatched",
                status_from=TaskStatus.QUEUED.value,
                status_to=TaskStatus.DISPATCHED.value,
                details={"worker_id": worker_id, "attempt_no": attempt_no},
            )
            session.commit()
            session.refresh(attempt)
            return _to_attempt_view(attempt)

    def start_attempt(self, *, attempt_id: str, now: datetime | None = None) -> bool:
        """Record the worker's start-ack: assigned -> running for attempt and task."""

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            attempt = session.get(RenderTaskAttempt, attempt_id)
            if attempt is None:
                raise UnknownEntityError(f"Attempt not found: {attempt_id}")
            result = session.exec(
                sa_update(RenderTaskAttempt)
                .where(
                    col(RenderTaskAttempt.attempt_id) == attempt_id,
                    col(RenderTaskAttempt.status) == AttemptStatus.ASSIGNED.value,
                )
                .values(status=AttemptStatus.RUNNING.value, started_at=moment)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == attempt.task_id,
                    col(RenderTask.current_attempt_id) == attempt_id,
                    col(RenderTask.status) == TaskStatus.DISPATCHED.value,
                )
                .values(status=TaskStatus.RUNNING.value, updated_at=moment)
                .execution_options(synchronize_session=False),
            )
            self._add_event(
                session=session,
                now=moment,
                job_id=attempt.job_id,
                task_id=attempt.task_id,
                attempt_id=attempt_id,
                event_type="attempt_started",
                status_from=AttemptStatus.ASSIGNED.value,
                status_to=AttemptStatus.RUNNING.value,
                details={"worker_id": attempt.worker_id},
            )
            session.commit()
            return True

    def finish_attempt(  # noqa: PLR0913
        self,
        *,
        attempt_id: str,
        status: AttemptStatus,
        task_status: TaskStatus,
        counts_against_budget: bool,
        run_after: datetime | None = None,
        result_ref: str | None = None,
        error_detail: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Close an open attempt and move its task in the same transaction.

        Returns ``False`` when the attempt is already terminal, which makes
        duplicate acknowledgements harmless.
        """

        if not status.is_terminal:
            raise ValueError(f"Unsupported terminal attempt status: {status}")
        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            attempt = session.get(RenderTaskAttempt, attempt_id)
            if attempt is None:
                raise UnknownEntityError(f"Attempt not found: {attempt_id}")
            attempt_from = attempt.status
            result = session.exec(
                sa_update(RenderTaskAttempt)
                .where(
                    col(RenderTaskAttempt.attempt_id) == attempt_id,
                    col(RenderTaskAttempt.status).in_(_OPEN_ATTEMPT_STATUSES),
                )
                .values(
                    status=status.value,
                    counts_against_budget=counts_against_budget,
                    finished_at=moment,
                    result_ref=result_ref,
                    error_detail=error_detail,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            task = session.get(RenderTask, attempt.task_id)
            if task is None:
                raise UnknownEntityError(f"Task not found: {attempt.task_id}")
            task_from = task.status
            task_values: dict[str, object] = {
                "status": task_status.value,
                "current_attempt_id": None,
                "last_worker_id": attempt.worker_id,
                "failure_count": task.failure_count + (1 if counts_against_budget else 0),
                "updated_at": moment,
                "finished_at": moment if task_status.is_terminal else None,
            }
            if task_status == TaskStatus.QUEUED:
                task_values["run_after"] = to_db_datetime(run_after) if run_after else moment
            session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == attempt.task_id,
                    col(RenderTask.current_attempt_id) == attempt_id,
                    col(RenderTask.status).in_(_IN_FLIGHT_TASK_STATUSES),
                )
                .values(**task_values)
                .execution_options(synchronize_session=False),
            )
            self._add_event(
                session=session,
                now=moment,
                job_id=attempt.job_id,
                task_id=attempt.task_id,
                attempt_id=attempt_id,
                event_type=f"attempt_{status.value}",
                status_from=attempt_from,
                status_to=status.value,
                details={
                    "worker_id": attempt.worker_id,
                    "counts_against_budget": counts_against_budget,
                    "error_detail": error_detail,
                    "result_ref": result_ref,
                },
            )
            if task_from != task_status.value:
                self._add_event(
                    session=session,
                    now=moment,
                    job_id=attempt.job_id,
                    task_id=attempt.task_id,
                    event_type=f"task_{task_status.value}",
                    status_from=task_from,
                    status_to=task_status.value,
                    details=None,
                )
            session.commit()
            return True

    def cancel_queued_tasks(self, *, job_id: str, now: datetime | None = None) -> list[str]:
        """Cancel every queued task of a job; in-flight tasks close via their attempts."""

        return self._bulk_task_transition(
            job_id=job_id,
            from_statuses=(TaskStatus.QUEUED,),
            to_status=TaskStatus.CANCELLED,
            event_type="task_cancelled",
            now=now,
        )

    def requeue_failed_tasks(self, *, job_id: str, now: datetime | None = None) -> list[str]:
        """Operator retry: failed/cancelled tasks go back to queued with a fresh budget."""

        return self._bulk_task_transition(
            job_id=job_id,
            from_statuses=(TaskStatus.FAILED, TaskStatus.CANCELLED),
            to_status=TaskStatus.QUEUED,
            event_type="task_manual_retry",
            now=now,
        )

    def _bulk_task_transition(
        self,
        *,
        job_id: str,
        from_statuses: tuple[TaskStatus, ...],
        to_status: TaskStatus,
        event_type: str,
        now: datetime | None,
    ) -> list[str]:
        moment = to_db_datetime(now or utc_now())
        changed: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTask)
                .where(
                    RenderTask.job_id == job_id,
                    col(RenderTask.status).in_([status.value for status in from_statuses]),
                )
                .order_by(col(RenderTask.task_index).asc()),
            ).all()
            for row in rows:
                previous = row.status
                values: dict[str, object] = {"status": to_status.value, "updated_at": moment}
                if to_status == TaskStatus.QUEUED:
                    values.update(failure_count=0, run_after=moment, finished_at=None)
                else:
                    values["finished_at"] = moment
                result = session.exec(
                    sa_update(RenderTask)
                    .where(
                        col(RenderTask.task_id) == row.task_id,
                        col(RenderTask.status) == previous,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                changed.append(row.task_id)
                self._add_event(
                    session=session,
                    now=moment,
                    job_id=job_id,
                    task_id=row.task_id,
                    event_type=event_type,
                    status_from=previous,
                    status_to=to_status.value,
                    details=None,
                )
            session.commit()
        return changed

    # -- attempts -------------------------------------------------------------

    def get_attempt(self, attempt_id: str) -> AttemptView | None:
        with Session(self.engine) as session:
            row = session.get(RenderTaskAttempt, attempt_id)
            return _to_attempt_view(row) if row is not None else None

    def list_attempts(
        self,
        *,
        task_id: str | None = None,
        job_id: str | None = None,
    ) -> list[AttemptView]:
        """Attempt history ordered by task and attempt number."""

        with Session(self.engine) as session:
            statement = select(RenderTaskAttempt).order_by(
                col(RenderTaskAttempt.task_id).asc(),
                col(RenderTaskAttempt.attempt_no).asc(),
            )
            if task_id is not None:
                statement = statement.where(RenderTaskAttempt.task_id == task_id)
            if job_id is not None:
                statement = statement.where(RenderTaskAttempt.job_id == job_id)
            rows = session.exec(statement).all()
        return [_to_attempt_view(row) for row in rows]

    def list_open_attempts(self, *, worker_id: str | None = None) -> list[AttemptView]:
        """Attempts still assigned or running, oldest first."""

        with Session(self.engine) as session:
            statement = (
                select(RenderTaskAttempt)
                .where(col(RenderTaskAttempt.status).in_(_OPEN_ATTEMPT_STATUSES))
                .order_by(col(RenderTaskAttempt.assigned_at).asc())
            )
            if worker_id is not None:
                statement = statement.where(RenderTaskAttempt.worker_id == worker_id)
            rows = session.exec(statement).all()
        return [_to_attempt_view(row) for row in rows]

    def add_attempt_log(
        self,
        *,
        attempt_id: str,
        message: str,
        level: str = "info",
        progress: float | None = None,
        now: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                RenderTaskAttemptLog(
                    attempt_id=attempt_id,
                    level=level,
                    message=message,
                    progress=progress,
                    created_at=to_db_datetime(now or utc_now()),
                ),
            )
            session.commit()

    def list_attempt_logs(self, *, attempt_id: str) -> list[AttemptLogView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTaskAttemptLog)
                .where(RenderTaskAttemptLog.attempt_id == attempt_id)
                .order_by(col(RenderTaskAttemptLog.id).asc()),
            ).all()
        return [
            AttemptLogView(
                id=row.id or 0,
                attempt_id=row.attempt_id,
                level=row.level,
                message=row.message,
                progress=row.progress,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # -- events ---------------------------------------------------------------

    def add_event(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        event_type: str,
        task_id: str | None = None,
        attempt_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                now=now,
                job_id=job_id,
                event_type=event_type,
                task_id=task_id,
                attempt_id=attempt_id,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def list_events(self, *, job_id: str) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderJobEvent)
                .where(RenderJobEvent.job_id == job_id)
                .order_by(col(RenderJobEvent.id).asc()),
            ).all()
        return [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                task_id=row.task_id,
                attempt_id=row.attempt_id,
                event_type=row.event_type,
                status_from=row.status_from,
                status_to=row.status_to,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json(row.details_json),
            )
            for row in rows
        ]

    # -- workers --------------------------------------------------------------

    def register_worker(
        self,
        *,
        worker_id: str,
        session_id: str,
        capacity: int,
        capabilities: dict[str, object],
        now: datetime | None = None,
    ) -> WorkerView:
        """Upsert a slave row for a new connection."""

        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            row = session.get(Slave, worker_id)
            if row is None:
                row = Slave(worker_id=worker_id)
            row.session_id = session_id
            row.capacity = capacity
            row.capabilities_json = dump_json(capabilities)
            row.load = 0
            row.connected = True
            row.heartbeat_at = moment
            row.connected_at = moment
            row.disconnected_at = None
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def touch_worker(self, *, worker_id: str, now: datetime | None = None) -> None:
        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(Slave)
                .where(col(Slave.worker_id) == worker_id, col(Slave.connected).is_(True))
                .values(heartbeat_at=moment)
                .execution_options(synchronize_session=False),
            )
            session.commit()

    def set_worker_load(self, *, worker_id: str, load: int) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Slave)
                .where(col(Slave.worker_id) == worker_id)
                .values(load=load)
                .execution_options(synchronize_session=False),
            )
            session.commit()

    def mark_worker_disconnected(self, *, worker_id: str, now: datetime | None = None) -> bool:
        moment = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Slave)
                .where(col(Slave.worker_id) == worker_id, col(Slave.connected).is_(True))
                .values(connected=False, load=0, disconnected_at=moment)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return result.rowcount == 1

    def get_worker(self, worker_id: str) -> WorkerView | None:
        with Session(self.engine) as session:
            row = session.get(Slave, worker_id)
            return _to_worker_view(row) if row is not None else None

    def list_workers(self, *, connected_only: bool = False) -> list[WorkerView]:
        with Session(self.engine) as session:
            statement = select(Slave).order_by(col(Slave.worker_id).asc())
            if connected_only:
                statement = statement.where(col(Slave.connected).is_(True))
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        task_id: str | None = None,
        attempt_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> None:
        session.add(
            RenderJobEvent(
                job_id=job_id,
                task_id=task_id,
                attempt_id=attempt_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=dump_json(details),
                created_at=to_db_datetime(now or utc_now()),
            ),
        )


def _to_job_view(row: RenderJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        name=row.name,
        frame_range=row.frame_range,
        priority=row.priority,
        batch_size=row.batch_size,
        max_retries=row.max_retries,
        attempt_timeout_seconds=row.attempt_timeout_seconds,
        render_params=load_json(row.render_params_json),
        status=JobStatus(row.status),
        failure_detail=row.failure_detail,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_task_view(row: RenderTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        task_index=row.task_index,
        frames=row.frames,
        first_frame=row.first_frame,
        last_frame=row.last_frame,
        status=TaskStatus(row.status),
        attempt_count=row.attempt_count,
        failure_count=row.failure_count,
        run_after=to_utc_aware_datetime(row.run_after),
        last_worker_id=row.last_worker_id,
        current_attempt_id=row.current_attempt_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_attempt_view(row: RenderTaskAttempt) -> AttemptView:
    return AttemptView(
        attempt_id=row.attempt_id,
        task_id=row.task_id,
        job_id=row.job_id,
        attempt_no=row.attempt_no,
        worker_id=row.worker_id,
        status=AttemptStatus(row.status),
        counts_against_budget=row.counts_against_budget,
        assigned_at=to_utc_aware_datetime(row.assigned_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        deadline_at=to_utc_aware_datetime(row.deadline_at),
        result_ref=row.result_ref,
        error_detail=row.error_detail,
    )


def _to_worker_view(row: Slave) -> WorkerView:
    return WorkerView(
        worker_id=row.worker_id,
        session_id=row.session_id,
        capacity=row.capacity,
        capabilities=load_json(row.capabilities_json),
        load=row.load,
        connected=row.connected,
        heartbeat_at=optional_utc(row.heartbeat_at),
        connected_at=optional_utc(row.connected_at),
        disconnected_at=optional_utc(row.disconnected_at),
    )
