from __future__ import annotations

import random
import threading
import time
from collections import Counter
from collections.abc import Callable

import allure

from atlas_dispatch.config import DispatchSettings
from atlas_dispatch.dispatch.engine import RenderDispatcher
from atlas_dispatch.dispatch.errors import WorkerDisconnect
from atlas_dispatch.dispatch.models import AttemptStatus, JobCreate, JobStatus, TaskDelivery
from atlas_dispatch.dispatch.session import WorkerSession

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Render Dispatcher"),
]


def _drain(
    session: WorkerSession,
    stop: threading.Event,
    *,
    seed: int,
    should_fail: Callable[[str], bool],
) -> None:
    """Answer deliveries in a shuffled order of reports until ``stop``."""

    rng = random.Random(seed)
    while not stop.is_set():
        try:
            message = session.receive(timeout=0.02)
        except WorkerDisconnect:
            return
        if not isinstance(message, TaskDelivery):
            continue
        if rng.random() < 0.7:
            session.started(message.attempt_id)
        time.sleep(rng.uniform(0.0, 0.005))
        if should_fail(message.task_id):
            session.failed(message.attempt_id, "simulated crash")
            continue
        session.progress(message.attempt_id, "done", progress=1.0)
        session.succeeded(message.attempt_id)
        if rng.random() < 0.3:
            session.succeeded(message.attempt_id)
            session.started(message.attempt_id)


def _first_attempt_of_odd_tasks_fails() -> Callable[[str], bool]:
    seen: set[str] = set()
    lock = threading.Lock()

    def should_fail(task_id: str) -> bool:
        with lock:
            first = task_id not in seen
            seen.add(task_id)
        return first and int(task_id[-5:]) % 2 == 1

    return should_fail


def test_concurrent_workers_never_double_dispatch_and_job_converges(
    repository,
    dispatch_settings,
) -> None:
    dispatcher = RenderDispatcher(
        repository=repository,
        settings=dispatch_settings,
        rng=random.Random(11),
    )
    sessions = [dispatcher.connect_worker(f"slave-{index}", capacity=2) for index in range(3)]
    capacities = {session.worker_id: session.capacity for session in sessions}
    should_fail = _first_attempt_of_odd_tasks_fails()
    stop = threading.Event()
    violations: list[str] = []

    def monitor() -> None:
        while not stop.is_set():
            open_attempts = repository.list_open_attempts()
            per_task = Counter(attempt.task_id for attempt in open_attempts)
            per_worker = Counter(attempt.worker_id for attempt in open_attempts)
            violations.extend(
                f"{task_id} has {count} open attempts"
                for task_id, count in per_task.items()
                if count > 1
            )
            violations.extend(
                f"{worker_id} holds {count} open attempts"
                for worker_id, count in per_worker.items()
                if count > capacities[worker_id]
            )
            time.sleep(0.002)

    threads = [threading.Thread(target=monitor)]
    for index, session in enumerate(sessions):
        threads.extend(
            threading.Thread(
                target=_drain,
                args=(session, stop),
                kwargs={"seed": index * 10 + slot, "should_fail": should_fail},
            )
            for slot in range(session.capacity)
        )
    for thread in threads:
        thread.start()
    try:
        dispatcher.submit_job(
            JobCreate(frame_range="1-40", batch_size=2, max_retries=1, job_id="busy"),
        )
        final = dispatcher.wait_for_job("busy", timeout_seconds=60, poll_interval_seconds=0.02)
    finally:
        stop.set()
        for thread in threads:
            thread.join(timeout=10)
        dispatcher.stop()

    assert violations == []
    assert final.status == JobStatus.COMPLETED
    assert repository.list_open_attempts() == []
    for task in repository.list_tasks(job_id="busy"):
        attempts = repository.list_attempts(task_id=task.task_id)
        statuses = [attempt.status for attempt in attempts]
        assert statuses.count(AttemptStatus.SUCCEEDED) == 1
        if task.task_index % 2:
            assert statuses == [AttemptStatus.FAILED, AttemptStatus.SUCCEEDED]
            assert task.failure_count == 1
        else:
            assert statuses == [AttemptStatus.SUCCEEDED]


def test_running_farm_picks_up_jobs_submitted_by_another_process(repository) -> None:
    settings = DispatchSettings(
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        tick_interval_seconds=0.05,
    )
    farm = RenderDispatcher(repository=repository, settings=settings)
    session = farm.connect_worker("slave-a", capacity=2)
    stop = threading.Event()
    worker = threading.Thread(
        target=_drain,
        args=(session, stop),
        kwargs={"seed": 3, "should_fail": lambda task_id: False},
    )
    worker.start()
    farm.recover()
    farm.start()
    try:
        submitter = RenderDispatcher(repository=repository, settings=settings)
        submitter.submit_job(JobCreate(frame_range="1-6", batch_size=2, job_id="late"))
        final = farm.wait_for_job("late", timeout_seconds=30, poll_interval_seconds=0.02)
    finally:
        stop.set()
        worker.join(timeout=10)
        farm.stop()

    assert final.status == JobStatus.COMPLETED
    attempts = repository.list_attempts(job_id="late")
    assert {attempt.worker_id for attempt in attempts} == {"slave-a"}
    assert [attempt.status for attempt in attempts] == [AttemptStatus.SUCCEEDED] * 3
