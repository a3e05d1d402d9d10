from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from atlas_dispatch.dispatch.queue import DispatchQueue, QueuedTask

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Dispatch Queue"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def _task(
    task_index: int,
    *,
    job_id: str = "job-a",
    priority: int = 100,
    created_offset: int = 0,
    run_after: datetime = NOW,
    avoid_worker_id: str | None = None,
) -> QueuedTask:
    return QueuedTask(
        task_id=f"{job_id}-t{task_index:05d}",
        job_id=job_id,
        task_index=task_index,
        priority=priority,
        job_created_at=NOW + timedelta(seconds=created_offset),
        run_after=run_after,
        avoid_worker_id=avoid_worker_id,
    )


def test_reserve_returns_none_without_workers() -> None:
    queue = DispatchQueue()
    queue.push(_task(0), now=NOW)

    assert queue.reserve() is None
    assert queue.pending_count() == 1


def test_lower_priority_value_then_older_job_then_task_index() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=10)
    queue.push(_task(1, job_id="old", created_offset=0), now=NOW)
    queue.push(_task(0, job_id="new", created_offset=5), now=NOW)
    queue.push(_task(0, job_id="old", created_offset=0), now=NOW)
    queue.push(_task(0, job_id="urgent", priority=10, created_offset=9), now=NOW)

    order = []
    while (reservation := queue.reserve()) is not None:
        order.append(reservation.task.task_id)

    assert order == ["urgent-t00000", "old-t00000", "old-t00001", "new-t00000"]


def test_capacity_bounds_reservations_and_ack_frees_slot() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=2)
    for index in range(3):
        queue.push(_task(index), now=NOW)

    first = queue.reserve()
    second = queue.reserve()
    assert first is not None
    assert second is not None
    assert queue.reserve() is None
    assert queue.load("slave-a") == 2

    assert queue.bind(first, "attempt-1")
    assert queue.in_flight("attempt-1") == "slave-a"
    assert queue.ack("attempt-1") == "slave-a"
    assert queue.ack("attempt-1") is None
    assert queue.load("slave-a") == 1

    third = queue.reserve()
    assert third is not None
    assert third.task.task_index == 2


def test_least_loaded_worker_is_chosen() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=4)
    queue.add_worker("slave-b", capacity=1)
    for index in range(4):
        queue.push(_task(index), now=NOW)

    workers = [queue.reserve().worker_id for _ in range(4)]

    assert sorted(workers) == ["slave-a", "slave-a", "slave-a", "slave-b"]
    assert queue.loads() == {"slave-a": (3, 4), "slave-b": (1, 1)}


def test_avoided_worker_is_skipped_when_another_has_room() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=1)
    queue.add_worker("slave-b", capacity=1)
    queue.push(_task(0, avoid_worker_id="slave-a"), now=NOW)

    reservation = queue.reserve()

    assert reservation is not None
    assert reservation.worker_id == "slave-b"


def test_avoided_worker_is_used_when_it_is_the_only_one() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=1)
    queue.push(_task(0, avoid_worker_id="slave-a"), now=NOW)

    reservation = queue.reserve()

    assert reservation is not None
    assert reservation.worker_id == "slave-a"


def test_duplicate_push_is_ignored() -> None:
    queue = DispatchQueue()

    assert queue.push(_task(0), now=NOW)
    assert not queue.push(_task(0), now=NOW)
    assert queue.pending_count() == 1
    assert queue.contains("job-a-t00000")


def test_delayed_tasks_wait_for_promotion() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=1)
    queue.push(_task(0, run_after=NOW + timedelta(seconds=30)), now=NOW)

    assert queue.delayed_count() == 1
    assert queue.reserve() is None
    assert queue.promote_due(now=NOW + timedelta(seconds=29)) == 0
    assert queue.promote_due(now=NOW + timedelta(seconds=30)) == 1
    assert queue.reserve() is not None


def test_discard_job_drops_ready_and_delayed_tasks() -> None:
    queue = DispatchQueue()
    queue.push(_task(0, job_id="job-a"), now=NOW)
    queue.push(_task(1, job_id="job-a", run_after=NOW + timedelta(seconds=5)), now=NOW)
    queue.push(_task(0, job_id="job-b"), now=NOW)

    assert queue.discard_job("job-a") == 2
    assert queue.pending_count() == 1
    assert queue.delayed_count() == 0
    assert not queue.contains("job-a-t00000")
    assert queue.push(_task(0, job_id="job-a"), now=NOW)


def test_remove_worker_returns_in_flight_attempts_and_blocks_bind() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=2)
    queue.push(_task(0), now=NOW)
    queue.push(_task(1), now=NOW)
    bound = queue.reserve()
    pending = queue.reserve()
    assert queue.bind(bound, "attempt-1")

    assert queue.remove_worker("slave-a") == ["attempt-1"]
    assert not queue.bind(pending, "attempt-2")
    assert queue.ack("attempt-1") is None
    assert not queue.has_worker("slave-a")


def test_release_returns_reserved_slot() -> None:
    queue = DispatchQueue()
    queue.add_worker("slave-a", capacity=1)
    queue.push(_task(0), now=NOW)
    reservation = queue.reserve()

    queue.release(reservation)

    assert queue.load("slave-a") == 0


def test_add_worker_validation() -> None:
    queue = DispatchQueue()
    with pytest.raises(ValueError, match="capacity"):
        queue.add_worker("slave-a", capacity=0)
    queue.add_worker("slave-a", capacity=1)
    with pytest.raises(ValueError, match="already connected"):
        queue.add_worker("slave-a", capacity=1)
