"""In-memory dispatch queue with per-worker capacity accounting.

The queue only decides *what goes where*. It never touches storage or worker
channels, and nothing it does calls out while its lock is held, so callers
may use it while holding a job lock.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True, frozen=True)
class QueuedTask:
    """A task waiting for a worker slot."""

    task_id: str
    job_id: str
    task_index: int
    priority: int
    job_created_at: datetime
    run_after: datetime
    avoid_worker_id: str | None = None


@dataclass(slots=True, frozen=True)
class Reservation:
    """A worker slot held for one task until an attempt is bound to it."""

    task: QueuedTask
    worker_id: str


@dataclass(slots=True)
class _WorkerSlot:
    worker_id: str
    capacity: int
    attempts: set[str] = field(default_factory=set)
    reserved: set[str] = field(default_factory=set)
    last_assigned: int = 0

    @property
    def load(self) -> int:
        return len(self.attempts) + len(self.reserved)

    @property
    def has_room(self) -> bool:
        return self.load < self.capacity


class DispatchQueue:
    """Priority-ordered ready heap, delayed heap and worker slot table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._ready: list[tuple[int, datetime, str, int, int, QueuedTask]] = []
        self._delayed: list[tuple[datetime, int, QueuedTask]] = []
        self._queued: set[str] = set()
        self._workers: dict[str, _WorkerSlot] = {}
        self._attempt_workers: dict[str, str] = {}

    # -- workers --------------------------------------------------------------

    def add_worker(self, worker_id: str, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        with self._lock:
            if worker_id in self._workers:
                raise ValueError(f"Worker already connected: {worker_id}")
            self._workers[worker_id] = _WorkerSlot(worker_id=worker_id, capacity=capacity)

    def remove_worker(self, worker_id: str) -> list[str]:
        """Forget a worker; returns the attempt ids it still had in flight."""

        with self._lock:
            slot = self._workers.pop(worker_id, None)
            if slot is None:
                return []
            for attempt_id in slot.attempts:
                self._attempt_workers.pop(attempt_id, None)
            return sorted(slot.attempts)

    def has_worker(self, worker_id: str) -> bool:
        with self._lock:
            return worker_id in self._workers

    def load(self, worker_id: str) -> int:
        with self._lock:
            slot = self._workers.get(worker_id)
            return slot.load if slot is not None else 0

    def loads(self) -> dict[str, tuple[int, int]]:
        """``worker_id -> (load, capacity)`` snapshot."""

        with self._lock:
            return {
                worker_id: (slot.load, slot.capacity)
                for worker_id, slot in self._workers.items()
            }

    # -- tasks ----------------------------------------------------------------

    def push(self, task: QueuedTask, *, now: datetime) -> bool:
        """Queue a task; returns ``False`` when it is already waiting."""

        with self._lock:
            if task.task_id in self._queued:
                return False
            self._queued.add(task.task_id)
            if task.run_after > now:
                heapq.heappush(self._delayed, (task.run_after, next(self._seq), task))
            else:
                self._push_ready(task)
            return True

    def discard_job(self, job_id: str) -> int:
        """Drop every waiting task of a job."""

        with self._lock:
            before = len(self._ready) + len(self._delayed)
            self._ready = [entry for entry in self._ready if entry[-1].job_id != job_id]
            self._delayed = [entry for entry in self._delayed if entry[-1].job_id != job_id]
            heapq.heapify(self._ready)
            heapq.heapify(self._delayed)
            self._queued = {entry[-1].task_id for entry in self._ready} | {
                entry[-1].task_id for entry in self._delayed
            }
            return before - len(self._ready) - len(self._delayed)

    def promote_due(self, *, now: datetime) -> int:
        """Move delayed tasks whose backoff has elapsed to the ready heap."""

        promoted = 0
        with self._lock:
            while self._delayed and self._delayed[0][0] <= now:
                _, _, task = heapq.heappop(self._delayed)
                self._push_ready(task)
                promoted += 1
        return promoted

    def pending_count(self) -> int:
        with self._lock:
            return len(self._ready)

    def delayed_count(self) -> int:
        with self._lock:
            return len(self._delayed)

    def contains(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._queued

    # -- deliveries -----------------------------------------------------------

    def reserve(self) -> Reservation | None:
        """Pop the highest-priority ready task and hold a slot for it.

        Returns ``None`` when nothing is ready or no worker has spare capacity.
        """

        with self._lock:
            if not self._ready:
                return None
            task = self._ready[0][-1]
            slot = self._pick_worker(avoid_worker_id=task.avoid_worker_id)
            if slot is None:
                return None
            heapq.heappop(self._ready)
            self._queued.discard(task.task_id)
            slot.reserved.add(task.task_id)
            slot.last_assigned = next(self._seq)
            return Reservation(task=task, worker_id=slot.worker_id)

    def bind(self, reservation: Reservation, attempt_id: str) -> bool:
        """Turn a reservation into an in-flight attempt.

        Returns ``False`` when the worker went away since the reservation.
        """

        with self._lock:
            slot = self._workers.get(reservation.worker_id)
            if slot is None or reservation.task.task_id not in slot.reserved:
                return False
            slot.reserved.discard(reservation.task.task_id)
            slot.attempts.add(attempt_id)
            self._attempt_workers[attempt_id] = slot.worker_id
            return True

    def release(self, reservation: Reservation) -> None:
        """Give back a reserved slot without delivering anything."""

        with self._lock:
            slot = self._workers.get(reservation.worker_id)
            if slot is not None:
                slot.reserved.discard(reservation.task.task_id)

    def ack(self, attempt_id: str) -> str | None:
        """Free the slot held by an attempt; repeated acks are no-ops.

        Returns the worker id whose slot was freed.
        """

        with self._lock:
            worker_id = self._attempt_workers.pop(attempt_id, None)
            if worker_id is None:
                return None
            slot = self._workers.get(worker_id)
            if slot is not None:
                slot.attempts.discard(attempt_id)
            return worker_id

    def in_flight(self, attempt_id: str) -> str | None:
        with self._lock:
            return self._attempt_workers.get(attempt_id)

    def _push_ready(self, task: QueuedTask) -> None:
        heapq.heappush(
            self._ready,
            (
                task.priority,
                task.job_created_at,
                task.job_id,
                task.task_index,
                next(self._seq),
                task,
            ),
        )

    def _pick_worker(self, *, avoid_worker_id: str | None) -> _WorkerSlot | None:
        candidates = [slot for slot in self._workers.values() if slot.has_room]
        if avoid_worker_id is not None:
            others = [slot for slot in candidates if slot.worker_id != avoid_worker_id]
            if others:
                candidates = others
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda slot: (slot.load / slot.capacity, slot.last_assigned, slot.worker_id),
        )
