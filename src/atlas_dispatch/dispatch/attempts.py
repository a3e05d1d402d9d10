"""Task/attempt state machine and retry policy."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import NamedTuple

from atlas_dispatch.dispatch.errors import InvalidTransition
from atlas_dispatch.dispatch.models import AttemptEndReason, AttemptStatus, TaskStatus

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.DISPATCHED, TaskStatus.CANCELLED}),
    TaskStatus.DISPATCHED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.QUEUED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.QUEUED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

ATTEMPT_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.ASSIGNED: frozenset(
        {
            AttemptStatus.RUNNING,
            AttemptStatus.FAILED,
            AttemptStatus.TIMED_OUT,
            AttemptStatus.CANCELLED,
            AttemptStatus.ABANDONED,
        },
    ),
    AttemptStatus.RUNNING: frozenset(
        {
            AttemptStatus.SUCCEEDED,
            AttemptStatus.FAILED,
            AttemptStatus.TIMED_OUT,
            AttemptStatus.CANCELLED,
            AttemptStatus.ABANDONED,
        },
    ),
}

_END_REASON_STATUS: dict[AttemptEndReason, AttemptStatus] = {
    AttemptEndReason.SUCCEEDED: AttemptStatus.SUCCEEDED,
    AttemptEndReason.RENDER_FAILED: AttemptStatus.FAILED,
    AttemptEndReason.TIMED_OUT: AttemptStatus.TIMED_OUT,
    AttemptEndReason.CANCELLED: AttemptStatus.CANCELLED,
    AttemptEndReason.WORKER_DISCONNECTED: AttemptStatus.ABANDONED,
    AttemptEndReason.REQUEUED: AttemptStatus.ABANDONED,
}


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


def ensure_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition_task(current, target):
        raise InvalidTransition("task", current.value, target.value)


def ensure_attempt_transition(current: AttemptStatus, target: AttemptStatus) -> None:
    if target not in ATTEMPT_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition("attempt", current.value, target.value)


def attempt_status_for(reason: AttemptEndReason) -> AttemptStatus:
    return _END_REASON_STATUS[reason]


class RetryDecision(NamedTuple):
    retry: bool
    delay_seconds: float
    counted: bool


@dataclass(slots=True)
class RetryPolicy:
    """Decides whether a stopped attempt is followed by another one.

    Render failures and timeouts count against ``max_retries``; a task with
    ``max_retries = N`` that fails every time runs ``N + 1`` attempts. Worker
    disconnects and explicit requeues are infrastructure faults and only count
    when ``disconnect_counts_against_budget`` is set.
    """

    max_retries: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    disconnect_counts_against_budget: bool = False
    rng: random.Random | None = None

    def counts_against_budget(self, reason: AttemptEndReason) -> bool:
        if reason in {AttemptEndReason.RENDER_FAILED, AttemptEndReason.TIMED_OUT}:
            return True
        if reason == AttemptEndReason.WORKER_DISCONNECTED:
            return self.disconnect_counts_against_budget
        return False

    def decide(self, *, reason: AttemptEndReason, failures_before: int) -> RetryDecision:
        """Decide the follow-up of an unsuccessful, non-cancelled attempt.

        Args:
            reason: Why the attempt stopped.
            failures_before: Counted failures of the task before this attempt.
        """

        if reason in {AttemptEndReason.SUCCEEDED, AttemptEndReason.CANCELLED}:
            raise ValueError(f"No retry decision for reason={reason.value}")

        counted = self.counts_against_budget(reason)
        if not counted:
            return RetryDecision(retry=True, delay_seconds=0.0, counted=False)

        failures = failures_before + 1
        if failures > self.max_retries:
            return RetryDecision(retry=False, delay_seconds=0.0, counted=True)
        return RetryDecision(
            retry=True,
            delay_seconds=self.compute_delay(retry_number=failures),
            counted=True,
        )

    def compute_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        if max_delay <= 0:
            return 0.0
        rng = self.rng or random
        return rng.uniform(0, max_delay)  # noqa: S311
