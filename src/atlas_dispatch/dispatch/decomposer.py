"""Split a job's frame set into dispatchable tasks."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from atlas_dispatch.dispatch.frames import format_frames, resolve_frames
from atlas_dispatch.dispatch.models import JobView


@dataclass(slots=True, frozen=True)
class TaskPlan:
    """One planned task: its position in the job and the frames it renders."""

    task_index: int
    frames: tuple[int, ...]

    @property
    def first_frame(self) -> int:
        return self.frames[0]

    @property
    def last_frame(self) -> int:
        return self.frames[-1]

    @property
    def frames_text(self) -> str:
        return format_frames(self.frames)


def decompose_frames(frames: Iterable[int], *, batch_size: int = 1) -> list[TaskPlan]:
    """Partition frames, ascending, into consecutive batches of ``batch_size``."""

    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    ordered = sorted(set(frames))
    return [
        TaskPlan(task_index=index, frames=tuple(ordered[offset : offset + batch_size]))
        for index, offset in enumerate(range(0, len(ordered), batch_size))
    ]


def decompose(job: JobView) -> list[TaskPlan]:
    """Plan the tasks of a job; the same job always yields the same plans."""

    return decompose_frames(resolve_frames(job.frame_range), batch_size=job.batch_size)


def task_id_for(job_id: str, task_index: int) -> str:
    """Stable task identity, so re-decomposing a job never duplicates work."""

    return f"{job_id}-t{task_index:05d}"
