"""Backend interface for rendering one task attempt on a slave."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol


@dataclass(slots=True)
class RenderRequest:
    """Inputs required to render one task attempt."""

    attempt_id: str
    task_id: str
    job_id: str
    frames: tuple[int, ...]
    timeout_seconds: int
    output_dir: Path
    render_params: dict[str, Any] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 2.0


@dataclass(slots=True)
class RenderResult:
    """Execution outcome from a backend run."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    output_dir: Path
    stdout_path: Path
    stderr_path: Path


class RenderBackend(Protocol):
    """Protocol implemented by render runners."""

    def run(self, request: RenderRequest) -> RenderResult:
        """Render an attempt and return execution metadata."""
