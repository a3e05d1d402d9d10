"""Subprocess-based render backend driven by a command template."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import IO, Any

from atlas_dispatch.dispatch.backend.base import RenderRequest, RenderResult
from atlas_dispatch.dispatch.frames import format_frames

_RESERVED_PLACEHOLDERS = frozenset(
    {"frames", "first_frame", "last_frame", "job_id", "task_id", "attempt_id", "output_dir"},
)


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandRenderBackend:
    """Render by running an argv template once per attempt.

    Every template token is formatted with ``{frames}``, ``{first_frame}``,
    ``{last_frame}``, ``{job_id}``, ``{task_id}``, ``{attempt_id}``,
    ``{output_dir}`` and the job's scalar render params. Tokens are passed to
    the process as-is, without a shell.
    """

    def __init__(self, command_template: Sequence[str], *, poll_interval_seconds: float = 0.1):
        self.command_template = tuple(command_template)
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: RenderRequest) -> RenderResult:
        output_dir = request.output_dir / request.job_id
        logs_dir = output_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = logs_dir / f"{request.attempt_id}.stdout.log"
        stderr_path = logs_dir / f"{request.attempt_id}.stderr.log"

        run_args = build_run_args(
            command_template=self.command_template,
            values=_template_values(request, output_dir=output_dir),
        )

        env = os.environ.copy()
        env["ATLAS_DISPATCH_JOB_ID"] = request.job_id
        env["ATLAS_DISPATCH_TASK_ID"] = request.task_id
        env["ATLAS_DISPATCH_ATTEMPT_ID"] = request.attempt_id
        env["ATLAS_DISPATCH_FRAMES"] = format_frames(request.frames)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out, cancelled = _run_subprocess_with_cancel(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel_requested=request.cancel_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    poll_interval_seconds=self.poll_interval_seconds,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Render command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Render command failed to start: {error}",
                transient=True,
            ) from error

        return RenderResult(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            output_dir=output_dir,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def build_run_args(*, command_template: Sequence[str], values: dict[str, str]) -> list[str]:
    """Format each template token; unknown placeholders are a permanent error."""

    if not command_template:
        raise BackendRunError("Render command template is empty.", transient=False)
    try:
        run_args = [token.format(**values) for token in command_template]
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except (IndexError, ValueError) as error:
        raise BackendRunError(
            f"Malformed command template: {error}",
            transient=False,
        ) from error
    if not run_args[0]:
        raise BackendRunError("Render command template rendered empty command.", transient=False)
    return run_args


def _template_values(request: RenderRequest, *, output_dir: Path) -> dict[str, str]:
    values = {
        key: str(value)
        for key, value in request.render_params.items()
        if key not in _RESERVED_PLACEHOLDERS and isinstance(value, str | int | float | bool)
    }
    values.update(
        frames=format_frames(request.frames),
        first_frame=str(min(request.frames)) if request.frames else "",
        last_frame=str(max(request.frames)) if request.frames else "",
        job_id=request.job_id,
        task_id=request.task_id,
        attempt_id=request.attempt_id,
        output_dir=str(output_dir),
    )
    return values


def _run_subprocess_with_cancel(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[Any],
    stderr_handle: IO[Any],
    cancel_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: float,
    poll_interval_seconds: float,
) -> tuple[int, bool, bool]:
    """Run until exit, timeout or cancel; returns ``(exit_code, timed_out, cancelled)``."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    cancel_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, cancel_deadline is not None

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return 124, True, False

        if cancel_requested is not None and cancel_requested():
            if cancel_deadline is None:
                cancel_deadline = now + max(0.0, graceful_shutdown_seconds)
                _interrupt_process(process)
            if now >= cancel_deadline:
                _terminate_process(process)
                return 130, False, True

        time.sleep(poll_interval_seconds)


def _interrupt_process(process: subprocess.Popen[str]) -> None:
    """Ask the renderer to stop; most render tools flush partial output on SIGINT."""

    interrupt = signal.CTRL_C_EVENT if os.name == "nt" else signal.SIGINT
    try:
        process.send_signal(interrupt)
    except OSError:
        return


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
