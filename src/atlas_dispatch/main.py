"""CLI entrypoint for atlas-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from atlas_dispatch import __version__
from atlas_dispatch.dispatch.controllers import (
    DispatchCliController,
    FarmRunCommand,
    JobListCommand,
    JobRefCommand,
    JobSubmitCommand,
    SlaveListCommand,
)
from atlas_dispatch.dispatch.errors import DispatchEngineError

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="atlas-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def atlas_dispatch(log_level: str) -> None:
    """Distributed render job dispatcher."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@atlas_dispatch.group()
def job() -> None:
    """Render job commands."""


@job.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--frames", "frame_range", required=True, help="Frame range, e.g. `1-100 120`.")
@click.option("--name", default="", help="Human readable job name.")
@click.option("--job-id", default=None, help="Explicit job id (default: generated).")
@click.option(
    "--priority",
    type=int,
    default=100,
    show_default=True,
    help="Lower values dispatch first.",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=None,
    help="Frames per task (default: ATLAS_DISPATCH_DEFAULT_BATCH_SIZE).",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget per task (default: ATLAS_DISPATCH_DEFAULT_MAX_RETRIES).",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout in seconds.",
)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Render parameter as KEY=VALUE. Can be repeated.",
)
def job_submit(  # noqa: PLR0913
    db_path: Path | None,
    frame_range: str,
    name: str,
    job_id: str | None,
    priority: int,
    batch_size: int | None,
    max_retries: int | None,
    timeout_seconds: int | None,
    params: tuple[str, ...],
) -> None:
    """Submit a render job; its tasks wait for a farm to dispatch them."""

    _run(
        DISPATCH_CONTROLLER.submit_job,
        JobSubmitCommand(
            db_path=db_path,
            frame_range=frame_range,
            name=name,
            job_id=job_id,
            priority=priority,
            batch_size=batch_size,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            params=params,
        ),
    )


@job.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "running", "completed", "failed", "cancelled"]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def job_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List render jobs with progress."""

    _run(
        DISPATCH_CONTROLLER.list_jobs,
        JobListCommand(db_path=db_path, status=status, limit=limit),
    )


@job.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_show(db_path: Path | None, job_id: str) -> None:
    """Show one job with its tasks and failure chain."""

    _run(DISPATCH_CONTROLLER.show_job, JobRefCommand(db_path=db_path, job_id=job_id))


@job.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--reason", default="", help="Reason recorded on cancelled attempts.")
def job_cancel(db_path: Path | None, job_id: str, reason: str) -> None:
    """Cancel a job: queued tasks and in-flight attempts stop."""

    _run(
        DISPATCH_CONTROLLER.cancel_job,
        JobRefCommand(db_path=db_path, job_id=job_id, reason=reason),
    )


@job.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue failed/cancelled tasks of a failed or cancelled job."""

    _run(DISPATCH_CONTROLLER.retry_job, JobRefCommand(db_path=db_path, job_id=job_id))


@job.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_events(db_path: Path | None, job_id: str) -> None:
    """Print the job's audit trail."""

    _run(DISPATCH_CONTROLLER.job_events, JobRefCommand(db_path=db_path, job_id=job_id))


@job.command("attempts")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_attempts(db_path: Path | None, job_id: str) -> None:
    """Print attempt history with worker log lines."""

    _run(DISPATCH_CONTROLLER.job_attempts, JobRefCommand(db_path=db_path, job_id=job_id))


@atlas_dispatch.group()
def slave() -> None:
    """Slave registry commands."""


@slave.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--connected/--all",
    "connected_only",
    default=False,
    show_default=True,
    help="Only show connected slaves.",
)
def slave_list(db_path: Path | None, connected_only: bool) -> None:
    """List registered slaves with load and liveness."""

    _run(
        DISPATCH_CONTROLLER.list_slaves,
        SlaveListCommand(db_path=db_path, connected_only=connected_only),
    )


@atlas_dispatch.group()
def farm() -> None:
    """Run a dispatcher with local slaves."""


@farm.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--slaves",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of local slaves.",
)
@click.option(
    "--capacity",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent renders per slave (default: ATLAS_DISPATCH_SLAVE_CAPACITY).",
)
@click.option(
    "--until-idle/--forever",
    default=True,
    show_default=True,
    help="Stop once no job is pending or running.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Optional wall-clock limit.",
)
def farm_run(
    db_path: Path | None,
    slaves: int,
    capacity: int | None,
    until_idle: bool,
    max_seconds: float | None,
) -> None:
    """Recover stored jobs and render them on local slaves."""

    _run(
        DISPATCH_CONTROLLER.run_farm,
        FarmRunCommand(
            db_path=db_path,
            slaves=slaves,
            capacity=capacity,
            until_idle=until_idle,
            max_seconds=max_seconds,
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (ValueError, LookupError, DispatchEngineError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    atlas_dispatch()
