from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from atlas_dispatch.config import DispatchSettings
from atlas_dispatch.dispatch.backend import (
    BackendRunError,
    CommandRenderBackend,
    RenderRequest,
    RenderResult,
)
from atlas_dispatch.dispatch.backend.command import build_run_args
from atlas_dispatch.dispatch.backend.echo_render import main as echo_render_main
from atlas_dispatch.dispatch.engine import RenderDispatcher
from atlas_dispatch.dispatch.models import AttemptStatus, JobCreate, JobStatus, Shutdown
from atlas_dispatch.dispatch.slave import SlaveRunSummary, SlaveWorker

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Slave & Render Backend"),
]


@pytest.fixture()
def failing_command(echo_render_command: tuple[str, ...]) -> tuple[str, ...]:
    return (*echo_render_command, "--fail-frames", "{fail_frames}")


@pytest.fixture()
def slow_command(echo_render_command: tuple[str, ...]) -> tuple[str, ...]:
    return (*echo_render_command, "--sleep", "{sleep}")


def _request(tmp_path: Path, **overrides) -> RenderRequest:
    values = {
        "attempt_id": "attempt-1",
        "task_id": "job-1-t00000",
        "job_id": "job-1",
        "frames": (1, 2, 3),
        "timeout_seconds": 60,
        "output_dir": tmp_path,
    }
    values.update(overrides)
    return RenderRequest(**values)


def test_echo_render_writes_one_file_per_frame(tmp_path: Path) -> None:
    argv = ["--frames", "3-1", "--output-dir", str(tmp_path), "--task-id", "t"]

    assert echo_render_main(argv) == 0

    assert sorted(path.name for path in tmp_path.iterdir()) == [
        "frame_00001.txt",
        "frame_00002.txt",
        "frame_00003.txt",
    ]
    assert (tmp_path / "frame_00002.txt").read_text(encoding="utf-8") == "frame=2 task=t\n"


def test_command_backend_renders_frames_and_captures_logs(
    tmp_path: Path,
    echo_render_command: tuple[str, ...],
) -> None:
    backend = CommandRenderBackend(echo_render_command, poll_interval_seconds=0.05)

    result = backend.run(_request(tmp_path))

    assert result.exit_code == 0
    assert not result.timed_out
    assert not result.cancelled
    assert result.output_dir == tmp_path / "job-1"
    assert (tmp_path / "job-1" / "frame_00003.txt").read_text(encoding="utf-8") == (
        "frame=3 task=job-1-t00000\n"
    )
    assert "rendered frame 1" in result.stdout_path.read_text(encoding="utf-8")


def test_command_backend_reports_nonzero_exit(
    tmp_path: Path,
    failing_command: tuple[str, ...],
) -> None:
    backend = CommandRenderBackend(failing_command, poll_interval_seconds=0.05)

    result = backend.run(_request(tmp_path, render_params={"fail_frames": "2"}))

    assert result.exit_code == 3
    assert "frame 2: simulated render failure" in result.stderr_path.read_text(encoding="utf-8")
    assert not (tmp_path / "job-1" / "frame_00002.txt").exists()


def test_command_backend_times_out(tmp_path: Path, slow_command: tuple[str, ...]) -> None:
    backend = CommandRenderBackend(slow_command, poll_interval_seconds=0.05)

    result = backend.run(
        _request(tmp_path, frames=(1,), timeout_seconds=1, render_params={"sleep": "30"}),
    )

    assert result.timed_out
    assert result.exit_code == 124


def test_command_backend_honours_cancellation(
    tmp_path: Path,
    slow_command: tuple[str, ...],
) -> None:
    backend = CommandRenderBackend(slow_command, poll_interval_seconds=0.05)

    result = backend.run(
        _request(
            tmp_path,
            frames=(1,),
            render_params={"sleep": "30"},
            cancel_requested=lambda: True,
            graceful_shutdown_seconds=0.0,
        ),
    )

    assert result.cancelled
    assert not result.timed_out
    assert result.exit_code == 130


def test_missing_render_binary_is_permanent(tmp_path: Path) -> None:
    backend = CommandRenderBackend(("/nonexistent/render-binary", "{frames}"))

    with pytest.raises(BackendRunError, match="not found") as error:
        backend.run(_request(tmp_path))

    assert not error.value.transient


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ((), "template is empty"),
        (("render", "{unknown}"), "Unsupported command template placeholder"),
        (("render", "{frames"), "Malformed command template"),
        (("render", "{0}"), "Malformed command template"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: tuple[str, ...], message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        build_run_args(command_template=template, values={"frames": "1 2"})

    assert not error.value.transient


def test_build_run_args_formats_each_token_without_a_shell() -> None:
    assert build_run_args(
        command_template=("render", "--frames", "{frames}", "--out={output_dir}"),
        values={"frames": "1 2 3", "output_dir": "/tmp/out dir"},
    ) == ["render", "--frames", "1 2 3", "--out=/tmp/out dir"]


def _run_slave(
    dispatcher: RenderDispatcher,
    *,
    command: tuple[str, ...],
    output_dir: Path,
    job: JobCreate,
) -> tuple[JobStatus, SlaveRunSummary]:
    session = dispatcher.connect_worker("slave-a", capacity=2)
    slave = SlaveWorker(
        session=session,
        backend=CommandRenderBackend(command, poll_interval_seconds=0.05),
        output_dir=output_dir,
        heartbeat_interval_seconds=1.0,
        poll_interval_seconds=0.05,
        graceful_shutdown_seconds=0.5,
    )
    stop = threading.Event()
    summaries: list[SlaveRunSummary] = []
    thread = threading.Thread(target=lambda: summaries.append(slave.run(stop_event=stop)))
    thread.start()
    try:
        dispatcher.submit_job(job)
        final = dispatcher.wait_for_job(job.job_id, timeout_seconds=60, poll_interval_seconds=0.05)
    finally:
        stop.set()
        thread.join(timeout=30)
    assert summaries, "slave did not stop"
    return final.status, summaries[0]


def test_slave_renders_a_job_end_to_end(
    repository,
    tmp_path: Path,
    echo_render_command: tuple[str, ...],
) -> None:
    dispatcher = RenderDispatcher(
        repository=repository,
        settings=DispatchSettings(retry_base_seconds=0.0, retry_max_seconds=0.0),
    )

    status, summary = _run_slave(
        dispatcher,
        command=echo_render_command,
        output_dir=tmp_path / "out",
        job=JobCreate(frame_range="1-4", batch_size=2, job_id="shot-1"),
    )

    assert status == JobStatus.COMPLETED
    assert summary.delivered == 2
    assert summary.succeeded == 2
    rendered = sorted(path.name for path in (tmp_path / "out" / "shot-1").glob("frame_*.txt"))
    assert rendered == [f"frame_{frame:05d}.txt" for frame in range(1, 5)]

    attempts = repository.list_attempts(job_id="shot-1")
    assert {attempt.status for attempt in attempts} == {AttemptStatus.SUCCEEDED}
    logs = repository.list_attempt_logs(attempt_id=attempts[0].attempt_id)
    assert [log.message for log in logs] == ["rendering frames 1-2", "render finished"]
    assert not repository.get_worker("slave-a").connected


def test_slave_reports_render_failures_until_budget_is_spent(
    repository,
    tmp_path: Path,
    failing_command: tuple[str, ...],
) -> None:
    dispatcher = RenderDispatcher(
        repository=repository,
        settings=DispatchSettings(retry_base_seconds=0.0, retry_max_seconds=0.0),
    )

    status, summary = _run_slave(
        dispatcher,
        command=failing_command,
        output_dir=tmp_path / "out",
        job=JobCreate(
            frame_range="1-4",
            batch_size=2,
            max_retries=1,
            job_id="shot-2",
            render_params={"fail_frames": "3"},
        ),
    )

    assert status == JobStatus.FAILED
    assert summary.failed == 2
    job = repository.get_job("shot-2")
    assert "render exited with code 3" in job.failure_detail
    assert "frame 3: simulated render failure" in job.failure_detail
    failing = repository.list_attempts(task_id="shot-2-t00001")
    assert [attempt.status for attempt in failing] == [AttemptStatus.FAILED, AttemptStatus.FAILED]


class _RecordingBackend:
    def __init__(self) -> None:
        self.requests: list[RenderRequest] = []

    def run(self, request: RenderRequest) -> RenderResult:
        self.requests.append(request)
        raise AssertionError(f"attempt {request.attempt_id} should not render")


def test_slave_skips_attempts_that_ended_before_it_started(repository, tmp_path: Path) -> None:
    dispatcher = RenderDispatcher(repository=repository, settings=DispatchSettings())
    session = dispatcher.connect_worker("slave-a", capacity=1)
    dispatcher.submit_job(JobCreate(frame_range="1-2", batch_size=2, job_id="shot-3"))
    dispatcher.cancel_job("shot-3")
    session.deliver(Shutdown("test finished"))
    backend = _RecordingBackend()
    slave = SlaveWorker(
        session=session,
        backend=backend,
        output_dir=tmp_path / "out",
        poll_interval_seconds=0.05,
    )

    summary = slave.run()

    assert backend.requests == []
    assert summary.delivered == 1
    assert summary.skipped == 1
    assert summary.succeeded == summary.failed == 0
    (attempt,) = repository.list_attempts(job_id="shot-3")
    assert attempt.status == AttemptStatus.CANCELLED
    assert repository.list_attempt_logs(attempt_id=attempt.attempt_id) == []
