from __future__ import annotations

import shlex
from pathlib import Path

import allure
from click.testing import CliRunner

from atlas_dispatch.main import atlas_dispatch

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


def _invoke(*args: str):
    runner = CliRunner()
    return runner.invoke(atlas_dispatch, list(args))


def test_submit_list_and_show_job(tmp_path: Path) -> None:
    db_path = str(tmp_path / "farm.db")

    submitted = _invoke(
        "job",
        "submit",
        "--db-path",
        db_path,
        "--frames",
        "1-5 10",
        "--job-id",
        "shot-010",
        "--name",
        "hero shot",
        "--batch-size",
        "2",
        "--param",
        "scene=hero.blend",
    )
    listed = _invoke("job", "list", "--db-path", db_path)
    shown = _invoke("job", "show", "--db-path", db_path, "--job-id", "shot-010")

    assert submitted.exit_code == 0, submitted.output
    assert "Job submitted: job_id=shot-010 status=pending" in submitted.output
    assert "tasks=3 batch_size=2" in submitted.output
    assert listed.exit_code == 0, listed.output
    assert "shot-010 status=pending priority=100 done=0/3" in listed.output
    assert "name=hero shot" in listed.output
    assert shown.exit_code == 0, shown.output
    assert "Status: pending" in shown.output
    assert "Frames: 1-5 10" in shown.output
    assert "shot-010-t00002 frames=5 10 status=queued" in shown.output


def test_submit_rejects_invalid_frame_range(tmp_path: Path) -> None:
    result = _invoke(
        "job",
        "submit",
        "--db-path",
        str(tmp_path / "farm.db"),
        "--frames",
        "1-5 x",
    )
    listed = _invoke("job", "list", "--db-path", str(tmp_path / "farm.db"))

    assert result.exit_code == 1
    assert "Invalid frame range token" in result.output
    assert "No jobs found." in listed.output


def test_submit_rejects_malformed_param(tmp_path: Path) -> None:
    result = _invoke(
        "job",
        "submit",
        "--db-path",
        str(tmp_path / "farm.db"),
        "--frames",
        "1",
        "--param",
        "no-separator",
    )

    assert result.exit_code == 1
    assert "Expected KEY=VALUE" in result.output


def test_cancel_then_retry_job(tmp_path: Path) -> None:
    db_path = str(tmp_path / "farm.db")
    _invoke("job", "submit", "--db-path", db_path, "--frames", "1-3", "--job-id", "shot-1")

    early_retry = _invoke("job", "retry", "--db-path", db_path, "--job-id", "shot-1")
    cancelled = _invoke("job", "cancel", "--db-path", db_path, "--job-id", "shot-1")
    retried = _invoke("job", "retry", "--db-path", db_path, "--job-id", "shot-1")
    events = _invoke("job", "events", "--db-path", db_path, "--job-id", "shot-1")

    assert early_retry.exit_code == 1
    assert "Invalid job transition" in early_retry.output
    assert cancelled.exit_code == 0, cancelled.output
    assert "Job shot-1 status=cancelled" in cancelled.output
    assert retried.exit_code == 0, retried.output
    assert "Job re-queued: shot-1 status=pending" in retried.output
    assert "pending -> cancelled" in events.output
    assert "cancelled -> pending" in events.output


def test_unknown_job_is_reported(tmp_path: Path) -> None:
    db_path = str(tmp_path / "farm.db")

    shown = _invoke("job", "show", "--db-path", db_path, "--job-id", "missing")
    events = _invoke("job", "events", "--db-path", db_path, "--job-id", "missing")
    attempts = _invoke("job", "attempts", "--db-path", db_path, "--job-id", "missing")
    slaves = _invoke("slave", "list", "--db-path", db_path)

    assert shown.exit_code == 1
    assert "missing" in shown.output
    assert "Job not found: missing" in events.output
    assert "No attempts for job missing." in attempts.output
    assert "No slaves registered." in slaves.output


def test_farm_run_renders_submitted_jobs(
    tmp_path: Path,
    monkeypatch,
    echo_render_command: tuple[str, ...],
) -> None:
    db_path = str(tmp_path / "farm.db")
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_COMMAND", shlex.join(echo_render_command))
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_OUTPUT_DIR", str(tmp_path / "renders"))
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_ID", "local")
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_HEARTBEAT_SECONDS", "1")
    monkeypatch.setenv("ATLAS_DISPATCH_TICK_INTERVAL_SECONDS", "0.2")
    submitted = _invoke(
        "job",
        "submit",
        "--db-path",
        db_path,
        "--frames",
        "1-4",
        "--job-id",
        "shot-1",
        "--batch-size",
        "2",
    )
    assert submitted.exit_code == 0, submitted.output

    ran = _invoke(
        "farm",
        "run",
        "--db-path",
        db_path,
        "--slaves",
        "2",
        "--capacity",
        "1",
        "--max-seconds",
        "60",
    )
    attempts = _invoke("job", "attempts", "--db-path", db_path, "--job-id", "shot-1")
    slaves = _invoke("slave", "list", "--db-path", db_path)

    assert ran.exit_code == 0, ran.output
    assert "Farm summary: slaves=2 capacity=1 recovered=2" in ran.output
    assert "succeeded=2" in ran.output
    assert "Jobs: completed=1" in ran.output
    assert sorted(path.name for path in (tmp_path / "renders" / "shot-1").glob("frame_*")) == [
        "frame_00001.txt",
        "frame_00002.txt",
        "frame_00003.txt",
        "frame_00004.txt",
    ]
    assert attempts.output.count("status=succeeded") == 2
    assert "[info] render finished" in attempts.output
    assert "local-1 connected=no" in slaves.output
    assert "local-2 connected=no" in slaves.output
