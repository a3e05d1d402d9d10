from __future__ import annotations

from pathlib import Path

import allure
import pytest

from atlas_dispatch.config import DispatchSettings, Settings, SlaveSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_validate() -> None:
    settings = Settings()

    settings.validate()
    settings.validate_for_slave()
    assert settings.dispatch.fail_fast
    assert not settings.dispatch.disconnect_counts_against_budget
    assert "{frames}" in settings.slave.command_template


def test_from_env_reads_dispatch_and_slave_values(monkeypatch) -> None:
    monkeypatch.setenv("ATLAS_DISPATCH_DB_PATH", "/tmp/farm.db")
    monkeypatch.setenv("ATLAS_DISPATCH_DEFAULT_BATCH_SIZE", "10")
    monkeypatch.setenv("ATLAS_DISPATCH_DEFAULT_MAX_RETRIES", "0")
    monkeypatch.setenv("ATLAS_DISPATCH_RETRY_BASE_SECONDS", "0.5")
    monkeypatch.setenv("ATLAS_DISPATCH_FAIL_FAST", "no")
    monkeypatch.setenv("ATLAS_DISPATCH_DISCONNECT_COUNTS_AGAINST_BUDGET", "on")
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_ID", "render-07")
    monkeypatch.setenv("ATLAS_DISPATCH_SLAVE_CAPACITY", "4")
    monkeypatch.setenv(
        "ATLAS_DISPATCH_SLAVE_COMMAND",
        "blender -b scene.blend -o '{output_dir}/frame_####' -f {frames}",
    )

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/farm.db")
    assert settings.dispatch.default_batch_size == 10
    assert settings.dispatch.default_max_retries == 0
    assert settings.dispatch.retry_base_seconds == 0.5
    assert not settings.dispatch.fail_fast
    assert settings.dispatch.disconnect_counts_against_budget
    assert settings.slave.worker_id == "render-07"
    assert settings.slave.capacity == 4
    assert settings.slave.command_template == (
        "blender",
        "-b",
        "scene.blend",
        "-o",
        "{output_dir}/frame_####",
        "-f",
        "{frames}",
    )


def test_explicit_db_path_wins_over_env(monkeypatch) -> None:
    monkeypatch.setenv("ATLAS_DISPATCH_DB_PATH", "/tmp/ignored.db")

    assert Settings.from_env(db_path=Path("cli.db")).db_path == Path("cli.db")


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("ATLAS_DISPATCH_FAIL_FAST", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for ATLAS_DISPATCH_FAIL_FAST"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("dispatch", "message"),
    [
        (DispatchSettings(default_batch_size=0), "DEFAULT_BATCH_SIZE"),
        (DispatchSettings(default_max_retries=-1), "DEFAULT_MAX_RETRIES"),
        (DispatchSettings(default_attempt_timeout_seconds=0), "ATTEMPT_TIMEOUT_SECONDS"),
        (DispatchSettings(max_frames_per_job=0), "MAX_FRAMES_PER_JOB"),
        (DispatchSettings(retry_base_seconds=-1), "RETRY_"),
        (DispatchSettings(heartbeat_timeout_seconds=0), "HEARTBEAT_TIMEOUT_SECONDS"),
        (DispatchSettings(tick_interval_seconds=0), "TICK_INTERVAL_SECONDS"),
    ],
)
def test_validate_rejects_out_of_range_dispatch_settings(
    dispatch: DispatchSettings,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(dispatch=dispatch).validate()


def test_validate_for_slave_requires_heartbeat_below_timeout() -> None:
    settings = Settings(
        dispatch=DispatchSettings(heartbeat_timeout_seconds=10),
        slave=SlaveSettings(heartbeat_interval_seconds=10),
    )

    with pytest.raises(ValueError, match="must be lower than"):
        settings.validate_for_slave()


def test_validate_for_slave_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError, match="SLAVE_CAPACITY"):
        Settings(slave=SlaveSettings(capacity=0)).validate_for_slave()
