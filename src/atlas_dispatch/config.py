"""Runtime configuration for the render dispatcher and local slaves."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path


def _default_command_template() -> tuple[str, ...]:
    return (
        sys.executable,
        "-m",
        "atlas_dispatch.dispatch.backend.echo_render",
        "--frames",
        "{frames}",
        "--output-dir",
        "{output_dir}",
        "--task-id",
        "{task_id}",
    )


@dataclass(slots=True)
class DispatchSettings:
    """Job defaults, retry policy and liveness thresholds."""

    default_batch_size: int = 1
    default_max_retries: int = 3
    default_attempt_timeout_seconds: int = 3_600
    max_frames_per_job: int = 1_000_000
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    heartbeat_timeout_seconds: float = 60.0
    tick_interval_seconds: float = 1.0
    fail_fast: bool = True
    disconnect_counts_against_budget: bool = False


@dataclass(slots=True)
class SlaveSettings:
    """Local slave runtime settings."""

    worker_id: str = "slave-local"
    capacity: int = 1
    heartbeat_interval_seconds: float = 10.0
    output_dir: Path = Path(".atlas_dispatch/output")
    command_template: tuple[str, ...] = field(default_factory=_default_command_template)
    poll_interval_seconds: float = 0.5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".atlas_dispatch.db")
    sqlite_busy_timeout_ms: int = 5_000
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    slave: SlaveSettings = field(default_factory=SlaveSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a local farm."""

        command_raw = os.getenv("ATLAS_DISPATCH_SLAVE_COMMAND", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("ATLAS_DISPATCH_DB_PATH", ".atlas_dispatch.db")),
            sqlite_busy_timeout_ms=int(os.getenv("ATLAS_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            dispatch=DispatchSettings(
                default_batch_size=int(os.getenv("ATLAS_DISPATCH_DEFAULT_BATCH_SIZE", "1")),
                default_max_retries=int(os.getenv("ATLAS_DISPATCH_DEFAULT_MAX_RETRIES", "3")),
                default_attempt_timeout_seconds=int(
                    os.getenv("ATLAS_DISPATCH_ATTEMPT_TIMEOUT_SECONDS", "3600"),
                ),
                max_frames_per_job=int(
                    os.getenv("ATLAS_DISPATCH_MAX_FRAMES_PER_JOB", "1000000"),
                ),
                retry_base_seconds=float(os.getenv("ATLAS_DISPATCH_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=float(os.getenv("ATLAS_DISPATCH_RETRY_MAX_SECONDS", "300")),
                heartbeat_timeout_seconds=float(
                    os.getenv("ATLAS_DISPATCH_HEARTBEAT_TIMEOUT_SECONDS", "60"),
                ),
                tick_interval_seconds=float(
                    os.getenv("ATLAS_DISPATCH_TICK_INTERVAL_SECONDS", "1.0"),
                ),
                fail_fast=_env_bool("ATLAS_DISPATCH_FAIL_FAST", default=True),
                disconnect_counts_against_budget=_env_bool(
                    "ATLAS_DISPATCH_DISCONNECT_COUNTS_AGAINST_BUDGET",
                    default=False,
                ),
            ),
            slave=SlaveSettings(
                worker_id=os.getenv("ATLAS_DISPATCH_SLAVE_ID", "slave-local"),
                capacity=int(os.getenv("ATLAS_DISPATCH_SLAVE_CAPACITY", "1")),
                heartbeat_interval_seconds=float(
                    os.getenv("ATLAS_DISPATCH_SLAVE_HEARTBEAT_SECONDS", "10"),
                ),
                output_dir=Path(
                    os.getenv("ATLAS_DISPATCH_SLAVE_OUTPUT_DIR", ".atlas_dispatch/output"),
                ),
                command_template=(
                    tuple(shlex.split(command_raw))
                    if command_raw
                    else _default_command_template()
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        dispatch = self.dispatch
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ATLAS_DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if dispatch.default_batch_size < 1:
            raise ValueError("ATLAS_DISPATCH_DEFAULT_BATCH_SIZE must be >= 1.")
        if dispatch.default_max_retries < 0:
            raise ValueError("ATLAS_DISPATCH_DEFAULT_MAX_RETRIES must be >= 0.")
        if dispatch.default_attempt_timeout_seconds <= 0:
            raise ValueError("ATLAS_DISPATCH_ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        if dispatch.max_frames_per_job <= 0:
            raise ValueError("ATLAS_DISPATCH_MAX_FRAMES_PER_JOB must be > 0.")
        if dispatch.retry_base_seconds < 0 or dispatch.retry_max_seconds < 0:
            raise ValueError("ATLAS_DISPATCH_RETRY_*_SECONDS must be >= 0.")
        if dispatch.heartbeat_timeout_seconds <= 0:
            raise ValueError("ATLAS_DISPATCH_HEARTBEAT_TIMEOUT_SECONDS must be > 0.")
        if dispatch.tick_interval_seconds <= 0:
            raise ValueError("ATLAS_DISPATCH_TICK_INTERVAL_SECONDS must be > 0.")

    def validate_for_slave(self) -> None:
        """Raise configuration error if the local slave cannot run."""

        self.validate()
        if self.slave.capacity < 1:
            raise ValueError("ATLAS_DISPATCH_SLAVE_CAPACITY must be >= 1.")
        if self.slave.heartbeat_interval_seconds <= 0:
            raise ValueError("ATLAS_DISPATCH_SLAVE_HEARTBEAT_SECONDS must be > 0.")
        if self.slave.heartbeat_interval_seconds >= self.dispatch.heartbeat_timeout_seconds:
            raise ValueError(
                "ATLAS_DISPATCH_SLAVE_HEARTBEAT_SECONDS must be lower than "
                "ATLAS_DISPATCH_HEARTBEAT_TIMEOUT_SECONDS.",
            )
        if not self.slave.command_template:
            raise ValueError("ATLAS_DISPATCH_SLAVE_COMMAND must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
