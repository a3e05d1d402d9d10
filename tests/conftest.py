"""Shared test fixtures."""

from __future__ import annotations

import random
import sys
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from atlas_dispatch.config import DispatchSettings
from atlas_dispatch.dispatch.engine import RenderDispatcher
from atlas_dispatch.dispatch.notifications import StatusChange
from atlas_dispatch.dispatch.repository import SqlDispatchRepository

ECHO_RENDER_COMMAND = (
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


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingNotifier:
    """Keeps every published status change in memory."""

    def __init__(self) -> None:
        self.changes: list[StatusChange] = []
        self._lock = threading.Lock()

    def publish(self, change: StatusChange) -> None:
        with self._lock:
            self.changes.append(change)

    def transitions(self, entity: str, entity_id: str) -> list[str]:
        with self._lock:
            return [
                change.status_to
                for change in self.changes
                if change.entity == entity and change.entity_id == entity_id
            ]


@pytest.fixture()
def repository(tmp_path: Path):
    repo = SqlDispatchRepository(tmp_path / "dispatch.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings(
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        heartbeat_timeout_seconds=60.0,
        default_attempt_timeout_seconds=600,
    )


@pytest.fixture()
def dispatcher(repository, dispatch_settings, notifier, clock) -> RenderDispatcher:
    return RenderDispatcher(
        repository=repository,
        settings=dispatch_settings,
        notifier=notifier,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture()
def echo_render_command() -> tuple[str, ...]:
    """Command template running the bundled echo renderer in a subprocess."""

    return ECHO_RENDER_COMMAND
