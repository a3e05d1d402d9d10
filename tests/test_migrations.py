from pathlib import Path

import allure
from sqlalchemy import text

from atlas_dispatch.dispatch.repository import SqlDispatchRepository
from atlas_dispatch.storage.alembic_runner import current_revision, head_revision, upgrade_head

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = SqlDispatchRepository(db_path)
    assert current_revision(repository.engine) is None

    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name != 'alembic_version'
                  AND name NOT LIKE 'sqlite_%'
                ORDER BY name
                """,
            ),
        ).scalars().all()
    revision = current_revision(repository.engine)
    upgraded_again = upgrade_head(db_path, engine=repository.engine)
    repository.close()

    assert head_revision(db_path) == "20261009_0002"
    assert revision == "20261009_0002"
    assert not upgraded_again
    assert tables == [
        "render_job_events",
        "render_jobs",
        "render_task_attempt_logs",
        "render_task_attempts",
        "render_tasks",
        "slaves",
    ]
