"""Apply and inspect the dispatch schema migrations."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to the repository's migration scripts and ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, ``None`` for an empty database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine) -> bool:
    """Bring the database to the newest revision; returns ``False`` if it already was."""

    head = head_revision(db_path)
    current = current_revision(engine)
    if current == head:
        return False
    logger.info("Migrating %s from %s to %s", db_path, current or "empty", head)
    command.upgrade(alembic_config(db_path), "head")
    return True
