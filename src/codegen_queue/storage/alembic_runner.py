"""Programmatic Alembic upgrades for queue databases."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine

from codegen_queue.storage.common import sqlite_url

logger = logging.getLogger(__name__)

# Both repositories migrate the same file on startup; serialize them in-process.
_UPGRADE_LOCK = threading.Lock()

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, or None for a fresh file."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def upgrade_head(db_path: Path, *, engine: Engine) -> None:
    """Bring the database to the newest revision; no-op when already there."""

    config = alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    with _UPGRADE_LOCK:
        current = current_revision(engine)
        if current == head:
            return
        logger.info("Migrating %s from %s to %s", db_path, current or "empty", head)
        command.upgrade(config, "head")
