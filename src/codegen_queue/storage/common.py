"""SQLite engine policy, id generation and UTC conversions shared by repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    """Opaque identifier for jobs and result records."""

    return str(uuid4())


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def to_db_datetime(value: datetime) -> datetime:
    """SQLite columns hold naive UTC; aware values are normalized first."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_datetime(value: datetime) -> datetime:
    """Inverse of ``to_db_datetime``: naive values read back are UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_db_datetime_or_none(value: datetime | None) -> datetime | None:
    return None if value is None else from_db_datetime(value)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for a queue database file.

    Every connection runs in WAL mode with a busy timeout, so a worker and
    CLI commands can share the file. ``NullPool`` gives each session its own
    connection, which keeps claims in different threads independent.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _: object) -> None:
        _configure_connection(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def _configure_connection(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = connection.cursor()
    try:
        for pragma in (
            "journal_mode = WAL",
            f"busy_timeout = {max(1, busy_timeout_ms)}",
            "foreign_keys = ON",
            "synchronous = NORMAL",
        ):
            cursor.execute(f"PRAGMA {pragma}")
    finally:
        cursor.close()
