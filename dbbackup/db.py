"""
SQLAlchemy engine for the live SQLite database that gets backed up.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30


def create_database_engine(database_url: str, *, wal: bool = True) -> Engine:
    """
    Create a pooled engine for a file-based SQLite database.

    Backups need two pooled connections at once (one holds the write
    reservation while the other exports), so in-memory databases, which
    SQLAlchemy pins to a single connection, are rejected.
    """
    if not database_url:
        raise ValueError("DATABASE_URL is required")
    engine = create_engine(
        database_url,
        future=True,
        pool_pre_ping=True,
        connect_args={
            "check_same_thread": False,
            "timeout": BUSY_TIMEOUT_SECONDS,
        },
    )
    if sqlite_database_path(engine) is None:
        engine.dispose()
        raise ValueError(f"Backups need a file-based SQLite database: {database_url}")

    if wal:

        @event.listens_for(engine, "connect")
        def _enable_wal(dbapi_connection, connection_record):
            # WAL lets readers (and the exporter) run while a writer holds its lock.
            dbapi_connection.execute("PRAGMA journal_mode=WAL")

    return engine


def sqlite_database_path(engine: Engine) -> Optional[Path]:
    """Filesystem path of the engine's database, or None for in-memory DBs."""
    if engine.url.get_backend_name() != "sqlite":
        return None
    database = engine.url.database
    if not database or database == ":memory:" or database.startswith("file::memory:"):
        return None
    if database.startswith("file:"):
        database = database[len("file:") :].split("?", 1)[0]
    return Path(database)


def create_readonly_engine(path: str | Path) -> Engine:
    """Unpooled, read-only engine over an exported backup file."""
    url = URL.create(
        "sqlite+pysqlite",
        database=f"file:{Path(path).resolve()}",
        query={"mode": "ro", "uri": "true"},
    )
    return create_engine(url, future=True, poolclass=NullPool)
