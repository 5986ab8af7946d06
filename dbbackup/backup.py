"""
Consistent exports of the live SQLite database.

One export runs at a time per manager. While it runs, a second pooled
connection holds ``BEGIN IMMEDIATE`` so no writer can change the database
mid-export. The export itself runs on its own connection: SQLite refuses
``VACUUM`` inside an open transaction, and the online backup API reports
BUSY forever when its source connection holds a write transaction.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiofiles.os
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dbbackup.db import create_readonly_engine
from dbbackup.errors import BackupIOError, DatabaseEngineError
from dbbackup.naming import BackupNamingService
from dbbackup.storage import StorageProvider

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "backup.db"


class BackupStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BackupOptions:
    """
    How the export copies the database.

    ``chunk_size <= 0`` exports with a single ``VACUUM INTO`` statement.
    A positive ``chunk_size`` copies that many pages per step through the
    online backup API, sleeping ``sleep_ms`` between steps; if ``step_limit``
    steps pass without finishing, the export is abandoned as CANCELLED.
    """

    chunk_size: int = 0
    sleep_ms: int = 0
    step_limit: Optional[int] = None
    verify: bool = False

    def __post_init__(self):
        if self.sleep_ms < 0:
            raise ValueError("sleep_ms must be >= 0")
        if self.step_limit is not None and self.step_limit < 1:
            raise ValueError("step_limit must be >= 1")

    @property
    def incremental(self) -> bool:
        return self.chunk_size > 0


@dataclass(frozen=True)
class BackupResult:
    backup_id: str
    timestamp: datetime
    duration_seconds: float
    size_bytes: int
    status: BackupStatus
    error: Optional[str] = None
    stage: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == BackupStatus.COMPLETED

    def as_dict(self) -> dict:
        return {
            "backup_id": self.backup_id,
            "timestamp": self.timestamp.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "size_bytes": self.size_bytes,
            "status": self.status.value,
            "error": self.error,
            "stage": self.stage,
        }


class ExportCancelled(Exception):
    """Raised from the backup progress callback once the step limit is hit."""


class BackupManager:
    """Creates backups of one database and hands them to a storage provider."""

    def __init__(
        self,
        engine: Engine,
        storage: StorageProvider,
        naming: BackupNamingService,
    ):
        self.engine = engine
        self.storage = storage
        self.naming = naming
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def create_backup(self, options: Optional[BackupOptions] = None) -> BackupResult:
        """
        Export, optionally verify, then store one backup.

        Export, verification and storage failures come back as a FAILED
        result carrying the backup id; only failing to get temp space or a
        database connection raises.
        """
        options = options or BackupOptions()
        async with self._lock:
            started = time.monotonic()
            timestamp = datetime.now(timezone.utc).replace(microsecond=0)
            backup_id = self.naming.generate_backup_id(timestamp)
            logger.info("Starting backup %s", backup_id)

            try:
                temp_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix="dbbackup-")
            except OSError as exc:
                raise BackupIOError(f"Cannot create temp space: {exc}") from exc
            try:
                return await self._run(
                    backup_id, timestamp, started, Path(temp_dir), options
                )
            finally:
                await asyncio.to_thread(_remove_temp_dir, temp_dir)

    async def _run(
        self,
        backup_id: str,
        timestamp: datetime,
        started: float,
        temp_dir: Path,
        options: BackupOptions,
    ) -> BackupResult:
        def finish(
            status: BackupStatus,
            size_bytes: int = 0,
            error: Optional[str] = None,
            stage: Optional[str] = None,
        ) -> BackupResult:
            return BackupResult(
                backup_id=backup_id,
                timestamp=timestamp,
                duration_seconds=time.monotonic() - started,
                size_bytes=size_bytes,
                status=status,
                error=error,
                stage=stage,
            )

        export_path = temp_dir / EXPORT_FILENAME
        guard, reader = await self._acquire_connections()
        try:
            await _run_to_completion(self._export, guard, reader, export_path, options)
        except ExportCancelled as exc:
            logger.warning("Backup %s cancelled: %s", backup_id, exc)
            return finish(BackupStatus.CANCELLED, error=str(exc), stage="export")
        except Exception as exc:
            logger.exception("Backup %s failed during export", backup_id)
            return finish(
                BackupStatus.FAILED, error=f"Export failed: {exc}", stage="export"
            )
        finally:
            await asyncio.to_thread(_release, guard, reader)

        if options.verify:
            try:
                await asyncio.to_thread(verify_export, export_path)
            except Exception as exc:
                logger.exception("Backup %s failed verification", backup_id)
                return finish(
                    BackupStatus.FAILED,
                    error=f"Backup verification failed: {exc}",
                    stage="verify",
                )

        try:
            size_bytes = await aiofiles.os.path.getsize(export_path)
            await self.storage.store(export_path, backup_id, self.naming.environment)
        except Exception as exc:
            logger.exception("Backup %s exported but could not be stored", backup_id)
            return finish(
                BackupStatus.FAILED,
                error=f"Failed to store backup: {exc}",
                stage="store",
            )

        result = finish(BackupStatus.COMPLETED, size_bytes=size_bytes)
        logger.info(
            "Backup %s completed: %d bytes in %.2fs",
            backup_id,
            size_bytes,
            result.duration_seconds,
        )
        return result

    async def _acquire_connections(self) -> tuple[Any, Any]:
        try:
            guard = await asyncio.to_thread(self.engine.raw_connection)
        except (SQLAlchemyError, sqlite3.Error) as exc:
            raise DatabaseEngineError(f"Cannot obtain a database connection: {exc}") from exc
        try:
            reader = await asyncio.to_thread(self.engine.raw_connection)
        except (SQLAlchemyError, sqlite3.Error) as exc:
            await asyncio.to_thread(guard.close)
            raise DatabaseEngineError(f"Cannot obtain a database connection: {exc}") from exc
        return guard, reader

    def _export(
        self, guard: Any, reader: Any, export_path: Path, options: BackupOptions
    ) -> None:
        guard_conn = guard.driver_connection
        reader_conn = reader.driver_connection
        guard_conn.execute("BEGIN IMMEDIATE")
        try:
            if options.incremental:
                _copy_incremental(reader_conn, export_path, options)
            else:
                reader_conn.execute("VACUUM INTO ?", (str(export_path),))
            guard_conn.execute("COMMIT")
        except BaseException:
            guard_conn.rollback()
            raise
        _make_standalone(export_path)

    async def list_backups(self, environment: Optional[str] = None) -> list[str]:
        if environment:
            return await self.storage.list_environment_backups(environment)
        return await self.storage.list_backups()

    async def get_latest_backup(self, environment: Optional[str] = None) -> Optional[str]:
        if environment:
            return await self.storage.get_latest_environment_backup(environment)
        return await self.storage.get_latest_backup()

    async def backup_exists(self, backup_id: str) -> bool:
        return await self.storage.backup_exists(backup_id)

    async def retrieve_backup(self, backup_id: str, destination: str | Path) -> None:
        await self.storage.retrieve(backup_id, destination)

    async def delete_backup(self, backup_id: str) -> None:
        await self.storage.delete_backup(backup_id)

    async def cleanup_old_backups(
        self, keep_count: int, environment: Optional[str] = None
    ) -> list[str]:
        if environment:
            return await self.storage.cleanup_environment_backups(environment, keep_count)
        return await self.storage.cleanup_old_backups(keep_count)


async def _run_to_completion(func, *args):
    """
    Run ``func`` in a worker thread. Threads cannot be interrupted, so on
    cancellation wait for it to finish before letting go of its connections.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        raise


def _copy_incremental(
    source: sqlite3.Connection, export_path: Path, options: BackupOptions
) -> None:
    steps = 0

    def progress(status: int, remaining: int, total: int) -> None:
        nonlocal steps
        steps += 1
        if remaining == 0:
            return
        if options.step_limit is not None and steps >= options.step_limit:
            raise ExportCancelled(
                f"Step limit {options.step_limit} reached with "
                f"{remaining} of {total} pages left"
            )
        if options.sleep_ms:
            time.sleep(options.sleep_ms / 1000)

    target = sqlite3.connect(export_path)
    try:
        source.backup(target, pages=options.chunk_size, progress=progress)
    finally:
        target.close()


def _make_standalone(export_path: Path) -> None:
    # A WAL-mode export keeps pages in side files; fold them into one file.
    conn = sqlite3.connect(export_path)
    try:
        conn.execute("PRAGMA journal_mode=DELETE")
    finally:
        conn.close()


def verify_export(export_path: Path) -> None:
    """Reopen the export read-only and read the schema table."""
    engine = create_readonly_engine(export_path)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT count(*) FROM sqlite_master")).scalar_one()
    finally:
        engine.dispose()


def _release(*connections: Any) -> None:
    for conn in connections:
        try:
            conn.close()
        except (SQLAlchemyError, sqlite3.Error):
            logger.warning("Failed to return connection to pool", exc_info=True)


def _remove_temp_dir(temp_dir: str) -> None:
    try:
        shutil.rmtree(temp_dir)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove temp dir %s", temp_dir, exc_info=True)
