"""
Local filesystem backend, used in development and as the fallback when S3
is disabled or unreachable.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os

from dbbackup.errors import BackupIOError, BackupNotFoundError
from dbbackup.naming import backup_filename, backup_id_from_filename
from dbbackup.storage import DEFAULT_ENVIRONMENT, RetentionMixin

logger = logging.getLogger(__name__)

COPY_CHUNK_BYTES = 1024 * 1024


async def copy_file(src: str | Path, dest: str | Path) -> int:
    """Stream ``src`` into ``dest`` without blocking the event loop."""
    copied = 0
    async with aiofiles.open(src, "rb") as reader:
        async with aiofiles.open(dest, "wb") as writer:
            while True:
                chunk = await reader.read(COPY_CHUNK_BYTES)
                if not chunk:
                    break
                await writer.write(chunk)
                copied += len(chunk)
    return copied


class LocalStorageProvider(RetentionMixin):
    """Stores each backup at ``backup_dir/<environment>/backup-<id>.db``."""

    def __init__(
        self,
        backup_dir: str | Path,
        default_environment: str = DEFAULT_ENVIRONMENT,
    ):
        self.backup_dir = Path(backup_dir)
        self.default_environment = default_environment

    def backup_path(self, backup_id: str, environment: str) -> Path:
        return self.backup_dir / environment / backup_filename(backup_id)

    async def store(
        self, backup_path: str | Path, backup_id: str, environment: str | None = None
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        dest = self.backup_path(backup_id, environment)
        partial = dest.with_name(dest.name + ".partial")
        try:
            await aiofiles.os.makedirs(dest.parent, exist_ok=True)
            size = await copy_file(backup_path, partial)
            await aiofiles.os.replace(partial, dest)
        except OSError as exc:
            await self._discard(partial)
            raise BackupIOError(f"Failed to store backup {backup_id}: {exc}") from exc
        logger.info("Stored backup %s at %s (%d bytes)", backup_id, dest, size)

    async def retrieve(
        self,
        backup_id: str,
        destination: str | Path,
        environment: str | None = None,
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        source = self.backup_path(backup_id, environment)
        if not await aiofiles.os.path.isfile(source):
            raise BackupNotFoundError(backup_id)
        try:
            await aiofiles.os.makedirs(Path(destination).parent, exist_ok=True)
            await copy_file(source, destination)
        except OSError as exc:
            raise BackupIOError(
                f"Failed to retrieve backup {backup_id}: {exc}"
            ) from exc
        logger.info("Retrieved backup %s to %s", backup_id, destination)

    async def delete_backup(
        self, backup_id: str, environment: str | None = None
    ) -> None:
        await self._delete_entry(
            backup_id, self.resolve_environment(backup_id, environment)
        )

    async def backup_exists(
        self, backup_id: str, environment: str | None = None
    ) -> bool:
        environment = self.resolve_environment(backup_id, environment)
        return await aiofiles.os.path.isfile(self.backup_path(backup_id, environment))

    async def _delete_entry(self, backup_id: str, environment: str) -> None:
        path = self.backup_path(backup_id, environment)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise BackupIOError(f"Failed to delete backup {backup_id}: {exc}") from exc
        logger.info("Deleted backup %s", backup_id)

    async def _list_entries(
        self, environment: str | None = None
    ) -> list[tuple[str, str]]:
        try:
            return await asyncio.to_thread(self._scan, environment)
        except OSError as exc:
            raise BackupIOError(
                f"Failed to list backups in {self.backup_dir}: {exc}"
            ) from exc

    def _scan(self, environment: str | None) -> list[tuple[str, str]]:
        if environment is not None:
            environments = [environment]
        elif self.backup_dir.is_dir():
            with os.scandir(self.backup_dir) as it:
                environments = [entry.name for entry in it if entry.is_dir()]
        else:
            return []

        entries: list[tuple[str, str]] = []
        for env in environments:
            env_dir = self.backup_dir / env
            if not env_dir.is_dir():
                continue
            with os.scandir(env_dir) as it:
                for entry in it:
                    if not entry.is_file():
                        continue
                    backup_id = backup_id_from_filename(entry.name)
                    if backup_id is not None:
                        entries.append((backup_id, env))
        return entries

    @staticmethod
    async def _discard(path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
