"""
Storage abstraction for backup blobs (local filesystem, S3) and in-memory testing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import aiofiles
import aiofiles.os

from dbbackup.errors import BackupNotFoundError
from dbbackup.naming import environment_from_backup_id

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "dev"


class StorageProvider(Protocol):
    """Defines the operations the backup manager needs from a backend."""

    async def store(
        self, backup_path: str | Path, backup_id: str, environment: str | None = None
    ) -> None:
        ...

    async def retrieve(
        self,
        backup_id: str,
        destination: str | Path,
        environment: str | None = None,
    ) -> None:
        ...

    async def list_backups(self) -> list[str]:
        ...

    async def list_environment_backups(self, environment: str) -> list[str]:
        ...

    async def get_latest_backup(self) -> Optional[str]:
        ...

    async def get_latest_environment_backup(self, environment: str) -> Optional[str]:
        ...

    async def delete_backup(
        self, backup_id: str, environment: str | None = None
    ) -> None:
        ...

    async def backup_exists(
        self, backup_id: str, environment: str | None = None
    ) -> bool:
        ...

    async def cleanup_old_backups(self, keep_count: int) -> list[str]:
        ...

    async def cleanup_environment_backups(
        self, environment: str, keep_count: int
    ) -> list[str]:
        ...


class RetentionMixin:
    """
    Listing, latest-lookup and retention shared by all backends.

    Subclasses provide ``_list_entries(environment)`` returning
    ``(backup_id, environment)`` pairs and ``_delete_entry(backup_id,
    environment)``. Retention deletes each entry from the environment it was
    listed under, so ids that do not parse are never routed elsewhere.
    """

    default_environment: str = DEFAULT_ENVIRONMENT

    async def _list_entries(
        self, environment: str | None = None
    ) -> list[tuple[str, str]]:
        raise NotImplementedError

    async def _delete_entry(self, backup_id: str, environment: str) -> None:
        raise NotImplementedError

    async def _sorted_entries(
        self, environment: str | None = None
    ) -> list[tuple[str, str]]:
        entries = await self._list_entries(environment)
        # Ids start with date and time, so string order is creation order.
        return sorted(entries, key=lambda entry: entry[0], reverse=True)

    async def list_backups(self) -> list[str]:
        return [backup_id for backup_id, _ in await self._sorted_entries()]

    async def list_environment_backups(self, environment: str) -> list[str]:
        return [backup_id for backup_id, _ in await self._sorted_entries(environment)]

    async def get_latest_backup(self) -> Optional[str]:
        backups = await self.list_backups()
        return backups[0] if backups else None

    async def get_latest_environment_backup(self, environment: str) -> Optional[str]:
        backups = await self.list_environment_backups(environment)
        return backups[0] if backups else None

    async def cleanup_old_backups(self, keep_count: int) -> list[str]:
        return await self._prune(await self._sorted_entries(), keep_count)

    async def cleanup_environment_backups(
        self, environment: str, keep_count: int
    ) -> list[str]:
        return await self._prune(await self._sorted_entries(environment), keep_count)

    async def _prune(
        self, entries: list[tuple[str, str]], keep_count: int
    ) -> list[str]:
        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")
        stale = entries[keep_count:]
        for backup_id, environment in stale:
            logger.debug("Deleting old backup %s (%s)", backup_id, environment)
            await self._delete_entry(backup_id, environment)
        if stale:
            logger.info(
                "Cleaned up %d old backups, kept %d most recent",
                len(stale),
                keep_count,
            )
        return [backup_id for backup_id, _ in stale]

    def resolve_environment(
        self, backup_id: str, environment: str | None = None
    ) -> str:
        if environment:
            return environment
        parsed = environment_from_backup_id(backup_id)
        if parsed is not None:
            return parsed
        logger.warning(
            "Backup id %r does not parse; assuming environment %r",
            backup_id,
            self.default_environment,
        )
        return self.default_environment


@dataclass
class InMemoryStorageProvider(RetentionMixin):
    """Test double for storage interactions."""

    default_environment: str = DEFAULT_ENVIRONMENT
    stored_objects: dict = field(default_factory=dict)

    async def store(
        self, backup_path: str | Path, backup_id: str, environment: str | None = None
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        async with aiofiles.open(backup_path, "rb") as f:
            self.stored_objects[(environment, backup_id)] = await f.read()

    async def retrieve(
        self,
        backup_id: str,
        destination: str | Path,
        environment: str | None = None,
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        data = self.stored_objects.get((environment, backup_id))
        if data is None:
            raise BackupNotFoundError(backup_id)
        parent = Path(destination).parent
        await aiofiles.os.makedirs(parent, exist_ok=True)
        async with aiofiles.open(destination, "wb") as f:
            await f.write(data)

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
        return (environment, backup_id) in self.stored_objects

    async def _list_entries(
        self, environment: str | None = None
    ) -> list[tuple[str, str]]:
        return [
            (backup_id, env)
            for env, backup_id in self.stored_objects
            if environment is None or env == environment
        ]

    async def _delete_entry(self, backup_id: str, environment: str) -> None:
        self.stored_objects.pop((environment, backup_id), None)
