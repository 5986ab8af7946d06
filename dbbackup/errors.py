"""
Error taxonomy for backup and storage operations.
"""

from __future__ import annotations


class BackupError(Exception):
    """Base exception for the backup subsystem."""


class StorageError(BackupError):
    """A storage backend could not complete an operation."""


class BackupIOError(StorageError):
    """Local filesystem failure (temp space, backup directory, copy)."""


class StorageBackendError(StorageError):
    """Remote object storage returned an error."""


class StorageTransportError(StorageBackendError):
    """The request never reached the storage service."""


class StorageTimeoutError(StorageBackendError):
    """The storage service did not answer in time."""


class ConnectivityError(StorageBackendError):
    """The construction-time probe against the bucket failed."""


class BackupNotFoundError(StorageError):
    """No blob exists for the requested backup id."""

    def __init__(self, backup_id: str):
        super().__init__(f"Backup not found: {backup_id}")
        self.backup_id = backup_id


class DatabaseEngineError(BackupError):
    """SQLite refused a statement or a connection could not be obtained."""


class ConfigurationError(BackupError):
    """Settings are unusable (bad environment name, unwritable directory)."""
