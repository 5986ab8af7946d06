"""
Dependency wiring: backend selection and process-wide singletons.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiofiles.os
from sqlalchemy.engine import Engine

from dbbackup.backup import BackupManager
from dbbackup.config import Settings, get_settings
from dbbackup.db import create_database_engine
from dbbackup.errors import BackupError, ConfigurationError
from dbbackup.local_storage import LocalStorageProvider
from dbbackup.naming import BackupNamingService
from dbbackup.s3_storage import S3StorageProvider
from dbbackup.storage import StorageProvider

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_storage_provider: StorageProvider | None = None
_backup_manager: BackupManager | None = None
# Serializes first-time construction; the singletons are built at most once.
_build_lock = asyncio.Lock()


async def create_storage_provider(settings: Settings) -> StorageProvider:
    """
    Pick S3 when it is enabled, configured and reachable; otherwise local.

    The local directory is always created, since it is the fallback. S3
    being unavailable is logged and never fails startup.
    """
    local_dir = Path(settings.backup_local_dir)
    try:
        await aiofiles.os.makedirs(local_dir, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Failed to create local backup directory {local_dir}: {exc}"
        ) from exc
    local = LocalStorageProvider(
        local_dir, default_environment=settings.backup_default_environment
    )

    if not settings.should_use_aws():
        logger.info("Using local backup storage at %s", local_dir)
        return local

    try:
        provider = await S3StorageProvider.connect(
            settings.backup_s3_bucket,
            settings.aws_region,
            prefix=settings.backup_s3_prefix,
            role_arn=settings.aws_role_arn,
            endpoint_url=settings.aws_endpoint_url,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            default_environment=settings.backup_default_environment,
        )
    except BackupError as exc:
        logger.warning(
            "Failed to create S3 storage provider: %s, falling back to local storage",
            exc,
        )
        return local
    logger.info("Using S3 backup storage in bucket %s", settings.backup_s3_bucket)
    return provider


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine
    _engine = create_database_engine(get_settings().database_url)
    return _engine


async def get_storage_provider() -> StorageProvider:
    """
    Return a singleton storage provider so the S3 probe runs once per process.
    """
    if _storage_provider is None:
        async with _build_lock:
            await _ensure_storage_provider()
    return _storage_provider


async def _ensure_storage_provider() -> None:
    # Caller holds _build_lock.
    global _storage_provider
    if _storage_provider is None:
        _storage_provider = await create_storage_provider(get_settings())


async def get_backup_manager() -> BackupManager:
    """
    Return a singleton manager; its lock only serializes exports it owns.
    """
    global _backup_manager
    if _backup_manager is not None:
        return _backup_manager

    async with _build_lock:
        if _backup_manager is None:
            await _ensure_storage_provider()
            settings = get_settings()
            naming = BackupNamingService(
                settings.backup_environment, settings.backup_server_id
            )
            _backup_manager = BackupManager(get_engine(), _storage_provider, naming)
    return _backup_manager


def reset_dependencies() -> None:
    """Forget the singletons (useful in tests)."""
    global _engine, _storage_provider, _backup_manager, _build_lock
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _storage_provider = None
    _backup_manager = None
    _build_lock = asyncio.Lock()
