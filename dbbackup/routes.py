"""
HTTP routes for the backup admin API.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from dbbackup.backup import BackupManager, BackupOptions
from dbbackup.config import get_settings
from dbbackup.dependencies import get_backup_manager
from dbbackup.errors import (
    BackupError,
    BackupIOError,
    BackupNotFoundError,
    DatabaseEngineError,
    StorageError,
)
from dbbackup.naming import BackupId
from dbbackup.schemas import (
    BackupInfoResponse,
    BackupResultResponse,
    CleanupRequest,
    CleanupResponse,
    CreateBackupRequest,
    ListBackupsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(exc: BackupError) -> HTTPException:
    if isinstance(exc, BackupNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/backups", response_model=BackupResultResponse, status_code=201)
async def create_backup(
    response: Response,
    payload: Optional[CreateBackupRequest] = None,
    manager: BackupManager = Depends(get_backup_manager),
):
    """
    Run one backup. The full result is returned even when it failed, so the
    caller can correlate the failure with its backup id.
    """
    payload = payload or CreateBackupRequest()
    verify = payload.verify if payload.verify is not None else get_settings().backup_verify
    options = BackupOptions(
        chunk_size=payload.chunk_size,
        sleep_ms=payload.sleep_ms,
        step_limit=payload.step_limit,
        verify=verify,
    )
    try:
        result = await manager.create_backup(options)
    except (BackupIOError, DatabaseEngineError) as exc:
        logger.error("Backup could not start: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not result.succeeded:
        response.status_code = 500
    return BackupResultResponse(**result.as_dict())


@router.get("/backups", response_model=ListBackupsResponse)
async def list_backups(
    environment: Optional[str] = None,
    manager: BackupManager = Depends(get_backup_manager),
):
    try:
        backups = await manager.list_backups(environment)
    except BackupError as exc:
        raise _http_error(exc) from exc
    return ListBackupsResponse(backups=backups, environment=environment)


@router.get("/backups/latest", response_model=BackupInfoResponse)
async def get_latest_backup(
    environment: Optional[str] = None,
    manager: BackupManager = Depends(get_backup_manager),
):
    try:
        backup_id = await manager.get_latest_backup(environment)
    except BackupError as exc:
        raise _http_error(exc) from exc
    if backup_id is None:
        raise HTTPException(status_code=404, detail="No backups found")
    return _backup_info(backup_id)


@router.post("/backups/cleanup", response_model=CleanupResponse)
async def cleanup_backups(
    payload: Optional[CleanupRequest] = None,
    manager: BackupManager = Depends(get_backup_manager),
):
    payload = payload or CleanupRequest()
    keep_count = (
        payload.keep_count
        if payload.keep_count is not None
        else get_settings().backup_local_max_count
    )
    try:
        deleted = await manager.cleanup_old_backups(keep_count, payload.environment)
    except BackupError as exc:
        raise _http_error(exc) from exc
    return CleanupResponse(deleted=deleted, kept=keep_count)


@router.get("/backups/{backup_id}", response_model=BackupInfoResponse)
async def get_backup(
    backup_id: str,
    manager: BackupManager = Depends(get_backup_manager),
):
    try:
        exists = await manager.backup_exists(backup_id)
    except BackupError as exc:
        raise _http_error(exc) from exc
    if not exists:
        raise HTTPException(status_code=404, detail=f"Backup not found: {backup_id}")
    return _backup_info(backup_id)


@router.delete("/backups/{backup_id}", status_code=204)
async def delete_backup(
    backup_id: str,
    manager: BackupManager = Depends(get_backup_manager),
):
    try:
        await manager.delete_backup(backup_id)
    except BackupError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def _backup_info(backup_id: str) -> BackupInfoResponse:
    parsed = BackupId.parse(backup_id)
    if parsed is None:
        return BackupInfoResponse(backup_id=backup_id)
    return BackupInfoResponse(
        backup_id=backup_id,
        timestamp=parsed.timestamp,
        environment=parsed.environment,
        server_id=parsed.server_id,
    )
