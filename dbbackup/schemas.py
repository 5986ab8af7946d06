"""
Pydantic schemas for the backup admin API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class CreateBackupRequest(BaseModel):
    chunk_size: int = 0
    sleep_ms: int = Field(default=0, ge=0)
    step_limit: Optional[int] = Field(default=None, ge=1)
    verify: Optional[bool] = None


class BackupResultResponse(BaseModel):
    backup_id: str
    timestamp: datetime
    duration_seconds: float
    size_bytes: int
    status: Literal["completed", "failed", "cancelled"]
    error: Optional[str] = None
    stage: Optional[str] = None


class ListBackupsResponse(BaseModel):
    backups: list[str]
    environment: Optional[str] = None


class BackupInfoResponse(BaseModel):
    backup_id: str
    timestamp: Optional[datetime] = None
    environment: Optional[str] = None
    server_id: Optional[str] = None


class CleanupRequest(BaseModel):
    keep_count: Optional[int] = Field(default=None, ge=0)
    environment: Optional[str] = None


class CleanupResponse(BaseModel):
    deleted: list[str]
    kept: int
