"""
S3-compatible object storage backend.

Objects are keyed ``{prefix}/{environment}/backup-{id}.db``, the same layout
the local backend uses on disk, so environment-scoped listing and retention
behave identically on both. boto3 is synchronous; every call runs in a
worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import closing
from pathlib import Path
from typing import Any, Callable, Optional

import aiofiles.os
import boto3
from boto3.exceptions import Boto3Error
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectionError as BotoConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from dbbackup.errors import (
    BackupIOError,
    BackupNotFoundError,
    ConnectivityError,
    StorageBackendError,
    StorageError,
    StorageTimeoutError,
    StorageTransportError,
)
from dbbackup.naming import backup_id_from_filename, environment_prefix, object_key
from dbbackup.storage import DEFAULT_ENVIRONMENT, RetentionMixin

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "backups"
ROLE_SESSION_NAME = "dbbackup"
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def build_s3_client(
    region: str,
    *,
    role_arn: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
):
    """
    Create a boto3 S3 client.

    Credentials come from the default provider chain unless explicit keys are
    given. With ``role_arn`` set and no web-identity token file (which the
    default chain already exchanges on its own), the role is assumed via STS.
    """
    session = boto3.Session(
        aws_access_key_id=access_key_id or None,
        aws_secret_access_key=secret_access_key or None,
        region_name=region or None,
    )
    if role_arn and not os.environ.get("AWS_WEB_IDENTITY_TOKEN_FILE"):
        credentials = session.client("sts").assume_role(
            RoleArn=role_arn, RoleSessionName=ROLE_SESSION_NAME
        )["Credentials"]
        session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=region or None,
        )
        logger.debug("Assumed role %s for S3 access", role_arn)

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": 3, "mode": "standard"},
    )
    return session.client("s3", endpoint_url=endpoint_url or None, config=config)


def map_s3_error(
    exc: Exception, operation: str, backup_id: Optional[str] = None
) -> StorageError:
    """Translate a boto3/botocore failure into the backup error taxonomy."""
    # ConnectTimeoutError is also an EndpointConnectionError; check timeouts first.
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return StorageTimeoutError(f"S3 timeout during {operation}: {exc}")
    if isinstance(exc, (BotoConnectionError, ConnectionClosedError)):
        return StorageTransportError(f"S3 dispatch error during {operation}: {exc}")
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if backup_id is not None and code in NOT_FOUND_CODES:
            return BackupNotFoundError(backup_id)
        return StorageBackendError(
            f"S3 service error during {operation} ({code or 'unknown'}): {exc}"
        )
    return StorageBackendError(f"S3 error during {operation}: {exc}")


def _is_not_found(exc: ClientError) -> bool:
    return str(exc.response.get("Error", {}).get("Code", "")) in NOT_FOUND_CODES


class S3StorageProvider(RetentionMixin):
    """Stores backups as objects in one bucket."""

    def __init__(
        self,
        bucket: str,
        client: Any,
        prefix: str = DEFAULT_PREFIX,
        default_environment: str = DEFAULT_ENVIRONMENT,
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.default_environment = default_environment
        self._client = client

    @classmethod
    async def connect(
        cls,
        bucket: str,
        region: str,
        *,
        prefix: str = DEFAULT_PREFIX,
        role_arn: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        default_environment: str = DEFAULT_ENVIRONMENT,
    ) -> "S3StorageProvider":
        """Build a client and probe the bucket; raises ConnectivityError."""
        try:
            client = await asyncio.to_thread(
                build_s3_client,
                region,
                role_arn=role_arn,
                endpoint_url=endpoint_url,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
            )
            await asyncio.to_thread(client.head_bucket, Bucket=bucket)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to access S3 bucket %s: %s", bucket, exc)
            raise ConnectivityError(
                f"Failed to access S3 bucket {bucket}: {exc}"
            ) from exc
        logger.info("Connected to S3 bucket %s", bucket)
        return cls(
            bucket,
            client,
            prefix=prefix,
            default_environment=default_environment,
        )

    def object_key(self, backup_id: str, environment: str) -> str:
        return object_key(self.prefix, environment, backup_id)

    def extract_entry(self, key: str) -> Optional[tuple[str, str]]:
        """Return ``(backup_id, environment)`` for a backup key, else None."""
        base = f"{self.prefix}/" if self.prefix else ""
        if not key.startswith(base):
            return None
        parts = key[len(base) :].split("/")
        if len(parts) != 2 or not parts[0]:
            return None
        backup_id = backup_id_from_filename(parts[1])
        if backup_id is None:
            return None
        return backup_id, parts[0]

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        backup_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (BotoCoreError, ClientError, Boto3Error) as exc:
            logger.error("S3 %s failed: %s", operation, exc)
            raise map_s3_error(exc, operation, backup_id) from exc

    async def store(
        self, backup_path: str | Path, backup_id: str, environment: str | None = None
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        key = self.object_key(backup_id, environment)
        if not await aiofiles.os.path.isfile(backup_path):
            raise BackupIOError(f"Backup file missing: {backup_path}")
        logger.debug(
            "Uploading backup %s to bucket %s with key %s", backup_id, self.bucket, key
        )
        await self._call(
            "store_backup", self._client.upload_file, str(backup_path), self.bucket, key
        )
        logger.info("Uploaded backup %s to S3", backup_id)

    async def retrieve(
        self,
        backup_id: str,
        destination: str | Path,
        environment: str | None = None,
    ) -> None:
        environment = self.resolve_environment(backup_id, environment)
        key = self.object_key(backup_id, environment)
        logger.debug(
            "Retrieving backup %s from bucket %s with key %s",
            backup_id,
            self.bucket,
            key,
        )
        response = await self._call(
            "retrieve_backup",
            self._client.get_object,
            Bucket=self.bucket,
            Key=key,
            backup_id=backup_id,
        )
        try:
            with closing(response["Body"]) as body:
                await asyncio.to_thread(_write_body, body, Path(destination))
        except OSError as exc:
            raise BackupIOError(
                f"Failed to write backup {backup_id} to {destination}: {exc}"
            ) from exc
        except (BotoCoreError, ClientError) as exc:
            raise map_s3_error(exc, "retrieve_backup", backup_id) from exc
        logger.info("Retrieved backup %s from S3", backup_id)

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
        key = self.object_key(backup_id, environment)
        try:
            await asyncio.to_thread(
                self._client.head_object, Bucket=self.bucket, Key=key
            )
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise map_s3_error(exc, "backup_exists") from exc
        except BotoCoreError as exc:
            raise map_s3_error(exc, "backup_exists") from exc
        return True

    async def _delete_entry(self, backup_id: str, environment: str) -> None:
        key = self.object_key(backup_id, environment)
        await self._call(
            "delete_backup", self._client.delete_object, Bucket=self.bucket, Key=key
        )
        logger.info("Deleted backup %s from S3", backup_id)

    async def _list_entries(
        self, environment: str | None = None
    ) -> list[tuple[str, str]]:
        if environment is not None:
            list_prefix = environment_prefix(self.prefix, environment)
        else:
            list_prefix = f"{self.prefix}/" if self.prefix else ""
        keys = await self._call("list_backups", self._list_keys, list_prefix)
        entries = []
        for key in keys:
            entry = self.extract_entry(key)
            if entry is not None:
                entries.append(entry)
        logger.debug("Found %d backups in S3 under %r", len(entries), list_prefix)
        return entries

    def _list_keys(self, list_prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return keys


def _write_body(body: Any, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    with open(destination, "wb") as f:
        for chunk in body.iter_chunks():
            f.write(chunk)
