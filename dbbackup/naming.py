"""
Structured backup identifiers.

Ids look like ``backup_2025-06-01_143000_prod_web1_aZ3k9Q``: creation date and
time (UTC), environment, optional server id and a random suffix. The string
form sorts in creation order, and the environment can always be recovered
from the id, so storage backends derive blob locations from the id alone.
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dbbackup.errors import ConfigurationError

ID_PREFIX = "backup"
FILE_PREFIX = "backup-"
FILE_SUFFIX = ".db"
SUFFIX_ALPHABET = string.ascii_letters + string.digits
SUFFIX_LENGTH = 6

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_PATTERN = re.compile(r"^\d{6}$")


def _validate_segment(value: Optional[str], label: str) -> None:
    if not value or "_" in value:
        raise ConfigurationError(
            f"{label} must be non-empty and must not contain '_': {value!r}"
        )


class BackupNamingService:
    """Generates backup ids for one environment (and optionally one server)."""

    def __init__(self, environment: str, server_id: Optional[str] = None):
        _validate_segment(environment, "environment")
        if server_id is not None:
            _validate_segment(server_id, "server_id")
        self.environment = environment
        self.server_id = server_id

    def generate_backup_id(self, now: Optional[datetime] = None) -> str:
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        else:
            now = now.astimezone(timezone.utc)

        server_part = f"_{self.server_id}" if self.server_id else ""
        return (
            f"{ID_PREFIX}_{now:%Y-%m-%d}_{now:%H%M%S}_"
            f"{self.environment}{server_part}_{_random_suffix()}"
        )


def _random_suffix() -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))


@dataclass(frozen=True)
class BackupId:
    """Parsed form of a backup id string."""

    id: str
    timestamp: datetime
    environment: str
    server_id: Optional[str]
    random_suffix: str

    @classmethod
    def parse(cls, backup_id: str) -> Optional["BackupId"]:
        """
        Parse ``backup_{DATE}_{TIME}_{ENV}[_{SERVER}]_{SUFFIX}``.

        Returns None for anything that does not follow the grammar; callers
        decide what an unparseable id means for them.
        """
        parts = backup_id.split("_")
        if len(parts) < 5 or parts[0] != ID_PREFIX:
            return None

        date_part, time_part = parts[1], parts[2]
        if not _DATE_PATTERN.match(date_part) or not _TIME_PATTERN.match(time_part):
            return None
        try:
            timestamp = datetime.strptime(
                f"{date_part}T{time_part}", "%Y-%m-%dT%H%M%S"
            ).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

        if len(parts) > 5:
            server_id, random_suffix = parts[4], parts[5]
        else:
            server_id, random_suffix = None, parts[4]

        return cls(
            id=backup_id,
            timestamp=timestamp,
            environment=parts[3],
            server_id=server_id,
            random_suffix=random_suffix,
        )

    def __str__(self) -> str:
        return self.id


def environment_from_backup_id(backup_id: str) -> Optional[str]:
    parsed = BackupId.parse(backup_id)
    return parsed.environment if parsed else None


def backup_filename(backup_id: str) -> str:
    return f"{FILE_PREFIX}{backup_id}{FILE_SUFFIX}"


def backup_id_from_filename(name: str) -> Optional[str]:
    """Inverse of :func:`backup_filename`; None for unrelated files."""
    if (
        name.startswith(FILE_PREFIX)
        and name.endswith(FILE_SUFFIX)
        and len(name) > len(FILE_PREFIX) + len(FILE_SUFFIX)
    ):
        return name[len(FILE_PREFIX) : -len(FILE_SUFFIX)]
    return None


def backup_storage_path(base_dir: str | Path, backup_id: str) -> Optional[Path]:
    """Local path ``base_dir/env/backup-{id}.db`` for a parseable id."""
    environment = environment_from_backup_id(backup_id)
    if environment is None:
        return None
    return Path(base_dir) / environment / backup_filename(backup_id)


def backup_object_key(prefix: str, backup_id: str) -> Optional[str]:
    """Object key ``prefix/env/backup-{id}.db`` for a parseable id."""
    environment = environment_from_backup_id(backup_id)
    if environment is None:
        return None
    return object_key(prefix, environment, backup_id)


def object_key(prefix: str, environment: str, backup_id: str) -> str:
    return f"{environment_prefix(prefix, environment)}{backup_filename(backup_id)}"


def environment_prefix(prefix: str, environment: str) -> str:
    base = prefix.strip("/")
    return f"{base}/{environment}/" if base else f"{environment}/"
