"""
Configuration and settings for the backup service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings; field names match the env var names."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Live database
    database_url: str = Field(default="sqlite:///db.sqlite")

    # Backup naming
    backup_environment: str = Field(default="dev")
    backup_server_id: Optional[str] = Field(default=None)
    # Where ids that do not parse are looked up
    backup_default_environment: str = Field(default="dev")
    backup_verify: bool = Field(default=False)

    # S3 storage
    backup_use_aws: bool = Field(default=False)
    backup_s3_bucket: str = Field(default="")
    backup_s3_prefix: str = Field(default="backups")
    aws_region: str = Field(default="us-west-2")
    aws_role_arn: Optional[str] = Field(default=None)
    aws_endpoint_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Local storage, also the fallback when S3 is unavailable
    backup_local_dir: str = Field(default="./backups")
    backup_local_max_count: int = Field(default=10, ge=0)

    def should_use_aws(self) -> bool:
        return self.backup_use_aws and bool(self.backup_s3_bucket)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
