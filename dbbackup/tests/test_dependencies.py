import asyncio
import os
import shutil
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from dbbackup.config import Settings, get_settings
from dbbackup.dependencies import (
    create_storage_provider,
    get_backup_manager,
    get_storage_provider,
    reset_dependencies,
)
from dbbackup.errors import ConfigurationError, ConnectivityError
from dbbackup.local_storage import LocalStorageProvider
from dbbackup.s3_storage import S3StorageProvider


class CreateStorageProviderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.local_dir = self.temp_dir / "backups"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def settings(self, **overrides):
        values = {"backup_local_dir": str(self.local_dir)}
        values.update(overrides)
        return Settings(**values)

    async def test_local_when_aws_disabled(self):
        with patch.object(S3StorageProvider, "connect", new=AsyncMock()) as connect:
            provider = await create_storage_provider(self.settings())

        self.assertIsInstance(provider, LocalStorageProvider)
        self.assertEqual(provider.backup_dir, self.local_dir)
        self.assertTrue(self.local_dir.is_dir())
        connect.assert_not_called()

    async def test_local_when_bucket_missing(self):
        with patch.object(S3StorageProvider, "connect", new=AsyncMock()) as connect:
            provider = await create_storage_provider(
                self.settings(backup_use_aws=True, backup_s3_bucket="")
            )

        self.assertIsInstance(provider, LocalStorageProvider)
        connect.assert_not_called()

    async def test_falls_back_to_local_when_s3_unreachable(self):
        failing = AsyncMock(side_effect=ConnectivityError("no route to bucket"))
        with patch.object(S3StorageProvider, "connect", new=failing):
            with self.assertLogs("dbbackup.dependencies", level="WARNING"):
                provider = await create_storage_provider(
                    self.settings(backup_use_aws=True, backup_s3_bucket="bucket")
                )

        self.assertIsInstance(provider, LocalStorageProvider)
        self.assertTrue(self.local_dir.is_dir())

    async def test_uses_s3_when_reachable(self):
        s3 = S3StorageProvider("bucket", MagicMock())
        connect = AsyncMock(return_value=s3)
        with patch.object(S3StorageProvider, "connect", new=connect):
            provider = await create_storage_provider(
                self.settings(
                    backup_use_aws=True,
                    backup_s3_bucket="bucket",
                    backup_s3_prefix="db-backups",
                    aws_region="eu-west-1",
                    backup_default_environment="qa",
                )
            )

        self.assertIs(provider, s3)
        connect.assert_awaited_once()
        args, kwargs = connect.call_args
        self.assertEqual(args, ("bucket", "eu-west-1"))
        self.assertEqual(kwargs["prefix"], "db-backups")
        self.assertEqual(kwargs["default_environment"], "qa")

    async def test_unusable_local_dir(self):
        blocker = self.temp_dir / "file"
        blocker.write_text("not a directory")

        with self.assertRaises(ConfigurationError):
            await create_storage_provider(
                Settings(backup_local_dir=str(blocker / "backups"))
            )


class SingletonTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        conn = sqlite3.connect(self.temp_dir / "live.db")
        with conn:
            conn.execute("CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT)")
            conn.execute("INSERT INTO settings VALUES ('theme', 'dark')")
        conn.close()
        env = {
            "DATABASE_URL": f"sqlite:///{self.temp_dir / 'live.db'}",
            "BACKUP_ENVIRONMENT": "staging",
            "BACKUP_SERVER_ID": "node1",
            "BACKUP_USE_AWS": "false",
            "BACKUP_LOCAL_DIR": str(self.temp_dir / "backups"),
        }
        self.env_patch = patch.dict(os.environ, env)
        self.env_patch.start()
        get_settings.cache_clear()
        reset_dependencies()

    def tearDown(self):
        reset_dependencies()
        self.env_patch.stop()
        get_settings.cache_clear()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_manager_is_built_once_from_settings(self):
        manager = await get_backup_manager()

        self.assertIs(await get_backup_manager(), manager)
        self.assertIs(await get_storage_provider(), manager.storage)
        self.assertIsInstance(manager.storage, LocalStorageProvider)
        self.assertEqual(manager.naming.environment, "staging")
        self.assertEqual(manager.naming.server_id, "node1")

        result = await manager.create_backup()
        self.assertTrue(result.succeeded)
        self.assertEqual(
            await manager.list_backups(environment="staging"), [result.backup_id]
        )

    async def test_concurrent_first_requests_share_one_manager(self):
        build = AsyncMock(wraps=create_storage_provider)
        with patch("dbbackup.dependencies.create_storage_provider", new=build):
            first, second, storage = await asyncio.gather(
                get_backup_manager(), get_backup_manager(), get_storage_provider()
            )

        self.assertIs(first, second)
        self.assertIs(storage, first.storage)
        self.assertEqual(build.await_count, 1)


if __name__ == "__main__":
    unittest.main()
