import contextlib
import importlib.util
import io
import os
import shutil
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from dbbackup.config import get_settings
from dbbackup.dependencies import reset_dependencies

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "backup_db.py"


def load_script():
    spec = importlib.util.spec_from_file_location("backup_db", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class BackupCliTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        conn = sqlite3.connect(self.temp_dir / "live.db")
        with conn:
            conn.execute("CREATE TABLE events (id INTEGER PRIMARY KEY, payload TEXT)")
            conn.executemany(
                "INSERT INTO events (payload) VALUES (?)",
                [("e" * 400,) for _ in range(50)],
            )
        conn.close()
        env = {
            "DATABASE_URL": f"sqlite:///{self.temp_dir / 'live.db'}",
            "BACKUP_ENVIRONMENT": "cli",
            "BACKUP_USE_AWS": "false",
            "BACKUP_LOCAL_DIR": str(self.temp_dir / "backups"),
            "BACKUP_LOCAL_MAX_COUNT": "2",
        }
        self.env_patch = patch.dict(os.environ, env)
        self.env_patch.start()
        get_settings.cache_clear()
        reset_dependencies()
        self.cli = load_script()

    def tearDown(self):
        reset_dependencies()
        self.env_patch.stop()
        get_settings.cache_clear()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = self.cli.main(list(argv))
        return code, out.getvalue().split()

    def test_create_prunes_to_max_count(self):
        created = []
        for _ in range(3):
            code, lines = self.run_cli("create")
            self.assertEqual(code, 0)
            created.extend(lines)

        code, listed = self.run_cli("list", "-e", "cli")
        self.assertEqual(code, 0)
        self.assertEqual(listed, sorted(created, reverse=True)[:2])

        code, latest = self.run_cli("latest")
        self.assertEqual(latest, [max(created)])

    def test_retrieve_and_delete(self):
        _, (backup_id,) = self.run_cli("create", "--verify", "--no-prune")
        destination = self.temp_dir / "restored.db"

        self.assertEqual(self.run_cli("retrieve", backup_id, str(destination))[0], 0)
        self.assertTrue(destination.is_file())

        self.assertEqual(self.run_cli("delete", backup_id)[0], 0)
        self.assertEqual(self.run_cli("list")[1], [])

    def test_failures_exit_nonzero(self):
        self.assertEqual(self.run_cli("latest")[0], 1)
        code, _ = self.run_cli(
            "retrieve", "backup_2025-06-01_143000_cli_abcdef", str(self.temp_dir / "x.db")
        )
        self.assertEqual(code, 1)
        self.assertEqual(self.run_cli("prune", "--keep", "-1")[0], 1)

        code, lines = self.run_cli("create", "--chunk-size", "1", "--step-limit", "1")
        self.assertEqual(code, 1)
        self.assertEqual(len(lines), 1)


if __name__ == "__main__":
    unittest.main()
