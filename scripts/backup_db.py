"""
Command-line entry point for creating, listing and pruning database backups.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dbbackup.backup import BackupOptions
from dbbackup.config import get_settings
from dbbackup.dependencies import get_backup_manager, reset_dependencies
from dbbackup.errors import BackupError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SQLite database backups")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Export and store a new backup")
    create.add_argument(
        "--verify",
        action="store_true",
        default=None,
        help="Reopen the export read-only before storing it",
    )
    create.add_argument(
        "--chunk-size",
        type=int,
        default=0,
        help="Pages per step for an incremental copy (0 = single VACUUM INTO)",
    )
    create.add_argument(
        "--sleep-ms",
        type=int,
        default=0,
        help="Milliseconds to sleep between incremental steps",
    )
    create.add_argument(
        "--step-limit",
        type=int,
        default=None,
        help="Give up after this many incremental steps",
    )
    create.add_argument(
        "--no-prune",
        action="store_true",
        help="Skip pruning this environment to BACKUP_LOCAL_MAX_COUNT afterwards",
    )

    listing = sub.add_parser("list", help="List backups, newest first")
    listing.add_argument("-e", "--environment", default=None)

    latest = sub.add_parser("latest", help="Print the newest backup id")
    latest.add_argument("-e", "--environment", default=None)

    prune = sub.add_parser("prune", help="Delete all but the newest backups")
    prune.add_argument(
        "-k",
        "--keep",
        type=int,
        default=None,
        help="How many backups to keep (default BACKUP_LOCAL_MAX_COUNT)",
    )
    prune.add_argument("-e", "--environment", default=None)

    retrieve = sub.add_parser("retrieve", help="Download a backup to a local path")
    retrieve.add_argument("backup_id")
    retrieve.add_argument("destination", type=Path)

    delete = sub.add_parser("delete", help="Delete one backup")
    delete.add_argument("backup_id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    manager = await get_backup_manager()

    if args.command == "create":
        verify = args.verify if args.verify is not None else settings.backup_verify
        result = await manager.create_backup(
            BackupOptions(
                chunk_size=args.chunk_size,
                sleep_ms=args.sleep_ms,
                step_limit=args.step_limit,
                verify=verify,
            )
        )
        print(result.backup_id)
        if not result.succeeded:
            logger.error(
                "Backup %s %s: %s", result.backup_id, result.status.value, result.error
            )
            return 1
        if not args.no_prune:
            await manager.cleanup_old_backups(
                settings.backup_local_max_count, manager.naming.environment
            )
        return 0

    if args.command == "list":
        for backup_id in await manager.list_backups(args.environment):
            print(backup_id)
        return 0

    if args.command == "latest":
        backup_id = await manager.get_latest_backup(args.environment)
        if backup_id is None:
            logger.info("No backups found")
            return 1
        print(backup_id)
        return 0

    if args.command == "prune":
        keep = args.keep if args.keep is not None else settings.backup_local_max_count
        deleted = await manager.cleanup_old_backups(keep, args.environment)
        logger.info("Deleted %d backups", len(deleted))
        return 0

    if args.command == "retrieve":
        await manager.retrieve_backup(args.backup_id, args.destination)
        return 0

    # delete
    await manager.delete_backup(args.backup_id)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    try:
        return asyncio.run(_run(args))
    except (BackupError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        reset_dependencies()


if __name__ == "__main__":
    raise SystemExit(main())
