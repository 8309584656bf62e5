from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from cronshift.core.config import (
    Settings,
    get_settings,
    missing_required_env,
    required_env_names,
)
from cronshift.core.errors import CronshiftError, RollbackFailedError
from cronshift.core.logging import configure_logging
from cronshift.domain.state import RollbackConfig, new_timestamp
from cronshift.persistence.db import SessionLocal, dispose_engine
from cronshift.services.backup import BackupStore
from cronshift.services.datastore import DataStore
from cronshift.services.rollback import MigrationRollback
from cronshift.services.telemetry import counters_snapshot, external_call_stats


logger = logging.getLogger(__name__)

USAGE = "Usage: cronshift-rollback <backup-id> [--force] [--notify]"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Emergency rollback to a migration backup")
    parser.add_argument("backup_id", nargs="?", default=None)
    parser.add_argument("--force", action="store_true", help="Continue past critical failures and integrity mismatches")
    parser.add_argument("--notify", action="store_true", help="Email operators when the rollback finishes")
    return parser


def print_available_backups(backups: BackupStore) -> None:
    print(USAGE, file=sys.stderr)
    ids = backups.list_backup_ids()
    print("\nAvailable backups:", file=sys.stderr)
    if not ids:
        print("  (none)", file=sys.stderr)
    for backup_id in ids:
        print(f"  - {backup_id}", file=sys.stderr)


async def run_rollback(
    *,
    backup_id: str | None,
    force: bool,
    notify: bool,
    settings: Settings | None = None,
    datastore: DataStore | None = None,
) -> int:
    settings = settings or get_settings()
    backups = BackupStore.from_settings(settings)
    if not backup_id:
        print_available_backups(backups)
        return 1
    # Notification credentials are optional; the step warns and skips without them.
    missing = missing_required_env(settings, required_env_names())
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 1

    owns_engine = datastore is None
    datastore = datastore or DataStore(SessionLocal)
    config = RollbackConfig(
        backup_id=backup_id,
        backup_directory=backups.backup_path(backup_id),
        timestamp=new_timestamp(),
        force=force,
        notify=notify,
    )
    rollback = MigrationRollback(config, settings=settings, datastore=datastore, backups=backups)
    try:
        result = await rollback.execute()
    except RollbackFailedError as exc:
        print(rollback.report or "")
        print(str(exc), file=sys.stderr)
        return 1
    except CronshiftError as exc:
        print(f"Rollback failed: {exc}", file=sys.stderr)
        return 1
    finally:
        logger.info("rollback_telemetry counters=%s external=%s", counters_snapshot(), external_call_stats())
        if owns_engine:
            await dispose_engine()
    print(rollback.report or "")
    # A forced run that got through every step exits 0 even with recorded failures.
    if result.success or force:
        return 0
    return 1


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(run_rollback(backup_id=args.backup_id, force=args.force, notify=args.notify))


if __name__ == "__main__":
    sys.exit(main())
