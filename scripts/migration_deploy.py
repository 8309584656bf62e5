from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from cronshift.core.config import Settings, get_settings, missing_required_env
from cronshift.core.errors import CronshiftError, MigrationFailedError
from cronshift.core.logging import configure_logging
from cronshift.domain.state import MigrationConfig, new_timestamp
from cronshift.persistence.db import SessionLocal, dispose_engine
from cronshift.services.backup import BackupStore
from cronshift.services.datastore import DataStore
from cronshift.services.migration import MigrationDeployer
from cronshift.services.telemetry import counters_snapshot, external_call_stats


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Migrate scheduled jobs to the optimized system")
    parser.add_argument("--dry-run", action="store_true", help="Validate only; no backup, deploy or log writes")
    # Accepts both "--backup-id ID" and "--backup-id=ID".
    parser.add_argument("--backup-id", default=None, help="Reuse an existing backup instead of creating one")
    return parser


async def run_migration(
    *,
    dry_run: bool,
    backup_id: str | None,
    settings: Settings | None = None,
    datastore: DataStore | None = None,
) -> int:
    settings = settings or get_settings()
    missing = missing_required_env(settings)
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 1

    owns_engine = datastore is None
    datastore = datastore or DataStore(SessionLocal)
    config = MigrationConfig(timestamp=new_timestamp(), dry_run=dry_run, backup_id=backup_id)
    deployer = MigrationDeployer(
        config,
        settings=settings,
        datastore=datastore,
        backups=BackupStore.from_settings(settings),
    )
    try:
        await deployer.execute()
    except MigrationFailedError as exc:
        print(deployer.report or "")
        print(f"Migration failed: {exc}", file=sys.stderr)
        return 1
    except CronshiftError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        return 1
    finally:
        logger.info("migration_telemetry counters=%s external=%s", counters_snapshot(), external_call_stats())
        if owns_engine:
            await dispose_engine()
    print(deployer.report or "")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(run_migration(dry_run=args.dry_run, backup_id=args.backup_id))


if __name__ == "__main__":
    sys.exit(main())
