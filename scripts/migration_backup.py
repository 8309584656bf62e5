from __future__ import annotations

import argparse
import asyncio
import sys
import time

from cronshift.core.config import Settings, get_settings, missing_required_env
from cronshift.core.errors import BackupError
from cronshift.core.logging import configure_logging
from cronshift.domain.state import new_timestamp
from cronshift.persistence.db import SessionLocal, dispose_engine
from cronshift.services.backup import BackupStore
from cronshift.services.datastore import DataStore


async def run_backup(*, settings: Settings | None = None, datastore: DataStore | None = None) -> int:
    # Standalone snapshot of the deployment config and tracked tables.
    settings = settings or get_settings()
    missing = missing_required_env(settings)
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 1
    owns_engine = datastore is None
    datastore = datastore or DataStore(SessionLocal)
    backups = BackupStore.from_settings(settings)
    started = time.monotonic()
    try:
        backup_id = await backups.create_snapshot(datastore, settings.tracked_table_names(), new_timestamp())
    except BackupError as exc:
        print(f"Backup failed: {exc}", file=sys.stderr)
        return 1
    finally:
        if owns_engine:
            await dispose_engine()
    metadata = backups.load_metadata(backup_id)
    print(f"backup_id={backup_id}")
    print(f"backup_dir={backups.backup_path(backup_id)}")
    print(f"total_records={metadata.record_count()}")
    print(f"total_bytes={metadata.total_size()}")
    print(f"duration_s={time.monotonic() - started:.2f}")
    return 0


def main(argv: list[str] | None = None) -> int:
    argparse.ArgumentParser(description="Create a migration backup snapshot").parse_args(argv)
    configure_logging()
    return asyncio.run(run_backup())


if __name__ == "__main__":
    sys.exit(main())
