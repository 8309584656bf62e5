from __future__ import annotations

import argparse
import logging
import sys

from cronshift.core.config import get_settings
from cronshift.core.errors import BackupError
from cronshift.core.logging import configure_logging
from cronshift.services.backup import BackupStore


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List migration backups")
    parser.add_argument("--verify", action="store_true", help="Recompute checksums for every backup")
    return parser


def list_backups(*, verify: bool) -> int:
    backups = BackupStore.from_settings(get_settings())
    ids = backups.list_backup_ids()
    if not ids:
        print(f"No backups found under {backups.base_dir}", file=sys.stderr)
        return 1
    print("backup_id\ttotal_records\tintegrity")
    for backup_id in ids:
        try:
            records: int | str = backups.load_metadata(backup_id).record_count()
        except BackupError as exc:
            logger.warning("backup_metadata_unreadable backup_id=%s error=%s", backup_id, exc)
            records = "?"
        integrity = "-"
        if verify:
            errors = backups.verify_checksums(backup_id)
            integrity = "ok" if not errors else "; ".join(errors)
        print(f"{backup_id}\t{records}\t{integrity}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging()
    return list_backups(verify=args.verify)


if __name__ == "__main__":
    sys.exit(main())
