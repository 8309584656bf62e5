from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Iterable

from cronshift.core.config import Settings
from cronshift.core.errors import BackupError, BackupNotFoundError, DataStoreError
from cronshift.services.datastore import DataStore
from cronshift.services.reports import render_backup_report


logger = logging.getLogger(__name__)

METADATA_FILENAME = "backup-metadata.json"
DATABASE_DIRNAME = "database"
SCHEMA_FILENAME = "schema-snapshot.json"
REPORT_FILENAME = "BACKUP_REPORT.md"
SCHEMA_CHECKSUM_KEY = "schema"
METADATA_VERSION = "1.0.0"
# Snapshots written before the algorithm was recorded used md5.
LEGACY_CHECKSUM_ALGORITHM = "md5"


def checksum(content: bytes, algorithm: str) -> str:
    # Same digest on creation and verification so results are deterministic.
    digest = hashlib.new(algorithm)
    digest.update(content)
    return digest.hexdigest()


def _dump_json(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


@dataclass
class BackupMetadata:
    # Mirrors backup-metadata.json; keys stay camelCase on disk.
    timestamp: str
    version: str = METADATA_VERSION
    vercel_config: Any = None
    database_tables: list[str] = field(default_factory=list)
    total_records: dict[str, int] = field(default_factory=dict)
    backup_size: dict[str, int] = field(default_factory=dict)
    checksums: dict[str, str] = field(default_factory=dict)
    checksum_algorithm: str = LEGACY_CHECKSUM_ALGORITHM

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "version": self.version,
            "vercelConfig": self.vercel_config,
            "databaseTables": list(self.database_tables),
            "totalRecords": dict(self.total_records),
            "backupSize": dict(self.backup_size),
            "checksums": dict(self.checksums),
            "checksumAlgorithm": self.checksum_algorithm,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BackupMetadata":
        return cls(
            timestamp=str(payload.get("timestamp", "")),
            version=str(payload.get("version", METADATA_VERSION)),
            vercel_config=payload.get("vercelConfig"),
            database_tables=list(payload.get("databaseTables") or []),
            total_records={key: int(value) for key, value in (payload.get("totalRecords") or {}).items()},
            backup_size={key: int(value) for key, value in (payload.get("backupSize") or {}).items()},
            checksums=dict(payload.get("checksums") or {}),
            checksum_algorithm=payload.get("checksumAlgorithm") or LEGACY_CHECKSUM_ALGORITHM,
        )

    def record_count(self) -> int:
        return sum(self.total_records.values())

    def total_size(self) -> int:
        return sum(self.backup_size.values())


class BackupStore:
    """Local snapshot directories named ``<prefix><timestamp>`` under ``backup_dir``."""

    def __init__(
        self,
        root: Path,
        backup_dir: str = "backups",
        prefix: str = "migration-",
        config_file: str = "vercel.json",
        algorithm: str = "sha256",
    ) -> None:
        self._root = Path(root)
        self._base_dir = self._root / backup_dir
        self._prefix = prefix
        self._config_file = config_file
        self._algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackupStore":
        return cls(
            settings.root_path(),
            settings.backup_dir,
            settings.backup_prefix,
            settings.deployment_config_file,
            settings.backup_checksum_algorithm,
        )

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def config_file(self) -> str:
        return self._config_file

    def backup_path(self, backup_id: str) -> Path:
        return self._base_dir / f"{self._prefix}{backup_id}"

    def list_backup_ids(self) -> list[str]:
        if not self._base_dir.is_dir():
            return []
        ids = [
            entry.name[len(self._prefix):]
            for entry in self._base_dir.iterdir()
            if entry.is_dir() and entry.name.startswith(self._prefix)
        ]
        return sorted(ids)

    def latest_backup_id(self) -> str | None:
        ids = self.list_backup_ids()
        return ids[-1] if ids else None

    def required_members_missing(self, backup_id: str) -> list[str]:
        path = self.backup_path(backup_id)
        required = (self._config_file, METADATA_FILENAME, DATABASE_DIRNAME)
        return [member for member in required if not (path / member).exists()]

    def ensure_complete(self, backup_id: str) -> Path:
        # Raise with the first problem found so operators can fix it directly.
        path = self.backup_path(backup_id)
        if not path.is_dir():
            raise BackupNotFoundError(f"Backup directory not found: {path}")
        missing = self.required_members_missing(backup_id)
        if missing:
            raise BackupNotFoundError(f"Required backup file missing: {missing[0]}")
        return path

    def load_metadata(self, backup_id: str) -> BackupMetadata:
        path = self.backup_path(backup_id) / METADATA_FILENAME
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise BackupError(f"Failed to read backup metadata: {exc}") from exc
        if not isinstance(payload, dict):
            raise BackupError("Failed to read backup metadata: not a JSON object")
        return BackupMetadata.from_dict(payload)

    def member_path(self, backup_id: str, checksum_key: str) -> Path:
        path = self.backup_path(backup_id)
        if checksum_key == self._config_file:
            return path / checksum_key
        if checksum_key == SCHEMA_CHECKSUM_KEY:
            return path / DATABASE_DIRNAME / SCHEMA_FILENAME
        return path / DATABASE_DIRNAME / f"{checksum_key}.json"

    def verify_checksums(self, backup_id: str) -> list[str]:
        # Read-only: repeated calls on an unchanged backup return the same errors.
        errors: list[str] = []
        try:
            metadata = self.load_metadata(backup_id)
        except BackupError as exc:
            return [str(exc)]
        for key, expected in sorted(metadata.checksums.items()):
            member = self.member_path(backup_id, key)
            try:
                actual = checksum(member.read_bytes(), metadata.checksum_algorithm)
            except OSError:
                errors.append(f"missing artifact: {key}")
                continue
            except ValueError as exc:
                errors.append(f"unsupported checksum algorithm for {key}: {exc}")
                continue
            if actual != expected:
                errors.append(f"checksum mismatch for {key}")
        return errors

    def load_table_dump(self, backup_id: str, table: str) -> list[dict[str, Any]]:
        path = self.backup_path(backup_id) / DATABASE_DIRNAME / f"{table}.json"
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise BackupError(f"Failed to read table dump {table}: {exc}") from exc
        rows = payload.get("data") if isinstance(payload, dict) else None
        return list(rows or [])

    async def create_snapshot(
        self,
        datastore: DataStore,
        tables: Iterable[str],
        timestamp: str,
    ) -> str:
        """Write a complete snapshot and return its backup id (the timestamp).

        Layout: the deployment config copy, one JSON dump per table plus a
        schema snapshot under ``database/``, metadata with checksums, and a
        markdown report.
        """
        backup_path = self.backup_path(timestamp)
        database_path = backup_path / DATABASE_DIRNAME
        try:
            database_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to create backup directory: {exc}") from exc
        logger.info("backup_started backup_id=%s path=%s", timestamp, backup_path)

        metadata = BackupMetadata(timestamp=timestamp, checksum_algorithm=self._algorithm)
        config_source = self._root / self._config_file
        try:
            raw_config = config_source.read_bytes()
            metadata.vercel_config = json.loads(raw_config)
        except (OSError, ValueError) as exc:
            raise BackupError(f"Failed to backup {self._config_file}: {exc}") from exc
        (backup_path / self._config_file).write_bytes(raw_config)
        metadata.checksums[self._config_file] = checksum(raw_config, self._algorithm)
        metadata.backup_size[self._config_file] = len(raw_config)

        table_names = list(tables)
        metadata.database_tables = table_names
        exported = 0
        for table in table_names:
            try:
                rows = await datastore.fetch_rows(table)
            except DataStoreError as exc:
                logger.warning("backup_table_export_failed table=%s", table, exc_info=exc)
                continue
            content = _dump_json({"table": table, "timestamp": timestamp, "count": len(rows), "data": rows})
            (database_path / f"{table}.json").write_bytes(content)
            metadata.total_records[table] = len(rows)
            metadata.backup_size[table] = len(content)
            metadata.checksums[table] = checksum(content, self._algorithm)
            exported += 1
            logger.info("backup_table_exported table=%s records=%s", table, len(rows))
        if table_names and exported == 0:
            raise BackupError("No tracked table could be exported")

        schema = self._schema_snapshot(datastore, table_names, timestamp)
        schema_content = _dump_json(schema)
        (database_path / SCHEMA_FILENAME).write_bytes(schema_content)
        metadata.checksums[SCHEMA_CHECKSUM_KEY] = checksum(schema_content, self._algorithm)
        metadata.backup_size[SCHEMA_CHECKSUM_KEY] = len(schema_content)

        (backup_path / METADATA_FILENAME).write_bytes(_dump_json(metadata.to_dict()))
        generated_at = datetime.now(timezone.utc).isoformat()
        report = render_backup_report(metadata, backup_path, generated_at=generated_at)
        (backup_path / REPORT_FILENAME).write_text(report, encoding="utf-8")
        logger.info(
            "backup_completed backup_id=%s records=%s bytes=%s",
            timestamp,
            metadata.record_count(),
            metadata.total_size(),
        )
        return timestamp

    def _schema_snapshot(self, datastore: DataStore, tables: list[str], timestamp: str) -> dict[str, Any]:
        try:
            columns = {table: datastore.column_names(table) for table in tables}
        except DataStoreError as exc:
            logger.warning("backup_schema_fallback", exc_info=exc)
            return {"timestamp": timestamp, "note": "Fallback schema - table list only", "tables": tables}
        return {
            "timestamp": timestamp,
            "version": METADATA_VERSION,
            "tables": [{"name": table, "columns": columns[table]} for table in tables],
        }

