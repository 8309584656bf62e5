from __future__ import annotations

import pytest

from cronshift.core.config import get_settings
from cronshift.services.backup import BackupStore
from scripts import list_backups as list_backups_script
from scripts import migration_backup as migration_backup_script
from scripts import migration_deploy as migration_deploy_script
from scripts import migration_rollback as migration_rollback_script


BACKUP_ID = "2026-10-18T09-00-00-000Z"


@pytest.mark.asyncio
async def test_rollback_without_backup_id_lists_backups(settings, project, seeded_datastore, capsys) -> None:
    await BackupStore.from_settings(settings).create_snapshot(
        seeded_datastore, settings.tracked_table_names(), BACKUP_ID
    )

    code = await migration_rollback_script.run_rollback(
        backup_id=None, force=False, notify=False, settings=settings, datastore=seeded_datastore
    )

    err = capsys.readouterr().err
    assert code == 1
    assert migration_rollback_script.USAGE in err
    assert f"  - {BACKUP_ID}" in err


@pytest.mark.asyncio
async def test_rollback_requires_core_env(settings, project, seeded_datastore, monkeypatch, capsys) -> None:
    monkeypatch.delenv("DATABASE_SERVICE_KEY")
    get_settings.cache_clear()

    code = await migration_rollback_script.run_rollback(
        backup_id=BACKUP_ID, force=False, notify=False, settings=get_settings(), datastore=seeded_datastore
    )

    assert code == 1
    assert "Missing required environment variables: DATABASE_SERVICE_KEY" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_rollback_exit_codes(settings, project, seeded_datastore, capsys) -> None:
    await BackupStore.from_settings(settings).create_snapshot(
        seeded_datastore, settings.tracked_table_names(), BACKUP_ID
    )

    ok = await migration_rollback_script.run_rollback(
        backup_id=BACKUP_ID, force=False, notify=False, settings=settings, datastore=seeded_datastore
    )
    missing = await migration_rollback_script.run_rollback(
        backup_id="does-not-exist", force=False, notify=False, settings=settings, datastore=seeded_datastore
    )

    captured = capsys.readouterr()
    assert ok == 0
    assert missing == 1
    assert "# Emergency Rollback Report" in captured.out
    assert "Rollback failed: Backup directory not found" in captured.err


@pytest.mark.asyncio
async def test_migrate_missing_env_exits_before_any_phase(settings, project, monkeypatch, capsys) -> None:
    monkeypatch.delenv("DATABASE_URL")
    get_settings.cache_clear()

    code = await migration_deploy_script.run_migration(dry_run=True, backup_id=None, settings=get_settings())

    assert code == 1
    assert "DATABASE_URL" in capsys.readouterr().err
    assert not (project / "migration-logs").exists()


@pytest.mark.asyncio
async def test_migrate_dry_run_prints_report(settings, project, seeded_datastore, capsys) -> None:
    code = await migration_deploy_script.run_migration(
        dry_run=True, backup_id=None, settings=settings, datastore=seeded_datastore
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "# Migration Report" in out
    assert "**Mode:** Dry Run" in out


@pytest.mark.asyncio
async def test_migrate_failure_prints_report_and_exits_1(settings, project, seeded_datastore, capsys) -> None:
    (project / "src/app/api/audit-complete/route.ts").unlink()

    code = await migration_deploy_script.run_migration(
        dry_run=False, backup_id=None, settings=settings, datastore=seeded_datastore
    )

    captured = capsys.readouterr()
    assert code == 1
    assert "## Rollback Instructions" in captured.out
    assert "Migration failed at phase: pre-migration-validation" in captured.err


@pytest.mark.asyncio
async def test_backup_script_prints_summary(settings, project, seeded_datastore, capsys) -> None:
    code = await migration_backup_script.run_backup(settings=settings, datastore=seeded_datastore)

    out = capsys.readouterr().out
    assert code == 0
    assert "total_records=8" in out
    assert len(BackupStore.from_settings(settings).list_backup_ids()) == 1


@pytest.mark.asyncio
async def test_list_backups_verify(settings, project, seeded_datastore, capsys) -> None:
    assert list_backups_script.list_backups(verify=True) == 1

    store = BackupStore.from_settings(settings)
    await store.create_snapshot(seeded_datastore, settings.tracked_table_names(), BACKUP_ID)
    dump = store.backup_path(BACKUP_ID) / "database" / "scanned_links.json"
    dump.write_text("{}", encoding="utf-8")

    assert list_backups_script.list_backups(verify=True) == 0
    out = capsys.readouterr().out
    assert f"{BACKUP_ID}\t8\tchecksum mismatch for scanned_links" in out


def test_parsers_accept_documented_flags() -> None:
    args = migration_deploy_script._build_parser().parse_args(["--dry-run", "--backup-id=2026-10-18T09-00-00-000Z"])
    assert args.dry_run is True
    assert args.backup_id == BACKUP_ID

    args = migration_rollback_script._build_parser().parse_args([BACKUP_ID, "--force", "--notify"])
    assert (args.backup_id, args.force, args.notify) == (BACKUP_ID, True, True)


def test_list_backups_main_configures_logging(settings, project, monkeypatch, capsys) -> None:
    calls: list[None] = []
    monkeypatch.setattr(list_backups_script, "configure_logging", lambda: calls.append(None))
    (project / "backups" / "migration-pre-release").mkdir(parents=True)

    assert list_backups_script.main([]) == 0

    assert calls == [None]
    assert "pre-release\t?\t-" in capsys.readouterr().out
