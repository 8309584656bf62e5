from __future__ import annotations

from pathlib import Path

import pytest

from cronshift.core.errors import DeploymentConfigError
from cronshift.services.deployment_config import (
    cron_jobs,
    is_valid_shape,
    load_deployment_config,
    restore_from_backup,
    write_safety_copy,
)
from cronshift.tests.utils.project import write_deployment_config


def test_load_and_count_cron_jobs(tmp_path: Path) -> None:
    config = load_deployment_config(write_deployment_config(tmp_path, cron_count=3))
    assert is_valid_shape(config)
    assert len(cron_jobs(config)) == 3


def test_invalid_configs(tmp_path: Path) -> None:
    path = tmp_path / "vercel.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(DeploymentConfigError, match="Invalid JSON"):
        load_deployment_config(path)
    with pytest.raises(DeploymentConfigError, match="Failed to read"):
        load_deployment_config(tmp_path / "missing.json")
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(DeploymentConfigError, match="must be a JSON object"):
        load_deployment_config(path)
    assert not is_valid_shape({"crons": "daily"})
    assert cron_jobs({"functions": {}}) == []


def test_safety_copy_then_restore(tmp_path: Path) -> None:
    live = write_deployment_config(tmp_path, cron_count=7)
    backup = tmp_path / "backup.json"
    backup.write_text('{"crons": [{"path": "/api/a", "schedule": "0 1 * * *"}]}', encoding="utf-8")

    safety = write_safety_copy(live, "2026-10-19T08-00-00-000Z")
    restore_from_backup(backup, live)

    assert safety is not None
    assert safety.name == "vercel.json.rollback-2026-10-19T08-00-00-000Z"
    assert len(cron_jobs(load_deployment_config(safety))) == 7
    assert live.read_bytes() == backup.read_bytes()


def test_safety_copy_skipped_without_live_config(tmp_path: Path) -> None:
    assert write_safety_copy(tmp_path / "vercel.json", "ts") is None
    with pytest.raises(DeploymentConfigError):
        restore_from_backup(tmp_path / "missing.json", tmp_path / "vercel.json")
