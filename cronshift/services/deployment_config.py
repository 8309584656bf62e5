from __future__ import annotations

import json
import logging
from pathlib import Path
import shutil
from typing import Any

from cronshift.core.errors import DeploymentConfigError


logger = logging.getLogger(__name__)


def load_deployment_config(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise DeploymentConfigError(f"Failed to read {path}: {exc}") from exc
    except ValueError as exc:
        raise DeploymentConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise DeploymentConfigError(f"Deployment config {path} must be a JSON object")
    return payload


def is_valid_shape(config: Any) -> bool:
    return isinstance(config, dict) and isinstance(config.get("crons"), list)


def cron_jobs(config: dict[str, Any]) -> list[Any]:
    crons = config.get("crons")
    return list(crons) if isinstance(crons, list) else []


def write_safety_copy(live_path: Path, timestamp: str) -> Path | None:
    # Keep the config being replaced next to it as <name>.rollback-<timestamp>.
    live_path = Path(live_path)
    if not live_path.exists():
        return None
    target = live_path.with_name(f"{live_path.name}.rollback-{timestamp}")
    try:
        shutil.copyfile(live_path, target)
    except OSError as exc:
        raise DeploymentConfigError(f"Failed to write safety copy {target}: {exc}") from exc
    logger.info("deployment_config_safety_copy path=%s", target)
    return target


def restore_from_backup(backup_path: Path, live_path: Path) -> None:
    try:
        shutil.copyfile(backup_path, live_path)
    except OSError as exc:
        raise DeploymentConfigError(f"Failed to restore {live_path} from {backup_path}: {exc}") from exc
    logger.info("deployment_config_restored source=%s target=%s", backup_path, live_path)
