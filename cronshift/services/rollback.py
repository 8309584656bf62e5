from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import time

from cronshift.core.config import Settings, missing_required_env
from cronshift.core.errors import (
    BackupError,
    BackupIntegrityError,
    ConfigurationError,
    DataStoreError,
    DeploymentConfigError,
    NotificationError,
    RollbackFailedError,
    StepFailedError,
)
from cronshift.domain.state import RollbackConfig, RollbackResult, RunContext
from cronshift.services.backup import BackupStore
from cronshift.services.datastore import DataStore
from cronshift.services.deployment_config import (
    is_valid_shape,
    load_deployment_config,
    restore_from_backup,
    write_safety_copy,
)
from cronshift.services.executor import Step, critical_success, run_steps
from cronshift.services.notifications import NotificationGateway
from cronshift.services.reports import NOTIFICATION_SUBJECT, render_notification_email, render_rollback_report


logger = logging.getLogger(__name__)


class MigrationRollback:
    """Restores the pre-migration deployment config and tracked tables from a backup.

    Critical steps abort the run unless ``force`` is set. Overall success only
    considers critical steps, so a failed notification never fails a rollback.
    A rollback log is written whether the run succeeds or aborts.
    """

    def __init__(
        self,
        config: RollbackConfig,
        *,
        settings: Settings,
        datastore: DataStore,
        backups: BackupStore,
        notifier: NotificationGateway | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.datastore = datastore
        self.backups = backups
        self.notifier = notifier or NotificationGateway(settings)
        self.context = RunContext(
            timestamp=config.timestamp,
            force=config.force,
            notify=config.notify,
            backup_id=config.backup_id,
        )
        self.result = RollbackResult()
        self.report: str | None = None
        self._started = time.monotonic()

    def steps(self) -> list[Step]:
        return [
            Step(
                "validate-backup",
                "Validate the backup to restore",
                self._validate_backup,
                self._check_backup_integrity,
                critical=True,
            ),
            Step(
                "stop-current-system",
                "Stop the current system",
                self._stop_current_system,
                self._verify_system_stopped,
                critical=False,
            ),
            Step(
                "restore-vercel-config",
                "Restore the deployment configuration",
                self._restore_deployment_config,
                self._validate_deployment_config,
                critical=True,
            ),
            Step(
                "restore-database",
                "Restore tracked tables",
                self._restore_database,
                self._validate_database_restore,
                critical=True,
            ),
            Step(
                "verify-system-health",
                "Verify the restored system",
                self._verify_system_health,
                self._check_system_health,
                critical=True,
            ),
            Step(
                "send-notifications",
                "Send emergency notifications",
                self._send_notifications,
                self._verify_notifications_sent,
                critical=False,
            ),
        ]

    def _snapshot_result(self, *, success: bool) -> RollbackResult:
        ctx = self.context
        return RollbackResult(
            success=success,
            steps=list(ctx.steps),
            total_duration=time.monotonic() - self._started,
            errors=list(ctx.errors),
        )

    async def execute(self) -> RollbackResult:
        config = self.config
        logger.info(
            "rollback_started timestamp=%s backup_id=%s force=%s notify=%s",
            config.timestamp,
            config.backup_id,
            config.force,
            config.notify,
        )
        self._started = time.monotonic()
        steps = self.steps()
        try:
            await run_steps(steps, self.context, force=config.force)
        except StepFailedError as exc:
            self.result = self._snapshot_result(success=False)
            self.result.errors.append(f"Rollback failed: {exc}")
            self._persist_log()
            self.report = self._render()
            logger.error("rollback_failed step=%s error=%s", exc.step, exc)
            raise RollbackFailedError(exc.step, f"Rollback failed: {exc}") from exc

        self.result = self._snapshot_result(success=critical_success(steps, self.context.steps))
        self._persist_log()
        self.report = self._render()
        log = logger.info if self.result.success else logger.warning
        log(
            "rollback_completed success=%s duration_s=%.2f errors=%s",
            self.result.success,
            self.result.total_duration,
            len(self.result.errors),
        )
        return self.result

    def _render(self) -> str:
        return render_rollback_report(
            self.config,
            self.result,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )

    def _persist_log(self) -> Path | None:
        # Best effort: a log write failure never changes the rollback outcome.
        log_path = self.settings.resolve(self.settings.rollback_log_dir) / f"rollback-{self.config.timestamp}.json"
        payload = {
            "config": self.config.to_dict(),
            "result": self.result.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("rollback_log_write_failed path=%s", log_path, exc_info=exc)
            return None
        logger.info("rollback_log_saved path=%s", log_path)
        return log_path

    # Step 1

    async def _validate_backup(self, ctx: RunContext) -> None:
        self.backups.ensure_complete(self.config.backup_id)
        logger.info("backup_present backup_id=%s", self.config.backup_id)

    async def _check_backup_integrity(self, ctx: RunContext) -> bool:
        errors = self.backups.verify_checksums(self.config.backup_id)
        if not errors:
            return True
        if ctx.force:
            logger.warning("backup_integrity_ignored errors=%s", "; ".join(errors))
            return True
        raise BackupIntegrityError(f"Backup integrity check failed: {'; '.join(errors)}")

    # Step 2

    async def _stop_current_system(self, ctx: RunContext) -> None:
        # Simulated stop; scheduled jobs are disabled by the config restore below.
        await asyncio.sleep(self.settings.stop_delay_seconds)

    async def _verify_system_stopped(self, ctx: RunContext) -> bool:
        return True

    # Step 3

    def _live_config_path(self) -> Path:
        return self.settings.resolve(self.settings.deployment_config_file)

    async def _restore_deployment_config(self, ctx: RunContext) -> None:
        live_path = self._live_config_path()
        try:
            write_safety_copy(live_path, ctx.timestamp)
        except DeploymentConfigError as exc:
            logger.warning("deployment_config_safety_copy_failed path=%s", live_path, exc_info=exc)
        backup_copy = self.backups.backup_path(self.config.backup_id) / self.backups.config_file
        restore_from_backup(backup_copy, live_path)

    async def _validate_deployment_config(self, ctx: RunContext) -> bool:
        try:
            config = load_deployment_config(self._live_config_path())
        except DeploymentConfigError as exc:
            logger.error("deployment_config_invalid", exc_info=exc)
            return False
        if not is_valid_shape(config):
            logger.error("deployment_config_invalid reason=missing_crons_array")
            return False
        return True

    # Step 4

    def _snapshot_live_rows(self, table: str, rows: list[dict]) -> None:
        path = self.settings.resolve(self.settings.rollback_backup_dir) / f"{table}-{self.config.timestamp}.json"
        payload = {"table": table, "timestamp": self.config.timestamp, "data": rows}
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    async def _restore_table(self, table: str) -> int:
        rows = self.backups.load_table_dump(self.config.backup_id, table)
        if not rows:
            logger.info("restore_table_skipped table=%s reason=empty_dump", table)
            return 0
        try:
            current = await self.datastore.fetch_rows(table)
            if current:
                self._snapshot_live_rows(table, current)
        except (DataStoreError, OSError) as exc:
            logger.warning("restore_snapshot_failed table=%s", table, exc_info=exc)
        restored = await self.datastore.replace_rows(table, rows, identity="id")
        logger.info("restore_table_completed table=%s rows=%s", table, restored)
        return restored

    async def _restore_database(self, ctx: RunContext) -> None:
        for table in self.settings.tracked_table_names():
            try:
                await self._restore_table(table)
            except (DataStoreError, BackupError) as exc:
                logger.warning("restore_table_failed table=%s", table, exc_info=exc)
                if not ctx.force:
                    raise
                ctx.errors.append(str(exc))

    async def _validate_database_restore(self, ctx: RunContext) -> bool:
        try:
            await self.datastore.ping()
        except DataStoreError as exc:
            logger.error("database_validation_failed", exc_info=exc)
            return False
        return True

    # Step 5

    async def _verify_system_health(self, ctx: RunContext) -> None:
        await self.datastore.ping()
        for endpoint in self.settings.endpoint_files():
            if not self.settings.resolve(endpoint).exists():
                raise DeploymentConfigError(f"API route missing: {endpoint}")
        missing = missing_required_env(self.settings)
        if missing:
            raise ConfigurationError(f"Required environment variable missing: {missing[0]}")

    async def _check_system_health(self, ctx: RunContext) -> bool:
        try:
            await self._verify_system_health(ctx)
        except (DataStoreError, DeploymentConfigError, ConfigurationError) as exc:
            logger.error("system_health_check_failed error=%s", exc)
            return False
        return True

    # Step 6

    async def _send_notifications(self, ctx: RunContext) -> None:
        if not ctx.notify:
            return
        if not self.notifier.is_configured():
            logger.warning("SendGrid not configured, skipping notifications")
            return
        interim = self._snapshot_result(success=critical_success(self.steps(), ctx.steps))
        html = render_notification_email(
            self.config,
            interim,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )
        result = await self.notifier.send_email(subject=NOTIFICATION_SUBJECT, html=html)
        if result.sent:
            logger.info("emergency_notification_sent")
            return
        if ctx.force:
            logger.warning("emergency_notification_failed message=%s", result.message)
            return
        raise NotificationError(f"Failed to send notification: {result.message}")

    async def _verify_notifications_sent(self, ctx: RunContext) -> bool:
        return True
