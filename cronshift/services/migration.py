from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import time
from typing import Awaitable, Callable

from cronshift.core.config import Settings, missing_required_env, required_env_names
from cronshift.core.errors import (
    BackupError,
    DataStoreError,
    DeploymentConfigError,
    MigrationFailedError,
    StepFailedError,
)
from cronshift.domain.state import HealthStatus, MigrationConfig, RunContext
from cronshift.services.backup import BackupStore
from cronshift.services.datastore import DataStore
from cronshift.services.degradation import (
    DegradationManager,
    DegradationThresholds,
    ServiceLevel,
    SystemMetrics,
    collect_process_metrics,
)
from cronshift.services.deployment_config import cron_jobs, load_deployment_config, restore_from_backup
from cronshift.services.executor import Step, run_steps
from cronshift.services.fallback import workflow_presence
from cronshift.services.reports import render_migration_report


logger = logging.getLogger(__name__)

BackupCreator = Callable[[], Awaitable[str | None]]
MetricsProvider = Callable[[], SystemMetrics]


class MigrationDeployer:
    """Forward migration: five fixed phases over one RunContext.

    Every phase is critical. A phase whose validation fails triggers its
    rollback hook (only ``deploy-new-system`` has one) and aborts the run with
    MigrationFailedError; later phases never execute.
    """

    # Simulated workload timed by the post-migration performance check.
    performance_sample_seconds = 0.1

    def __init__(
        self,
        config: MigrationConfig,
        *,
        settings: Settings,
        datastore: DataStore,
        backups: BackupStore,
        backup_creator: BackupCreator | None = None,
        degradation: DegradationManager | None = None,
        metrics_provider: MetricsProvider | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.datastore = datastore
        self.backups = backups
        self._backup_creator = backup_creator or self._create_snapshot
        self._degradation = degradation
        self._metrics_provider = metrics_provider or collect_process_metrics
        self.context = RunContext(
            timestamp=config.timestamp,
            dry_run=config.dry_run,
            backup_id=config.backup_id,
        )
        self.report: str | None = None

    def phases(self) -> list[Step]:
        return [
            Step(
                "pre-migration-validation",
                "Validate the current system before migrating",
                self._pre_migration_validation,
                self._validate_pre_migration,
            ),
            Step(
                "backup-creation",
                "Create the safety backup",
                self._create_migration_backup,
                self._validate_backup,
            ),
            Step(
                "deploy-new-system",
                "Deploy the optimized scheduling system",
                self._deploy_new_system,
                self._validate_new_system,
                rollback=self._rollback_new_system,
            ),
            Step(
                "health-checks",
                "Post-migration health checks",
                self._run_health_checks,
                self._validate_health_checks,
            ),
            Step(
                "cleanup",
                "Persist the migration log",
                self._cleanup,
                self._validate_cleanup,
            ),
        ]

    async def execute(self) -> RunContext:
        ctx = self.context
        phases = self.phases()
        mode = "dry_run" if ctx.dry_run else "production"
        logger.info("migration_started timestamp=%s mode=%s backup_id=%s", ctx.timestamp, mode, ctx.backup_id)
        started = time.monotonic()
        try:
            await run_steps(phases, ctx)
        except StepFailedError as exc:
            self.report = self._render(phases)
            logger.error("migration_failed phase=%s error=%s", exc.step, exc)
            logger.info("migration_report\n%s", self.report)
            raise MigrationFailedError(exc.step) from exc
        self.report = self._render(phases)
        logger.info("migration_completed duration_s=%.2f", time.monotonic() - started)
        logger.info("migration_report\n%s", self.report)
        return ctx

    def _render(self, phases: list[Step]) -> str:
        return render_migration_report(
            self.context,
            self.config,
            phases,
            generated_at=datetime.now(timezone.utc).isoformat(),
        )

    def _path(self, relative: str) -> Path:
        return self.settings.resolve(relative)

    # Phase 1

    async def _pre_migration_validation(self, ctx: RunContext) -> None:
        ctx.mark_phase()
        self._check_deployment_config(ctx)
        await self._check_database(ctx)
        for endpoint in self.settings.endpoint_files():
            route = Path(endpoint).parent.name
            if self._path(endpoint).exists():
                ctx.record(f"api-route-{route}", HealthStatus.PASS, f"API route exists: {endpoint}")
            else:
                ctx.record(f"api-route-{route}", HealthStatus.FAIL, f"API route missing: {endpoint}")
        names = required_env_names(include_notifications=True)
        missing = set(missing_required_env(self.settings, names))
        for name in names:
            if name in missing:
                ctx.record(f"env-{name.lower()}", HealthStatus.FAIL, f"{name} is missing")
            else:
                ctx.record(f"env-{name.lower()}", HealthStatus.PASS, f"{name} is set")

    def _check_deployment_config(self, ctx: RunContext) -> None:
        config_file = self.settings.deployment_config_file
        try:
            config = load_deployment_config(self._path(config_file))
        except DeploymentConfigError as exc:
            ctx.record("vercel-config", HealthStatus.FAIL, f"Failed to read {config_file}: {exc}")
            return
        jobs = cron_jobs(config)
        expected = self.settings.expected_cron_jobs
        status = HealthStatus.PASS if len(jobs) == expected else HealthStatus.FAIL
        ctx.record(
            "vercel-config",
            status,
            f"Current {config_file} has {len(jobs)} cron jobs (expected {expected})",
            {"crons": jobs},
        )

    async def _check_database(self, ctx: RunContext) -> None:
        try:
            await self.datastore.ping()
        except DataStoreError as exc:
            ctx.record("database-connection", HealthStatus.FAIL, str(exc))
            return
        ctx.record("database-connection", HealthStatus.PASS, "Database connection successful")

    async def _validate_pre_migration(self, ctx: RunContext) -> bool:
        return not any(check.status == HealthStatus.FAIL for check in ctx.phase_checks())

    # Phase 2

    async def _create_snapshot(self) -> str:
        return await self.backups.create_snapshot(
            self.datastore,
            self.settings.tracked_table_names(),
            self.config.timestamp,
        )

    async def _create_migration_backup(self, ctx: RunContext) -> None:
        if ctx.backup_id:
            logger.info("backup_reused backup_id=%s", ctx.backup_id)
            return
        if ctx.dry_run:
            logger.info("backup_skipped reason=dry_run")
            return
        backup_id = await self._backup_creator()
        # Creators that return nothing fall back to the newest snapshot on disk.
        ctx.backup_id = backup_id or self.backups.latest_backup_id()

    async def _validate_backup(self, ctx: RunContext) -> bool:
        if not ctx.backup_id:
            return ctx.dry_run
        try:
            metadata = self.backups.load_metadata(ctx.backup_id)
        except BackupError as exc:
            ctx.record("backup-validation", HealthStatus.FAIL, f"Backup validation failed: {exc}")
            return False
        ctx.record(
            "backup-validation",
            HealthStatus.PASS,
            f"Backup validated: {ctx.backup_id}",
            {"timestamp": metadata.timestamp, "totalRecords": metadata.record_count()},
        )
        return True

    # Phase 3

    async def _deploy_new_system(self, ctx: RunContext) -> None:
        if ctx.dry_run:
            logger.info("deploy_skipped reason=dry_run")
            return
        for component in self.settings.component_files():
            name = f"component-{Path(component).stem}"
            if self._path(component).exists():
                ctx.record(name, HealthStatus.PASS, f"Component exists: {component}")
            else:
                ctx.record(name, HealthStatus.FAIL, f"Component missing: {component}")

    async def _validate_new_system(self, ctx: RunContext) -> bool:
        for endpoint in self.settings.endpoint_files():
            name = f"new-system-api-{Path(endpoint).parent.name}"
            if self._path(endpoint).exists():
                ctx.record(name, HealthStatus.PASS, f"API route validated: {endpoint}")
            else:
                ctx.record(name, HealthStatus.FAIL, f"API route test failed: {endpoint} not found")
        new_system_checks = (
            ("new-system-vercel-monitoring", self.settings.usage_monitor_file, "Usage monitoring"),
            ("new-system-cache", self.settings.cache_strategy_file, "Cache system"),
        )
        for name, relative, label in new_system_checks:
            if self._path(relative).exists():
                ctx.record(name, HealthStatus.PASS, f"{label} available")
            else:
                ctx.record(name, HealthStatus.FAIL, f"{label} test failed: {relative} not found")
        return not any(check.status == HealthStatus.FAIL for check in ctx.with_prefix("new-system-"))

    async def _rollback_new_system(self, ctx: RunContext) -> None:
        if not ctx.backup_id:
            raise BackupError("No backup ID available for rollback")
        config_file = self.settings.deployment_config_file
        restore_from_backup(self.backups.backup_path(ctx.backup_id) / config_file, self._path(config_file))

    # Phase 4

    async def _run_health_checks(self, ctx: RunContext) -> None:
        await self._check_database(ctx)
        self._check_usage_metrics(ctx)
        self._check_fallback_workflows(ctx)
        await self._check_performance(ctx)
        await self._check_degradation(ctx)

    def _check_usage_metrics(self, ctx: RunContext) -> None:
        try:
            config = load_deployment_config(self._path(self.settings.deployment_config_file))
        except DeploymentConfigError as exc:
            ctx.record("post-migration-vercel-metrics", HealthStatus.FAIL, f"Usage metrics check failed: {exc}")
            return
        ctx.record(
            "post-migration-vercel-metrics",
            HealthStatus.PASS,
            "Usage metrics check passed",
            {"cronJobs": len(cron_jobs(config)), "estimatedUsage": "< 80% of limits"},
        )

    def _check_fallback_workflows(self, ctx: RunContext) -> None:
        workflows = self.settings.fallback_workflow_files()
        presence = workflow_presence(self.settings.root_path(), workflows)
        for workflow in workflows:
            stem = Path(workflow).stem
            if presence[stem]:
                ctx.record(f"fallback-{stem}", HealthStatus.PASS, f"Fallback workflow exists: {workflow}")
            else:
                ctx.record(f"fallback-{stem}", HealthStatus.WARNING, f"Fallback workflow missing: {workflow}")

    async def _check_performance(self, ctx: RunContext) -> None:
        started = time.monotonic()
        await asyncio.sleep(self.performance_sample_seconds)
        duration_ms = int((time.monotonic() - started) * 1000)
        budget = self.settings.performance_check_budget_ms
        ctx.record(
            "post-migration-performance",
            HealthStatus.PASS if duration_ms < budget else HealthStatus.WARNING,
            f"Performance check completed in {duration_ms}ms",
            {"duration": duration_ms},
        )

    async def _check_degradation(self, ctx: RunContext) -> None:
        manager = self._degradation or DegradationManager(
            DegradationThresholds.from_settings(self.settings),
            datastore=self.datastore,
        )
        metrics = self._metrics_provider()
        level = manager.assess_system_load(metrics)
        if level != ServiceLevel.FULL:
            await manager.activate_degradation(level)
        details = {"level": level.value, "metrics": metrics.to_dict()}
        if level == ServiceLevel.FULL:
            ctx.record("post-migration-degradation", HealthStatus.PASS, "Service level full", details)
            return
        ctx.record(
            "post-migration-degradation",
            HealthStatus.WARNING,
            f"Service level {level.value}: {manager.degradation_reason(metrics)}",
            details,
        )

    async def _validate_health_checks(self, ctx: RunContext) -> bool:
        checks = ctx.with_prefix("post-migration-", "fallback-")
        warnings = [check.name for check in checks if check.status == HealthStatus.WARNING]
        if warnings:
            logger.warning("health_check_warnings checks=%s", ",".join(warnings))
        return not any(check.status == HealthStatus.FAIL for check in checks)

    # Phase 5

    async def _cleanup(self, ctx: RunContext) -> None:
        if ctx.dry_run:
            return
        log_path = self._path(self.settings.migration_log_dir) / f"migration-{ctx.timestamp}.json"
        payload = {
            "timestamp": ctx.timestamp,
            "backupId": ctx.backup_id,
            "dryRun": ctx.dry_run,
            "healthChecks": [check.to_dict() for check in ctx.health_checks],
            "success": not ctx.failed(),
        }
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            ctx.record("cleanup-documentation", HealthStatus.WARNING, f"Failed to save migration log: {exc}")
            return
        ctx.record("cleanup-documentation", HealthStatus.PASS, f"Migration log saved: {log_path}")

    async def _validate_cleanup(self, ctx: RunContext) -> bool:
        return True
