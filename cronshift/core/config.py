from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


# Tables exported into every migration backup and restored on rollback.
DEFAULT_TRACKED_TABLES = (
    "scanned_links,validation_results,applied_corrections,"
    "resource_requests,audit_history,link_health_metrics"
)


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "cronshift"
    log_level: str = "INFO"

    # Operational data store; both migration directions refuse to start without it.
    database_url: str | None = None
    # Service credential paired with the data store URL. Only its presence is
    # checked at startup; the engine authenticates with database_url alone.
    database_service_key: str | None = None

    # Transactional email API used for rollback notifications.
    sendgrid_api_key: str | None = None
    sendgrid_from_email: str | None = None
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    # Operator inbox; defaults to the verified sender when unset.
    notification_recipient: str | None = None
    notification_timeout_ms: int = 5000

    # Repository layout; relative paths resolve against project_root.
    project_root: str = "."
    deployment_config_file: str = "vercel.json"
    backup_dir: str = "backups"
    backup_prefix: str = "migration-"
    migration_log_dir: str = "migration-logs"
    rollback_log_dir: str = "rollback-logs"
    rollback_backup_dir: str = "rollback-backups"
    # Digest recorded in backup metadata and recomputed during rollback validation.
    backup_checksum_algorithm: str = "sha256"

    # Scheduled jobs the pre-migration deployment config must declare.
    expected_cron_jobs: int = 2
    tracked_tables: str = DEFAULT_TRACKED_TABLES
    required_endpoint_files: str = (
        "src/app/api/audit-complete/route.ts,src/app/api/maintenance-weekly/route.ts"
    )
    new_system_components: str = (
        "src/lib/vercel/usage-monitor.ts,src/lib/audit/cache-strategy.ts,"
        "src/lib/audit/task-queue.ts,src/lib/vercel/fallback-manager.ts,"
        "src/lib/vercel/degradation-manager.ts"
    )
    usage_monitor_file: str = "src/lib/vercel/usage-monitor.ts"
    cache_strategy_file: str = "src/lib/audit/cache-strategy.ts"
    fallback_workflows: str = (
        ".github/workflows/fallback-urgent-alerts.yml,"
        ".github/workflows/fallback-health-monitoring.yml,"
        ".github/workflows/fallback-emergency-maintenance.yml"
    )
    # Budget for the post-migration timing check.
    performance_check_budget_ms: int = 1000
    # Pause applied while the current system is stopped during rollback.
    stop_delay_seconds: float = 1.0

    # Centralize external call timeouts for integrations (ms).
    ext_call_timeout_ms: int = 8000
    # Retry transient integration failures for a bounded number of attempts.
    ext_retry_max_attempts: int = 2
    # Base backoff between retry attempts (ms), jittered per call.
    ext_retry_backoff_ms: int = 200
    # Circuit breaker thresholds for external integrations.
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_half_open_trials: int = 2
    # Prefix circuit breaker keys to isolate environments.
    cb_redis_prefix: str = "cronshift:cb"
    # Optional Redis so breaker state survives across one-shot runs.
    redis_url: str | None = None

    # Degradation thresholds; tune per deployment.
    degradation_memory_warning_mb: float = 400
    degradation_memory_critical_mb: float = 450
    degradation_cpu_warning_pct: float = 70
    degradation_cpu_critical_pct: float = 85
    degradation_error_rate_warning_pct: float = 5
    degradation_error_rate_critical_pct: float = 10

    # Fallback workflows dispatched through the GitHub Actions API.
    github_token: str | None = None
    github_repository: str | None = None
    github_api_url: str = "https://api.github.com"
    github_ref: str = "main"

    def root_path(self) -> Path:
        return Path(self.project_root)

    def resolve(self, relative: str) -> Path:
        path = Path(relative)
        if path.is_absolute():
            return path
        return self.root_path() / path

    def tracked_table_names(self) -> list[str]:
        return _split_csv(self.tracked_tables)

    def endpoint_files(self) -> list[str]:
        return _split_csv(self.required_endpoint_files)

    def component_files(self) -> list[str]:
        return _split_csv(self.new_system_components)

    def fallback_workflow_files(self) -> list[str]:
        return _split_csv(self.fallback_workflows)

    def notification_address(self) -> str | None:
        return self.notification_recipient or self.sendgrid_from_email


# Environment names are checked directly so operators see exactly which variable is absent.
CORE_REQUIRED_ENV = ["DATABASE_URL", "DATABASE_SERVICE_KEY"]
NOTIFICATION_REQUIRED_ENV = ["SENDGRID_API_KEY", "SENDGRID_FROM_EMAIL"]


def required_env_names(*, include_notifications: bool = False) -> list[str]:
    names = list(CORE_REQUIRED_ENV)
    if include_notifications:
        names.extend(NOTIFICATION_REQUIRED_ENV)
    return names


def missing_required_env(settings: Settings, names: list[str] | None = None) -> list[str]:
    # Report missing names only; values are never echoed.
    names = names if names is not None else required_env_names()
    missing: list[str] = []
    for name in names:
        value = getattr(settings, name.lower(), None) or os.environ.get(name)
        if not value:
            missing.append(name)
    return missing


@lru_cache
def get_settings() -> Settings:
    return Settings()
