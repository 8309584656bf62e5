from __future__ import annotations


class CronshiftError(Exception):
    """Base error for cronshift."""


class ConfigurationError(CronshiftError):
    """Missing or invalid runtime configuration."""


class DeploymentConfigError(CronshiftError):
    """Deployment configuration file unreadable or mis-shaped."""


class BackupError(CronshiftError):
    """Backup snapshot failure."""


class BackupNotFoundError(BackupError):
    """Backup directory or one of its required members is missing."""


class BackupIntegrityError(BackupError):
    """Backup content no longer matches its recorded checksums."""


class DataStoreError(CronshiftError):
    """Data store read/write failure."""


class TableRestoreError(DataStoreError):
    """Restoring one tracked table failed; the table keeps its previous rows."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"Failed to restore {table}: {message}")
        self.table = table


class NotificationError(CronshiftError):
    """Notification delivery failure."""


class IntegrationUnavailableError(CronshiftError):
    """External integration short-circuited by an open circuit breaker."""


class StepFailedError(CronshiftError):
    """A phase or step failed and aborted the run."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


class MigrationFailedError(CronshiftError):
    """Forward migration aborted at a phase."""

    def __init__(self, phase: str) -> None:
        super().__init__(f"Migration failed at phase: {phase}")
        self.phase = phase


class RollbackFailedError(CronshiftError):
    """Rollback aborted on a critical step."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step
