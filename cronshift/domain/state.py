from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


class HealthStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class HealthCheckRecord:
    # One observation recorded by a phase or step; never mutated after creation.
    name: str
    status: HealthStatus
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True)
class StepRecord:
    name: str
    status: StepStatus
    message: str
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "duration": round(self.duration, 3),
        }


def new_timestamp(now: datetime | None = None) -> str:
    # Sortable and filesystem-safe: 2026-10-19T12-30-00-123Z.
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return iso.replace("+00:00", "Z").replace(":", "-").replace(".", "-")


@dataclass
class RunContext:
    """State threaded through every phase/step of a single run.

    Health checks and step records are append-only; each run owns its context
    exclusively.
    """

    timestamp: str
    dry_run: bool = False
    force: bool = False
    notify: bool = False
    backup_id: str | None = None
    health_checks: list[HealthCheckRecord] = field(default_factory=list)
    steps: list[StepRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    # len(health_checks) when the current phase started.
    phase_mark: int = 0

    def record(
        self,
        name: str,
        status: HealthStatus,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> HealthCheckRecord:
        check = HealthCheckRecord(name=name, status=status, message=message, details=details)
        self.health_checks.append(check)
        return check

    def checks_with_status(self, status: HealthStatus) -> list[HealthCheckRecord]:
        return [check for check in self.health_checks if check.status == status]

    def passed(self) -> list[HealthCheckRecord]:
        return self.checks_with_status(HealthStatus.PASS)

    def failed(self) -> list[HealthCheckRecord]:
        return self.checks_with_status(HealthStatus.FAIL)

    def warnings(self) -> list[HealthCheckRecord]:
        return self.checks_with_status(HealthStatus.WARNING)

    def with_prefix(self, *prefixes: str) -> list[HealthCheckRecord]:
        return [check for check in self.health_checks if check.name.startswith(prefixes)]

    def since(self, mark: int) -> list[HealthCheckRecord]:
        # Checks appended after ``mark`` (a previous len(health_checks)).
        return self.health_checks[mark:]

    def mark_phase(self) -> None:
        self.phase_mark = len(self.health_checks)

    def phase_checks(self) -> list[HealthCheckRecord]:
        return self.since(self.phase_mark)


@dataclass(frozen=True)
class MigrationConfig:
    timestamp: str
    dry_run: bool = False
    backup_id: str | None = None


@dataclass(frozen=True)
class RollbackConfig:
    backup_id: str
    backup_directory: Path
    timestamp: str
    force: bool = False
    notify: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "backupId": self.backup_id,
            "force": self.force,
            "notify": self.notify,
            "timestamp": self.timestamp,
            "backupDir": str(self.backup_directory),
        }


@dataclass
class RollbackResult:
    success: bool = False
    steps: list[StepRecord] = field(default_factory=list)
    total_duration: float = 0.0
    errors: list[str] = field(default_factory=list)

    def step_status(self, name: str) -> StepStatus | None:
        for record in self.steps:
            if record.name == name:
                return record.status
        return None

    def count(self, status: StepStatus) -> int:
        return sum(1 for record in self.steps if record.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "steps": [record.to_dict() for record in self.steps],
            "totalDuration": round(self.total_duration, 3),
            "errors": list(self.errors),
        }
