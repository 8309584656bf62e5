from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any

import psutil

from cronshift.core.config import Settings, get_settings
from cronshift.core.errors import DataStoreError
from cronshift.services.datastore import DataStore
from cronshift.services.telemetry import external_call_stats


logger = logging.getLogger(__name__)


class ServiceLevel(str, Enum):
    FULL = "full"
    ESSENTIAL = "essential"
    MINIMAL = "minimal"

    @property
    def rank(self) -> int:
        # Higher rank keeps more functions enabled.
        return {ServiceLevel.FULL: 2, ServiceLevel.ESSENTIAL: 1, ServiceLevel.MINIMAL: 0}[self]


# Each level extends the one below it; FULL enables every function.
MINIMAL_FUNCTIONS = frozenset({"critical-alerts", "error-reporting", "health-monitoring"})
ESSENTIAL_FUNCTIONS = MINIMAL_FUNCTIONS | frozenset({"link-validation", "cache-management", "basic-audit"})
KNOWN_FUNCTIONS = ESSENTIAL_FUNCTIONS | frozenset(
    {"detailed-reporting", "analytics-processing", "email-notifications", "auto-corrections"}
)
_LEVEL_FUNCTIONS: dict[ServiceLevel, frozenset[str] | None] = {
    ServiceLevel.MINIMAL: MINIMAL_FUNCTIONS,
    ServiceLevel.ESSENTIAL: ESSENTIAL_FUNCTIONS,
    ServiceLevel.FULL: None,
}


@dataclass(frozen=True)
class DegradationThresholds:
    memory_warning_mb: float
    memory_critical_mb: float
    cpu_warning_pct: float
    cpu_critical_pct: float
    error_rate_warning_pct: float
    error_rate_critical_pct: float

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DegradationThresholds":
        settings = settings or get_settings()
        return cls(
            memory_warning_mb=settings.degradation_memory_warning_mb,
            memory_critical_mb=settings.degradation_memory_critical_mb,
            cpu_warning_pct=settings.degradation_cpu_warning_pct,
            cpu_critical_pct=settings.degradation_cpu_critical_pct,
            error_rate_warning_pct=settings.degradation_error_rate_warning_pct,
            error_rate_critical_pct=settings.degradation_error_rate_critical_pct,
        )


@dataclass(frozen=True)
class SystemMetrics:
    memory_mb: float
    cpu_pct: float
    error_rate_pct: float
    response_time_ms: float | None = None
    active_connections: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LevelChange:
    previous: ServiceLevel
    current: ServiceLevel
    reason: str
    changed_at: str


@dataclass(frozen=True)
class DegradedResponse:
    processed: bool
    service_level: ServiceLevel
    features: list[str] = field(default_factory=list)
    message: str = ""


def collect_process_metrics() -> SystemMetrics:
    # Memory of this process, non-blocking CPU sample, and the failure rate of external calls so far.
    process = psutil.Process()
    memory_mb = process.memory_info().rss / 1024 / 1024
    cpu_pct = psutil.cpu_percent(interval=None)
    stats = external_call_stats()
    calls = sum(int(item["calls"]) for item in stats.values())
    failures = sum(int(item["failures"]) for item in stats.values())
    error_rate = (failures / calls) * 100.0 if calls else 0.0
    return SystemMetrics(memory_mb=round(memory_mb, 2), cpu_pct=cpu_pct, error_rate_pct=round(error_rate, 2))


class DegradationManager:
    """Chooses a service level from system metrics and gates functions by it."""

    def __init__(
        self,
        thresholds: DegradationThresholds | None = None,
        *,
        datastore: DataStore | None = None,
    ) -> None:
        self._thresholds = thresholds or DegradationThresholds.from_settings()
        self._datastore = datastore
        self._level = ServiceLevel.FULL
        self._history: list[LevelChange] = []
        self._last_metrics: SystemMetrics | None = None

    @property
    def current_level(self) -> ServiceLevel:
        return self._level

    @property
    def history(self) -> list[LevelChange]:
        return list(self._history)

    def _exceeded(self, metrics: SystemMetrics, *, critical: bool) -> list[str]:
        t = self._thresholds
        limits = (
            ("memory", metrics.memory_mb, t.memory_critical_mb if critical else t.memory_warning_mb, "MB"),
            ("cpu", metrics.cpu_pct, t.cpu_critical_pct if critical else t.cpu_warning_pct, "%"),
            (
                "error rate",
                metrics.error_rate_pct,
                t.error_rate_critical_pct if critical else t.error_rate_warning_pct,
                "%",
            ),
        )
        return [f"{label} {value:g}{unit} > {limit:g}{unit}" for label, value, limit, unit in limits if value > limit]

    def assess_system_load(self, metrics: SystemMetrics) -> ServiceLevel:
        self._last_metrics = metrics
        if self._exceeded(metrics, critical=True):
            return ServiceLevel.MINIMAL
        if self._exceeded(metrics, critical=False):
            return ServiceLevel.ESSENTIAL
        return ServiceLevel.FULL

    def degradation_reason(self, metrics: SystemMetrics) -> str:
        reasons = self._exceeded(metrics, critical=True) or self._exceeded(metrics, critical=False)
        return ", ".join(reasons) if reasons else "System load within normal limits"

    async def activate_degradation(self, level: ServiceLevel, *, reason: str | None = None) -> bool:
        # Returns False when already at ``level``.
        previous = self._level
        if previous == level:
            return False
        if reason is None:
            reason = self.degradation_reason(self._last_metrics) if self._last_metrics else "Manual activation"
        self._level = level
        change = LevelChange(previous, level, reason, datetime.now(timezone.utc).isoformat())
        self._history.append(change)
        log = logger.warning if level.rank < previous.rank else logger.info
        log(
            "service_level_changed previous=%s current=%s severity=%s reason=%s",
            previous.value,
            level.value,
            self.severity(level, previous),
            reason,
        )
        if self._datastore is not None:
            load = self._last_metrics.to_dict() if self._last_metrics else None
            try:
                await self._datastore.record_degradation(
                    previous_level=previous.value,
                    new_level=level.value,
                    reason=reason,
                    system_load=load,
                )
            except DataStoreError as exc:
                logger.warning("service_level_log_failed", exc_info=exc)
        return True

    def is_function_enabled(self, name: str, level: ServiceLevel | None = None) -> bool:
        allowed = _LEVEL_FUNCTIONS[level or self._level]
        return allowed is None or name in allowed

    def enabled_functions(self, level: ServiceLevel | None = None) -> list[str]:
        allowed = _LEVEL_FUNCTIONS[level or self._level]
        return sorted(allowed if allowed is not None else KNOWN_FUNCTIONS)

    def process_request(self, function: str) -> DegradedResponse:
        if self.is_function_enabled(function):
            return DegradedResponse(True, self._level, self.enabled_functions())
        return DegradedResponse(
            False,
            self._level,
            self.enabled_functions(),
            message=f"{function} is disabled at service level {self._level.value}",
        )

    @staticmethod
    def severity(new: ServiceLevel, previous: ServiceLevel) -> str:
        drop = previous.rank - new.rank
        if drop <= 0:
            return "info"
        return "critical" if new == ServiceLevel.MINIMAL else "warning"
