from __future__ import annotations

import pytest
from sqlalchemy import select

from cronshift.domain.models import DegradationLog
from cronshift.services.degradation import (
    KNOWN_FUNCTIONS,
    DegradationManager,
    DegradationThresholds,
    ServiceLevel,
    SystemMetrics,
)


THRESHOLDS = DegradationThresholds(
    memory_warning_mb=400,
    memory_critical_mb=450,
    cpu_warning_pct=70,
    cpu_critical_pct=85,
    error_rate_warning_pct=5,
    error_rate_critical_pct=10,
)


@pytest.mark.parametrize(
    ("memory", "cpu", "error_rate", "expected"),
    [
        (200, 30, 1, ServiceLevel.FULL),
        (350, 60, 3, ServiceLevel.FULL),
        (420, 75, 7, ServiceLevel.ESSENTIAL),
        (480, 90, 15, ServiceLevel.MINIMAL),
    ],
)
def test_assess_system_load(memory: float, cpu: float, error_rate: float, expected: ServiceLevel) -> None:
    manager = DegradationManager(THRESHOLDS)
    assert manager.assess_system_load(SystemMetrics(memory, cpu, error_rate)) == expected


def test_single_critical_metric_forces_minimal() -> None:
    manager = DegradationManager(THRESHOLDS)
    assert manager.assess_system_load(SystemMetrics(100, 10, 11)) == ServiceLevel.MINIMAL
    assert "error rate" in manager.degradation_reason(SystemMetrics(100, 10, 11))


@pytest.mark.asyncio
async def test_essential_keeps_critical_functions_only() -> None:
    manager = DegradationManager(THRESHOLDS)
    assert await manager.activate_degradation(ServiceLevel.ESSENTIAL, reason="load test")
    assert manager.current_level == ServiceLevel.ESSENTIAL
    for name in ("link-validation", "error-reporting", "cache-management"):
        assert manager.is_function_enabled(name)
    for name in ("detailed-reporting", "analytics-processing", "email-notifications"):
        assert not manager.is_function_enabled(name)
    response = manager.process_request("link-validation")
    assert response.processed
    assert "link-validation" in response.features
    assert "detailed-reporting" not in response.features


def test_function_availability_is_monotonic() -> None:
    manager = DegradationManager(THRESHOLDS)
    names = sorted(KNOWN_FUNCTIONS | {"something-new"})
    for name in names:
        if manager.is_function_enabled(name, ServiceLevel.MINIMAL):
            assert manager.is_function_enabled(name, ServiceLevel.ESSENTIAL)
        if manager.is_function_enabled(name, ServiceLevel.ESSENTIAL):
            assert manager.is_function_enabled(name, ServiceLevel.FULL)
    assert all(manager.is_function_enabled(name, ServiceLevel.FULL) for name in names)


@pytest.mark.asyncio
async def test_recovery_sequence_returns_to_full() -> None:
    manager = DegradationManager(THRESHOLDS)
    loads = [(480, 90, 15), (450, 85, 12), (400, 70, 8), (300, 50, 3), (200, 30, 1)]
    for memory, cpu, error_rate in loads:
        level = manager.assess_system_load(SystemMetrics(memory, cpu, error_rate))
        await manager.activate_degradation(level)
    assert manager.current_level == ServiceLevel.FULL
    assert [change.current for change in manager.history] == [
        ServiceLevel.MINIMAL,
        ServiceLevel.ESSENTIAL,
        ServiceLevel.FULL,
    ]
    assert not await manager.activate_degradation(ServiceLevel.FULL)


@pytest.mark.asyncio
async def test_level_changes_are_logged_to_datastore(datastore) -> None:
    manager = DegradationManager(THRESHOLDS, datastore=datastore)
    manager.assess_system_load(SystemMetrics(420, 75, 7))
    await manager.activate_degradation(ServiceLevel.ESSENTIAL)

    async with datastore._session_factory() as session:
        log = (await session.execute(select(DegradationLog))).scalar_one()
    assert log.new_level == "essential"
    assert log.system_load["memory_mb"] == 420
    assert "memory" in log.reason


def test_severity() -> None:
    assert DegradationManager.severity(ServiceLevel.MINIMAL, ServiceLevel.FULL) == "critical"
    assert DegradationManager.severity(ServiceLevel.ESSENTIAL, ServiceLevel.FULL) == "warning"
    assert DegradationManager.severity(ServiceLevel.FULL, ServiceLevel.MINIMAL) == "info"
