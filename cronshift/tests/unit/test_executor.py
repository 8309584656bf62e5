from __future__ import annotations

import pytest

from cronshift.core.errors import StepFailedError
from cronshift.domain.state import RunContext, StepStatus
from cronshift.services.executor import Step, critical_success, run_steps


class Recorder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def action(self, label: str, *, fail: bool = False):
        async def _action(ctx: RunContext) -> None:
            self.calls.append(label)
            if fail:
                raise RuntimeError(f"{label} exploded")

        return _action

    def check(self, label: str, result: bool):
        async def _check(ctx: RunContext) -> bool:
            self.calls.append(label)
            return result

        return _check


def _ctx() -> RunContext:
    return RunContext(timestamp="2026-10-19T00-00-00-000Z")


@pytest.mark.asyncio
async def test_all_steps_succeed_in_order() -> None:
    rec = Recorder()
    steps = [
        Step("one", "first", rec.action("one"), rec.check("one?", True)),
        Step("two", "second", rec.action("two"), rec.check("two?", True)),
    ]
    ctx = _ctx()
    records = await run_steps(steps, ctx)
    assert rec.calls == ["one", "one?", "two", "two?"]
    assert [record.status for record in records] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
    assert critical_success(steps, records)


@pytest.mark.asyncio
async def test_validation_failure_runs_rollback_once_and_stops() -> None:
    rec = Recorder()
    steps = [
        Step("one", "first", rec.action("one"), rec.check("one?", True)),
        Step("two", "second", rec.action("two"), rec.check("two?", False), rollback=rec.action("undo-two")),
        Step("three", "third", rec.action("three"), rec.check("three?", True)),
    ]
    ctx = _ctx()
    with pytest.raises(StepFailedError) as excinfo:
        await run_steps(steps, ctx)
    assert excinfo.value.step == "two"
    assert str(excinfo.value) == "Critical step two failed validation"
    assert rec.calls.count("undo-two") == 1
    assert "three" not in rec.calls
    assert [(r.name, r.status) for r in ctx.steps] == [
        ("one", StepStatus.SUCCESS),
        ("two", StepStatus.FAILED),
        ("three", StepStatus.SKIPPED),
    ]


@pytest.mark.asyncio
async def test_exception_in_critical_step_aborts_without_force() -> None:
    rec = Recorder()
    steps = [
        Step("boom", "explodes", rec.action("boom", fail=True), rec.check("boom?", True)),
        Step("after", "never", rec.action("after"), rec.check("after?", True)),
    ]
    ctx = _ctx()
    with pytest.raises(StepFailedError) as excinfo:
        await run_steps(steps, ctx)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert ctx.steps[0].message == "Failed: boom exploded"
    assert ctx.errors == ["boom: boom exploded"]
    # Validation never runs once execute raised.
    assert "boom?" not in rec.calls
    assert "after" not in rec.calls


@pytest.mark.asyncio
async def test_force_continues_past_critical_failures() -> None:
    rec = Recorder()
    steps = [
        Step("boom", "explodes", rec.action("boom", fail=True), rec.check("boom?", True)),
        Step("invalid", "fails validation", rec.action("invalid"), rec.check("invalid?", False)),
        Step("last", "runs anyway", rec.action("last"), rec.check("last?", True)),
    ]
    ctx = _ctx()
    records = await run_steps(steps, ctx, force=True)
    assert "last" in rec.calls
    assert [r.status for r in records] == [StepStatus.FAILED, StepStatus.FAILED, StepStatus.SUCCESS]
    assert "Critical step invalid failed validation" in ctx.errors
    assert not critical_success(steps, records)


@pytest.mark.asyncio
async def test_non_critical_failures_do_not_abort_or_fail_run() -> None:
    rec = Recorder()
    steps = [
        Step("optional", "may fail", rec.action("optional", fail=True), rec.check("optional?", True), critical=False),
        Step("soft", "soft validation", rec.action("soft"), rec.check("soft?", False), critical=False),
        Step("core", "must pass", rec.action("core"), rec.check("core?", True)),
    ]
    ctx = _ctx()
    records = await run_steps(steps, ctx)
    assert [r.status for r in records] == [StepStatus.FAILED, StepStatus.FAILED, StepStatus.SUCCESS]
    assert critical_success(steps, records)


@pytest.mark.asyncio
async def test_failing_rollback_is_chained_into_abort() -> None:
    rec = Recorder()
    steps = [
        Step("two", "second", rec.action("two"), rec.check("two?", False), rollback=rec.action("undo", fail=True)),
    ]
    ctx = _ctx()
    with pytest.raises(StepFailedError) as excinfo:
        await run_steps(steps, ctx)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert rec.calls.count("undo") == 1
