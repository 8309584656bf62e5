from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Awaitable, Callable, Sequence

from cronshift.core.errors import StepFailedError
from cronshift.domain.state import RunContext, StepRecord, StepStatus


logger = logging.getLogger(__name__)

StepAction = Callable[[RunContext], Awaitable[None]]
StepCheck = Callable[[RunContext], Awaitable[bool]]


@dataclass(frozen=True)
class Step:
    # Shared descriptor for forward phases and rollback steps.
    name: str
    description: str
    execute: StepAction
    validate: StepCheck
    rollback: StepAction | None = None
    critical: bool = True


async def _run_rollback(step: Step, ctx: RunContext) -> Exception | None:
    # Rollback hooks run at most once; their failure is reported, not raised here.
    if step.rollback is None:
        return None
    logger.info("step_rollback_started step=%s", step.name)
    try:
        await step.rollback(ctx)
    except Exception as exc:  # noqa: BLE001 - surfaced to the caller through the abort error
        logger.error("step_rollback_failed step=%s", step.name, exc_info=exc)
        return exc
    logger.info("step_rollback_completed step=%s", step.name)
    return None


def _skip_remaining(steps: Sequence[Step], start: int, ctx: RunContext) -> None:
    for step in steps[start:]:
        ctx.steps.append(StepRecord(step.name, StepStatus.SKIPPED, "Skipped after abort"))


async def run_steps(steps: Sequence[Step], ctx: RunContext, *, force: bool = False) -> list[StepRecord]:
    """Execute ``steps`` in order, recording one StepRecord per step on ``ctx``.

    A critical step that fails validation or raises aborts the run with
    StepFailedError unless ``force`` is set; in that case the failure is kept in
    ``ctx.errors`` and execution continues. Steps after an abort are recorded as
    skipped and never executed.
    """
    for index, step in enumerate(steps):
        logger.info("step_started step=%s description=%s", step.name, step.description)
        started = time.monotonic()
        try:
            await step.execute(ctx)
            ok = await step.validate(ctx)
        except Exception as exc:  # noqa: BLE001 - converted into a failed record below
            duration = time.monotonic() - started
            ctx.steps.append(StepRecord(step.name, StepStatus.FAILED, f"Failed: {exc}", duration))
            ctx.errors.append(f"{step.name}: {exc}")
            if step.critical and not force:
                logger.error("step_failed step=%s", step.name, exc_info=exc)
                _skip_remaining(steps, index + 1, ctx)
                raise StepFailedError(step.name, str(exc)) from exc
            logger.warning("step_failed_continuing step=%s critical=%s", step.name, step.critical, exc_info=exc)
            continue

        duration = time.monotonic() - started
        if ok:
            ctx.steps.append(StepRecord(step.name, StepStatus.SUCCESS, "Completed successfully", duration))
            logger.info("step_completed step=%s duration=%.3f", step.name, duration)
            continue

        ctx.steps.append(StepRecord(step.name, StepStatus.FAILED, "Validation failed", duration))
        logger.warning("step_validation_failed step=%s", step.name)
        rollback_error = await _run_rollback(step, ctx)
        if not step.critical:
            continue
        message = f"Critical step {step.name} failed validation"
        if force:
            ctx.errors.append(message)
            continue
        _skip_remaining(steps, index + 1, ctx)
        raise StepFailedError(step.name, message) from rollback_error
    return ctx.steps


def critical_success(steps: Sequence[Step], records: Sequence[StepRecord]) -> bool:
    # Non-critical failures never affect the overall outcome.
    critical = {step.name for step in steps if step.critical}
    return not any(
        record.status == StepStatus.FAILED and record.name in critical for record in records
    )
