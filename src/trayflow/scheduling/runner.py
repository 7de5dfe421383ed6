"""Execute due scheduled tasks.

Each due task is marked inactive (``last_run_at = now``) in the same transaction as the action it
triggers. Tasks whose batch has moved on out of band are still attempted; the engine's
expected-stage guard rejects them and the runner reports an aborted result.
"""

from __future__ import annotations

import logging
from datetime import datetime

from trayflow.contract.models import (
    SOAKING_COMPLETION_WARNING,
    SUSPEND_WATERING,
    ScheduledTask,
    ensure_utc,
    target_stage_for_task,
)
from trayflow.core.errors import LifecycleError, TrayNotFoundError, ValidationFailure
from trayflow.lifecycle.engine import StageTransitionEngine
from trayflow.lifecycle.results import TransitionAction, TransitionResult
from trayflow.stages.registry import SOAKING

__all__ = ["run_due_scheduled_tasks", "run_task"]

logger = logging.getLogger(__name__)


def _task_action(task: ScheduledTask) -> TransitionAction:
    if task.task_name == SUSPEND_WATERING:
        return TransitionAction.SUSPEND_WATERING
    if task.task_name == SOAKING_COMPLETION_WARNING:
        return TransitionAction.SOAKING_WARNING
    return TransitionAction.ADVANCE


def _anchor_tray(engine: StageTransitionEngine, task: ScheduledTask) -> str:
    for tray_id in task.conditions.tray_ids:
        if engine.store.find_tray(tray_id) is not None:
            return tray_id
    missing = task.conditions.tray_ids[0] if task.conditions.tray_ids else task.batch_key
    raise TrayNotFoundError(missing)


def _soaking_warning(
    engine: StageTransitionEngine, task: ScheduledTask, tray_id: str
) -> TransitionResult:
    batch = engine.resolve(tray_id)
    stage = batch.lead.current_stage
    if stage != SOAKING:
        warnings = [f"Batch {batch.key} is no longer soaking; warning skipped"]
    else:
        numbers = ", ".join(tray.tray_number for tray in batch.trays)
        warnings = [
            f"Soaking completes today for batch {batch.key} ({len(batch)} trays: {numbers}); "
            "assign tray numbers before advancing"
        ]
    return TransitionResult.from_counts(
        TransitionAction.SOAKING_WARNING,
        succeeded=0,
        failures=[],
        warnings=warnings,
        batch_key=batch.key,
        from_stage=stage,
        to_stage=stage,
    )


def run_task(engine: StageTransitionEngine, task: ScheduledTask, now: datetime) -> TransitionResult:
    """Run one task and mark it inactive; lifecycle failures come back as aborted results."""

    now = ensure_utc(now)
    action = _task_action(task)
    with engine.store.transaction():
        if task.id is not None:
            engine.store.mark_task_run(task.id, now)
        try:
            tray_id = _anchor_tray(engine, task)
            if action is TransitionAction.SUSPEND_WATERING:
                result = engine.suspend_watering(tray_id, task.next_run_at)
            elif action is TransitionAction.SOAKING_WARNING:
                result = _soaking_warning(engine, task, tray_id)
            else:
                target = task.target_stage or target_stage_for_task(task.task_name)
                if target is None:
                    raise ValidationFailure(f"Unknown scheduled task '{task.task_name}'")
                result = engine.advance_stage(
                    tray_id,
                    task.next_run_at,
                    expected_stage=target,
                )
        except LifecycleError as exc:
            logger.warning(
                "Scheduled task %s (%s) for batch %s aborted: %s",
                task.id,
                task.task_name,
                task.batch_key,
                exc,
            )
            result = TransitionResult.aborted(action, exc, batch_key=task.batch_key)
    return result


def run_due_scheduled_tasks(
    engine: StageTransitionEngine, now: datetime
) -> list[TransitionResult]:
    """Run every active task with ``next_run_at <= now``, oldest first.

    Returns
    -------
    list of TransitionResult
        One result per task, in execution order. Hard failures are returned as aborted results,
        never raised.
    """

    now = ensure_utc(now)
    results: list[TransitionResult] = []
    for task in engine.store.due_tasks(now):
        current = engine.store.get_task(task.id) if task.id is not None else task
        if current is None or not current.is_active:
            # superseded by an earlier task in this run
            continue
        results.append(run_task(engine, current, now))
    logger.info("Processed %d scheduled task(s) due by %s", len(results), now.isoformat())
    return results
