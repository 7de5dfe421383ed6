"""Deferred task scheduling for crop batches.

Every transition replaces the batch's pending tasks with a fresh set computed from the stage just
entered and the recipe's stage durations:

* ``advance_to_<next>`` when the current stage's expected duration elapses,
* ``advance_to_harvested`` at the expected harvest time,
* ``suspend_watering`` a configurable number of hours before harvest,
* ``soaking_completion_warning`` at 06:00 on the day soaking completes (soaking batches only).

Entering the terminal stage deactivates every pending task for the batch.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime, time, timedelta

from trayflow.contract.models import (
    RESOURCE_TYPE_CROPS,
    SOAKING_COMPLETION_WARNING,
    SUSPEND_WATERING,
    Recipe,
    ScheduledTask,
    TaskConditions,
    Tray,
    advance_task_name,
    ensure_utc,
)
from trayflow.lifecycle.batches import Batch
from trayflow.stages.registry import SOAKING, Stage, StageRegistry
from trayflow.storage.sqlite_store import TrayStore

__all__ = ["TaskScheduler", "SOAKING_WARNING_HOUR"]

logger = logging.getLogger(__name__)

SOAKING_WARNING_HOUR = 6


class TaskScheduler:
    """Compute and persist one-shot follow-on tasks for a batch.

    Parameters
    ----------
    registry:
        Stage table; durations are looked up per stage code on the recipe.
    store:
        Task persistence. Replacement of a batch's tasks happens in one store transaction.
    default_suspend_watering_hours:
        Used when the recipe does not set ``suspend_watering_hours``. ``None`` disables the task.
    """

    def __init__(
        self,
        registry: StageRegistry,
        store: TrayStore,
        default_suspend_watering_hours: float | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.default_suspend_watering_hours = default_suspend_watering_hours

    def schedule_follow_on_tasks(
        self,
        batch: Batch,
        entered: Stage | str,
        occurred_at: datetime,
        recipe: Recipe | None,
        not_before: datetime | None = None,
    ) -> list[ScheduledTask]:
        """Supersede the batch's pending tasks with those implied by entering ``entered``.

        Parameters
        ----------
        batch:
            Trays that just entered the stage; their ids and numbers are copied into the task
            conditions.
        entered:
            Stage the batch is now in.
        occurred_at:
            Time the stage was entered; all run times are offsets from it.
        recipe:
            Source of stage durations. ``None`` clears pending tasks and schedules nothing.
        not_before:
            Tasks whose run time falls before this instant are skipped (used after a revert so
            an overdue advance does not immediately undo it).

        Returns
        -------
        list of ScheduledTask
            Newly inserted active tasks, ordered by run time.
        """

        stage = self.registry.find_by_code(entered) if isinstance(entered, str) else entered
        occurred_at = ensure_utc(occurred_at)
        floor = ensure_utc(not_before)
        with self.store.transaction():
            self.store.deactivate_tasks(batch.key)
            if stage.is_terminal:
                logger.info("Batch %s reached %s; pending tasks cleared", batch.key, stage.code)
                return []
            if recipe is None:
                logger.warning(
                    "Batch %s has no recipe; follow-on tasks were not scheduled", batch.key
                )
                return []

            planned = list(self._plan(batch, stage, occurred_at, recipe))
            created: list[ScheduledTask] = []
            for task in sorted(planned, key=lambda item: item.next_run_at):
                if floor is not None and task.next_run_at < floor:
                    logger.info(
                        "Skipping overdue task %s for batch %s (due %s)",
                        task.task_name,
                        batch.key,
                        task.next_run_at.isoformat(),
                    )
                    continue
                created.append(self.store.insert_task(task))
        logger.info(
            "Scheduled %d task(s) for batch %s after entering %s",
            len(created),
            batch.key,
            stage.code,
        )
        return created

    def clear_batch_tasks(self, batch_key: str) -> int:
        return self.store.deactivate_tasks(batch_key)

    def retain_trays(self, batch: Batch) -> int:
        """Restrict the pending tasks under ``batch.key`` to the trays of ``batch``.

        Used when part of an implicit batch moved on and the rest stays behind under the old key.
        """

        tray_ids = batch.tray_ids
        numbers = [tray.tray_number for tray in batch.trays]
        updated = 0
        with self.store.transaction():
            for task in self.store.list_tasks(batch_key=batch.key):
                if task.id is None or task.conditions.tray_ids == tray_ids:
                    continue
                conditions = task.conditions.model_copy(
                    update={"tray_ids": tray_ids, "tray_numbers": numbers}
                )
                self.store.update_task_conditions(task.id, conditions)
                updated += 1
        return updated

    def _plan(
        self, batch: Batch, stage: Stage, occurred_at: datetime, recipe: Recipe
    ) -> Iterable[ScheduledTask]:
        nxt = self.registry.next(stage)
        duration = recipe.stage_duration(stage.code)
        if nxt is not None and not nxt.is_terminal and duration is not None:
            yield self._task(
                batch,
                advance_task_name(nxt.code),
                f"Advance {batch.key} to {nxt.name}",
                occurred_at + duration,
                nxt.code,
            )

        harvest_at = self._harvest_from(stage, occurred_at, recipe)
        terminal = self.registry.terminal
        yield self._task(
            batch,
            advance_task_name(terminal.code),
            f"Advance {batch.key} to {terminal.name}",
            harvest_at,
            terminal.code,
        )

        hours = self._suspend_hours(recipe)
        if hours:
            suspend_at = harvest_at - timedelta(hours=hours)
            if suspend_at > occurred_at:
                yield self._task(
                    batch,
                    SUSPEND_WATERING,
                    f"Suspend watering for {batch.key}",
                    suspend_at,
                    None,
                )

        if stage.code == SOAKING and duration is not None:
            completes_at = occurred_at + duration
            warn_at = datetime.combine(
                completes_at.date(), time(hour=SOAKING_WARNING_HOUR), tzinfo=completes_at.tzinfo
            )
            if occurred_at < warn_at <= completes_at:
                yield self._task(
                    batch,
                    SOAKING_COMPLETION_WARNING,
                    f"Soaking completes today for {batch.key}",
                    warn_at,
                    nxt.code if nxt is not None else None,
                )

    def _task(
        self,
        batch: Batch,
        task_name: str,
        name: str,
        run_at: datetime,
        target_stage: str | None,
    ) -> ScheduledTask:
        return ScheduledTask(
            resource_type=RESOURCE_TYPE_CROPS,
            task_name=task_name,
            name=name,
            batch_key=batch.key,
            conditions=TaskConditions(
                batch_key=batch.key,
                tray_ids=batch.tray_ids,
                target_stage=target_stage,
                tray_numbers=[tray.tray_number for tray in batch.trays],
            ),
            next_run_at=run_at,
        )

    def _suspend_hours(self, recipe: Recipe) -> float | None:
        if recipe.suspend_watering_hours is not None:
            return recipe.suspend_watering_hours
        return self.default_suspend_watering_hours

    def _harvest_from(self, stage: Stage, entered_at: datetime, recipe: Recipe) -> datetime:
        remaining = timedelta()
        for item in [stage, *self.registry.following(stage)]:
            duration = recipe.stage_duration(item.code)
            if duration is not None:
                remaining += duration
        return entered_at + remaining

    def expected_harvest_at(self, tray: Tray, recipe: Recipe | None) -> datetime | None:
        """Expected harvest time from the tray's current stage entry; ``None`` when unknown."""

        if recipe is None:
            return None
        stage = self.registry.find_by_code(tray.current_stage)
        if stage.is_terminal:
            return tray.harvested_at
        started = tray.stage_timestamp(stage.timestamp_field) or tray.planting_at
        if started is None:
            return None
        return self._harvest_from(stage, started, recipe)

    def days_in_current_stage(self, tray: Tray, now: datetime) -> int:
        stage = self.registry.find_by_code(tray.current_stage)
        started = tray.stage_timestamp(stage.timestamp_field) or tray.planting_at
        if started is None:
            return 0
        elapsed = ensure_utc(now) - started
        return max(0, math.floor(elapsed.total_seconds() / 86400))

    def should_suspend_watering(self, tray: Tray, recipe: Recipe | None, now: datetime) -> bool:
        if recipe is None:
            return False
        hours = self._suspend_hours(recipe)
        harvest_at = self.expected_harvest_at(tray, recipe)
        if not hours or harvest_at is None:
            return False
        return ensure_utc(now) >= harvest_at - timedelta(hours=hours)
