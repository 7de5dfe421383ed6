"""In-process entry points consumed by UI and automation layers.

:class:`TrayflowService` wires the stage registry, store, scheduler, transition engine and yield
calculator together. Lifecycle operations never raise for refused transitions: hard failures are
returned as aborted :class:`~trayflow.lifecycle.results.TransitionResult` values.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from trayflow.config import Settings
from trayflow.contract.models import Tray, ensure_utc
from trayflow.core.errors import LifecycleError, RecipeMissingError
from trayflow.io.loaders import BatchSpec, apply_farm_data, expand_batch, load_farm_data
from trayflow.lifecycle.batches import resolve_batch
from trayflow.lifecycle.engine import StageTransitionEngine
from trayflow.lifecycle.results import TransitionAction, TransitionResult
from trayflow.planning.yields import PlanRecalcResult, YieldCalculator, YieldStats
from trayflow.scheduling.runner import run_due_scheduled_tasks
from trayflow.scheduling.tasks import TaskScheduler
from trayflow.stages.registry import StageRegistry
from trayflow.storage.sqlite_store import TrayStore, open_store
from trayflow.telemetry.events import TransitionEventLog

__all__ = ["TrayflowService"]

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class TrayflowService:
    """Facade over the lifecycle engine, task runner and yield calculator.

    Parameters
    ----------
    store:
        Open store. The service does not own it unless built via :meth:`from_settings`.
    registry:
        Stage table; defaults to the one persisted in ``store``.
    settings:
        Runtime settings; defaults to :class:`~trayflow.config.Settings`.
    """

    def __init__(
        self,
        store: TrayStore,
        registry: StageRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.event_log = (
            TransitionEventLog(Path(self.settings.event_log_path))
            if self.settings.event_log_path
            else None
        )
        self._use_registry(registry or store.load_registry())
        self.yields = YieldCalculator(
            store,
            history_months=self.settings.yield_history_months,
            decay_days=self.settings.yield_decay_days,
            default_buffer_percentage=self.settings.default_buffer_percentage,
            thresholds=self.settings.thresholds.to_thresholds(),
        )
        self._owns_store = False

    def _use_registry(self, registry: StageRegistry) -> None:
        self.registry = registry
        self.scheduler = TaskScheduler(
            registry,
            self.store,
            default_suspend_watering_hours=self.settings.default_suspend_watering_hours,
        )
        self.engine = StageTransitionEngine(
            registry,
            self.store,
            scheduler=self.scheduler,
            event_log=self.event_log,
            early_advance_ratio=self.settings.early_advance_ratio,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrayflowService":
        service = cls(open_store(settings.database_path), settings=settings)
        service._owns_store = True
        return service

    def close(self) -> None:
        if self._owns_store:
            self.store.close()

    def __enter__(self) -> "TrayflowService":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    # -- lifecycle --------------------------------------------------------------------------

    def advance_stage(
        self,
        tray_id: str,
        timestamp: datetime | None = None,
        tray_numbers: Mapping[str, str] | None = None,
        expected_stage: str | None = None,
    ) -> TransitionResult:
        try:
            return self.engine.advance_stage(
                tray_id,
                timestamp or _now(),
                tray_numbers=tray_numbers,
                expected_stage=expected_stage,
            )
        except LifecycleError as exc:
            logger.warning("Advance of tray %s refused: %s", tray_id, exc)
            return TransitionResult.aborted(TransitionAction.ADVANCE, exc)

    def revert_stage(
        self, tray_id: str, reason: str | None = None, now: datetime | None = None
    ) -> TransitionResult:
        try:
            return self.engine.revert_stage(tray_id, reason=reason, now=now)
        except LifecycleError as exc:
            logger.warning("Revert of tray %s refused: %s", tray_id, exc)
            return TransitionResult.aborted(TransitionAction.REVERT, exc)

    def suspend_watering(self, tray_id: str, at: datetime | None = None) -> TransitionResult:
        try:
            return self.engine.suspend_watering(tray_id, at or _now())
        except LifecycleError as exc:
            return TransitionResult.aborted(TransitionAction.SUSPEND_WATERING, exc)

    def resume_watering(self, tray_id: str) -> TransitionResult:
        try:
            return self.engine.resume_watering(tray_id)
        except LifecycleError as exc:
            return TransitionResult.aborted(TransitionAction.RESUME_WATERING, exc)

    def run_due_scheduled_tasks(self, now: datetime | None = None) -> list[TransitionResult]:
        return run_due_scheduled_tasks(self.engine, now or _now())

    # -- batches ----------------------------------------------------------------------------

    def create_batch(self, spec: BatchSpec) -> list[Tray]:
        """Persist a new batch and schedule its follow-on tasks from the starting stage."""

        recipe = self.store.get_recipe(spec.recipe_id)
        if recipe is None:
            raise RecipeMissingError(spec.recipe_id, context=f"batch '{spec.batch_id}'")
        trays = expand_batch(recipe, spec)
        with self.store.transaction():
            for tray in trays:
                self.store.save_tray(tray)
            self._schedule_start(trays[0])
        return trays

    def load_bundle(self, path: str | Path) -> dict[str, int]:
        """Load a farm bundle; batches declared in it get their follow-on tasks scheduled.

        A ``stages`` section replaces the service's registry, scheduler and engine.
        """

        data = load_farm_data(path)
        previous = self.registry
        try:
            with self.store.transaction():
                counts = apply_farm_data(self.store, data)
                if data.stages is not None:
                    self._use_registry(self.store.load_registry())
                for spec in data.batches:
                    self._schedule_start(self.store.get_tray(f"{spec.batch_id}-1"))
        except Exception:
            # the stage table was rolled back with the rest of the bundle
            if self.registry is not previous:
                self._use_registry(previous)
            raise
        return counts

    def _schedule_start(self, tray: Tray) -> None:
        batch = resolve_batch(self.store, tray)
        stage = self.registry.find_by_code(tray.current_stage)
        started = tray.stage_timestamp(stage.timestamp_field) or tray.planting_at
        if started is None:
            return
        recipe = self.store.get_recipe(tray.recipe_id)
        self.scheduler.schedule_follow_on_tasks(batch, stage, started, recipe)

    def batch_status(self, tray_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Summary of a tray's batch for display: members, stage, expected harvest."""

        now = ensure_utc(now) if now is not None else _now()
        tray = self.store.get_tray(tray_id)
        batch = resolve_batch(self.store, tray)
        recipe = self.store.get_recipe(tray.recipe_id)
        harvest_at = self.scheduler.expected_harvest_at(tray, recipe)
        return {
            "batch_key": batch.key,
            "stage": tray.current_stage,
            "tray_ids": batch.tray_ids,
            "tray_numbers": [member.tray_number for member in batch.trays],
            "days_in_stage": self.scheduler.days_in_current_stage(tray, now),
            "expected_harvest_at": harvest_at.isoformat() if harvest_at else None,
            "should_suspend_watering": self.scheduler.should_suspend_watering(tray, recipe, now),
            "active_tasks": len(self.store.list_tasks(batch_key=batch.key)),
        }

    # -- planning ---------------------------------------------------------------------------

    def recalculate_plan(self, plan_id: str, as_of: datetime | None = None) -> PlanRecalcResult:
        return self.yields.recalculate_plan(plan_id, as_of=as_of)

    def yield_stats(self, recipe_id: str, as_of: datetime | None = None) -> YieldStats:
        recipe = self.store.get_recipe(recipe_id)
        if recipe is None:
            raise RecipeMissingError(recipe_id)
        return self.yields.get_yield_stats(recipe, as_of)
