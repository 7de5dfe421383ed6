"""Batch-wide stage transitions.

The engine resolves the batch a tray belongs to, validates the move, mutates every member tray
inside one store transaction and hands the batch to the task scheduler. Hard failures raise a
:class:`~trayflow.core.errors.LifecycleError` before anything is written. When advancing, per-tray
problems are recorded as :class:`~trayflow.lifecycle.results.TrayFailure` entries and the rest of
the batch proceeds; a revert changes every tray of the batch or none.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from trayflow.contract.models import Recipe, Tray, ensure_utc
from trayflow.core.errors import (
    BatchInconsistencyError,
    InitialStageError,
    TerminalStageError,
    TrayNumberConflictError,
    ValidationFailure,
)
from trayflow.lifecycle.batches import Batch, batch_key_for, resolve_batch
from trayflow.lifecycle.results import (
    TransitionAction,
    TransitionResult,
    TrayFailure,
)
from trayflow.lifecycle.validation import DEFAULT_EARLY_ADVANCE_RATIO, ValidationService
from trayflow.stages.registry import SOAKING, Stage, StageRegistry
from trayflow.storage.sqlite_store import TrayStore

if TYPE_CHECKING:
    from trayflow.scheduling.tasks import TaskScheduler
    from trayflow.telemetry.events import TransitionEventLog

__all__ = ["StageTransitionEngine"]

logger = logging.getLogger(__name__)


class StageTransitionEngine:
    """Advance, revert and watering operations over whole batches.

    Parameters
    ----------
    registry:
        Stage table injected by the caller.
    store:
        Transactional tray store.
    scheduler:
        Receives every batch that changed stage. ``None`` disables follow-on scheduling.
    validator:
        Defaults to a :class:`ValidationService` over the same registry and store.
    event_log:
        Optional JSONL audit log; one record per completed operation.
    """

    def __init__(
        self,
        registry: StageRegistry,
        store: TrayStore,
        scheduler: "TaskScheduler | None" = None,
        validator: ValidationService | None = None,
        event_log: "TransitionEventLog | None" = None,
        early_advance_ratio: float = DEFAULT_EARLY_ADVANCE_RATIO,
    ) -> None:
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.validator = validator or ValidationService(
            registry, store, early_advance_ratio=early_advance_ratio
        )
        self.event_log = event_log

    def resolve(self, tray_id: str) -> Batch:
        return resolve_batch(self.store, self.store.get_tray(tray_id))

    def _consistent_batch(self, tray_id: str) -> tuple[Batch, list[str]]:
        batch = self.resolve(tray_id)
        report = self.validator.validate_batch_consistency(batch.trays)
        if not report.valid:
            raise BatchInconsistencyError(report.errors)
        return batch, list(report.warnings)

    def advance_stage(
        self,
        tray_id: str,
        timestamp: datetime,
        tray_numbers: Mapping[str, str] | None = None,
        expected_stage: str | None = None,
    ) -> TransitionResult:
        """Move the whole batch of ``tray_id`` to the next stage.

        Parameters
        ----------
        tray_id:
            Any tray of the batch.
        timestamp:
            Stage entry time written to the next stage's timestamp field.
        tray_numbers:
            Real tray numbers keyed by tray id; consumed when the batch leaves soaking.
        expected_stage:
            When given, the advance is refused unless the next stage has this code.

        Raises
        ------
        TrayNotFoundError, BatchInconsistencyError, TerminalStageError, ValidationFailure
            Hard failures; nothing is written.
        """

        timestamp = ensure_utc(timestamp)
        numbers = {key: value.strip() for key, value in (tray_numbers or {}).items()}
        with self.store.transaction():
            batch, warnings = self._consistent_batch(tray_id)
            lead = batch.lead
            current = self.registry.find_by_code(lead.current_stage)
            target = self.registry.next(current)
            if target is None:
                raise TerminalStageError(
                    f"Batch {batch.key} is already {current.name.lower()}; no further stage"
                )
            if expected_stage is not None and target.code != expected_stage:
                raise ValidationFailure(
                    f"Batch {batch.key} is in {current.code}; expected to advance to "
                    f"{expected_stage} but the next stage is {target.code}"
                )

            recipe = self.store.get_recipe(lead.recipe_id)
            reconcile = current.code == SOAKING
            errors: list[str] = []
            if numbers and reconcile:
                number_check = self.validator.validate_tray_numbers(batch.trays, numbers)
                errors.extend(number_check.errors)
            elif numbers:
                warnings.append(
                    f"Tray numbers are only assigned when leaving {SOAKING}; ignoring "
                    f"{len(numbers)} mapping(s)"
                )
            check = self.validator.validate_advance(batch.trays, target, timestamp, recipe)
            errors.extend(check.errors)
            if errors:
                raise ValidationFailure(errors)
            warnings.extend(check.warnings)

            in_use: dict[str, str] = {}
            if reconcile and numbers:
                in_use = self.store.active_tray_numbers(
                    numbers.values(), exclude_ids=batch.tray_ids
                )

            failures: list[TrayFailure] = []
            renumber: dict[str, str] = {}
            if reconcile:
                failures, renumber = self._plan_tray_numbers(batch, numbers, in_use)
            skipped = {failure.tray_id for failure in failures}
            # numbers may move between trays of the batch, so free them before any write
            self.store.release_tray_numbers(renumber)

            moved: list[Tray] = []
            for tray in batch.trays:
                if tray.id in skipped:
                    continue
                update: dict[str, object] = {
                    "current_stage": target.code,
                    target.timestamp_field: timestamp,
                }
                if tray.id in renumber:
                    update["tray_number"] = renumber[tray.id]
                failure = self._save(tray.model_copy(update=update))
                if failure is not None:
                    failures.append(failure)
                    self.store.save_tray(tray)
                    continue
                moved.append(tray.model_copy(update=update))

            if moved:
                if recipe is None:
                    warnings.append(
                        f"Recipe {lead.recipe_id} not found; follow-on tasks were not scheduled"
                    )
                if self.scheduler is not None:
                    self._reschedule(batch, moved, target, timestamp, recipe)

        for failure in failures:
            logger.warning("Tray %s not advanced: %s", failure.tray_id, failure.reason)
        result = TransitionResult.from_counts(
            TransitionAction.ADVANCE,
            succeeded=len(moved),
            failures=failures,
            warnings=warnings,
            batch_key=batch.key,
            from_stage=current.code,
            to_stage=target.code,
        )
        logger.info(
            "Advanced batch %s from %s to %s (%d advanced, %d failed)",
            batch.key,
            current.code,
            target.code,
            result.advanced,
            result.failed,
        )
        self._log(result, tray_id, timestamp)
        return result

    def revert_stage(
        self,
        tray_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Move the whole batch of ``tray_id`` back to the previous stage.

        The timestamps of the stage being left and of every later stage are cleared so the stage
        records a fresh time when it is re-entered. Pending tasks are rescheduled from the
        re-entered stage's original timestamp; tasks already overdue at ``now`` are dropped.

        Raises
        ------
        TrayNotFoundError, BatchInconsistencyError, InitialStageError, ValidationFailure
            Hard failures; nothing is written.
        TrayNumberConflictError
            A reverted tray's number is held by another active tray; the revert is rolled back.
        """

        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        with self.store.transaction():
            batch, warnings = self._consistent_batch(tray_id)
            lead = batch.lead
            current = self.registry.find_by_code(lead.current_stage)
            previous = self.registry.previous(current)
            if previous is None:
                raise InitialStageError(
                    f"Batch {batch.key} is in {current.name.lower()}, the first stage; "
                    "there is nothing to revert to"
                )

            errors: list[str] = []
            for tray in batch.trays:
                report = self.validator.can_revert_to_stage(
                    tray, previous, batch_key=batch.key if tray is lead else None
                )
                errors.extend(message for message in report.errors if message not in errors)
                if tray is lead:
                    warnings.extend(report.warnings)
            if errors:
                raise ValidationFailure(errors)

            leaving = [current, *self.registry.following(current)]
            cleared = {stage.timestamp_field: None for stage in leaving}
            moved: list[Tray] = []
            for tray in batch.trays:
                update = {"current_stage": previous.code, **cleared}
                # a number collision here aborts the whole revert
                self.store.save_tray(tray.model_copy(update=update))
                moved.append(tray.model_copy(update=update))

            if self.scheduler is not None:
                recipe = self.store.get_recipe(lead.recipe_id)
                reentered = moved[0]
                restart = (
                    reentered.stage_timestamp(previous.timestamp_field) or reentered.planting_at
                )
                if restart is None:
                    self.scheduler.clear_batch_tasks(batch.key)
                    self.scheduler.clear_batch_tasks(batch_key_for(reentered))
                    warnings.append(
                        f"No {previous.timestamp_field} recorded; follow-on tasks were cleared"
                    )
                else:
                    self._reschedule(batch, moved, previous, restart, recipe, not_before=now)

        result = TransitionResult.from_counts(
            TransitionAction.REVERT,
            succeeded=len(moved),
            failures=[],
            warnings=warnings,
            batch_key=batch.key,
            from_stage=current.code,
            to_stage=previous.code,
        )
        logger.info(
            "Reverted batch %s from %s to %s (%d trays)%s",
            batch.key,
            current.code,
            previous.code,
            result.reverted,
            f": {reason}" if reason else "",
        )
        self._log(result, tray_id, now, reason=reason)
        return result

    def suspend_watering(self, tray_id: str, at: datetime) -> TransitionResult:
        """Stamp ``watering_suspended_at`` on every tray of the batch (idempotent)."""

        at = ensure_utc(at)
        with self.store.transaction():
            batch = self.resolve(tray_id)
            already = 0
            failures: list[TrayFailure] = []
            succeeded = 0
            for tray in batch.trays:
                if tray.watering_suspended_at is not None:
                    already += 1
                    succeeded += 1
                    continue
                failure = self._save(tray.model_copy(update={"watering_suspended_at": at}))
                if failure is not None:
                    failures.append(failure)
                    continue
                succeeded += 1
        warnings = [f"{already} tray(s) already had watering suspended"] if already else []
        result = TransitionResult.from_counts(
            TransitionAction.SUSPEND_WATERING,
            succeeded=succeeded,
            failures=failures,
            warnings=warnings,
            batch_key=batch.key,
            from_stage=batch.lead.current_stage,
            to_stage=batch.lead.current_stage,
        )
        logger.info("Suspended watering for batch %s (%d trays)", batch.key, succeeded)
        self._log(result, tray_id, at)
        return result

    def resume_watering(self, tray_id: str) -> TransitionResult:
        with self.store.transaction():
            batch = self.resolve(tray_id)
            failures: list[TrayFailure] = []
            succeeded = 0
            for tray in batch.trays:
                if tray.watering_suspended_at is None:
                    continue
                failure = self._save(tray.model_copy(update={"watering_suspended_at": None}))
                if failure is not None:
                    failures.append(failure)
                    continue
                succeeded += 1
        result = TransitionResult.from_counts(
            TransitionAction.RESUME_WATERING,
            succeeded=succeeded,
            failures=failures,
            warnings=[],
            batch_key=batch.key,
            from_stage=batch.lead.current_stage,
            to_stage=batch.lead.current_stage,
        )
        logger.info("Resumed watering for batch %s (%d trays)", batch.key, succeeded)
        self._log(result, tray_id, None)
        return result

    def _plan_tray_numbers(
        self, batch: Batch, numbers: Mapping[str, str], in_use: Mapping[str, str]
    ) -> tuple[list[TrayFailure], dict[str, str]]:
        """Decide which trays take which number when the batch leaves soaking.

        A tray fails when its new number is held outside the batch, when nothing replaces its
        placeholder, or when a sibling that is not being renumbered keeps that number. Numbers
        swapped between trays of the batch are allowed.
        """

        failures: list[TrayFailure] = []
        renumber: dict[str, str] = {}
        for tray in batch.trays:
            proposed = numbers.get(tray.id)
            if proposed is not None and proposed in in_use:
                failures.append(
                    TrayFailure(
                        tray_id=tray.id,
                        reason=f"Tray number {proposed} is already used by active tray "
                        f"{in_use[proposed]}",
                        code=TrayNumberConflictError.code,
                        tray_number=proposed,
                    )
                )
            elif proposed is not None:
                renumber[tray.id] = proposed
            elif tray.has_placeholder_number:
                failures.append(
                    TrayFailure(
                        tray_id=tray.id,
                        reason=f"No tray number given to replace placeholder {tray.tray_number}",
                        code="tray_number_missing",
                        tray_number=tray.tray_number,
                    )
                )

        while True:
            kept = {
                tray.tray_number: tray.id
                for tray in batch.trays
                if tray.id not in renumber and not tray.has_placeholder_number
            }
            clashes = sorted(tray_id for tray_id, number in renumber.items() if number in kept)
            if not clashes:
                return failures, renumber
            for tray_id in clashes:
                number = renumber.pop(tray_id)
                failures.append(
                    TrayFailure(
                        tray_id=tray_id,
                        reason=f"Tray number {number} is kept by tray {kept[number]}, which is "
                        "not being renumbered",
                        code=TrayNumberConflictError.code,
                        tray_number=number,
                    )
                )

    def _reschedule(
        self,
        batch: Batch,
        moved: list[Tray],
        entered: Stage,
        occurred_at: datetime,
        recipe: Recipe | None,
        not_before: datetime | None = None,
    ) -> None:
        """Schedule follow-on tasks for the trays that changed stage.

        Implicit batch keys include the stage, so the moved trays get a new key. Tasks under the
        old key are narrowed to the trays left behind, or cleared when none are.
        """

        if self.scheduler is None:
            return
        key = batch_key_for(moved[0])
        self.scheduler.schedule_follow_on_tasks(
            Batch(key=key, trays=tuple(moved)), entered, occurred_at, recipe, not_before=not_before
        )
        if key == batch.key:
            return
        moved_ids = {tray.id for tray in moved}
        stayed = tuple(tray for tray in batch.trays if tray.id not in moved_ids)
        if stayed:
            self.scheduler.retain_trays(Batch(key=batch.key, trays=stayed))
        else:
            self.scheduler.clear_batch_tasks(batch.key)

    def _save(self, tray: Tray) -> TrayFailure | None:
        """Persist one tray in its own savepoint; a number collision fails only that tray."""

        try:
            with self.store.transaction():
                self.store.save_tray(tray)
        except TrayNumberConflictError as exc:
            return TrayFailure(
                tray_id=tray.id,
                reason=str(exc),
                code=exc.code,
                tray_number=tray.tray_number,
            )
        return None

    def _log(
        self,
        result: TransitionResult,
        tray_id: str,
        occurred_at: datetime | None,
        reason: str | None = None,
    ) -> None:
        if self.event_log is None:
            return
        self.event_log.record(result, tray_id=tray_id, occurred_at=occurred_at, reason=reason)
