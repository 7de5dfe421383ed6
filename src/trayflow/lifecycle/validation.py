"""Go/no-go checks for batch transitions.

Errors block an operation before any tray is touched; warnings are passed through to the caller.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

from trayflow.contract.models import Recipe, Tray, ensure_utc
from trayflow.lifecycle.results import ValidationReport
from trayflow.stages.registry import SOAKING, Stage, StageRegistry
from trayflow.storage.sqlite_store import TrayStore

__all__ = ["ValidationService", "DEFAULT_EARLY_ADVANCE_RATIO"]

DEFAULT_EARLY_ADVANCE_RATIO = 0.75


def _fmt(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


class ValidationService:
    """Batch-consistency, advance and rollback-safety checks.

    Parameters
    ----------
    registry:
        Stage table used to resolve neighbours and timestamp fields.
    store:
        Read access to harvest records and scheduled tasks (rollback dependencies).
    early_advance_ratio:
        Fraction of a stage's expected duration below which advancing raises a warning.
    """

    def __init__(
        self,
        registry: StageRegistry,
        store: TrayStore,
        early_advance_ratio: float = DEFAULT_EARLY_ADVANCE_RATIO,
    ) -> None:
        self.registry = registry
        self.store = store
        self.early_advance_ratio = early_advance_ratio

    def validate_batch_consistency(self, trays: Sequence[Tray]) -> ValidationReport:
        """Every tray of a batch must share recipe and current stage."""

        report = ValidationReport()
        if not trays:
            report.errors.append("Batch contains no trays")
            return report

        stages = sorted({tray.current_stage for tray in trays})
        if len(stages) > 1:
            report.errors.append(f"Trays are in different stages: {', '.join(stages)}")
        recipes = {tray.recipe_id for tray in trays}
        if len(recipes) > 1:
            report.errors.append(f"Batch contains {len(recipes)} different recipes")

        placeholders = [tray for tray in trays if tray.has_placeholder_number]
        for tray in placeholders:
            if tray.current_stage != SOAKING:
                report.errors.append(
                    f"Tray {tray.id} is in {tray.current_stage} but still carries placeholder "
                    f"number {tray.tray_number}"
                )
        if stages == [SOAKING] and placeholders and len(placeholders) < len(trays):
            report.errors.append("Soaking batch mixes placeholder and assigned tray numbers")

        for tray in trays:
            if tray.watering_suspended_at is not None:
                report.warnings.append(
                    f"Tray {tray.tray_number} has suspended watering since "
                    f"{_fmt(tray.watering_suspended_at)}"
                )
        return report

    def validate_advance(
        self,
        trays: Sequence[Tray],
        target: Stage,
        timestamp: datetime,
        recipe: Recipe | None,
    ) -> ValidationReport:
        """Timestamp sequencing errors plus early-advance warnings for a forward move."""

        report = ValidationReport()
        timestamp = ensure_utc(timestamp)
        for stage in self.registry:
            if stage.sort_order >= target.sort_order:
                break
            for tray in trays:
                recorded = tray.stage_timestamp(stage.timestamp_field)
                if recorded is not None and timestamp < recorded:
                    message = (
                        f"{target.name} time must be after {stage.code} time ({_fmt(recorded)})"
                    )
                    if message not in report.errors:
                        report.errors.append(message)

        if recipe is not None and trays:
            current = self.registry.find_by_code(trays[0].current_stage)
            expected = recipe.stage_duration(current.code)
            started = trays[0].stage_timestamp(current.timestamp_field) or trays[0].planting_at
            if expected and started is not None and timestamp >= started:
                elapsed_hours = (timestamp - started).total_seconds() / 3600.0
                expected_hours = expected.total_seconds() / 3600.0
                if elapsed_hours < expected_hours * self.early_advance_ratio:
                    report.warnings.append(
                        f"Advancing earlier than typical ({elapsed_hours:.1f} hours vs expected "
                        f"{expected_hours:.1f} hours)"
                    )
        return report

    def validate_tray_numbers(
        self, trays: Sequence[Tray], tray_numbers: Mapping[str, str]
    ) -> ValidationReport:
        """Check a tray-number map against the batch before anything is mutated."""

        report = ValidationReport()
        batch_ids = {tray.id for tray in trays}
        unknown = sorted(set(tray_numbers) - batch_ids)
        if unknown:
            report.errors.append(
                f"Tray numbers given for trays outside the batch: {', '.join(unknown)}"
            )

        seen: dict[str, str] = {}
        for tray_id in sorted(tray_numbers):
            number = (tray_numbers[tray_id] or "").strip()
            if not number:
                report.errors.append(f"Tray number for tray {tray_id} is blank")
                continue
            if number in seen:
                report.errors.append(
                    f"Tray number {number} assigned to both {seen[number]} and {tray_id}"
                )
                continue
            seen[number] = tray_id
        return report

    def can_revert_to_stage(
        self, tray: Tray, target: Stage | str, batch_key: str | None = None
    ) -> ValidationReport:
        """Rollback safety for ``tray`` moving back to ``target``.

        Reverting is refused at the first stage, to anything but the immediately previous stage,
        once harvest records reference the tray (clearing timestamps would orphan them), and when
        leaving the terminal stage would reclaim a number another active tray now holds.
        """

        report = ValidationReport()
        current = self.registry.find_by_code(tray.current_stage)
        target_stage = self.registry.find_by_code(target) if isinstance(target, str) else target
        previous = self.registry.previous(current)
        if previous is None:
            report.errors.append(
                f"{current.name} is the first stage; there is nothing to revert to"
            )
            return report
        if target_stage.code != previous.code:
            report.errors.append(f"Cannot revert from {current.name} to {target_stage.name}")
        if self.store.harvests_for_tray(tray.id):
            report.errors.append(
                f"Tray {tray.id} has harvest records; reverting would orphan them"
            )
        if current.is_terminal and not tray.has_placeholder_number:
            taken = self.store.active_tray_numbers([tray.tray_number], exclude_ids=[tray.id])
            if tray.tray_number in taken:
                report.errors.append(
                    f"Tray number {tray.tray_number} of tray {tray.id} is now used by active tray "
                    f"{taken[tray.tray_number]}"
                )

        leaving = tray.stage_timestamp(current.timestamp_field)
        if leaving is not None:
            report.warnings.append(
                f"{current.timestamp_field} recorded at {_fmt(leaving)} will be cleared"
            )
        if batch_key is not None:
            active = len(self.store.list_tasks(batch_key=batch_key))
            if active:
                report.warnings.append(
                    f"{active} active scheduled task(s) for this batch will be rescheduled"
                )
        return report
