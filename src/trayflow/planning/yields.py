"""Time-decayed yield estimation and crop-plan recalculation.

Harvest history inside the lookback window is weighted by ``exp(-age_days / decay_days)`` so recent
harvests dominate. With no history the recipe's static ``expected_yield_per_tray`` is used.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pandas as pd

from trayflow.contract.models import CropPlan, Recipe, ensure_utc
from trayflow.core.errors import RecipeMissingError
from trayflow.storage.sqlite_store import TrayStore

__all__ = [
    "RecommendationThresholds",
    "YieldStats",
    "PlanRecalcResult",
    "YieldCalculator",
    "trays_for",
]

logger = logging.getLogger(__name__)

_HISTORY_COLUMNS = ["harvested_at", "grams_per_tray", "age_days", "weight"]


def trays_for(grams_needed: float, grams_per_tray: float) -> int:
    """Trays required to produce ``grams_needed``; always rounded up."""

    if grams_per_tray <= 0:
        raise ValueError("grams_per_tray must be positive")
    if grams_needed <= 0:
        return 0
    # round away float noise such as 10.000000000000002 before taking the ceiling
    return math.ceil(round(grams_needed / grams_per_tray, 9))


@dataclass(frozen=True)
class RecommendationThresholds:
    """Percent deviation of weighted from expected yield used to phrase recommendations."""

    matching_well: float = 5.0
    significantly_over: float = 15.0
    significantly_under: float = -15.0

    def recommend(self, weighted: float | None, expected: float) -> str:
        if weighted is None:
            return "No harvest data available. Using recipe expected yield."
        difference = (weighted - expected) / expected * 100.0
        if abs(difference) < self.matching_well:
            return "Harvest data matches recipe expectations well."
        if difference > self.significantly_over:
            return (
                "Recent harvests significantly exceed expectations. Consider updating recipe yield."
            )
        if difference < self.significantly_under:
            return "Recent harvests are below expectations. Consider reviewing growing conditions."
        if difference > 0:
            return "Recent harvests are above expectations."
        return "Recent harvests are below expectations."


@dataclass
class YieldStats:
    """Numbers behind a planning yield, kept for auditing."""

    recipe_id: str
    harvest_count: int
    weighted_average: float | None
    raw_average: float | None
    min: float | None
    max: float | None
    recipe_expected: float
    date_range: tuple[str, str] | None
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipe_id": self.recipe_id,
            "harvest_count": self.harvest_count,
            "weighted_average": self.weighted_average,
            "raw_average": self.raw_average,
            "min": self.min,
            "max": self.max,
            "recipe_expected": self.recipe_expected,
            "date_range": list(self.date_range) if self.date_range else None,
            "recommendation": self.recommendation,
        }


@dataclass
class PlanRecalcResult:
    """Outcome of :meth:`YieldCalculator.recalculate_plan`."""

    plan: CropPlan
    previous_grams_per_tray: float
    previous_trays_needed: int
    stats: YieldStats
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (
            self.plan.grams_per_tray != self.previous_grams_per_tray
            or self.plan.trays_needed != self.previous_trays_needed
        )


class YieldCalculator:
    """Planning-yield estimates from historical harvests.

    Parameters
    ----------
    store:
        Source of harvest records, recipes and plans.
    history_months:
        Calendar months of history considered (default 6).
    decay_days:
        Exponential decay constant in days (default 30).
    default_buffer_percentage:
        Safety margin applied by :meth:`recalculate_plan` when the recipe sets none.
    thresholds:
        Recommendation wording thresholds.
    """

    def __init__(
        self,
        store: TrayStore,
        history_months: int = 6,
        decay_days: float = 30.0,
        default_buffer_percentage: float | None = None,
        thresholds: RecommendationThresholds | None = None,
    ) -> None:
        if history_months < 1:
            raise ValueError("history_months must be >= 1")
        if decay_days <= 0:
            raise ValueError("decay_days must be positive")
        self.store = store
        self.history_months = history_months
        self.decay_days = decay_days
        self.default_buffer_percentage = default_buffer_percentage
        self.thresholds = thresholds or RecommendationThresholds()

    def history_frame(self, recipe: Recipe, as_of: datetime | None = None) -> pd.DataFrame:
        """Harvests inside the lookback window with their age and decay weight, newest first."""

        as_of = ensure_utc(as_of) if as_of is not None else datetime.now(UTC)
        cutoff = (pd.Timestamp(as_of) - pd.DateOffset(months=self.history_months)).to_pydatetime()
        records = self.store.harvests_for_recipe(recipe.id, since=cutoff, until=as_of)
        if not records:
            return pd.DataFrame(columns=_HISTORY_COLUMNS)
        frame = pd.DataFrame(
            {
                "harvested_at": [record.harvested_at for record in records],
                "grams_per_tray": [float(record.grams_per_tray) for record in records],
            }
        )
        frame["age_days"] = [
            (as_of - record.harvested_at).total_seconds() / 86400.0 for record in records
        ]
        frame["weight"] = (-frame["age_days"] / self.decay_days).map(math.exp)
        return frame.sort_values("harvested_at", ascending=False).reset_index(drop=True)

    def calculate_weighted_yield(
        self, recipe: Recipe, as_of: datetime | None = None
    ) -> float | None:
        frame = self.history_frame(recipe, as_of)
        if frame.empty:
            return None
        total_weight = float(frame["weight"].sum())
        if total_weight <= 0:
            return None
        return float((frame["grams_per_tray"] * frame["weight"]).sum() / total_weight)

    def calculate_planning_yield(self, recipe: Recipe, as_of: datetime | None = None) -> float:
        """Weighted historical yield, or ``recipe.expected_yield_per_tray`` without history."""

        weighted = self.calculate_weighted_yield(recipe, as_of)
        if weighted is None:
            return recipe.expected_yield_per_tray
        return weighted

    def get_yield_stats(self, recipe: Recipe, as_of: datetime | None = None) -> YieldStats:
        frame = self.history_frame(recipe, as_of)
        if frame.empty:
            return YieldStats(
                recipe_id=recipe.id,
                harvest_count=0,
                weighted_average=None,
                raw_average=None,
                min=None,
                max=None,
                recipe_expected=recipe.expected_yield_per_tray,
                date_range=None,
                recommendation=self.thresholds.recommend(None, recipe.expected_yield_per_tray),
            )
        grams = frame["grams_per_tray"]
        weighted = float((grams * frame["weight"]).sum() / frame["weight"].sum())
        oldest = frame["harvested_at"].min()
        newest = frame["harvested_at"].max()
        return YieldStats(
            recipe_id=recipe.id,
            harvest_count=int(len(frame)),
            weighted_average=round(weighted, 2),
            raw_average=round(float(grams.mean()), 2),
            min=float(grams.min()),
            max=float(grams.max()),
            recipe_expected=recipe.expected_yield_per_tray,
            date_range=(oldest.date().isoformat(), newest.date().isoformat()),
            recommendation=self.thresholds.recommend(weighted, recipe.expected_yield_per_tray),
        )

    def recalculate_plan(
        self, plan: CropPlan | str, as_of: datetime | None = None
    ) -> PlanRecalcResult:
        """Recompute ``grams_per_tray`` and ``trays_needed`` for a plan and persist it.

        The stored plan keeps the previous and new values plus a snapshot of the yield stats in
        ``calculation_details``. Re-running with unchanged harvest history yields the same
        ``grams_per_tray`` and ``trays_needed``.

        Raises
        ------
        KeyError
            When ``plan`` is an id that does not exist.
        RecipeMissingError
            When the plan has no recipe or its recipe is unknown.
        """

        if isinstance(plan, str):
            stored = self.store.get_plan(plan)
            if stored is None:
                raise KeyError(f"Crop plan '{plan}' not found")
            plan = stored
        recipe = self.store.get_recipe(plan.recipe_id)
        if recipe is None:
            raise RecipeMissingError(plan.recipe_id, context=f"crop plan '{plan.id}'")

        warnings: list[str] = []
        weighted = self.calculate_weighted_yield(recipe, as_of)
        if weighted is not None and weighted <= 0:
            warnings.append(
                f"Harvest history for recipe {recipe.id} averages 0 g/tray; ignoring it"
            )
            weighted = None
        elif weighted is None:
            warnings.append(
                f"No harvest history for recipe {recipe.id}; using expected yield "
                f"{recipe.expected_yield_per_tray:g} g/tray"
            )
        base_yield = weighted if weighted is not None else recipe.expected_yield_per_tray
        buffer = (
            recipe.buffer_percentage
            if recipe.buffer_percentage is not None
            else self.default_buffer_percentage
        )
        planning_yield = base_yield / (1 + buffer / 100.0) if buffer else base_yield
        grams_per_tray = round(planning_yield, 2)
        source = "history" if weighted is not None else "recipe"
        if grams_per_tray <= 0:
            warnings.append(
                f"Planning yield {planning_yield:.4g} g/tray rounds to 0; using expected yield "
                f"{recipe.expected_yield_per_tray:g} g/tray"
            )
            # 0.01 g is the smallest stored yield
            grams_per_tray = max(round(recipe.expected_yield_per_tray, 2), 0.01)
            source = "recipe"
        trays_needed = trays_for(plan.grams_needed, grams_per_tray)
        stats = self.get_yield_stats(recipe, as_of)

        details: dict[str, Any] = {
            "previous": {
                "grams_per_tray": plan.grams_per_tray,
                "trays_needed": plan.trays_needed,
            },
            "current": {"grams_per_tray": grams_per_tray, "trays_needed": trays_needed},
            "yield_source": source,
            "base_yield": round(base_yield, 4),
            "buffer_percentage": buffer,
            "stats": stats.to_dict(),
        }
        if recipe.seed_density_grams_per_tray is not None:
            details["seed_grams_needed"] = round(
                trays_needed * recipe.seed_density_grams_per_tray, 2
            )

        updated = plan.model_copy(
            update={
                "grams_per_tray": grams_per_tray,
                "trays_needed": trays_needed,
                "calculation_details": details,
            }
        )
        self.store.save_plan(updated)
        logger.info(
            "Recalculated plan %s: %.2f g/tray -> %d trays (was %.2f g/tray, %d trays)",
            plan.id,
            grams_per_tray,
            trays_needed,
            plan.grams_per_tray,
            plan.trays_needed,
        )
        return PlanRecalcResult(
            plan=updated,
            previous_grams_per_tray=plan.grams_per_tray,
            previous_trays_needed=plan.trays_needed,
            stats=stats,
            warnings=warnings,
        )
