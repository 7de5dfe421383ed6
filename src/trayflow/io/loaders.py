"""Farm data loading utilities (YAML bundle of recipes, trays, harvests and plans)."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, TypeAdapter, field_validator

from trayflow.contract.models import (
    CropPlan,
    HarvestRecord,
    Recipe,
    Tray,
    ensure_utc,
    placeholder_tray_number,
)
from trayflow.stages.registry import GERMINATION, SOAKING, Stage, StageRegistry
from trayflow.storage.sqlite_store import TrayStore

__all__ = ["BatchSpec", "FarmData", "expand_batch", "load_farm_data", "apply_farm_data"]

logger = logging.getLogger(__name__)


class BatchSpec(BaseModel):
    """Shorthand for a freshly started batch; expands into ``count`` trays."""

    batch_id: str
    recipe_id: str
    count: int
    started_at: datetime
    tray_numbers: list[str] | None = None
    notes: str | None = None

    @field_validator("count")
    @classmethod
    def _count_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BatchSpec.count must be >= 1")
        return value


@dataclass
class FarmData:
    """Validated content of a farm bundle."""

    stages: list[Stage] | None = None
    recipes: list[Recipe] = field(default_factory=list)
    trays: list[Tray] = field(default_factory=list)
    batches: list[BatchSpec] = field(default_factory=list)
    harvests: list[HarvestRecord] = field(default_factory=list)
    plans: list[CropPlan] = field(default_factory=list)


def expand_batch(recipe: Recipe, spec: BatchSpec) -> list[Tray]:
    """Create the trays of a new batch.

    Soaking recipes start in ``soaking`` with ``SOAKING-<n>`` placeholders; real numbers are
    assigned when the batch advances to germination. Other recipes start in ``germination`` and
    need real tray numbers up front.
    """

    started = ensure_utc(spec.started_at)
    if spec.tray_numbers is not None and len(spec.tray_numbers) != spec.count:
        raise ValueError(
            f"Batch {spec.batch_id}: {len(spec.tray_numbers)} tray numbers for {spec.count} trays"
        )
    if not recipe.requires_soaking and spec.tray_numbers is None:
        raise ValueError(
            f"Batch {spec.batch_id}: recipe {recipe.id} does not soak, tray numbers are required"
        )

    trays: list[Tray] = []
    for index in range(1, spec.count + 1):
        payload: dict[str, Any] = {
            "id": f"{spec.batch_id}-{index}",
            "recipe_id": recipe.id,
            "batch_id": spec.batch_id,
            "planting_at": started,
            "notes": spec.notes,
        }
        if recipe.requires_soaking:
            payload["current_stage"] = SOAKING
            payload["soaking_at"] = started
            payload["tray_number"] = (
                spec.tray_numbers[index - 1]
                if spec.tray_numbers is not None
                else placeholder_tray_number(index)
            )
        else:
            payload["current_stage"] = GERMINATION
            payload["germination_at"] = started
            payload["tray_number"] = spec.tray_numbers[index - 1]
        trays.append(Tray.model_validate(payload))
    return trays


def _section(meta: dict[str, Any], name: str) -> list[Any]:
    value = meta.get(name) or []
    if not isinstance(value, list):
        raise ValueError(f"Section '{name}' must be a list")
    return value


def load_farm_data(yaml_path: str | Path) -> FarmData:
    """Load and validate a farm bundle.

    Parameters
    ----------
    yaml_path:
        YAML file with optional ``stages``, ``recipes``, ``trays``, ``batches``, ``harvests`` and
        ``plans`` lists.

    Returns
    -------
    FarmData
        Validated records; nothing is written until :func:`apply_farm_data`.
    """

    path = Path(yaml_path)
    with path.open("r", encoding="utf-8") as handle:
        meta = yaml.safe_load(handle) or {}
    if not isinstance(meta, dict):
        raise ValueError(f"Farm bundle {path} must contain a mapping")
    unknown = sorted(set(meta) - {"stages", "recipes", "trays", "batches", "harvests", "plans"})
    if unknown:
        raise ValueError(f"Farm bundle {path} has unknown sections: {', '.join(unknown)}")

    stages = None
    if meta.get("stages"):
        stages = [Stage(**row) for row in _section(meta, "stages")]
    return FarmData(
        stages=stages,
        recipes=TypeAdapter(list[Recipe]).validate_python(_section(meta, "recipes")),
        trays=TypeAdapter(list[Tray]).validate_python(_section(meta, "trays")),
        batches=TypeAdapter(list[BatchSpec]).validate_python(_section(meta, "batches")),
        harvests=TypeAdapter(list[HarvestRecord]).validate_python(_section(meta, "harvests")),
        plans=TypeAdapter(list[CropPlan]).validate_python(_section(meta, "plans")),
    )


def _known_recipes(store: TrayStore, recipes: Sequence[Recipe]) -> dict[str, Recipe]:
    known = {recipe.id: recipe for recipe in store.list_recipes()}
    known.update({recipe.id: recipe for recipe in recipes})
    return known


def apply_farm_data(store: TrayStore, data: FarmData) -> dict[str, int]:
    """Write a bundle into ``store`` in one transaction and return per-section counts."""

    counts = {"recipes": 0, "trays": 0, "harvests": 0, "plans": 0}
    with store.transaction():
        if data.stages is not None:
            store.save_stages(StageRegistry(data.stages))
        for recipe in data.recipes:
            store.save_recipe(recipe)
            counts["recipes"] += 1

        recipes = _known_recipes(store, data.recipes)
        trays = list(data.trays)
        for spec in data.batches:
            recipe = recipes.get(spec.recipe_id)
            if recipe is None:
                raise ValueError(
                    f"Batch {spec.batch_id} references unknown recipe {spec.recipe_id}"
                )
            trays.extend(expand_batch(recipe, spec))
        for tray in trays:
            if tray.recipe_id is not None and tray.recipe_id not in recipes:
                logger.warning("Tray %s references unknown recipe %s", tray.id, tray.recipe_id)
            store.save_tray(tray)
            counts["trays"] += 1

        for record in data.harvests:
            store.add_harvest(record)
            counts["harvests"] += 1
        for plan in data.plans:
            store.save_plan(plan)
            counts["plans"] += 1
    logger.info(
        "Loaded %d recipe(s), %d tray(s), %d harvest(s), %d plan(s)",
        counts["recipes"],
        counts["trays"],
        counts["harvests"],
        counts["plans"],
    )
    return counts
