"""Pydantic models describing trays, recipes, harvests, plans and scheduled tasks."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator

from trayflow.stages.registry import BLACKOUT, GERMINATION, LIGHT, SOAKING

PLACEHOLDER_PATTERN = re.compile(r"^SOAKING-\d+$", re.IGNORECASE)
RESOURCE_TYPE_CROPS = "crops"
SUSPEND_WATERING = "suspend_watering"
SOAKING_COMPLETION_WARNING = "soaking_completion_warning"
_ADVANCE_PREFIX = "advance_to_"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so every stored timestamp is comparable."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def placeholder_tray_number(index: int) -> str:
    """Return the temporary identifier given to the ``index``-th soaking tray (1-based)."""

    return f"SOAKING-{index}"


def advance_task_name(stage_code: str) -> str:
    return f"{_ADVANCE_PREFIX}{stage_code}"


def target_stage_for_task(task_name: str) -> str | None:
    """Return the stage an ``advance_to_*`` task targets, or ``None`` for other tasks."""

    if task_name.startswith(_ADVANCE_PREFIX):
        return task_name[len(_ADVANCE_PREFIX) :]
    return None


class Recipe(BaseModel):
    """Growing recipe: per-stage durations and expected yield.

    Attributes
    ----------
    id:
        Unique recipe identifier referenced by trays, harvests and plans.
    name:
        Display name (variety and cultivar).
    seed_soak_hours:
        Hours spent soaking before planting; ``0`` means the recipe skips soaking.
    germination_days / blackout_days / light_days:
        Expected stage durations in days.
    expected_yield_per_tray:
        Static yield estimate (grams/tray) used when no harvest history exists.
    buffer_percentage:
        Optional safety margin applied to the planning yield when recalculating plans.
    suspend_watering_hours:
        Hours before expected harvest when watering should stop. ``None`` falls back to settings.
    seed_density_grams_per_tray:
        Seed weight sown per tray, used to report seed required by a plan.
    """

    id: str
    name: str
    seed_soak_hours: float = 0.0
    germination_days: float
    blackout_days: float = 0.0
    light_days: float
    expected_yield_per_tray: float
    buffer_percentage: float | None = None
    suspend_watering_hours: float | None = None
    seed_density_grams_per_tray: float | None = None

    @field_validator(
        "seed_soak_hours",
        "germination_days",
        "blackout_days",
        "light_days",
    )
    @classmethod
    def _durations_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Recipe stage durations must be non-negative")
        return value

    @field_validator("expected_yield_per_tray")
    @classmethod
    def _yield_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Recipe.expected_yield_per_tray must be positive")
        return value

    @field_validator("buffer_percentage", "suspend_watering_hours", "seed_density_grams_per_tray")
    @classmethod
    def _optional_non_negative(cls, value: float | None) -> float | None:
        if value is not None and value < 0:
            raise ValueError("Recipe optional fields must be non-negative")
        return value

    @property
    def requires_soaking(self) -> bool:
        return self.seed_soak_hours > 0

    def stage_duration(self, stage_code: str) -> timedelta | None:
        """Expected time spent in ``stage_code``; ``None`` for stages without a duration."""

        if stage_code == SOAKING:
            return timedelta(hours=self.seed_soak_hours)
        if stage_code == GERMINATION:
            return timedelta(days=self.germination_days)
        if stage_code == BLACKOUT:
            return timedelta(days=self.blackout_days)
        if stage_code == LIGHT:
            return timedelta(days=self.light_days)
        return None

    def total_days(self) -> float:
        """Days from planting to harvest (germination + blackout + light)."""

        return self.germination_days + self.blackout_days + self.light_days

    def effective_total_days(self) -> float:
        return self.total_days() + self.seed_soak_hours / 24.0


class Tray(BaseModel):
    """A physical tray of microgreens (a crop record).

    Attributes
    ----------
    id:
        Unique tray record identifier.
    recipe_id:
        Recipe being grown; ``None`` for legacy records missing a recipe.
    batch_id:
        Explicit batch identifier, or ``None`` for implicitly grouped trays.
    tray_number:
        Physical tray label. Soaking trays carry ``SOAKING-<n>`` placeholders until planted.
    current_stage:
        Code of the stage the tray is in.
    soaking_at / planting_at / germination_at / blackout_at / light_at / harvested_at:
        Stage entry timestamps (UTC).
    watering_suspended_at:
        Set when watering was stopped ahead of harvest.
    """

    id: str
    recipe_id: str | None = None
    batch_id: str | None = None
    tray_number: str
    current_stage: str
    soaking_at: datetime | None = None
    planting_at: datetime | None = None
    germination_at: datetime | None = None
    blackout_at: datetime | None = None
    light_at: datetime | None = None
    harvested_at: datetime | None = None
    watering_suspended_at: datetime | None = None
    notes: str | None = None

    @field_validator(
        "soaking_at",
        "planting_at",
        "germination_at",
        "blackout_at",
        "light_at",
        "harvested_at",
        "watering_suspended_at",
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @field_validator("tray_number")
    @classmethod
    def _tray_number_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Tray.tray_number must not be blank")
        return value

    @property
    def has_placeholder_number(self) -> bool:
        return bool(PLACEHOLDER_PATTERN.match(self.tray_number))

    @property
    def batch_anchor(self) -> datetime | None:
        """Planting timestamp used for implicit grouping (soaking time before planting)."""

        return self.planting_at or self.soaking_at

    def stage_timestamp(self, field: str) -> datetime | None:
        return getattr(self, field, None)


class HarvestRecord(BaseModel):
    """Observed yield for one harvest of a recipe; immutable once recorded."""

    id: str | None = None
    recipe_id: str
    harvested_at: datetime
    grams_per_tray: float
    tray_ids: tuple[str, ...] = ()

    @field_validator("harvested_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("grams_per_tray")
    @classmethod
    def _grams_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("HarvestRecord.grams_per_tray must be non-negative")
        return value


class CropPlan(BaseModel):
    """Derived planning artifact: how many trays a quantity of product needs."""

    id: str
    recipe_id: str | None = None
    grams_needed: float
    grams_per_tray: float = 0.0
    trays_needed: int = 0
    calculation_details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("grams_needed", "grams_per_tray")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("CropPlan weights must be non-negative")
        return value

    @field_validator("trays_needed")
    @classmethod
    def _trays_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CropPlan.trays_needed must be non-negative")
        return value


class TaskConditions(BaseModel):
    """Payload telling the task runner which batch a scheduled task acts on."""

    batch_key: str
    tray_ids: list[str]
    target_stage: str | None = None
    tray_numbers: list[str] = Field(default_factory=list)


class ScheduledTask(BaseModel):
    """One-shot deferred task created by the scheduler and consumed by the runner."""

    id: int | None = None
    resource_type: str = RESOURCE_TYPE_CROPS
    task_name: str
    name: str | None = None
    batch_key: str
    conditions: TaskConditions
    next_run_at: datetime
    last_run_at: datetime | None = None
    is_active: bool = True

    @field_validator("next_run_at", "last_run_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def target_stage(self) -> str | None:
        return self.conditions.target_stage or target_stage_for_task(self.task_name)


__all__ = [
    "PLACEHOLDER_PATTERN",
    "RESOURCE_TYPE_CROPS",
    "SUSPEND_WATERING",
    "SOAKING_COMPLETION_WARNING",
    "ensure_utc",
    "placeholder_tray_number",
    "advance_task_name",
    "target_stage_for_task",
    "Recipe",
    "Tray",
    "HarvestRecord",
    "CropPlan",
    "TaskConditions",
    "ScheduledTask",
]
