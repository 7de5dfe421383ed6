"""Data contracts (Pydantic schemas, validators)."""

from .models import (
    CropPlan,
    HarvestRecord,
    Recipe,
    ScheduledTask,
    TaskConditions,
    Tray,
    advance_task_name,
    ensure_utc,
    placeholder_tray_number,
    target_stage_for_task,
)

__all__ = [
    "Recipe",
    "Tray",
    "HarvestRecord",
    "CropPlan",
    "TaskConditions",
    "ScheduledTask",
    "advance_task_name",
    "ensure_utc",
    "placeholder_tray_number",
    "target_stage_for_task",
]
