"""Runtime settings loaded from YAML."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from trayflow.planning.yields import RecommendationThresholds

__all__ = ["Settings", "ThresholdSettings", "load_settings", "SettingsError"]


class SettingsError(ValueError):
    """Raised when a settings file cannot be parsed or validated."""


class ThresholdSettings(BaseModel):
    """Percent deviations used to phrase yield recommendations."""

    model_config = ConfigDict(extra="forbid")

    matching_well: float = 5.0
    significantly_over: float = 15.0
    significantly_under: float = -15.0

    def to_thresholds(self) -> RecommendationThresholds:
        return RecommendationThresholds(
            matching_well=self.matching_well,
            significantly_over=self.significantly_over,
            significantly_under=self.significantly_under,
        )


class Settings(BaseModel):
    """Settings shared by the service facade and the CLI.

    Attributes
    ----------
    database_path:
        SQLite file holding trays, tasks, harvests and plans (``":memory:"`` for throwaway runs).
    event_log_path:
        Optional JSONL audit log of transitions.
    yield_history_months / yield_decay_days:
        Lookback window and decay constant for weighted yields.
    default_buffer_percentage:
        Planning buffer used when a recipe sets none. ``None`` means no buffer.
    default_suspend_watering_hours:
        Hours before harvest to stop watering when a recipe sets none. ``None`` disables it.
    early_advance_ratio:
        Fraction of a stage's expected duration below which advancing warns.
    """

    model_config = ConfigDict(extra="forbid")

    database_path: str = "trayflow.db"
    event_log_path: str | None = None
    yield_history_months: int = 6
    yield_decay_days: float = 30.0
    default_buffer_percentage: float | None = None
    default_suspend_watering_hours: float | None = None
    early_advance_ratio: float = 0.75
    thresholds: ThresholdSettings = ThresholdSettings()

    @field_validator("yield_history_months")
    @classmethod
    def _months_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("yield_history_months must be >= 1")
        return value

    @field_validator("yield_decay_days")
    @classmethod
    def _decay_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("yield_decay_days must be positive")
        return value

    @field_validator("early_advance_ratio")
    @classmethod
    def _ratio_in_range(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("early_advance_ratio must be within [0, 1]")
        return value

    @field_validator("default_buffer_percentage", "default_suspend_watering_hours")
    @classmethod
    def _optional_non_negative(cls, value: float | None) -> float | None:
        if value is not None and value < 0:
            raise ValueError("Settings defaults must be non-negative")
        return value


def load_settings(path: str | Path | None) -> Settings:
    """Read settings from YAML; a missing path or file yields the defaults.

    Relative ``database_path``/``event_log_path`` values are resolved against the file's folder.
    """

    if path is None:
        return Settings()
    path = Path(path)
    if not path.exists():
        return Settings()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise SettingsError(f"Could not parse settings file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping")
    try:
        settings = Settings.model_validate(raw)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings in {path}: {exc}") from exc

    root = path.resolve().parent
    updates: dict[str, str] = {}
    if settings.database_path != ":memory:" and not Path(settings.database_path).is_absolute():
        updates["database_path"] = str(root / settings.database_path)
    if settings.event_log_path and not Path(settings.event_log_path).is_absolute():
        updates["event_log_path"] = str(root / settings.event_log_path)
    return settings.model_copy(update=updates) if updates else settings
