"""Growth-stage definitions and the ordered stage registry."""

from .registry import (
    BLACKOUT,
    DEFAULT_STAGES,
    GERMINATION,
    HARVESTED,
    LIGHT,
    SOAKING,
    Stage,
    StageRegistry,
    default_stage_registry,
)

__all__ = [
    "SOAKING",
    "GERMINATION",
    "BLACKOUT",
    "LIGHT",
    "HARVESTED",
    "Stage",
    "StageRegistry",
    "DEFAULT_STAGES",
    "default_stage_registry",
]
