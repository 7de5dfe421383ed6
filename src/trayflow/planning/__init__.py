"""Yield estimation and crop-plan recalculation."""

from .yields import (
    PlanRecalcResult,
    RecommendationThresholds,
    YieldCalculator,
    YieldStats,
    trays_for,
)

__all__ = [
    "PlanRecalcResult",
    "RecommendationThresholds",
    "YieldCalculator",
    "YieldStats",
    "trays_for",
]
