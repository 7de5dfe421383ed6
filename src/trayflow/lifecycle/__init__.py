"""Batch resolution, validation and stage transitions."""

from .batches import Batch, BatchResolver, ExplicitBatchId, ImplicitMatch, resolve_batch
from .engine import StageTransitionEngine
from .results import (
    TransitionAction,
    TransitionResult,
    TransitionStatus,
    TrayFailure,
    ValidationReport,
)
from .validation import ValidationService

__all__ = [
    "Batch",
    "BatchResolver",
    "ExplicitBatchId",
    "ImplicitMatch",
    "resolve_batch",
    "StageTransitionEngine",
    "TransitionAction",
    "TransitionResult",
    "TransitionStatus",
    "TrayFailure",
    "ValidationReport",
    "ValidationService",
]
