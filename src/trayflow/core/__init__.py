"""Core utilities shared across trayflow modules."""

from .errors import (
    BatchInconsistencyError,
    InitialStageError,
    LifecycleError,
    RecipeMissingError,
    StageNotFoundError,
    TerminalStageError,
    TrayNotFoundError,
    TrayNumberConflictError,
    ValidationFailure,
)

__all__ = [
    "LifecycleError",
    "StageNotFoundError",
    "TrayNotFoundError",
    "TerminalStageError",
    "InitialStageError",
    "ValidationFailure",
    "BatchInconsistencyError",
    "TrayNumberConflictError",
    "RecipeMissingError",
]
