"""Exceptions raised by the tray lifecycle core."""

from __future__ import annotations

from collections.abc import Iterable


class LifecycleError(Exception):
    """Base class for hard failures that abort a lifecycle operation."""

    code = "lifecycle_error"


class StageNotFoundError(LifecycleError, LookupError):
    """Raised when a stage code is not present in the registry."""

    code = "stage_not_found"

    def __init__(self, stage_code: str) -> None:
        super().__init__(f"Unknown stage code '{stage_code}'")
        self.stage_code = stage_code


class TrayNotFoundError(LifecycleError, LookupError):
    """Raised when a tray reference does not resolve to a stored tray."""

    code = "tray_not_found"

    def __init__(self, tray_id: str) -> None:
        super().__init__(f"Tray '{tray_id}' not found")
        self.tray_id = tray_id


class TerminalStageError(LifecycleError):
    """Raised when advancing a batch that is already in the terminal stage."""

    code = "terminal_stage"


class InitialStageError(LifecycleError):
    """Raised when reverting a batch that is already in the first stage."""

    code = "initial_stage"


class ValidationFailure(LifecycleError):
    """Raised when a transition is refused before any tray is mutated.

    Attributes
    ----------
    issues:
        Human-readable reasons, surfaced verbatim to the caller.
    """

    code = "validation_failed"

    def __init__(self, issues: Iterable[str] | str) -> None:
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__("; ".join(self.issues) or "validation failed")


class BatchInconsistencyError(ValidationFailure):
    """Raised when trays of one batch disagree on recipe or current stage."""

    code = "batch_inconsistent"


class TrayNumberConflictError(LifecycleError):
    """Raised when a proposed tray number is already used by an active tray."""

    code = "tray_number_conflict"

    def __init__(self, tray_numbers: Iterable[str]) -> None:
        self.tray_numbers = sorted(set(tray_numbers))
        super().__init__("Tray numbers already in use: " + ", ".join(self.tray_numbers))


class RecipeMissingError(LifecycleError, LookupError):
    """Raised when recipe-dependent logic runs against a tray or plan without a recipe."""

    code = "recipe_missing"

    def __init__(self, recipe_id: str | None, context: str | None = None) -> None:
        label = f"Recipe '{recipe_id}' not found" if recipe_id else "No recipe associated"
        if context:
            label = f"{label} ({context})"
        super().__init__(label)
        self.recipe_id = recipe_id


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
