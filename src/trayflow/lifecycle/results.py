"""Result types returned by lifecycle operations.

A :class:`TransitionResult` is tagged with a :class:`TransitionStatus` so callers can tell an
operation that was refused outright (``ABORTED``, nothing mutated) from one that ran with some
trays skipped (``PARTIAL``) or ran cleanly (``COMPLETED``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from trayflow.core.errors import LifecycleError, ValidationFailure

__all__ = [
    "TransitionAction",
    "TransitionStatus",
    "TrayFailure",
    "TransitionResult",
    "ValidationReport",
]


class TransitionAction(str, Enum):
    ADVANCE = "advance"
    REVERT = "revert"
    SUSPEND_WATERING = "suspend_watering"
    RESUME_WATERING = "resume_watering"
    SOAKING_WARNING = "soaking_completion_warning"


class TransitionStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TrayFailure:
    """A single tray skipped during an otherwise valid bulk operation."""

    tray_id: str
    reason: str
    code: str = "tray_failed"
    tray_number: str | None = None


@dataclass
class TransitionResult:
    """Outcome of a batch operation.

    Attributes
    ----------
    action:
        Operation that produced this result.
    status:
        ``COMPLETED`` when every tray succeeded, ``PARTIAL`` when some trays were skipped, and
        ``ABORTED`` when the operation was refused before any mutation.
    succeeded:
        Number of trays mutated.
    failures:
        Per-tray soft failures (the ``failed`` count is derived from this list).
    warnings:
        Non-blocking messages surfaced to the operator.
    error / error_code:
        Message and machine-readable code of the hard failure (aborted results only).
    issues:
        Validation issues behind an aborted result, when the failure carried any.
    """

    action: TransitionAction
    status: TransitionStatus
    batch_key: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    succeeded: int = 0
    failures: list[TrayFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None
    issues: list[str] = field(default_factory=list)

    @classmethod
    def aborted(
        cls,
        action: TransitionAction,
        exc: LifecycleError,
        *,
        batch_key: str | None = None,
        from_stage: str | None = None,
        warnings: list[str] | None = None,
    ) -> "TransitionResult":
        issues = list(exc.issues) if isinstance(exc, ValidationFailure) else []
        return cls(
            action=action,
            status=TransitionStatus.ABORTED,
            batch_key=batch_key,
            from_stage=from_stage,
            warnings=list(warnings or []),
            error=str(exc),
            error_code=exc.code,
            issues=issues,
        )

    @classmethod
    def from_counts(
        cls,
        action: TransitionAction,
        *,
        succeeded: int,
        failures: list[TrayFailure],
        warnings: list[str],
        batch_key: str | None = None,
        from_stage: str | None = None,
        to_stage: str | None = None,
    ) -> "TransitionResult":
        status = TransitionStatus.PARTIAL if failures else TransitionStatus.COMPLETED
        return cls(
            action=action,
            status=status,
            batch_key=batch_key,
            from_stage=from_stage,
            to_stage=to_stage,
            succeeded=succeeded,
            failures=list(failures),
            warnings=list(warnings),
        )

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def is_aborted(self) -> bool:
        return self.status is TransitionStatus.ABORTED

    @property
    def advanced(self) -> int:
        return self.succeeded if self.action is TransitionAction.ADVANCE else 0

    @property
    def reverted(self) -> int:
        return self.succeeded if self.action is TransitionAction.REVERT else 0

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping used by the event log and CLI JSON output."""

        return {
            "action": self.action.value,
            "status": self.status.value,
            "batch_key": self.batch_key,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [
                {
                    "tray_id": failure.tray_id,
                    "tray_number": failure.tray_number,
                    "reason": failure.reason,
                    "code": failure.code,
                }
                for failure in self.failures
            ],
            "warnings": list(self.warnings),
            "error": self.error,
            "error_code": self.error_code,
            "issues": list(self.issues),
        }


@dataclass
class ValidationReport:
    """Go/no-go verdict from :mod:`trayflow.lifecycle.validation`."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def issues(self) -> list[str]:
        return self.errors
