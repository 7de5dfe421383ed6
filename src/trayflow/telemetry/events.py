"""Append-only audit log of batch transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from trayflow.lifecycle.results import TransitionResult

from .jsonl import append_jsonl, read_jsonl


def _iso_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass(slots=True)
class TransitionEventLog:
    """Write one ``record_type="transition"`` JSONL line per lifecycle operation.

    Parameters
    ----------
    log_path:
        JSONL file that receives the records.
    context:
        Extra metadata merged into every record (e.g. the CLI command that triggered it).
    """

    log_path: Path
    context: dict[str, Any] = field(default_factory=dict)
    schema_version: str = "1.0"

    def __post_init__(self) -> None:
        self.log_path = Path(self.log_path)

    def record(
        self,
        result: TransitionResult,
        *,
        tray_id: str | None = None,
        occurred_at: datetime | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "record_type": "transition",
            "schema_version": self.schema_version,
            "event_id": uuid4().hex,
            "logged_at": _iso_now(),
            "tray_id": tray_id,
            "occurred_at": occurred_at.isoformat() if occurred_at is not None else None,
            "reason": reason,
            **result.to_dict(),
        }
        if self.context:
            payload["context"] = dict(self.context)
        append_jsonl(self.log_path, payload)
        return payload

    def read(self) -> list[dict[str, Any]]:
        return [
            record
            for record in read_jsonl(self.log_path)
            if record.get("record_type") == "transition"
        ]


__all__ = ["TransitionEventLog"]
