"""Shared parsing helpers for CLI commands."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime


def parse_tray_numbers(args: Sequence[str] | None) -> dict[str, str]:
    """Parse ``tray_id=number`` strings into a mapping."""
    numbers: dict[str, str] = {}
    if not args:
        return numbers
    for arg in args:
        if "=" not in arg:
            raise ValueError(f"Tray number must be in tray_id=number format (got '{arg}')")
        tray_id, number = arg.split("=", 1)
        tray_id = tray_id.strip()
        if not tray_id:
            raise ValueError(f"Tray number missing tray id in '{arg}'")
        if tray_id in numbers:
            raise ValueError(f"Tray '{tray_id}' given more than one tray number")
        numbers[tray_id] = number.strip()
    return numbers


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid ISO-8601 timestamp '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = ["parse_tray_numbers", "parse_timestamp"]
