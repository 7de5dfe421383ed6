"""Structured audit logging helpers."""

from .events import TransitionEventLog
from .jsonl import append_jsonl, read_jsonl

__all__ = ["append_jsonl", "read_jsonl", "TransitionEventLog"]
