"""Persistence layer."""

from trayflow.storage.sqlite_store import TrayStore, open_store

__all__ = ["TrayStore", "open_store"]
