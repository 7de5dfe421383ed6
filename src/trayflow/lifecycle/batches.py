"""Batch resolution strategies.

Trays are grouped either by an explicit ``batch_id`` or, when the tray has none, implicitly by
recipe, planting anchor and current stage (soaking trays are often created before any batch
record exists).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from trayflow.contract.models import Tray
from trayflow.storage.sqlite_store import TrayStore

__all__ = [
    "Batch",
    "BatchResolver",
    "ExplicitBatchId",
    "ImplicitMatch",
    "resolver_for",
    "resolve_batch",
    "batch_key_for",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """Non-persisted grouping view over trays mutated together.

    Attributes
    ----------
    key:
        Stable identifier used to key scheduled tasks and event-log lines.
    trays:
        Member trays ordered by id; always contains the tray the batch was resolved from.
    """

    key: str
    trays: tuple[Tray, ...]

    def __len__(self) -> int:
        return len(self.trays)

    @property
    def tray_ids(self) -> list[str]:
        return [tray.id for tray in self.trays]

    @property
    def recipe_ids(self) -> set[str | None]:
        return {tray.recipe_id for tray in self.trays}

    @property
    def stages(self) -> set[str]:
        return {tray.current_stage for tray in self.trays}

    @property
    def lead(self) -> Tray:
        return self.trays[0]


class BatchResolver(Protocol):
    """Strategy that turns one tray into the full set of trays it moves with."""

    def batch_key(self, tray: Tray) -> str:
        ...

    def members(self, store: TrayStore, tray: Tray) -> list[Tray]:
        ...


class ExplicitBatchId:
    """Group by the tray's ``batch_id``."""

    def batch_key(self, tray: Tray) -> str:
        if tray.batch_id is None:
            raise ValueError(f"Tray '{tray.id}' has no batch_id")
        return f"batch:{tray.batch_id}"

    def members(self, store: TrayStore, tray: Tray) -> list[Tray]:
        if tray.batch_id is None:
            raise ValueError(f"Tray '{tray.id}' has no batch_id")
        return store.trays_in_batch(tray.batch_id)


class ImplicitMatch:
    """Group unbatched trays sharing recipe, planting anchor and current stage."""

    def batch_key(self, tray: Tray) -> str:
        anchor = tray.batch_anchor
        anchor_text = anchor.isoformat() if anchor is not None else "unplanted"
        return f"{tray.recipe_id or 'no-recipe'}@{anchor_text}/{tray.current_stage}"

    def members(self, store: TrayStore, tray: Tray) -> list[Tray]:
        return store.trays_matching(tray.recipe_id, tray.batch_anchor, tray.current_stage)


def resolver_for(tray: Tray) -> BatchResolver:
    return ExplicitBatchId() if tray.batch_id is not None else ImplicitMatch()


def batch_key_for(tray: Tray) -> str:
    return resolver_for(tray).batch_key(tray)


def resolve_batch(store: TrayStore, tray: Tray) -> Batch:
    """Return the batch ``tray`` belongs to, ordered deterministically by tray id."""

    resolver = resolver_for(tray)
    members = {member.id: member for member in resolver.members(store, tray)}
    if tray.id not in members:
        logger.warning("Batch lookup for tray %s did not return the tray itself", tray.id)
        members[tray.id] = tray
    ordered = tuple(members[tray_id] for tray_id in sorted(members))
    return Batch(key=resolver.batch_key(tray), trays=ordered)
