"""Ordered growth-stage registry.

The registry is an explicitly constructed, read-only value handed to every component that needs
stage lookups. Ordering (``sort_order``) is the only source of truth for "next" and "previous".
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

from trayflow.core.errors import StageNotFoundError

SOAKING = "soaking"
GERMINATION = "germination"
BLACKOUT = "blackout"
LIGHT = "light"
HARVESTED = "harvested"


@dataclass(frozen=True)
class Stage:
    """A single growth stage.

    Attributes
    ----------
    code:
        Stable identifier (``"soaking"``, ``"germination"``...).
    name:
        Display label.
    sort_order:
        Position in the progression, starting at 1.
    timestamp_field:
        Name of the tray attribute recording when a tray entered this stage.
    """

    code: str
    name: str
    sort_order: int
    timestamp_field: str

    @property
    def is_terminal(self) -> bool:
        return self.code == HARVESTED


DEFAULT_STAGES: tuple[Stage, ...] = (
    Stage(SOAKING, "Soaking", 1, "soaking_at"),
    Stage(GERMINATION, "Germination", 2, "germination_at"),
    Stage(BLACKOUT, "Blackout", 3, "blackout_at"),
    Stage(LIGHT, "Light", 4, "light_at"),
    Stage(HARVESTED, "Harvested", 5, "harvested_at"),
)


class StageRegistry:
    """Lookups over an ordered, immutable stage table."""

    __slots__ = ("_stages", "_by_code")

    def __init__(self, stages: Iterable[Stage]) -> None:
        ordered = tuple(sorted(stages, key=lambda stage: stage.sort_order))
        if not ordered:
            raise ValueError("StageRegistry requires at least one stage")
        expected = list(range(1, len(ordered) + 1))
        if [stage.sort_order for stage in ordered] != expected:
            raise ValueError("Stage sort_order must be a dense sequence starting at 1")
        codes = [stage.code for stage in ordered]
        if len(set(codes)) != len(codes):
            raise ValueError("Stage codes must be unique")
        if ordered[-1].code != HARVESTED:
            raise ValueError(f"'{HARVESTED}' must be the terminal stage")
        self._stages = ordered
        self._by_code = {stage.code: stage for stage in ordered}

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, code: object) -> bool:
        return code in self._by_code

    @property
    def stages(self) -> Sequence[Stage]:
        return self._stages

    @property
    def first(self) -> Stage:
        return self._stages[0]

    @property
    def terminal(self) -> Stage:
        return self._stages[-1]

    def find_by_code(self, code: str) -> Stage:
        """Return the stage for ``code`` or raise :class:`StageNotFoundError`."""

        try:
            return self._by_code[code]
        except KeyError:
            raise StageNotFoundError(code) from None

    def next(self, stage: Stage | str) -> Stage | None:
        """Return the stage after ``stage``; ``None`` at the terminal end."""

        current = self._coerce(stage)
        if current.sort_order >= len(self._stages):
            return None
        return self._stages[current.sort_order]

    def previous(self, stage: Stage | str) -> Stage | None:
        """Return the stage before ``stage``; ``None`` at the initial end."""

        current = self._coerce(stage)
        if current.sort_order <= 1:
            return None
        return self._stages[current.sort_order - 2]

    def following(self, stage: Stage | str) -> list[Stage]:
        """Return every stage strictly after ``stage`` in order."""

        current = self._coerce(stage)
        return list(self._stages[current.sort_order :])

    def timestamp_field(self, stage: Stage | str) -> str:
        return self._coerce(stage).timestamp_field

    def _coerce(self, stage: Stage | str) -> Stage:
        if isinstance(stage, Stage):
            return self.find_by_code(stage.code)
        return self.find_by_code(stage)


def default_stage_registry() -> StageRegistry:
    """Return a registry over the standard microgreens progression."""

    return StageRegistry(DEFAULT_STAGES)


__all__ = [
    "SOAKING",
    "GERMINATION",
    "BLACKOUT",
    "LIGHT",
    "HARVESTED",
    "Stage",
    "StageRegistry",
    "DEFAULT_STAGES",
    "default_stage_registry",
]
