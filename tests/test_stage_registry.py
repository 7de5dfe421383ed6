import pytest

from trayflow.core.errors import StageNotFoundError
from trayflow.stages.registry import DEFAULT_STAGES, Stage, StageRegistry


def test_neighbours_follow_sort_order(registry):
    assert registry.first.code == "soaking"
    assert registry.terminal.code == "harvested"
    assert registry.next("soaking").code == "germination"
    assert registry.next("harvested") is None
    assert registry.previous("germination").code == "soaking"
    assert registry.previous("soaking") is None
    assert [stage.code for stage in registry.following("blackout")] == ["light", "harvested"]
    assert registry.timestamp_field("light") == "light_at"
    assert registry.terminal.is_terminal
    assert "blackout" in registry


def test_unknown_stage_code(registry):
    with pytest.raises(StageNotFoundError) as excinfo:
        registry.find_by_code("drying")
    assert excinfo.value.code == "stage_not_found"
    assert isinstance(excinfo.value, LookupError)


def test_registry_sorts_its_input():
    registry = StageRegistry(reversed(DEFAULT_STAGES))
    assert [stage.sort_order for stage in registry] == [1, 2, 3, 4, 5]


@pytest.mark.parametrize(
    "stages",
    [
        [],
        [Stage("soaking", "Soaking", 1, "soaking_at"), Stage("harvested", "Harvested", 3, "x")],
        [Stage("soaking", "Soaking", 1, "soaking_at"), Stage("light", "Light", 2, "light_at")],
        [Stage("harvested", "A", 1, "a"), Stage("harvested", "B", 2, "b")],
    ],
)
def test_invalid_stage_tables_are_rejected(stages):
    with pytest.raises(ValueError):
        StageRegistry(stages)
