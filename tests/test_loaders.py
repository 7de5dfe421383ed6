from datetime import UTC, datetime
from pathlib import Path

import pytest

from trayflow.io.loaders import BatchSpec, apply_farm_data, expand_batch, load_farm_data

START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

BUNDLE = """\
recipes:
  - id: pea
    name: Pea Shoots
    seed_soak_hours: 4
    germination_days: 2
    blackout_days: 3
    light_days: 7
    expected_yield_per_tray: 47.3
  - id: radish
    name: Radish Daikon
    germination_days: 2
    blackout_days: 3
    light_days: 7
    expected_yield_per_tray: 60
batches:
  - batch_id: B1
    recipe_id: pea
    count: 3
    started_at: 2026-03-02T08:00:00Z
trays:
  - id: loose-1
    recipe_id: radish
    tray_number: "40"
    current_stage: germination
    planting_at: 2026-03-01T08:00:00Z
    germination_at: 2026-03-01T08:00:00Z
harvests:
  - recipe_id: radish
    harvested_at: 2026-02-20T09:00:00Z
    grams_per_tray: 58.5
plans:
  - id: P1
    recipe_id: pea
    grams_needed: 500
"""


def _write_bundle(tmp_path: Path, text: str = BUNDLE) -> Path:
    path = tmp_path / "farm.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_expand_soaking_batch_uses_placeholders(pea):
    trays = expand_batch(pea, BatchSpec(batch_id="B7", recipe_id="pea", count=2, started_at=START))

    assert [tray.id for tray in trays] == ["B7-1", "B7-2"]
    assert [tray.tray_number for tray in trays] == ["SOAKING-1", "SOAKING-2"]
    assert all(tray.current_stage == "soaking" for tray in trays)
    assert all(tray.soaking_at == START and tray.planting_at == START for tray in trays)


def test_expand_batch_without_soak_needs_numbers(radish):
    spec = BatchSpec(batch_id="R7", recipe_id="radish", count=2, started_at=START)
    with pytest.raises(ValueError, match="tray numbers are required"):
        expand_batch(radish, spec)

    numbered = spec.model_copy(update={"tray_numbers": ["1", "2"]})
    trays = expand_batch(radish, numbered)
    assert [tray.current_stage for tray in trays] == ["germination", "germination"]
    assert trays[1].germination_at == START


def test_expand_batch_checks_number_count(radish):
    spec = BatchSpec(
        batch_id="R7", recipe_id="radish", count=2, started_at=START, tray_numbers=["1"]
    )
    with pytest.raises(ValueError, match="1 tray numbers for 2 trays"):
        expand_batch(radish, spec)


def test_load_and_apply_bundle(tmp_path, store):
    data = load_farm_data(_write_bundle(tmp_path))

    counts = apply_farm_data(store, data)

    assert counts == {"recipes": 2, "trays": 4, "harvests": 1, "plans": 1}
    assert [tray.id for tray in store.trays_in_batch("B1")] == ["B1-1", "B1-2", "B1-3"]
    assert store.get_tray("loose-1").germination_at == datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
    assert store.harvests_for_recipe("radish")[0].grams_per_tray == 58.5
    assert store.get_plan("P1").grams_needed == 500


def test_unknown_sections_are_rejected(tmp_path):
    with pytest.raises(ValueError, match="unknown sections: crops"):
        load_farm_data(_write_bundle(tmp_path, "crops: []\n"))


def test_batch_with_unknown_recipe_writes_nothing(tmp_path, store):
    text = (
        "batches:\n"
        "  - {batch_id: B1, recipe_id: ghost, count: 1, started_at: 2026-03-02T08:00:00Z}\n"
    )
    data = load_farm_data(_write_bundle(tmp_path, text))

    with pytest.raises(ValueError, match="unknown recipe ghost"):
        apply_farm_data(store, data)
    assert store.list_trays() == []


def test_service_load_bundle_schedules_batches(tmp_path, service, store):
    counts = service.load_bundle(_write_bundle(tmp_path))

    assert counts["trays"] == 4
    names = {task.task_name for task in store.list_tasks(batch_key="batch:B1")}
    assert names == {"advance_to_germination", "advance_to_harvested"}


STAGES_BUNDLE = """\
stages:
  - {code: soaking, name: Soaking, sort_order: 1, timestamp_field: soaking_at}
  - {code: germination, name: Germination, sort_order: 2, timestamp_field: germination_at}
  - {code: light, name: Grow Lights, sort_order: 3, timestamp_field: light_at}
  - {code: harvested, name: Harvested, sort_order: 4, timestamp_field: harvested_at}
batches:
  - batch_id: R9
    recipe_id: radish
    count: 1
    started_at: 2026-03-02T08:00:00Z
    tray_numbers: ["90"]
"""


def test_service_load_bundle_switches_to_loaded_stages(tmp_path, service, store):
    service.load_bundle(_write_bundle(tmp_path, STAGES_BUNDLE))

    assert [stage.code for stage in service.registry] == [
        "soaking",
        "germination",
        "light",
        "harvested",
    ]
    assert service.engine.registry is service.registry
    assert service.scheduler.registry is service.registry
    names = {task.task_name for task in store.list_tasks(batch_key="batch:R9")}
    assert names == {"advance_to_light", "advance_to_harvested"}

    result = service.advance_stage("R9-1", datetime(2026, 3, 4, 8, 0, tzinfo=UTC))

    assert result.to_stage == "light"
    assert store.get_tray("R9-1").light_at == datetime(2026, 3, 4, 8, 0, tzinfo=UTC)
