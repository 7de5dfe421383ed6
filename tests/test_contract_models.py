from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from trayflow.contract.models import (
    Recipe,
    Tray,
    advance_task_name,
    ensure_utc,
    placeholder_tray_number,
    target_stage_for_task,
)


def test_recipe_stage_durations(pea, radish):
    assert pea.requires_soaking
    assert not radish.requires_soaking
    assert pea.stage_duration("soaking") == timedelta(hours=4)
    assert pea.stage_duration("blackout") == timedelta(days=3)
    assert pea.stage_duration("harvested") is None
    assert radish.total_days() == 12
    assert pea.effective_total_days() == pytest.approx(12 + 4 / 24)


@pytest.mark.parametrize(
    "field, value",
    [("germination_days", -1), ("expected_yield_per_tray", 0), ("buffer_percentage", -5)],
)
def test_recipe_rejects_invalid_values(field, value):
    payload = {
        "id": "r",
        "name": "R",
        "germination_days": 2,
        "light_days": 7,
        "expected_yield_per_tray": 40,
        field: value,
    }
    with pytest.raises(ValidationError):
        Recipe(**payload)


def test_tray_placeholders_and_anchor():
    soaked = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    tray = Tray(
        id="t", tray_number=placeholder_tray_number(3), current_stage="soaking", soaking_at=soaked
    )

    assert tray.tray_number == "SOAKING-3"
    assert tray.has_placeholder_number
    assert tray.batch_anchor == soaked
    assert tray.stage_timestamp("soaking_at") == soaked
    assert not Tray(id="u", tray_number=" 12 ", current_stage="light").has_placeholder_number
    with pytest.raises(ValidationError):
        Tray(id="v", tray_number="  ", current_stage="light")


def test_ensure_utc_converts_offsets():
    local = datetime(2026, 3, 2, 10, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(local) == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    assert ensure_utc(datetime(2026, 3, 2, 8, 0)).tzinfo is UTC
    assert ensure_utc(None) is None


def test_task_names_map_to_stages():
    assert advance_task_name("light") == "advance_to_light"
    assert target_stage_for_task("advance_to_light") == "light"
    assert target_stage_for_task("suspend_watering") is None
