from datetime import UTC, datetime, timedelta

from trayflow.lifecycle.results import TransitionAction, TransitionStatus

START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def test_suspend_watering_stamps_the_batch(engine, store, radish_batch):
    at = START + timedelta(days=11)

    result = engine.suspend_watering("R1-1", at)

    assert result.action is TransitionAction.SUSPEND_WATERING
    assert result.status is TransitionStatus.COMPLETED
    assert result.succeeded == 3
    assert all(tray.watering_suspended_at == at for tray in store.trays_in_batch("R1"))


def test_suspend_watering_is_idempotent(engine, store, radish_batch):
    first = START + timedelta(days=11)
    engine.suspend_watering("R1-1", first)

    result = engine.suspend_watering("R1-2", first + timedelta(hours=3))

    assert result.succeeded == 3
    assert result.warnings == ["3 tray(s) already had watering suspended"]
    assert all(tray.watering_suspended_at == first for tray in store.trays_in_batch("R1"))


def test_resume_watering_clears_suspension(engine, store, radish_batch):
    engine.suspend_watering("R1-1", START + timedelta(days=11))

    result = engine.resume_watering("R1-3")

    assert result.action is TransitionAction.RESUME_WATERING
    assert result.succeeded == 3
    assert all(tray.watering_suspended_at is None for tray in store.trays_in_batch("R1"))


def test_suspended_watering_is_reported_when_advancing(engine, radish_batch):
    engine.suspend_watering("R1-1", START + timedelta(days=1))

    result = engine.advance_stage("R1-1", START + timedelta(days=2))

    assert result.status is TransitionStatus.COMPLETED
    assert "Tray 11 has suspended watering since 2026-03-03 08:00" in result.warnings
