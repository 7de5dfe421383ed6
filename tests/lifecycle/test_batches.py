from datetime import UTC, datetime, timedelta

from trayflow.contract.models import Tray
from trayflow.lifecycle.batches import (
    ExplicitBatchId,
    ImplicitMatch,
    batch_key_for,
    resolve_batch,
    resolver_for,
)

START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def _loose_tray(tray_id, number, planted=START, stage="germination", **extra):
    return Tray(
        id=tray_id,
        recipe_id="radish",
        tray_number=number,
        current_stage=stage,
        planting_at=planted,
        germination_at=planted,
        **extra,
    )


def test_explicit_batch_groups_by_batch_id(store, radish_batch):
    batch = resolve_batch(store, store.get_tray("R1-3"))

    assert batch.key == "batch:R1"
    assert batch.tray_ids == ["R1-1", "R1-2", "R1-3"]
    assert batch.lead.id == "R1-1"
    assert isinstance(resolver_for(batch.lead), ExplicitBatchId)


def test_implicit_batch_matches_recipe_anchor_and_stage(store, service):
    for tray in (
        _loose_tray("I-2", "22"),
        _loose_tray("I-1", "21"),
        _loose_tray("I-3", "23", planted=START + timedelta(days=1)),
        _loose_tray("I-4", "24", batch_id="OTHER"),
    ):
        store.save_tray(tray)

    batch = resolve_batch(store, store.get_tray("I-2"))

    assert batch.key == "radish@2026-03-02T08:00:00+00:00/germination"
    assert batch.tray_ids == ["I-1", "I-2"]
    assert isinstance(resolver_for(batch.lead), ImplicitMatch)


def test_implicit_batch_key_follows_the_stage(engine, store, service):
    store.save_tray(_loose_tray("I-1", "21"))
    store.save_tray(_loose_tray("I-2", "22"))
    before = "radish@2026-03-02T08:00:00+00:00/germination"
    engine.scheduler.schedule_follow_on_tasks(
        resolve_batch(store, store.get_tray("I-1")),
        "germination",
        START,
        store.get_recipe("radish"),
    )

    result = engine.advance_stage("I-1", START + timedelta(days=2))

    assert result.advanced == 2
    assert result.batch_key == before
    after = batch_key_for(store.get_tray("I-2"))
    assert after == "radish@2026-03-02T08:00:00+00:00/blackout"
    names = [task.task_name for task in store.list_tasks(batch_key=after)]
    assert names == ["advance_to_light", "advance_to_harvested"]
    assert store.list_tasks(batch_key=before) == []


def test_partially_advanced_implicit_batch_keeps_tasks_for_both_halves(
    engine, store, pea, radish_batch
):
    for tray_id, placeholder in (("I-1", "SOAKING-1"), ("I-2", "SOAKING-2")):
        store.save_tray(
            Tray(
                id=tray_id,
                recipe_id="pea",
                tray_number=placeholder,
                current_stage="soaking",
                soaking_at=START,
            )
        )
    soaking_key = "pea@2026-03-02T08:00:00+00:00/soaking"
    engine.scheduler.schedule_follow_on_tasks(
        resolve_batch(store, store.get_tray("I-1")), "soaking", START, pea
    )

    result = engine.advance_stage(
        "I-1", START + timedelta(hours=4), tray_numbers={"I-1": "90", "I-2": "11"}
    )

    assert (result.advanced, result.failed) == (1, 1)
    stayed = {task.task_name: task for task in store.list_tasks(batch_key=soaking_key)}
    assert set(stayed) == {"advance_to_germination", "advance_to_harvested"}
    assert all(task.conditions.tray_ids == ["I-2"] for task in stayed.values())
    assert all(task.conditions.tray_numbers == ["SOAKING-2"] for task in stayed.values())

    germination_key = batch_key_for(store.get_tray("I-1"))
    assert germination_key == "pea@2026-03-02T08:00:00+00:00/germination"
    moved = {task.task_name: task for task in store.list_tasks(batch_key=germination_key)}
    assert set(moved) == {"advance_to_blackout", "advance_to_harvested"}
    assert all(task.conditions.tray_ids == ["I-1"] for task in moved.values())
    assert resolve_batch(store, store.get_tray("I-2")).tray_ids == ["I-2"]


def test_soaking_trays_group_by_soaking_time():
    tray = Tray(id="S-1", tray_number="SOAKING-1", current_stage="soaking", soaking_at=START)
    assert batch_key_for(tray) == "no-recipe@2026-03-02T08:00:00+00:00/soaking"

    unplanted = Tray(id="S-2", recipe_id="pea", tray_number="7", current_stage="soaking")
    assert batch_key_for(unplanted) == "pea@unplanted/soaking"
