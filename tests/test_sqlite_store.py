import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from trayflow.contract.models import HarvestRecord, ScheduledTask, TaskConditions, Tray
from trayflow.core.errors import TrayNotFoundError, TrayNumberConflictError
from trayflow.stages.registry import default_stage_registry
from trayflow.storage.sqlite_store import TrayStore, open_store

START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


def _tray(tray_id, number, stage="germination", **extra):
    return Tray(id=tray_id, recipe_id="radish", tray_number=number, current_stage=stage, **extra)


def _task(batch_key, name, run_at):
    return ScheduledTask(
        task_name=name,
        batch_key=batch_key,
        conditions=TaskConditions(batch_key=batch_key, tray_ids=["t1"]),
        next_run_at=run_at,
    )


def test_tray_round_trip_normalises_to_utc(store):
    store.save_tray(_tray("t1", "4", germination_at=datetime(2026, 3, 2, 8, 0)))

    loaded = store.get_tray("t1")

    assert loaded.germination_at == START
    assert loaded.germination_at.tzinfo is not None
    with pytest.raises(TrayNotFoundError):
        store.get_tray("t9")


def test_failed_transaction_rolls_back(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_tray(_tray("t1", "4"))
            raise RuntimeError("boom")

    assert store.find_tray("t1") is None
    assert not store.in_transaction


def test_nested_failure_rolls_back_only_the_savepoint(store):
    with store.transaction():
        store.save_tray(_tray("t1", "4"))
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_tray(_tray("t2", "5"))
                raise RuntimeError("inner")

    assert store.find_tray("t1") is not None
    assert store.find_tray("t2") is None


def test_active_tray_numbers_are_unique(store):
    store.save_tray(_tray("t1", "4"))

    with pytest.raises(TrayNumberConflictError) as excinfo:
        store.save_tray(_tray("t2", "4"))
    assert excinfo.value.tray_numbers == ["4"]
    assert store.find_tray("t2") is None


def test_harvested_and_placeholder_numbers_do_not_collide(store):
    store.save_tray(_tray("old", "4", stage="harvested"))
    store.save_tray(_tray("t1", "4"))
    store.save_tray(_tray("s1", "SOAKING-1", stage="soaking"))
    store.save_tray(_tray("s2", "SOAKING-1", stage="soaking"))

    assert store.active_tray_numbers(["4", "SOAKING-1"]) == {"4": "t1"}
    assert store.active_tray_numbers(["4"], exclude_ids=["t1"]) == {}


def test_released_numbers_can_be_taken_until_resaved(store):
    store.save_tray(_tray("t1", "4"))

    assert store.release_tray_numbers(["t1"]) == 1
    assert store.active_tray_numbers(["4"]) == {}
    store.save_tray(_tray("t2", "4"))

    with pytest.raises(TrayNumberConflictError):
        store.save_tray(_tray("t1", "4"))
    assert store.release_tray_numbers([]) == 0


def test_one_active_task_per_batch_and_name(store):
    store.insert_task(_task("batch:B1", "advance_to_light", START))

    with pytest.raises(sqlite3.IntegrityError):
        store.insert_task(_task("batch:B1", "advance_to_light", START + timedelta(days=1)))

    assert store.deactivate_tasks("batch:B1") == 1
    replacement = store.insert_task(_task("batch:B1", "advance_to_light", START))
    assert replacement.id is not None
    assert len(store.list_tasks(batch_key="batch:B1", include_inactive=True)) == 2


def test_deactivate_selected_task_names(store):
    store.insert_task(_task("batch:B1", "advance_to_light", START))
    store.insert_task(_task("batch:B1", "suspend_watering", START))

    assert store.deactivate_tasks("batch:B1", ["suspend_watering"]) == 1
    assert store.deactivate_tasks("batch:B1", []) == 0
    assert [task.task_name for task in store.list_tasks()] == ["advance_to_light"]


def test_due_tasks_are_active_and_oldest_first(store):
    late = store.insert_task(_task("batch:B1", "advance_to_light", START + timedelta(hours=2)))
    early = store.insert_task(_task("batch:B2", "advance_to_light", START))
    store.insert_task(_task("batch:B3", "advance_to_light", START + timedelta(days=3)))
    done = store.insert_task(_task("batch:B4", "advance_to_light", START))
    store.mark_task_run(done.id, START)

    due = store.due_tasks(START + timedelta(hours=2))

    assert [task.id for task in due] == [early.id, late.id]
    marked = store.get_task(done.id)
    assert not marked.is_active
    assert marked.last_run_at == START


def test_harvest_queries(store):
    first = store.add_harvest(
        HarvestRecord(recipe_id="radish", harvested_at=START, grams_per_tray=55, tray_ids=("t1",))
    )
    store.add_harvest(
        HarvestRecord(
            recipe_id="radish", harvested_at=START + timedelta(days=7), grams_per_tray=60
        )
    )

    assert first.id is not None
    assert [record.grams_per_tray for record in store.harvests_for_recipe("radish")] == [60, 55]
    assert len(store.harvests_for_recipe("radish", since=START + timedelta(days=1))) == 1
    assert [record.id for record in store.harvests_for_tray("t1")] == [first.id]
    assert store.harvests_for_tray("t2") == []


def test_file_store_persists_stages(tmp_path):
    path = tmp_path / "data" / "farm.db"
    with open_store(path) as store:
        store.save_tray(_tray("t1", "4"))

    with open_store(path) as reopened:
        assert [stage.code for stage in reopened.load_registry()] == [
            stage.code for stage in default_stage_registry()
        ]
        assert reopened.get_tray("t1").tray_number == "4"


def test_empty_store_falls_back_to_default_registry():
    with TrayStore() as store:
        assert not store.has_stages()
        assert len(store.load_registry()) == 5
