from datetime import UTC, datetime

import pytest

from trayflow.contract.models import Recipe
from trayflow.io.loaders import BatchSpec
from trayflow.service import TrayflowService
from trayflow.stages.registry import default_stage_registry
from trayflow.storage.sqlite_store import open_store

START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


@pytest.fixture
def registry():
    return default_stage_registry()


@pytest.fixture
def store(registry):
    store = open_store(":memory:", registry)
    yield store
    store.close()


@pytest.fixture
def pea():
    return Recipe(
        id="pea",
        name="Pea Shoots",
        seed_soak_hours=4,
        germination_days=2,
        blackout_days=3,
        light_days=7,
        expected_yield_per_tray=47.3,
    )


@pytest.fixture
def radish():
    return Recipe(
        id="radish",
        name="Radish Daikon",
        germination_days=2,
        blackout_days=3,
        light_days=7,
        expected_yield_per_tray=60.0,
    )


@pytest.fixture
def service(store, registry, pea, radish):
    store.save_recipe(pea)
    store.save_recipe(radish)
    return TrayflowService(store, registry=registry)


@pytest.fixture
def engine(service):
    return service.engine


@pytest.fixture
def soaking_batch(service):
    """Two pea trays soaking since ``START`` under batch ``B1``."""

    return service.create_batch(
        BatchSpec(batch_id="B1", recipe_id="pea", count=2, started_at=START)
    )


@pytest.fixture
def radish_batch(service):
    """Three radish trays germinating since ``START`` under batch ``R1``."""

    return service.create_batch(
        BatchSpec(
            batch_id="R1",
            recipe_id="radish",
            count=3,
            started_at=START,
            tray_numbers=["11", "12", "13"],
        )
    )
