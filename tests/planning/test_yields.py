import math
from datetime import UTC, datetime, timedelta

import pytest

from trayflow.contract.models import CropPlan, HarvestRecord, Recipe
from trayflow.core.errors import RecipeMissingError
from trayflow.planning.yields import RecommendationThresholds, YieldCalculator, trays_for

AS_OF = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def calculator(store, pea):
    store.save_recipe(pea)
    return YieldCalculator(store)


def _harvest(store, grams, age_days, recipe_id="pea"):
    store.add_harvest(
        HarvestRecord(
            recipe_id=recipe_id,
            harvested_at=AS_OF - timedelta(days=age_days),
            grams_per_tray=grams,
        )
    )


def test_trays_for_rounds_up():
    assert trays_for(500, 47.3) == 11
    assert trays_for(500, 50.0) == 10
    assert trays_for(0, 50.0) == 0
    with pytest.raises(ValueError):
        trays_for(500, 0)


def test_planning_yield_falls_back_to_recipe(calculator, pea):
    assert calculator.calculate_weighted_yield(pea, AS_OF) is None
    assert calculator.calculate_planning_yield(pea, AS_OF) == 47.3


def test_weighted_yield_decays_with_age(calculator, store, pea):
    _harvest(store, 50.0, 0)
    _harvest(store, 40.0, 30)

    expected = (50.0 + 40.0 * math.exp(-1)) / (1 + math.exp(-1))
    assert calculator.calculate_weighted_yield(pea, AS_OF) == pytest.approx(expected)
    assert calculator.calculate_planning_yield(pea, AS_OF) == pytest.approx(expected)


def test_history_outside_lookback_is_ignored(calculator, store, pea):
    store.add_harvest(
        HarvestRecord(
            recipe_id="pea",
            harvested_at=datetime(2025, 11, 1, tzinfo=UTC),
            grams_per_tray=90.0,
        )
    )
    _harvest(store, 10.0, -1)

    assert calculator.history_frame(pea, AS_OF).empty
    assert calculator.calculate_planning_yield(pea, AS_OF) == 47.3


def test_yield_stats_summarise_history(calculator, store, pea):
    for grams, age in ((50.0, 1), (40.0, 10), (45.0, 20)):
        _harvest(store, grams, age)

    stats = calculator.get_yield_stats(pea, AS_OF)

    weights = [math.exp(-age / 30.0) for age in (1, 10, 20)]
    weighted = sum(g * w for g, w in zip((50.0, 40.0, 45.0), weights)) / sum(weights)
    assert stats.harvest_count == 3
    assert stats.weighted_average == round(weighted, 2)
    assert stats.raw_average == 45.0
    assert (stats.min, stats.max) == (40.0, 50.0)
    assert stats.recipe_expected == 47.3
    assert stats.date_range == ("2026-05-12", "2026-05-31")
    assert stats.to_dict()["date_range"] == ["2026-05-12", "2026-05-31"]


def test_yield_stats_without_history(calculator, pea):
    stats = calculator.get_yield_stats(pea, AS_OF)

    assert stats.harvest_count == 0
    assert stats.weighted_average is None
    assert stats.date_range is None
    assert stats.recommendation == "No harvest data available. Using recipe expected yield."


@pytest.mark.parametrize(
    "weighted, phrase",
    [
        (51.0, "matches recipe expectations well"),
        (60.0, "significantly exceed expectations"),
        (40.0, "Consider reviewing growing conditions"),
        (53.0, "Recent harvests are above expectations."),
        (47.0, "Recent harvests are below expectations."),
    ],
)
def test_recommendation_wording(weighted, phrase):
    assert phrase in RecommendationThresholds().recommend(weighted, 50.0)


def test_recalculate_plan_uses_expected_yield_without_history(calculator, store):
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=500))

    outcome = calculator.recalculate_plan("P1", as_of=AS_OF)

    assert outcome.plan.grams_per_tray == 47.3
    assert outcome.plan.trays_needed == 11
    assert outcome.changed
    assert outcome.warnings == [
        "No harvest history for recipe pea; using expected yield 47.3 g/tray"
    ]
    stored = store.get_plan("P1")
    assert stored.trays_needed == 11
    assert stored.calculation_details["yield_source"] == "recipe"
    assert stored.calculation_details["previous"] == {"grams_per_tray": 0.0, "trays_needed": 0}
    assert stored.calculation_details["current"] == {"grams_per_tray": 47.3, "trays_needed": 11}


def test_recalculate_plan_is_idempotent(calculator, store):
    _harvest(store, 50.0, 3)
    _harvest(store, 44.0, 17)
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=1200))

    first = calculator.recalculate_plan("P1", as_of=AS_OF)
    second = calculator.recalculate_plan("P1", as_of=AS_OF)

    assert first.plan.calculation_details["yield_source"] == "history"
    assert (second.plan.grams_per_tray, second.plan.trays_needed) == (
        first.plan.grams_per_tray,
        first.plan.trays_needed,
    )
    assert not second.changed
    assert second.previous_trays_needed == first.plan.trays_needed


def test_recalculate_plan_applies_buffer(store):
    store.save_recipe(
        Recipe(
            id="kale",
            name="Kale",
            germination_days=2,
            light_days=8,
            expected_yield_per_tray=55.0,
            buffer_percentage=10,
        )
    )
    store.save_plan(CropPlan(id="P2", recipe_id="kale", grams_needed=500))

    outcome = YieldCalculator(store).recalculate_plan("P2", as_of=AS_OF)

    assert outcome.plan.grams_per_tray == 50.0
    assert outcome.plan.trays_needed == 10
    assert outcome.plan.calculation_details["buffer_percentage"] == 10


def test_default_buffer_applies_when_recipe_has_none(store, pea):
    store.save_recipe(pea)
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=500))

    outcome = YieldCalculator(store, default_buffer_percentage=10).recalculate_plan(
        "P1", as_of=AS_OF
    )

    assert outcome.plan.grams_per_tray == 43.0
    assert outcome.plan.trays_needed == 12


def test_recalculate_plan_reports_seed_needed(store, pea):
    store.save_recipe(pea.model_copy(update={"seed_density_grams_per_tray": 30.0}))
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=500))

    outcome = YieldCalculator(store).recalculate_plan("P1", as_of=AS_OF)

    assert outcome.plan.calculation_details["seed_grams_needed"] == 330.0


def test_zero_yield_history_is_ignored(calculator, store):
    _harvest(store, 0.0, 2)
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=100))

    outcome = calculator.recalculate_plan("P1", as_of=AS_OF)

    assert outcome.plan.grams_per_tray == 47.3
    assert outcome.plan.calculation_details["yield_source"] == "recipe"
    assert "averages 0 g/tray" in outcome.warnings[0]


def test_yield_rounding_to_zero_falls_back_to_recipe(calculator, store):
    _harvest(store, 0.004, 2)
    store.save_plan(CropPlan(id="P1", recipe_id="pea", grams_needed=100))

    outcome = calculator.recalculate_plan("P1", as_of=AS_OF)

    assert outcome.plan.grams_per_tray == 47.3
    assert outcome.plan.trays_needed == 3
    assert outcome.plan.calculation_details["yield_source"] == "recipe"
    assert any("rounds to 0" in warning for warning in outcome.warnings)


def test_recalculate_plan_failures(calculator, store):
    with pytest.raises(KeyError):
        calculator.recalculate_plan("missing", as_of=AS_OF)

    store.save_plan(CropPlan(id="P3", recipe_id="ghost", grams_needed=100))
    with pytest.raises(RecipeMissingError):
        calculator.recalculate_plan("P3", as_of=AS_OF)


def test_calculator_rejects_bad_parameters(store):
    with pytest.raises(ValueError):
        YieldCalculator(store, history_months=0)
    with pytest.raises(ValueError):
        YieldCalculator(store, decay_days=0)
