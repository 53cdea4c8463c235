import numpy as np
import pandas as pd
import pytest

from demandflow import (
    AttractionRates,
    DataError,
    ModelDegeneracyError,
    ProductionAttractionEngine,
    TripPurpose,
    TripPurposeModel,
    ZoneTable,
    balance_attractions,
    fit_purpose_models,
    prepare_household_survey,
    trip_ends_dataframe,
)


@pytest.fixture
def exact_survey():
    """Survey whose HBW trips are an exact linear function of the predictors."""
    rng = np.random.default_rng(7)
    n = 60
    frame = pd.DataFrame({
        "household_id": [str(i) for i in range(n)],
        "income": rng.uniform(20000, 120000, n),
        "has_children": rng.integers(0, 2, n),
        "owns_home": rng.integers(0, 2, n),
        "has_elderly": rng.integers(0, 2, n),
        "has_vehicle": rng.integers(0, 2, n),
        "trips_hbo": rng.integers(0, 5, n),
        "trips_nhb": rng.integers(0, 3, n),
    })
    frame["trips_hbw"] = 1 + 2 * frame["has_children"] + frame["owns_home"]
    return prepare_household_survey(frame)


def simple_models():
    return {
        purpose: TripPurposeModel.from_coefficients(purpose, 1.0, {"has_children": 2.0})
        for purpose in TripPurpose
    }


def test_trip_purpose_coerce():
    assert TripPurpose.coerce("hbw") is TripPurpose.HBW
    assert TripPurpose.coerce(TripPurpose.NHB) is TripPurpose.NHB
    with pytest.raises(ValueError, match="Unknown trip purpose"):
        TripPurpose.coerce("XYZ")


def test_fit_recovers_exact_coefficients(exact_survey):
    model = TripPurposeModel.fit(exact_survey, "HBW")
    assert model.purpose is TripPurpose.HBW
    assert model.intercept == pytest.approx(1.0, abs=1e-8)
    assert model.coefficients["has_children"] == pytest.approx(2.0, abs=1e-8)
    assert model.coefficients["owns_home"] == pytest.approx(1.0, abs=1e-8)
    assert model.coefficients["has_elderly"] == pytest.approx(0.0, abs=1e-8)
    assert model.coefficients["log2_income"] == pytest.approx(0.0, abs=1e-8)
    assert model.n_obs == len(exact_survey)
    assert model.r_squared == pytest.approx(1.0)


def test_fit_drops_or_raises_on_missing_predictors(exact_survey):
    exact_survey.records.loc[0, "has_elderly"] = np.nan
    model = TripPurposeModel.fit(exact_survey, "HBW", missing="drop")
    assert model.n_obs == len(exact_survey) - 1

    with pytest.raises(DataError, match="missing predictor"):
        TripPurposeModel.fit(exact_survey, "HBW", missing="raise")


def test_fit_needs_more_records_than_predictors(exact_survey):
    small = prepare_household_survey(exact_survey.records.head(3).drop(columns=["log2_income"]))
    with pytest.raises(DataError, match="Not enough survey records"):
        TripPurposeModel.fit(small, "HBW")


def test_fit_unknown_predictor(exact_survey):
    with pytest.raises(DataError, match="pets"):
        TripPurposeModel.fit(exact_survey, "HBW", predictors=["pets"])


def test_fit_purpose_models(survey):
    models = fit_purpose_models(survey)
    assert set(models) == set(TripPurpose)
    assert all(m.n_obs == len(survey) for m in models.values())


def test_model_is_immutable():
    model = simple_models()[TripPurpose.HBW]
    with pytest.raises(TypeError):
        model.coefficients["has_children"] = 5.0


def test_apply_uses_zone_shares(zones):
    model = simple_models()[TripPurpose.HBW]
    production = model.apply(zones)
    # rate = 1 + 2 * share_children; zone 4 has no households
    expected = np.array([1.6 * 100, (1 + 2 * 0.4) * 200, 1.4 * 50, 0.0])
    np.testing.assert_allclose(production, expected)


def test_negative_production_is_not_clamped(zones):
    model = TripPurposeModel.from_coefficients("HBO", -5.0, {"has_children": 1.0})
    assert (model.apply(zones)[:3] < 0).all()


def test_attraction_rates_reject_negative():
    with pytest.raises(ValueError):
        AttractionRates(rates={"HBW": {"emp_total": -1.0}})


def test_raw_attraction_hbw(zones):
    rates = AttractionRates()
    np.testing.assert_allclose(rates.raw_attraction(zones, "HBW"), 1.45 * zones.column("emp_total"))


def test_balance_attractions_preserves_total():
    balanced, factor = balance_attractions(np.array([10.0, 20.0, 30.0]), np.array([1.0, 1.0, 2.0]))
    assert balanced.sum() == pytest.approx(60.0)
    assert factor == pytest.approx(15.0)
    np.testing.assert_allclose(balanced, [15.0, 15.0, 30.0])


def test_balance_attractions_zero_raw_is_degenerate():
    with pytest.raises(ModelDegeneracyError) as excinfo:
        balance_attractions(np.array([10.0, 5.0]), np.zeros(2), purpose=TripPurpose.HBW)
    assert excinfo.value.purpose is TripPurpose.HBW


def test_engine_conserves_totals(zones):
    engine = ProductionAttractionEngine(simple_models(), zones)
    trip_ends = engine.compute()
    assert set(trip_ends) == set(TripPurpose)
    for pa in trip_ends.values():
        assert pa.total_attraction == pytest.approx(pa.total_production)
        assert pa.scale_factor == pytest.approx(pa.total_production / pa.raw_attraction.sum())
        assert list(pa.zone_ids) == ["1", "2", "3", "4"]


def test_engine_zero_employment_is_degenerate(zone_frame):
    zone_frame["emp_total"] = 0.0
    engine = ProductionAttractionEngine(simple_models(), ZoneTable(zone_frame))
    with pytest.raises(ModelDegeneracyError):
        engine.compute_purpose("HBW")
    # Other purposes are unaffected
    assert engine.compute_purpose("HBO").total_production > 0


def test_engine_production_floor(zones):
    models = {"HBW": TripPurposeModel.from_coefficients("HBW", -5.0, {"has_children": 20.0})}
    floored = ProductionAttractionEngine(models, zones, production_floor=0.0).compute_purpose("HBW")
    assert (floored.production >= 0).all()
    raw = ProductionAttractionEngine(models, zones).compute_purpose("HBW")
    assert (raw.production < 0).any()


def test_trip_ends_are_read_only(zones):
    pa = ProductionAttractionEngine(simple_models(), zones).compute_purpose("NHB")
    with pytest.raises(ValueError):
        pa.production[0] = 1.0


def test_trip_ends_dataframe(zones):
    trip_ends = ProductionAttractionEngine(simple_models(), zones).compute()
    df = trip_ends_dataframe(trip_ends)
    assert len(df) == 3 * len(zones)
    assert set(df["purpose"]) == {"HBW", "HBO", "NHB"}
