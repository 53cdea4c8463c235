import numpy as np
import pandas as pd
import pytest

from demandflow import DataError, ZoneTable, log2_income


def test_zone_ids_are_strings(zone_frame):
    zone_frame["zone_id"] = [1, 2, 3, 4]
    zones = ZoneTable(zone_frame)
    assert list(zones.zone_ids) == ["1", "2", "3", "4"]
    assert len(zones) == 4


def test_duplicate_zone_ids_rejected(zone_frame):
    zone_frame.loc[1, "zone_id"] = "1"
    with pytest.raises(DataError, match="unique"):
        ZoneTable(zone_frame)


def test_missing_required_column(zone_frame):
    with pytest.raises(DataError, match="emp_total"):
        ZoneTable(zone_frame.drop(columns=["emp_total"]))


def test_negative_counts_rejected(zone_frame):
    zone_frame.loc[2, "emp_retail"] = -1.0
    with pytest.raises(DataError, match="negative"):
        ZoneTable(zone_frame)


def test_missing_households_rejected(zone_frame):
    zone_frame.loc[0, "households"] = np.nan
    with pytest.raises(DataError):
        ZoneTable(zone_frame)


def test_input_frame_not_modified(zone_frame):
    before = zone_frame.copy()
    ZoneTable(zone_frame)
    pd.testing.assert_frame_equal(zone_frame, before)


def test_log2_income_in_thousands():
    assert log2_income([1000.0, 64000.0]) == pytest.approx([0.0, 6.0])


def test_share_predictors(zones):
    X = zones.predictor_frame(["has_children", "owns_home", "has_elderly"])
    assert X.loc["1", "has_children"] == pytest.approx(0.3)
    assert X.loc["2", "owns_home"] == pytest.approx(0.75)
    assert X.loc["3", "has_elderly"] == pytest.approx(0.5)


def test_zone_without_households_has_zero_share(zones):
    X = zones.predictor_frame(["has_children"])
    assert X.loc["4", "has_children"] == 0.0


def test_missing_income_imputed_with_region_median(zones):
    X = zones.predictor_frame(["log2_income"])
    assert X.loc["4", "log2_income"] == pytest.approx(np.log2(50.0))


def test_missing_income_raise_policy(zones):
    with pytest.raises(DataError, match="median_income"):
        zones.predictor_frame(["log2_income"], missing_policy="raise")


def test_non_positive_income_treated_as_missing(zone_frame):
    zone_frame.loc[0, "median_income"] = 0.0
    zones = ZoneTable(zone_frame)
    X = zones.predictor_frame(["log2_income"])
    # Median of the remaining valid incomes (80000, 40000)
    assert X.loc["1", "log2_income"] == pytest.approx(np.log2(60.0))


def test_share_above_one_rejected(zone_frame):
    zone_frame.loc[0, "hh_with_children"] = 150.0
    zones = ZoneTable(zone_frame)
    with pytest.raises(DataError, match="exceeds households"):
        zones.predictor_frame(["has_children"])


def test_predictor_needs_count_column(zone_frame):
    zones = ZoneTable(zone_frame.drop(columns=["hh_owner_occupied"]))
    with pytest.raises(DataError, match="hh_owner_occupied"):
        zones.predictor_frame(["owns_home"])


def test_unknown_predictor(zones):
    with pytest.raises(ValueError, match="Unknown predictor"):
        zones.predictor_frame(["pets"])


def test_column_with_missing_values(zones):
    with pytest.raises(DataError, match="median_income"):
        zones.column("median_income")
