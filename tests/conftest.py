import numpy as np
import pandas as pd
import pytest

from demandflow import ZoneTable, prepare_household_survey


@pytest.fixture
def zone_frame():
    """Four zones; zone 4 has jobs but no households and no income value."""
    return pd.DataFrame({
        "zone_id": ["1", "2", "3", "4"],
        "households": [100.0, 200.0, 50.0, 0.0],
        "median_income": [50000.0, 80000.0, 40000.0, np.nan],
        "hh_with_children": [30.0, 80.0, 10.0, 0.0],
        "hh_with_elderly": [20.0, 30.0, 25.0, 0.0],
        "hh_owner_occupied": [60.0, 150.0, 20.0, 0.0],
        "emp_basic": [10.0, 50.0, 100.0, 5.0],
        "emp_retail": [5.0, 20.0, 40.0, 0.0],
        "emp_service": [20.0, 30.0, 60.0, 5.0],
        "emp_total": [35.0, 100.0, 200.0, 10.0],
    })


@pytest.fixture
def zones(zone_frame):
    return ZoneTable(zone_frame)


@pytest.fixture
def skim():
    """Complete skim over the four zones; time grows with zone distance."""
    ids = ["1", "2", "3", "4"]
    rows = []
    for i, o in enumerate(ids):
        for j, d in enumerate(ids):
            rows.append({"origin": o, "destination": d, "time": 5.0 + 10.0 * abs(i - j)})
    return pd.DataFrame(rows)


@pytest.fixture
def survey_frame():
    """Synthetic survey with Poisson trip counts driven by the predictors."""
    rng = np.random.default_rng(42)
    n = 300
    income = rng.uniform(20000, 150000, n)
    has_children = rng.integers(0, 2, n)
    owns_home = rng.integers(0, 2, n)
    has_elderly = rng.integers(0, 2, n)
    has_vehicle = rng.integers(0, 2, n)
    log_inc = np.log2(income / 1000.0)
    return pd.DataFrame({
        "household_id": [f"hh{i}" for i in range(n)],
        "income": income,
        "has_children": has_children,
        "owns_home": owns_home,
        "has_elderly": has_elderly,
        "has_vehicle": has_vehicle,
        "trips_hbw": rng.poisson(0.5 + 0.2 * log_inc - 0.3 * has_elderly),
        "trips_hbo": rng.poisson(1.5 + 0.2 * log_inc + 1.0 * has_children),
        "trips_nhb": rng.poisson(0.8 + 0.1 * log_inc + 0.3 * owns_home),
    })


@pytest.fixture
def survey(survey_frame):
    return prepare_household_survey(survey_frame)
