"""
Household Travel Survey Module

Helper functions for loading and preparing household survey microdata used to
fit the trip purpose regressions.

Each household record carries observed trip counts per purpose and the
household-level predictors:
- income (dollars), transformed to log2(income in thousands)
- has_children, owns_home, has_elderly, has_vehicle (boolean indicators)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union

import numpy as np
import pandas as pd

from .exceptions import DataError
from .zones import log2_income


# Observed trip count column per purpose code
TRIP_COUNT_COLUMNS = {
    "HBW": "trips_hbw",
    "HBO": "trips_hbo",
    "NHB": "trips_nhb",
}

BOOLEAN_COLUMNS = ["has_children", "owns_home", "has_elderly", "has_vehicle"]

REQUIRED_COLUMNS = ["household_id", "income"] + list(TRIP_COUNT_COLUMNS.values()) + BOOLEAN_COLUMNS

# Accepted spellings of boolean survey responses
_TRUE_VALUES = {"1", "true", "t", "yes", "y"}
_FALSE_VALUES = {"0", "false", "f", "no", "n"}


@dataclass(frozen=True, eq=False)
class HouseholdSurvey:
    """Prepared household survey records ready for regression fitting."""
    records: pd.DataFrame
    income_policy: str
    n_input: int
    n_excluded: int
    n_imputed: int

    def __len__(self):
        return len(self.records)

    def trip_column(self, purpose) -> str:
        """Observed trip count column for a purpose (TripPurpose or code)."""
        code = getattr(purpose, "value", purpose)
        if code not in TRIP_COUNT_COLUMNS:
            raise ValueError(f"Unknown trip purpose: {purpose}")
        return TRIP_COUNT_COLUMNS[code]

    def summary(self) -> str:
        lines = [
            "Household Survey",
            "=" * 40,
            f"Input records: {self.n_input:,}",
            f"Usable records: {len(self.records):,}",
            f"Income policy: {self.income_policy}",
            f"  Excluded: {self.n_excluded:,}",
            f"  Imputed: {self.n_imputed:,}",
        ]
        for code, col in TRIP_COUNT_COLUMNS.items():
            lines.append(f"Mean {code} trips/household: {self.records[col].mean():.3f}")
        return "\n".join(lines)


def load_household_survey(
    survey_file: Union[str, Path],
    income_policy: Literal["exclude", "impute", "raise"] = "exclude",
    verbose: bool = False
) -> HouseholdSurvey:
    """
    Load household survey microdata from CSV and prepare it.

    Args:
        survey_file: Path to the household survey CSV
        income_policy: Handling of missing/non-positive income (see prepare_household_survey)
        verbose: Print progress messages

    Returns:
        HouseholdSurvey
    """
    survey_file = Path(survey_file)

    if not survey_file.exists():
        raise FileNotFoundError(f"Household survey file not found: {survey_file}")

    households = pd.read_csv(survey_file, dtype={"household_id": str})
    if verbose:
        print(f"  Loaded {len(households):,} survey households from {survey_file.name}")

    return prepare_household_survey(households, income_policy=income_policy, verbose=verbose)


def _to_bool(series: pd.Series, col: str) -> pd.Series:
    if series.dtype == bool:
        return series

    def convert(value):
        if pd.isna(value):
            return np.nan
        text = str(value).strip().lower()
        if text.endswith(".0"):
            text = text[:-2]
        if text in _TRUE_VALUES:
            return 1.0
        if text in _FALSE_VALUES:
            return 0.0
        raise DataError(f"Column '{col}' has a non-boolean value: {value!r}")

    return series.map(convert)


def prepare_household_survey(
    households: pd.DataFrame,
    income_policy: Literal["exclude", "impute", "raise"] = "exclude",
    verbose: bool = False
) -> HouseholdSurvey:
    """
    Validate survey records and add the log2_income predictor.

    log2 of zero or negative income is undefined, so those records are
    handled by an explicit policy before the transform:
        - 'exclude': drop the records
        - 'impute': replace with the median of the valid incomes
        - 'raise': raise DataError

    Args:
        households: DataFrame with one row per household
        income_policy: Policy for missing or non-positive income
        verbose: Print progress messages

    Returns:
        HouseholdSurvey with boolean predictors as 0/1 floats and a
        log2_income column
    """
    if income_policy not in ("exclude", "impute", "raise"):
        raise ValueError(f"Unknown income_policy: {income_policy}")

    missing = [c for c in REQUIRED_COLUMNS if c not in households.columns]
    if missing:
        raise DataError(f"Survey data is missing required columns: {missing}")

    records = households.copy()
    n_input = len(records)

    if records["household_id"].isna().any():
        raise DataError("Survey data contains records without household_id")
    if records["household_id"].duplicated().any():
        dup = records.loc[records["household_id"].duplicated(), "household_id"].tolist()
        raise DataError(f"Duplicated household_id values: {dup[:10]}")

    # Trip counts: non-negative integers
    for col in TRIP_COUNT_COLUMNS.values():
        counts = pd.to_numeric(records[col], errors="coerce")
        invalid = counts.isna() | (counts < 0) | (counts != np.floor(counts))
        if invalid.any():
            bad = records.loc[invalid, "household_id"].tolist()
            raise DataError(
                f"Column '{col}' must hold non-negative integer trip counts; "
                f"invalid for households: {bad[:10]}"
            )
        records[col] = counts.astype(np.int64)

    for col in BOOLEAN_COLUMNS:
        records[col] = _to_bool(records[col], col).astype(np.float64)

    # Income policy
    income = pd.to_numeric(records["income"], errors="coerce")
    invalid_income = income.isna() | (income <= 0)
    n_invalid = int(invalid_income.sum())
    n_excluded = 0
    n_imputed = 0

    if n_invalid > 0:
        if income_policy == "raise":
            bad = records.loc[invalid_income, "household_id"].tolist()
            raise DataError(
                f"{n_invalid:,} households have missing or non-positive income: {bad[:10]}"
            )
        elif income_policy == "exclude":
            records = records.loc[~invalid_income].copy()
            income = income.loc[~invalid_income]
            n_excluded = n_invalid
            if verbose:
                print(f"  WARNING: Excluded {n_invalid:,} households with missing/non-positive income")
        else:
            valid = income.loc[~invalid_income]
            if valid.empty:
                raise DataError("Cannot impute income: no household has a positive income")
            fill = float(valid.median())
            income = income.where(~invalid_income, fill)
            n_imputed = n_invalid
            if verbose:
                print(f"  WARNING: Imputed median income {fill:,.0f} for {n_invalid:,} households")

    if records.empty:
        raise DataError("No usable survey records after applying the income policy")

    records["income"] = income.astype(np.float64)
    records["log2_income"] = log2_income(records["income"])
    records = records.reset_index(drop=True)

    if verbose:
        print(f"  Prepared {len(records):,} of {n_input:,} survey households")

    return HouseholdSurvey(
        records=records,
        income_policy=income_policy,
        n_input=n_input,
        n_excluded=n_excluded,
        n_imputed=n_imputed,
    )
