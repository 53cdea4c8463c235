"""
Zone attribute table for the trip generation model.

Zone data (households, income, employment by sector) is produced by external
data collaborators; this module validates it and turns it into the
zone-aggregate predictors the trip purpose regressions are evaluated on.
"""

from typing import Literal, Optional, Sequence
import numpy as np
import pandas as pd

from .exceptions import DataError


# Count columns that must be non-negative when present
COUNT_COLUMNS = [
    "households",
    "hh_with_children",
    "hh_with_elderly",
    "hh_owner_occupied",
    "hh_with_vehicle",
    "emp_basic",
    "emp_retail",
    "emp_service",
    "emp_total",
]

REQUIRED_COLUMNS = [
    "households",
    "median_income",
    "hh_with_children",
    "hh_with_elderly",
    "emp_basic",
    "emp_retail",
    "emp_service",
    "emp_total",
]

# Household-level boolean predictor -> zone count column used to form a share
SHARE_PREDICTORS = {
    "has_children": "hh_with_children",
    "has_elderly": "hh_with_elderly",
    "owns_home": "hh_owner_occupied",
    "has_vehicle": "hh_with_vehicle",
}

INCOME_PREDICTOR = "log2_income"


def log2_income(income_dollars) -> np.ndarray:
    """log2 of income in thousands of dollars. Callers must pass positive values."""
    return np.log2(np.asarray(income_dollars, dtype=np.float64) / 1000.0)


class ZoneTable:
    """
    Per-zone demographic and employment attributes keyed by zone id.

    The table is copied on construction and never modified afterwards.
    """

    def __init__(self, frame: pd.DataFrame, zone_id_col: str = "zone_id"):
        if zone_id_col in frame.columns:
            frame = frame.set_index(zone_id_col)
        frame = frame.copy()

        if frame.index.hasnans:
            raise DataError("Zone table contains missing zone ids")
        frame.index = frame.index.astype(str)
        frame.index.name = "zone_id"
        if not frame.index.is_unique:
            duplicated = frame.index[frame.index.duplicated()].unique().tolist()
            raise DataError(f"Zone ids must be unique, duplicated: {duplicated[:10]}")

        missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
        if missing:
            raise DataError(f"Zone table is missing required columns: {missing}")

        if frame["households"].isna().any():
            raise DataError("Zone table has missing household counts")

        for col in COUNT_COLUMNS:
            if col not in frame.columns:
                continue
            values = pd.to_numeric(frame[col], errors="coerce")
            if (values < 0).any():
                bad = frame.index[values < 0].tolist()
                raise DataError(f"Column '{col}' has negative counts in zones: {bad[:10]}")
            frame[col] = values.astype(np.float64)

        frame["median_income"] = pd.to_numeric(frame["median_income"], errors="coerce")
        self._frame = frame

    @classmethod
    def from_csv(cls, path, zone_id_col: str = "zone_id") -> "ZoneTable":
        """Load a zone table from CSV, reading zone ids as strings."""
        return cls(pd.read_csv(path, dtype={zone_id_col: str}), zone_id_col=zone_id_col)

    def __len__(self):
        return len(self._frame)

    @property
    def zone_ids(self) -> np.ndarray:
        return self._frame.index.to_numpy()

    @property
    def households(self) -> np.ndarray:
        return self._frame["households"].to_numpy(dtype=np.float64)

    def to_dataframe(self) -> pd.DataFrame:
        return self._frame.copy()

    def column(self, name: str) -> np.ndarray:
        """Return a complete numeric column, raising DataError if absent or incomplete."""
        if name not in self._frame.columns:
            raise DataError(f"Zone table has no column '{name}'")
        values = self._frame[name]
        if values.isna().any():
            bad = self._frame.index[values.isna()].tolist()
            raise DataError(f"Column '{name}' has missing values in zones: {bad[:10]}")
        return values.to_numpy(dtype=np.float64)

    def predictor_frame(
        self,
        predictors: Sequence[str],
        missing_policy: Literal["impute", "raise"] = "impute",
        verbose: bool = False
    ) -> pd.DataFrame:
        """
        Zone-aggregate values of household-level predictors.

        Boolean household predictors are evaluated as the share of households
        in the zone with that attribute, and income as log2 of the zone median
        income in thousands. Applying a household-level regression to these
        aggregates is an ecological-inference approximation.

        Args:
            predictors: Predictor names (log2_income, has_children, owns_home,
                        has_elderly, has_vehicle)
            missing_policy: What to do with missing or non-positive income and
                            missing share counts
                - 'impute': use the region-wide median of the valid zones
                - 'raise': raise DataError
            verbose: Print progress messages

        Returns:
            DataFrame indexed by zone_id with one column per predictor
        """
        if missing_policy not in ("impute", "raise"):
            raise ValueError(f"Unknown missing_policy: {missing_policy}")

        households = self._frame["households"]
        out = pd.DataFrame(index=self._frame.index)

        for name in predictors:
            if name == INCOME_PREDICTOR:
                income = self._frame["median_income"]
                invalid = income.isna() | (income <= 0)
                income = self._fill_invalid(income, invalid, "median_income", missing_policy, verbose)
                out[name] = log2_income(income)

            elif name in SHARE_PREDICTORS:
                count_col = SHARE_PREDICTORS[name]
                if count_col not in self._frame.columns:
                    raise DataError(
                        f"Predictor '{name}' requires zone column '{count_col}'"
                    )
                # Zones without households contribute no production; share is 0
                share = (self._frame[count_col] / households.where(households > 0)).where(
                    households > 0, 0.0
                )
                invalid = share.isna()
                if (share > 1.0 + 1e-9).any():
                    bad = share.index[share > 1.0 + 1e-9].tolist()
                    raise DataError(f"Column '{count_col}' exceeds households in zones: {bad[:10]}")
                out[name] = self._fill_invalid(share, invalid, count_col, missing_policy, verbose)

            else:
                raise ValueError(f"Unknown predictor: {name}")

        return out

    def _fill_invalid(self, values: pd.Series, invalid: pd.Series, col: str,
                      policy: str, verbose: bool) -> pd.Series:
        n_invalid = int(invalid.sum())
        if n_invalid == 0:
            return values

        if policy == "raise":
            bad = values.index[invalid].tolist()
            raise DataError(f"Column '{col}' is missing or invalid in zones: {bad[:10]}")

        valid = values[~invalid]
        if valid.empty:
            raise DataError(f"Cannot impute '{col}': no zone has a valid value")
        fill = float(valid.median())
        if verbose:
            print(f"  WARNING: {n_invalid:,} zones with missing/invalid '{col}'")
            print(f"           Imputed region-wide median {fill:,.3f}")
        return values.where(~invalid, fill)


def zone_index(zone_ids) -> dict:
    """Map zone id -> position."""
    return {zid: i for i, zid in enumerate(zone_ids)}


def coerce_zone_ids(values: Optional[Sequence]) -> np.ndarray:
    """Zone ids as an object array of strings."""
    return np.asarray([str(v) for v in values], dtype=object)
