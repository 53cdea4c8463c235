"""
Trip Generation Module

Step 1 of the 4-step model: Calculate trip productions and attractions by zone.

Productions come from one linear regression per trip purpose, fit on
household survey records and evaluated on zone aggregates. Attractions come
from fixed empirical rates and are scaled so that, per purpose, total
attractions equal total productions.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Literal, Mapping, Optional, Sequence
import numpy as np
import pandas as pd
from statsmodels.formula.api import ols

from .exceptions import DataError, ModelDegeneracyError
from .survey import HouseholdSurvey
from .zones import ZoneTable


class TripPurpose(Enum):
    """Trip purposes modeled by the system."""
    HBW = "HBW"   # Home-based work
    HBO = "HBO"   # Home-based other
    NHB = "NHB"   # Non-home-based

    @classmethod
    def coerce(cls, value) -> "TripPurpose":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"Unknown trip purpose: {value}") from None


DEFAULT_PREDICTORS = ("log2_income", "has_children", "owns_home", "has_elderly")


@dataclass(frozen=True)
class TripPurposeModel:
    """
    Linear trip rate model for one purpose.

    trips per household = intercept + sum_k(coefficient_k * predictor_k)

    Fit on household records (boolean predictors are 0/1) and applied to
    zones where the same predictors are shares of households. Evaluating a
    household-level regression on zone aggregates is an ecological-inference
    approximation; outputs are not clamped and may be negative when zones lie
    outside the fitted domain.
    """
    purpose: TripPurpose
    intercept: float
    coefficients: Mapping[str, float]
    n_obs: int = 0
    r_squared: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "purpose", TripPurpose.coerce(self.purpose))
        object.__setattr__(
            self, "coefficients",
            MappingProxyType({k: float(v) for k, v in dict(self.coefficients).items()})
        )

    @property
    def predictors(self) -> list:
        return list(self.coefficients.keys())

    @classmethod
    def from_coefficients(cls, purpose, intercept: float, coefficients: Mapping[str, float]) -> "TripPurposeModel":
        """Build a model from known coefficients, e.g. a previously estimated model."""
        return cls(purpose=purpose, intercept=float(intercept), coefficients=coefficients)

    @classmethod
    def fit(
        cls,
        survey: HouseholdSurvey,
        purpose,
        predictors: Sequence[str] = DEFAULT_PREDICTORS,
        missing: Literal["drop", "raise"] = "drop",
        verbose: bool = False
    ) -> "TripPurposeModel":
        """
        Estimate the model by ordinary least squares.

        Args:
            survey: Prepared household survey
            purpose: Trip purpose to fit
            predictors: Household-level predictor columns
            missing: Records with missing predictor values
                - 'drop': exclude them from the fit
                - 'raise': raise DataError
            verbose: Print progress messages

        Returns:
            Fitted TripPurposeModel
        """
        purpose = TripPurpose.coerce(purpose)
        if missing not in ("drop", "raise"):
            raise ValueError(f"Unknown missing-data option: {missing}")

        predictors = list(predictors)
        if not predictors:
            raise ValueError("At least one predictor is required")

        trip_col = survey.trip_column(purpose)
        records = survey.records
        absent = [p for p in predictors if p not in records.columns]
        if absent:
            raise DataError(f"Survey records have no predictor columns: {absent}")

        columns = [trip_col] + predictors
        incomplete = records[columns].isna().any(axis=1)
        if incomplete.any() and missing == "raise":
            bad = records.loc[incomplete, "household_id"].tolist()
            raise DataError(
                f"{int(incomplete.sum()):,} survey records have missing predictor values: {bad[:10]}"
            )
        data = records.loc[~incomplete, columns]

        if len(data) <= len(predictors):
            raise DataError(
                f"Not enough survey records to fit {purpose.value} model: "
                f"{len(data)} records for {len(predictors)} predictors"
            )

        formula = f"{trip_col} ~ " + " + ".join(predictors)
        result = ols(formula, data=data).fit()

        params = result.params
        coefficients = {p: float(params[p]) for p in predictors}
        model = cls(
            purpose=purpose,
            intercept=float(params["Intercept"]),
            coefficients=coefficients,
            n_obs=int(result.nobs),
            r_squared=float(result.rsquared),
        )

        if verbose:
            print(f"  Fitted {purpose.value} model on {model.n_obs:,} households "
                  f"(R-squared {model.r_squared:.3f})")
            if incomplete.any():
                print(f"    Dropped {int(incomplete.sum()):,} records with missing values")

        return model

    def trip_rate(
        self,
        zones: ZoneTable,
        missing_policy: Literal["impute", "raise"] = "impute",
        verbose: bool = False
    ) -> np.ndarray:
        """Predicted trips per household for every zone."""
        X = zones.predictor_frame(self.predictors, missing_policy=missing_policy, verbose=verbose)
        coefs = np.array([self.coefficients[p] for p in self.predictors], dtype=np.float64)
        return self.intercept + X.to_numpy(dtype=np.float64) @ coefs

    def apply(
        self,
        zones: ZoneTable,
        missing_policy: Literal["impute", "raise"] = "impute",
        verbose: bool = False
    ) -> np.ndarray:
        """Zone productions: trip rate times household count (not clamped)."""
        return self.trip_rate(zones, missing_policy=missing_policy, verbose=verbose) * zones.households

    def summary(self) -> str:
        lines = [
            f"Trip Purpose Model: {self.purpose.value}",
            "=" * 40,
            f"  Intercept: {self.intercept:.4f}",
        ]
        for name, value in self.coefficients.items():
            lines.append(f"  {name}: {value:.4f}")
        if self.n_obs:
            lines.append(f"  Households: {self.n_obs:,}")
        if self.r_squared is not None:
            lines.append(f"  R-squared: {self.r_squared:.3f}")
        return "\n".join(lines)


def fit_purpose_models(
    survey: HouseholdSurvey,
    purposes: Sequence = tuple(TripPurpose),
    predictors: Sequence[str] = DEFAULT_PREDICTORS,
    missing: Literal["drop", "raise"] = "drop",
    verbose: bool = False
) -> dict:
    """Fit one TripPurposeModel per purpose on the same survey."""
    return {
        TripPurpose.coerce(p): TripPurposeModel.fit(
            survey, p, predictors=predictors, missing=missing, verbose=verbose
        )
        for p in purposes
    }


@dataclass
class AttractionRates:
    """
    Attraction rates by purpose, applied to zone totals.

    Rates are fixed empirical coefficients (trips per household or per job).
    Work trips are attracted by total employment; other and non-home-based
    trips by households and basic/retail/service employment.
    """

    rates: dict = field(default_factory=lambda: {
        TripPurpose.HBW: {"emp_total": 1.45},
        TripPurpose.HBO: {
            "households": 0.90,
            "emp_basic": 0.50,
            "emp_retail": 9.00,
            "emp_service": 1.70,
        },
        TripPurpose.NHB: {
            "households": 0.50,
            "emp_basic": 0.50,
            "emp_retail": 4.10,
            "emp_service": 1.20,
        },
    })

    def __post_init__(self):
        rates = {}
        for purpose, table in self.rates.items():
            for col, rate in table.items():
                if rate < 0:
                    raise ValueError(f"Attraction rate for {purpose}/{col} must be non-negative, got {rate}")
            rates[TripPurpose.coerce(purpose)] = {col: float(r) for col, r in table.items()}
        self.rates = rates

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "AttractionRates":
        """Build from a {purpose code: {zone column: rate}} mapping, e.g. from YAML."""
        return cls(rates={TripPurpose.coerce(p): dict(t) for p, t in mapping.items()})

    def get_rates(self, purpose) -> dict:
        purpose = TripPurpose.coerce(purpose)
        if purpose not in self.rates:
            raise ValueError(f"No attraction rates for purpose: {purpose.value}")
        return self.rates[purpose]

    def raw_attraction(self, zones: ZoneTable, purpose) -> np.ndarray:
        """Linear combination of zone totals for one purpose."""
        total = np.zeros(len(zones), dtype=np.float64)
        for col, rate in self.get_rates(purpose).items():
            total += rate * zones.column(col)
        return total

    def to_dataframe(self) -> pd.DataFrame:
        records = []
        for purpose, table in self.rates.items():
            for col, rate in table.items():
                records.append({"purpose": purpose.value, "zone_column": col, "rate": rate})
        return pd.DataFrame(records)


def _readonly(values) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class ProductionAttraction:
    """
    Trip ends by zone for one purpose.

    balanced_attraction = raw_attraction * scale_factor, where the scale factor
    makes total balanced attraction equal total production.
    """
    purpose: TripPurpose
    zone_ids: np.ndarray
    production: np.ndarray
    raw_attraction: np.ndarray
    balanced_attraction: np.ndarray
    scale_factor: float

    def __post_init__(self):
        ids = np.array(self.zone_ids, dtype=object, copy=True)
        ids.setflags(write=False)
        object.__setattr__(self, "zone_ids", ids)
        for name in ("production", "raw_attraction", "balanced_attraction"):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    @property
    def total_production(self) -> float:
        return float(self.production.sum())

    @property
    def total_attraction(self) -> float:
        return float(self.balanced_attraction.sum())

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "zone_id": self.zone_ids,
            "purpose": self.purpose.value,
            "production": self.production,
            "raw_attraction": self.raw_attraction,
            "balanced_attraction": self.balanced_attraction,
        })


def balance_attractions(
    production: np.ndarray,
    raw_attraction: np.ndarray,
    purpose=None
) -> tuple[np.ndarray, float]:
    """
    Scale attractions so their total equals total production.

    Args:
        production: Productions by zone
        raw_attraction: Unbalanced attractions by zone
        purpose: Purpose label used in error messages

    Returns:
        Tuple of (balanced attractions, scale factor)
    """
    total_attr = float(np.sum(raw_attraction))
    total_prod = float(np.sum(production))
    label = getattr(purpose, "value", purpose)

    if not np.isfinite(total_attr) or not np.isfinite(total_prod):
        raise DataError(f"Non-finite trip ends for purpose {label}")
    if total_attr == 0.0:
        raise ModelDegeneracyError(
            f"Total raw attraction is zero for purpose {label}; balancing is undefined",
            purpose=purpose,
        )

    factor = total_prod / total_attr
    return np.asarray(raw_attraction, dtype=np.float64) * factor, factor


class ProductionAttractionEngine:
    """
    Production and attraction estimates per purpose.

    Productions come from the purpose models, raw attractions from the rate
    table, and attractions are balanced to productions with one scale factor
    per purpose.
    """

    def __init__(
        self,
        models: Mapping,
        zones: ZoneTable,
        attraction_rates: Optional[AttractionRates] = None,
        production_floor: Optional[float] = None,
        missing_policy: Literal["impute", "raise"] = "impute",
        verbose: bool = False
    ):
        """
        Args:
            models: TripPurposeModel by purpose
            zones: Zone attribute table
            attraction_rates: Attraction rate table (defaults if None)
            production_floor: Optional lower bound applied to productions
                              before balancing; None keeps raw regression output
            missing_policy: Zone predictor missing-data policy
            verbose: Print progress messages
        """
        self.models = {TripPurpose.coerce(p): m for p, m in models.items()}
        self.zones = zones
        self.attraction_rates = attraction_rates if attraction_rates is not None else AttractionRates()
        self.production_floor = production_floor
        self.missing_policy = missing_policy
        self.verbose = verbose

    def compute_purpose(self, purpose) -> ProductionAttraction:
        """Trip ends for a single purpose."""
        purpose = TripPurpose.coerce(purpose)
        if purpose not in self.models:
            raise ValueError(f"No trip purpose model for: {purpose.value}")

        production = self.models[purpose].apply(
            self.zones, missing_policy=self.missing_policy, verbose=self.verbose
        )

        n_negative = int((production < 0).sum())
        if self.production_floor is not None:
            production = np.maximum(production, self.production_floor)
        elif n_negative and self.verbose:
            print(f"  WARNING: {n_negative:,} zones with negative {purpose.value} production "
                  f"(no production floor configured)")

        raw_attraction = self.attraction_rates.raw_attraction(self.zones, purpose)
        balanced, factor = balance_attractions(production, raw_attraction, purpose)

        if self.verbose:
            print(f"  {purpose.value}: P={production.sum():,.0f}, "
                  f"raw A={raw_attraction.sum():,.0f}, scale={factor:.4f}")

        return ProductionAttraction(
            purpose=purpose,
            zone_ids=self.zones.zone_ids,
            production=production,
            raw_attraction=raw_attraction,
            balanced_attraction=balanced,
            scale_factor=factor,
        )

    def compute(self) -> dict:
        """Trip ends for every purpose with a model."""
        if self.verbose:
            print(f"  Computing trip ends for {len(self.zones):,} zones...")
        return {purpose: self.compute_purpose(purpose) for purpose in self.models}


def trip_ends_dataframe(trip_ends: Mapping) -> pd.DataFrame:
    """Long-form table of trip ends for all purposes."""
    frames = [pa.to_dataframe() for pa in trip_ends.values()]
    if not frames:
        return pd.DataFrame(columns=["zone_id", "purpose", "production",
                                     "raw_attraction", "balanced_attraction"])
    return pd.concat(frames, ignore_index=True)
