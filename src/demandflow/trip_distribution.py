"""
Trip Distribution Module

Step 2 of the 4-step model: Distribute trips between zones using a
doubly-constrained gravity model.

    T_ij = A_i * O_i * B_j * D_j * F_ij

    A_i = 1 / sum_j(B_j * D_j * F_ij)
    B_j = 1 / sum_i(A_i * O_i * F_ij)

Balancing factors are found by Furness (IPF) iteration over the sparse set of
zone pairs present in the travel time skim. Pairs missing from the skim are
structurally absent: they never enter a sum and never carry flow.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional
import numpy as np
import pandas as pd
from scipy import sparse

from .exceptions import DataError, ConvergenceFailure, StructuralGapError
from .trip_generation import TripPurpose, ProductionAttraction
from .validation import FlowAggregator
from .zones import coerce_zone_ids, zone_index


# Alternative skim column names -> canonical names
SKIM_COLUMN_ALIASES = {
    "origin_zone": "origin",
    "o_zone_id": "origin",
    "dest_zone": "destination",
    "d_zone_id": "destination",
    "travel_time": "time",
    "impedance": "time",
}


def exponential_friction(travel_time: np.ndarray, decay: float) -> np.ndarray:
    """
    Exponential friction function: f(t) = exp(-m * t)

    Args:
        travel_time: Travel times
        decay: Decay rate m (higher = steeper decay)

    Returns:
        Friction factors, same shape as travel_time
    """
    return np.exp(-decay * np.asarray(travel_time, dtype=np.float64))


def _readonly(values, dtype=np.float64) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def _validate_decay(purpose, decay) -> float:
    decay = float(decay)
    if not np.isfinite(decay) or decay < 0:
        raise DataError(f"Decay rate for {getattr(purpose, 'value', purpose)} must be a "
                        f"non-negative number, got {decay}")
    return decay


@dataclass(frozen=True, eq=False)
class PairFriction:
    """Friction factors for one purpose over the structurally present pairs."""
    purpose: TripPurpose
    zone_ids: np.ndarray
    origins: np.ndarray
    destinations: np.ndarray
    travel_time: np.ndarray
    factor: np.ndarray
    decay_rate: float

    @property
    def n_zones(self) -> int:
        return len(self.zone_ids)

    @property
    def n_pairs(self) -> int:
        return len(self.origins)


class FrictionFactorTable:
    """
    Travel times over structurally present zone pairs and per-purpose decay rates.

    The table is read-only after construction and can be shared between
    purposes.
    """

    def __init__(
        self,
        zone_ids,
        origins: np.ndarray,
        destinations: np.ndarray,
        travel_time: np.ndarray,
        decay_rates: Mapping
    ):
        self.zone_ids = _readonly(coerce_zone_ids(zone_ids), dtype=object)
        self.origins = _readonly(origins, dtype=np.int64)
        self.destinations = _readonly(destinations, dtype=np.int64)
        self.travel_time = _readonly(travel_time)
        self.decay_rates = {
            TripPurpose.coerce(p): _validate_decay(p, m) for p, m in decay_rates.items()
        }
        self._factors = {
            p: _readonly(exponential_friction(self.travel_time, m)) for p, m in self.decay_rates.items()
        }

    @classmethod
    def from_skim(
        cls,
        skim: pd.DataFrame,
        zone_ids,
        decay_rates: Mapping,
        verbose: bool = False
    ) -> "FrictionFactorTable":
        """
        Build from a long-form skim of (origin, destination, time) rows.

        Rows with a missing or infinite time are unreachable and dropped, as
        are pairs that do not appear at all.

        Args:
            skim: DataFrame with origin, destination and time columns
                  (origin_zone/o_zone_id, dest_zone/d_zone_id and
                  travel_time/impedance are accepted)
            zone_ids: Zone ids of the region, in model order
            decay_rates: Decay rate m by purpose
            verbose: Print progress messages
        """
        renames = {old: new for old, new in SKIM_COLUMN_ALIASES.items()
                   if old in skim.columns and new not in skim.columns}
        skim = skim.rename(columns=renames)

        required_cols = ["origin", "destination", "time"]
        missing = [c for c in required_cols if c not in skim.columns]
        if missing:
            raise DataError(f"Travel time skim is missing columns: {missing}")

        zone_ids = coerce_zone_ids(zone_ids)
        index = zone_index(zone_ids)
        if len(index) != len(zone_ids):
            raise DataError("Zone ids must be unique")

        origin = skim["origin"].astype(str)
        destination = skim["destination"].astype(str)
        time = pd.to_numeric(skim["time"], errors="coerce").astype(np.float64)

        known = list(index)
        unknown = set(origin[~origin.isin(known)]) | set(destination[~destination.isin(known)])
        if unknown:
            raise DataError(f"Travel time skim references unknown zones: {sorted(unknown)[:10]}")

        reachable = time.notna() & np.isfinite(time)
        n_unreachable = int((~reachable).sum())
        origin = origin[reachable]
        destination = destination[reachable]
        time = time[reachable]

        if (time < 0).any():
            raise DataError("Travel time skim contains negative travel times")

        pairs = pd.DataFrame({"origin": origin, "destination": destination})
        duplicated = pairs.duplicated()
        if duplicated.any():
            dup = pairs[duplicated].head(10).itertuples(index=False, name=None)
            raise DataError(f"Travel time skim has duplicated zone pairs: {list(dup)}")

        o_idx = origin.map(index).to_numpy(dtype=np.int64)
        d_idx = destination.map(index).to_numpy(dtype=np.int64)

        if verbose:
            n_zones = len(zone_ids)
            print(f"  Travel time skim: {len(o_idx):,} of {n_zones * n_zones:,} zone pairs present")
            if n_unreachable:
                print(f"  Dropped {n_unreachable:,} unreachable pairs (missing time)")
            if len(time):
                print(f"  Time range: {time.min():.2f} - {time.max():.2f}")

        return cls(zone_ids, o_idx, d_idx, time.to_numpy(), decay_rates)

    @classmethod
    def from_matrix(
        cls,
        matrix: pd.DataFrame,
        decay_rates: Mapping,
        verbose: bool = False
    ) -> "FrictionFactorTable":
        """
        Build from a square travel time matrix (origins as index, destinations
        as columns). NaN cells are unreachable pairs.
        """
        if list(map(str, matrix.index)) != list(map(str, matrix.columns)):
            raise DataError("Travel time matrix must have identical row and column zone ids")
        matrix = matrix.copy()
        matrix.index = matrix.index.astype(str).rename("origin")
        matrix.columns = matrix.columns.astype(str)
        skim = matrix.reset_index().melt(id_vars="origin", var_name="destination", value_name="time")
        return cls.from_skim(skim, matrix.index, decay_rates, verbose=verbose)

    @property
    def n_pairs(self) -> int:
        return len(self.origins)

    @property
    def purposes(self) -> list:
        return list(self.decay_rates)

    def with_decay_rate(self, purpose, decay: float) -> "FrictionFactorTable":
        """New table with one purpose's decay rate replaced."""
        rates = dict(self.decay_rates)
        rates[TripPurpose.coerce(purpose)] = decay
        return FrictionFactorTable(self.zone_ids, self.origins, self.destinations,
                                   self.travel_time, rates)

    def for_purpose(self, purpose) -> PairFriction:
        """Friction factors exp(-m * t) for one purpose."""
        purpose = TripPurpose.coerce(purpose)
        if purpose not in self.decay_rates:
            raise ValueError(f"No decay rate configured for purpose: {purpose.value}")

        return PairFriction(
            purpose=purpose,
            zone_ids=self.zone_ids,
            origins=self.origins,
            destinations=self.destinations,
            travel_time=self.travel_time,
            factor=self._factors[purpose],
            decay_rate=self.decay_rates[purpose],
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Long-form pairs with one friction column per purpose."""
        out = pd.DataFrame({
            "origin": self.zone_ids[self.origins],
            "destination": self.zone_ids[self.destinations],
            "time": self.travel_time,
        })
        for purpose in self.decay_rates:
            out[f"friction_{purpose.value}"] = self.for_purpose(purpose).factor
        return out


@dataclass(frozen=True, eq=False)
class FlowMatrix:
    """Zone-to-zone flows for one purpose over the structurally present pairs."""
    purpose: TripPurpose
    zone_ids: np.ndarray
    origins: np.ndarray
    destinations: np.ndarray
    flow: np.ndarray
    travel_time: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "flow", _readonly(self.flow))

    @property
    def n_zones(self) -> int:
        return len(self.zone_ids)

    def row_sums(self) -> np.ndarray:
        return np.bincount(self.origins, weights=self.flow, minlength=self.n_zones)

    def col_sums(self) -> np.ndarray:
        return np.bincount(self.destinations, weights=self.flow, minlength=self.n_zones)

    def to_sparse(self) -> sparse.csr_matrix:
        n = self.n_zones
        return sparse.csr_matrix((self.flow, (self.origins, self.destinations)), shape=(n, n))

    def to_dense(self) -> pd.DataFrame:
        """Square flow matrix; absent pairs are 0."""
        return pd.DataFrame(self.to_sparse().toarray(), index=self.zone_ids, columns=self.zone_ids)

    def to_dataframe(self) -> pd.DataFrame:
        """Long-form flows: origin, destination, flow, travel_time."""
        return pd.DataFrame({
            "origin": self.zone_ids[self.origins],
            "destination": self.zone_ids[self.destinations],
            "flow": self.flow,
            "travel_time": self.travel_time,
        })


class ConvergenceStatus(Enum):
    """Outcome of a gravity model solve."""
    CONVERGED = "converged"
    EXHAUSTED = "exhausted_iterations"
    STRUCTURAL_GAP = "structural_gap"


@dataclass(frozen=True)
class StructuralGap:
    """
    A zone the solver cannot constrain.

    reason is 'no_pairs' when the zone has no structurally present pairs on
    that side, and 'no_weight' when pairs exist but every term of the
    balancing sum is zero.
    """
    zone_id: str
    side: str
    target: float
    reason: str


@dataclass(frozen=True, eq=False)
class GravityModelResult:
    """
    Flows plus convergence diagnostics for one purpose.

    origin_factors are relative to friction scaled to a maximum of 1 per origin.
    """
    flow_matrix: FlowMatrix
    status: ConvergenceStatus
    error: float
    iterations: int
    tolerance: float
    origin_factors: np.ndarray
    destination_factors: np.ndarray
    production: np.ndarray
    attraction: np.ndarray
    error_history: tuple = ()
    structural_gaps: tuple = field(default_factory=tuple)

    @property
    def purpose(self) -> TripPurpose:
        return self.flow_matrix.purpose

    @property
    def converged(self) -> bool:
        return self.status is ConvergenceStatus.CONVERGED

    @property
    def unconstrainable(self) -> tuple:
        """Gaps on zones with positive targets."""
        return tuple(g for g in self.structural_gaps if g.target > 0)

    def raise_for_status(self) -> "GravityModelResult":
        """Raise StructuralGapError or ConvergenceFailure unless converged."""
        if self.status is ConvergenceStatus.STRUCTURAL_GAP:
            zones = [f"{g.zone_id} ({g.side}, {g.reason})" for g in self.unconstrainable]
            raise StructuralGapError(
                f"{self.purpose.value}: {len(zones)} zones with demand cannot be "
                f"constrained: {zones[:10]}",
                result=self,
                gaps=self.unconstrainable,
            )
        if self.status is ConvergenceStatus.EXHAUSTED:
            raise ConvergenceFailure(
                f"{self.purpose.value}: gravity model did not converge after "
                f"{self.iterations} iterations (error {self.error:.6f}, "
                f"tolerance {self.tolerance})",
                result=self,
            )
        return self

    def to_dataframe(self) -> pd.DataFrame:
        return self.flow_matrix.to_dataframe()

    def summary(self) -> str:
        """Return summary statistics as string."""
        aggregator = FlowAggregator(self.flow_matrix)
        avg_time = aggregator.average_travel_time()
        lines = [
            f"Gravity Model Results: {self.purpose.value}",
            "=" * 40,
            f"Zones: {self.flow_matrix.n_zones}",
            f"Zone pairs: {len(self.flow_matrix.flow):,}",
            f"Total trips: {aggregator.total_flow():,.0f}",
            f"Average travel time: {'undefined' if avg_time is None else f'{avg_time:.2f}'}",
            f"Status: {self.status.value}",
            f"Iterations: {self.iterations}",
            f"Max relative error: {self.error:.6f} (tolerance {self.tolerance})",
        ]
        if self.structural_gaps:
            lines.append(f"Structural gaps: {len(self.structural_gaps)} "
                         f"({len(self.unconstrainable)} with demand)")
        return "\n".join(lines)


# Balancing denominators at or below this are treated as zero
_MIN_DENOMINATOR = np.finfo(np.float64).tiny


def _max_relative_error(actual: np.ndarray, target: np.ndarray, active: np.ndarray) -> float:
    if not active.any():
        return 0.0
    return float(np.max(np.abs(actual[active] - target[active]) / target[active]))


def _validate_marginal(values, n_zones: int, name: str) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    if values.shape != (n_zones,):
        raise DataError(f"{name} must have one value per zone ({n_zones}), got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise DataError(f"{name} contains missing or non-finite values")
    if (values < 0).any():
        raise DataError(f"{name} contains negative values; apply a floor before distribution")
    return values


def furness_balance(
    production: np.ndarray,
    attraction: np.ndarray,
    friction: PairFriction,
    max_iterations: int = 20000,
    tolerance: float = 0.01,
    verbose: bool = False
) -> GravityModelResult:
    """
    Furness (IPF) balancing for the doubly-constrained gravity model.

    Alternates origin and destination balancing factors until row sums match
    productions and column sums match attractions within tolerance.

    Args:
        production: Target production O_i by zone
        attraction: Target (balanced) attraction D_j by zone
        friction: Friction factors over the structurally present pairs
        max_iterations: Iteration cap
        tolerance: Convergence threshold (max relative error)
        verbose: Print progress messages

    Returns:
        GravityModelResult; status CONVERGED, EXHAUSTED or STRUCTURAL_GAP
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
    if tolerance <= 0:
        raise ValueError(f"tolerance must be positive, got {tolerance}")

    n = friction.n_zones
    O = _validate_marginal(production, n, "production")
    D = _validate_marginal(attraction, n, "attraction")
    o_idx = friction.origins
    d_idx = friction.destinations

    # Scale friction to a maximum of 1 per origin so that large times do not
    # underflow the balancing sums; A_i absorbs the scale, flows are unchanged
    row_max = np.zeros(n)
    np.maximum.at(row_max, o_idx, friction.factor)
    F = np.divide(friction.factor, row_max[o_idx],
                  out=np.zeros(len(o_idx)), where=row_max[o_idx] > 0)

    total_o, total_d = O.sum(), D.sum()
    if verbose and abs(total_o - total_d) > tolerance * max(total_o, total_d, 1.0):
        print(f"  WARNING: Marginal totals differ (P={total_o:,.0f}, A={total_d:,.0f}); "
              f"the model cannot satisfy both")

    out_degree = np.bincount(o_idx, minlength=n)
    in_degree = np.bincount(d_idx, minlength=n)

    # Terms of the balancing sums that do not change between iterations
    dest_weight = D[d_idx] * F
    orig_weight = O[o_idx] * F

    B = np.ones(n)
    A = np.zeros(n)
    denom_a = np.zeros(n)
    denom_b = np.zeros(n)
    flow = np.zeros(len(o_idx))
    error = np.inf
    history = []
    status = ConvergenceStatus.EXHAUSTED
    iteration = 0

    for iteration in range(1, max_iterations + 1):
        # Destination pass
        denom_a = np.bincount(o_idx, weights=B[d_idx] * dest_weight, minlength=n)
        A = np.divide(1.0, denom_a, out=np.zeros(n), where=denom_a > _MIN_DENOMINATOR)

        # Origin pass
        denom_b = np.bincount(d_idx, weights=A[o_idx] * orig_weight, minlength=n)
        B = np.divide(1.0, denom_b, out=np.zeros(n), where=denom_b > _MIN_DENOMINATOR)

        flow = A[o_idx] * O[o_idx] * B[d_idx] * dest_weight

        row_sums = np.bincount(o_idx, weights=flow, minlength=n)
        col_sums = np.bincount(d_idx, weights=flow, minlength=n)
        error = max(
            _max_relative_error(row_sums, O, (O > 0) & (denom_a > _MIN_DENOMINATOR)),
            _max_relative_error(col_sums, D, (D > 0) & (denom_b > _MIN_DENOMINATOR)),
        )
        history.append(error)

        if error < tolerance:
            status = ConvergenceStatus.CONVERGED
            break

    gaps = []
    for side, degree, target, denom in (("origin", out_degree, O, denom_a),
                                        ("destination", in_degree, D, denom_b)):
        for i in np.flatnonzero(degree == 0):
            gaps.append(StructuralGap(str(friction.zone_ids[i]), side, float(target[i]), "no_pairs"))
        for i in np.flatnonzero((degree > 0) & (target > 0) & (denom <= _MIN_DENOMINATOR)):
            gaps.append(StructuralGap(str(friction.zone_ids[i]), side, float(target[i]), "no_weight"))

    if any(g.target > 0 for g in gaps):
        status = ConvergenceStatus.STRUCTURAL_GAP

    if verbose:
        if status is ConvergenceStatus.CONVERGED:
            print(f"  Furness converged in {iteration} iterations")
        elif status is ConvergenceStatus.EXHAUSTED:
            print(f"  WARNING: Furness did not converge after {max_iterations} iterations")
            print(f"           Final error: {error:.6f}")
        else:
            n_gap = sum(1 for g in gaps if g.target > 0)
            print(f"  WARNING: {n_gap} zones with demand have no usable zone pairs")

    return GravityModelResult(
        flow_matrix=FlowMatrix(
            purpose=friction.purpose,
            zone_ids=friction.zone_ids,
            origins=o_idx,
            destinations=d_idx,
            flow=flow,
            travel_time=friction.travel_time,
        ),
        status=status,
        error=float(error),
        iterations=iteration,
        tolerance=tolerance,
        origin_factors=_readonly(A),
        destination_factors=_readonly(B),
        production=_readonly(O),
        attraction=_readonly(D),
        error_history=tuple(history),
        structural_gaps=tuple(gaps),
    )


class GravityBalancer:
    """
    Doubly-constrained gravity model solver.

    Holds only solver settings; every call works on its own inputs, so one
    balancer can serve several purposes concurrently.
    """

    def __init__(self, tolerance: float = 0.01, max_iterations: int = 20000, verbose: bool = False):
        if tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {tolerance}")
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.verbose = verbose

    def balance(self, production, attraction, friction: PairFriction) -> GravityModelResult:
        """Solve for one purpose from marginal vectors and pair friction factors."""
        if self.verbose:
            print(f"  Running gravity model ({friction.purpose.value}):")
            print(f"    Zones: {friction.n_zones:,}, pairs: {friction.n_pairs:,}, "
                  f"decay rate: {friction.decay_rate}")
        return furness_balance(
            production, attraction, friction,
            max_iterations=self.max_iterations,
            tolerance=self.tolerance,
            verbose=self.verbose,
        )

    def distribute(
        self,
        trip_ends: ProductionAttraction,
        friction_table: FrictionFactorTable
    ) -> GravityModelResult:
        """Solve for one purpose from its trip ends."""
        if list(trip_ends.zone_ids) != list(friction_table.zone_ids):
            raise DataError("Trip ends and friction table must use the same zones in the same order")
        return self.balance(
            trip_ends.production,
            trip_ends.balanced_attraction,
            friction_table.for_purpose(trip_ends.purpose),
        )


def calibrate_decay_rate(
    trip_ends: ProductionAttraction,
    friction_table: FrictionFactorTable,
    target_avg_time: float,
    initial_decay: Optional[float] = None,
    balancer: Optional[GravityBalancer] = None,
    max_iterations: int = 50,
    tolerance: float = 0.01,
    alpha: float = 1.5,
    min_decay: float = 0.001,
    max_decay: float = 10.0,
    verbose: bool = False
) -> tuple[float, GravityModelResult, dict]:
    """
    Calibrate a purpose's decay rate to match a target average travel time.

    Higher decay rates give shorter trips, so the rate is scaled by
    (modeled / target) ** alpha each iteration and bounded to
    [min_decay, max_decay].

    Args:
        trip_ends: Trip ends for the purpose being calibrated
        friction_table: Friction table (its decay rate is the starting value
                        unless initial_decay is given)
        target_avg_time: Observed average travel time
        initial_decay: Starting decay rate
        balancer: GravityBalancer used for each trial
        max_iterations: Maximum calibration iterations
        tolerance: Acceptable relative error in average travel time
        alpha: Adjustment exponent (higher = faster but less stable)
        min_decay, max_decay: Bounds on the decay rate
        verbose: Print progress messages

    Returns:
        Tuple of (calibrated decay rate, final GravityModelResult, diagnostics)
    """
    if target_avg_time <= 0:
        raise ValueError(f"target_avg_time must be positive, got {target_avg_time}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

    purpose = trip_ends.purpose
    if balancer is None:
        balancer = GravityBalancer()
    if initial_decay is None:
        initial_decay = friction_table.decay_rates.get(purpose, 0.1)

    decay = float(np.clip(initial_decay, min_decay, max_decay))
    diagnostics = {
        "purpose": purpose.value,
        "target_avg_time": float(target_avg_time),
        "iterations": [],
        "converged": False,
    }

    if verbose:
        print(f"  Calibrating {purpose.value} decay rate to target average time: {target_avg_time:.2f}")

    result = None
    result_decay = decay
    for iteration in range(max_iterations):
        table = friction_table.with_decay_rate(purpose, decay)
        result = balancer.distribute(trip_ends, table)
        result_decay = decay
        model_avg = FlowAggregator(result.flow_matrix).average_travel_time()
        if model_avg is None:
            raise DataError(f"Cannot calibrate {purpose.value}: the gravity model produced no flow")

        relative_error = abs(model_avg - target_avg_time) / target_avg_time
        diagnostics["iterations"].append({
            "iteration": iteration,
            "decay_rate": decay,
            "model_avg_time": model_avg,
            "error": relative_error,
            "status": result.status.value,
        })

        if verbose:
            print(f"    Iter {iteration}: m={decay:.6f}, avg_time={model_avg:.2f}")

        if relative_error < tolerance:
            diagnostics["converged"] = True
            break

        decay = float(np.clip(decay * (model_avg / target_avg_time) ** alpha, min_decay, max_decay))

    diagnostics["final_decay_rate"] = result_decay
    diagnostics["final_avg_time"] = diagnostics["iterations"][-1]["model_avg_time"]

    if verbose and not diagnostics["converged"]:
        print(f"  WARNING: Calibration did not converge after {max_iterations} iterations")

    return result_decay, result, diagnostics
