"""
Demand Model Pipeline

Main entry point for running trip generation, balancing and gravity
distribution for every trip purpose.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Mapping, Optional
from pathlib import Path
import pandas as pd

from .config import ModelConfig
from .survey import HouseholdSurvey
from .trip_distribution import (
    FrictionFactorTable,
    GravityBalancer,
    calibrate_decay_rate,
)
from .trip_generation import (
    ProductionAttractionEngine,
    TripPurpose,
    fit_purpose_models,
    trip_ends_dataframe,
)
from .validation import FlowAggregator, conservation_report
from .zones import ZoneTable


@dataclass
class DemandModelResult:
    """Results from a demand model run."""

    # Trip generation
    models: dict
    trip_ends: dict

    # Trip distribution
    friction_table: FrictionFactorTable
    distribution: dict

    # Decay calibration diagnostics by purpose (calibrated purposes only)
    calibration: dict = field(default_factory=dict)

    # Config used
    config: Optional[ModelConfig] = None

    @property
    def purposes(self) -> list:
        return list(self.distribution)

    @property
    def all_converged(self) -> bool:
        return all(r.converged for r in self.distribution.values())

    def convergence_table(self) -> pd.DataFrame:
        """Status, final error and iteration count per purpose."""
        return pd.DataFrame([
            {
                "purpose": purpose.value,
                "status": result.status.value,
                "error": result.error,
                "iterations": result.iterations,
                "structural_gaps": len(result.structural_gaps),
                "unconstrainable_zones": len(result.unconstrainable),
                "decay_rate": self.friction_table.decay_rates[purpose],
                "calibrated": purpose in self.calibration,
            }
            for purpose, result in self.distribution.items()
        ])

    def trip_ends_dataframe(self) -> pd.DataFrame:
        return trip_ends_dataframe(self.trip_ends)

    def to_od_dataframe(self) -> pd.DataFrame:
        """Long-form flows for all purposes: purpose, origin, destination, flow."""
        frames = []
        for purpose, result in self.distribution.items():
            od = result.to_dataframe()
            od.insert(0, "purpose", purpose.value)
            frames.append(od)
        return pd.concat(frames, ignore_index=True)

    def summary(self) -> str:
        """Generate summary report."""
        lines = [
            "=" * 60,
            "DEMAND MODEL RESULTS SUMMARY",
            "=" * 60,
            "",
            "TRIP GENERATION",
            "-" * 40,
        ]
        for purpose, pa in self.trip_ends.items():
            lines.append(f"  {purpose.value}: productions {pa.total_production:,.0f}, "
                         f"attraction scale {pa.scale_factor:.4f}")

        lines.extend(["", "TRIP DISTRIBUTION", "-" * 40])
        for purpose, result in self.distribution.items():
            avg_time = FlowAggregator(result.flow_matrix).average_travel_time()
            avg_text = "undefined" if avg_time is None else f"{avg_time:.2f}"
            lines.append(f"  {purpose.value}: {result.status.value} after {result.iterations} "
                         f"iterations (error {result.error:.5f}), avg time {avg_text}")
            if purpose in self.calibration:
                diag = self.calibration[purpose]
                lines.append(f"    decay rate calibrated to {diag['final_decay_rate']:.5f} "
                             f"(target avg time {diag['target_avg_time']:.2f})")
            if result.unconstrainable:
                lines.append(f"    {len(result.unconstrainable)} zones with demand cannot be constrained")

        lines.append("")
        lines.append("=" * 60)
        return "\n".join(lines)

    def save_results(self, output_dir: str):
        """Save results to files."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        self.trip_ends_dataframe().to_csv(output_path / "trip_ends.csv", index=False)
        self.to_od_dataframe().to_csv(output_path / "od_flows.csv", index=False)
        self.convergence_table().to_csv(output_path / "convergence.csv", index=False)

        with open(output_path / "summary.txt", "w") as f:
            f.write(self.summary())

        print(f"Results saved to {output_path}")


def _distribute_all(balancer, trip_ends, friction_table, purposes, parallel,
                    target_avg_times, calibration, verbose):
    def run(purpose):
        if purpose in target_avg_times:
            decay, result, diagnostics = calibrate_decay_rate(
                trip_ends[purpose],
                friction_table,
                target_avg_times[purpose],
                balancer=balancer,
                verbose=verbose,
                **calibration,
            )
            diagnostics["calibrated"] = True
            return purpose, result, decay, diagnostics
        return purpose, balancer.distribute(trip_ends[purpose], friction_table), None, None

    # Purposes share only read-only inputs
    if parallel and len(purposes) > 1:
        with ThreadPoolExecutor(max_workers=len(purposes)) as pool:
            outcomes = list(pool.map(run, purposes))
    else:
        outcomes = [run(p) for p in purposes]

    distribution = {}
    calibrated = {}
    for purpose, result, decay, diagnostics in outcomes:
        distribution[purpose] = result
        if diagnostics is not None:
            friction_table = friction_table.with_decay_rate(purpose, decay)
            calibrated[purpose] = diagnostics
    return distribution, friction_table, calibrated


def run_demand_model(
    zones: ZoneTable,
    survey: Optional[HouseholdSurvey],
    travel_times: pd.DataFrame,
    config: Optional[ModelConfig] = None,
    models: Optional[Mapping] = None,
    parallel: bool = False,
    target_avg_times: Optional[Mapping] = None,
    verbose: bool = True
) -> DemandModelResult:
    """
    Run trip generation, balancing and gravity distribution.

    Args:
        zones: Zone attribute table
        survey: Household survey used to fit the purpose models (may be None
                when models are given)
        travel_times: Long-form skim with origin, destination, time
        config: Model configuration (packaged defaults if None)
        models: Pre-fit TripPurposeModel by purpose (skips fitting)
        parallel: Distribute purposes on a thread pool
        target_avg_times: Observed average travel time by purpose; the decay
                          rate of each purpose named here is calibrated to it
                          using the configured calibration settings
        verbose: Print progress messages

    Returns:
        DemandModelResult; non-converged purposes are returned with their
        status set, use GravityModelResult.raise_for_status() to fail on them
    """
    if config is None:
        config = ModelConfig()
    if survey is None and models is None:
        raise ValueError("Must provide either survey or models")

    purposes = config.purposes

    # =========================================================================
    # TRIP GENERATION
    # =========================================================================
    if verbose:
        print("=" * 60)
        print("TRIP GENERATION")
        print("=" * 60)

    if models is None:
        models = fit_purpose_models(
            survey,
            purposes=purposes,
            predictors=config.predictors,
            missing=config.fit_missing,
            verbose=verbose,
        )
    else:
        models = {TripPurpose.coerce(p): m for p, m in models.items()}
        absent = [p.value for p in purposes if p not in models]
        if absent:
            raise ValueError(f"No trip purpose model for: {absent}")
        models = {p: models[p] for p in purposes}

    engine = ProductionAttractionEngine(
        models,
        zones,
        attraction_rates=config.attraction_rates,
        production_floor=config.production_floor,
        missing_policy=config.zone_missing_policy,
        verbose=verbose,
    )
    trip_ends = engine.compute()

    if verbose:
        report = conservation_report(trip_ends)
        if not report["conserved"].all():
            print("  WARNING: Balanced attractions do not match productions")

    # =========================================================================
    # TRIP DISTRIBUTION
    # =========================================================================
    if verbose:
        print("\n" + "=" * 60)
        print("TRIP DISTRIBUTION")
        print("=" * 60)

    friction_table = FrictionFactorTable.from_skim(
        travel_times, zones.zone_ids, config.decay_rates, verbose=verbose
    )
    balancer = GravityBalancer(
        tolerance=config.solver_tolerance,
        max_iterations=config.solver_max_iterations,
        verbose=verbose and not parallel,
    )
    targets = {TripPurpose.coerce(p): float(t) for p, t in (target_avg_times or {}).items()}
    unknown = [p.value for p in targets if p not in purposes]
    if unknown:
        raise ValueError(f"Calibration targets for purposes that are not modeled: {unknown}")
    if targets and verbose:
        print(f"  Calibrating decay rates for: {[p.value for p in targets]}")

    distribution, friction_table, calibration = _distribute_all(
        balancer, trip_ends, friction_table, purposes, parallel,
        targets, config.calibration, verbose and not parallel,
    )

    result = DemandModelResult(
        models=models,
        trip_ends=trip_ends,
        friction_table=friction_table,
        distribution=distribution,
        config=config,
        calibration=calibration,
    )

    if verbose:
        print("\n" + result.summary())

    return result
