"""
Validation Module

Summaries of distributed flows and checks against observed data:
- Total flow and flow-weighted average travel time
- Aggregation of zone-pair flows to arbitrary zone groups (e.g. counties)
- Trip length frequency distribution (TLFD) comparison
- Trip end conservation report
"""

from typing import Mapping, Optional
import numpy as np
import pandas as pd
from scipy import sparse

from .exceptions import DataError


class FlowAggregator:
    """
    Side-effect-free reductions over a FlowMatrix.

    Args:
        flow_matrix: FlowMatrix for one purpose
    """

    def __init__(self, flow_matrix):
        self.flow_matrix = flow_matrix

    def total_flow(self) -> float:
        return float(self.flow_matrix.flow.sum())

    def average_travel_time(self) -> Optional[float]:
        """
        Flow-weighted average travel time: sum(flow * time) / sum(flow).

        Returns None when total flow is zero (undefined).
        """
        total = self.total_flow()
        if total <= 0:
            return None
        return float(np.dot(self.flow_matrix.flow, self.flow_matrix.travel_time) / total)

    def aggregate(self, zone_groups) -> pd.DataFrame:
        """
        Group-by-group flow totals.

        Args:
            zone_groups: Mapping or Series of zone_id -> group label. Every
                         zone in the flow matrix must be mapped.

        Returns:
            DataFrame indexed by origin group with one column per destination group
        """
        groups = pd.Series(zone_groups)
        groups.index = groups.index.astype(str)
        zone_ids = pd.Index(self.flow_matrix.zone_ids)

        missing = zone_ids.difference(groups.index)
        if len(missing) > 0:
            raise DataError(f"Zones missing from group mapping: {missing[:10].tolist()}")

        zone_groups = groups.reindex(zone_ids)
        if zone_groups.isna().any():
            raise DataError("Group mapping contains missing group labels")
        # Labels keep the caller's type (e.g. integer county codes)
        codes, labels = pd.factorize(zone_groups, sort=True)

        n_zones = len(zone_ids)
        membership = sparse.csr_matrix(
            (np.ones(n_zones), (np.arange(n_zones), codes)),
            shape=(n_zones, len(labels))
        )
        flows = self.flow_matrix.to_sparse()
        grouped = (membership.T @ flows @ membership).toarray()

        return pd.DataFrame(
            grouped,
            index=pd.Index(labels, name="origin_group"),
            columns=pd.Index(labels, name="destination_group"),
        )

    def trip_length_distribution(
        self,
        bins: Optional[np.ndarray] = None,
        n_bins: int = 20
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Trip length (travel time) frequency distribution.

        Args:
            bins: Optional bin edges
            n_bins: Number of bins if bins not provided

        Returns:
            Tuple of (bin_edges, flow_by_bin, percent_by_bin)
        """
        flow = self.flow_matrix.flow
        time = self.flow_matrix.travel_time

        mask = flow > 0
        flow = flow[mask]
        time = time[mask]

        if len(flow) == 0:
            if bins is None:
                bins = np.linspace(0, 60, n_bins + 1)
            n = len(bins) - 1
            return np.asarray(bins), np.zeros(n), np.zeros(n)

        if bins is None:
            upper = np.percentile(time, 99)
            bins = np.linspace(0, upper if upper > 0 else 1.0, n_bins + 1)

        counts, bin_edges = np.histogram(time, bins=bins, weights=flow)
        total = counts.sum()
        percentages = counts / total * 100 if total > 0 else np.zeros_like(counts)

        return bin_edges, counts, percentages

    def compare_average_travel_time(self, observed: float, verbose: bool = False) -> dict:
        """
        Compare modeled average travel time to an observed average.

        Returns:
            Dictionary with modeled, observed, difference and pct_difference;
            modeled and the differences are None when total flow is zero.
        """
        if observed <= 0:
            raise ValueError(f"Observed average travel time must be positive, got {observed}")

        modeled = self.average_travel_time()
        if modeled is None:
            diff = None
            pct = None
        else:
            diff = modeled - observed
            pct = diff / observed * 100

        if verbose:
            print("Average Travel Time Validation")
            print("=" * 50)
            print(f"  Observed: {observed:.2f}")
            if modeled is None:
                print("  Modeled: undefined (no flow)")
            else:
                print(f"  Modeled: {modeled:.2f} ({pct:+.1f}%)")

        return {
            "modeled": modeled,
            "observed": float(observed),
            "difference": diff,
            "pct_difference": pct,
        }

    def summary(self) -> dict:
        return {
            "purpose": getattr(self.flow_matrix.purpose, "value", self.flow_matrix.purpose),
            "total_flow": self.total_flow(),
            "average_travel_time": self.average_travel_time(),
            "n_pairs": int(len(self.flow_matrix.flow)),
            "n_pairs_with_flow": int((self.flow_matrix.flow > 0).sum()),
        }


def compare_tlfd(
    flow_matrix,
    observed_tlfd: np.ndarray,
    observed_bins: np.ndarray,
    verbose: bool = False
) -> dict:
    """
    Compare modeled trip length frequency distribution to observed.

    Args:
        flow_matrix: FlowMatrix from the gravity model
        observed_tlfd: Observed trip counts or shares by bin
        observed_bins: Bin edges for observed TLFD (travel time)
        verbose: Print comparison results

    Returns:
        Dictionary with comparison metrics:
        - coincidence_ratio: Overlap measure (0-1, higher is better)
        - rmse: Root mean square error (percentage points)
        - r_squared: Coefficient of determination
        - avg_time_model / avg_time_observed: Bin-center weighted averages
    """
    observed_tlfd = np.asarray(observed_tlfd, dtype=np.float64)
    observed_bins = np.asarray(observed_bins, dtype=np.float64)
    if len(observed_bins) != len(observed_tlfd) + 1:
        raise ValueError("observed_bins must have one more edge than observed_tlfd has bins")
    if observed_tlfd.sum() <= 0:
        raise ValueError("Observed TLFD is empty")

    _, _, modeled_pct = FlowAggregator(flow_matrix).trip_length_distribution(bins=observed_bins)

    # Observed may be counts, fractions or percentages
    observed_pct = observed_tlfd / observed_tlfd.sum() * 100

    coincidence_ratio = np.minimum(modeled_pct, observed_pct).sum() / observed_pct.sum()
    rmse = np.sqrt(np.mean((modeled_pct - observed_pct) ** 2))

    ss_res = np.sum((modeled_pct - observed_pct) ** 2)
    ss_tot = np.sum((observed_pct - observed_pct.mean()) ** 2)
    r_squared = 1 - (ss_res / ss_tot) if ss_tot > 0 else 0.0

    bin_centers = (observed_bins[:-1] + observed_bins[1:]) / 2
    avg_time_model = (modeled_pct * bin_centers).sum() / modeled_pct.sum() if modeled_pct.sum() > 0 else None
    avg_time_observed = (observed_pct * bin_centers).sum() / observed_pct.sum()

    results = {
        "coincidence_ratio": float(coincidence_ratio),
        "rmse": float(rmse),
        "r_squared": float(r_squared),
        "avg_time_model": None if avg_time_model is None else float(avg_time_model),
        "avg_time_observed": float(avg_time_observed),
        "modeled_pct": modeled_pct,
        "observed_pct": observed_pct,
        "bins": observed_bins,
    }

    if verbose:
        print("Trip Length Frequency Distribution Comparison")
        print("=" * 50)
        print(f"  Coincidence Ratio: {coincidence_ratio:.3f} (1.0 = perfect match)")
        print(f"  RMSE: {rmse:.2f}%")
        print(f"  R-squared: {r_squared:.3f}")

    return results


def conservation_report(trip_ends: Mapping, tolerance: float = 1e-6) -> pd.DataFrame:
    """
    Check that balanced attractions total to productions for every purpose.

    Args:
        trip_ends: ProductionAttraction by purpose
        tolerance: Relative tolerance

    Returns:
        DataFrame with one row per purpose and a 'conserved' flag
    """
    rows = []
    for purpose, pa in trip_ends.items():
        total_p = pa.total_production
        total_a = pa.total_attraction
        diff = total_a - total_p
        scale = max(abs(total_p), 1.0)
        rows.append({
            "purpose": getattr(purpose, "value", purpose),
            "total_production": total_p,
            "total_raw_attraction": float(pa.raw_attraction.sum()),
            "total_balanced_attraction": total_a,
            "scale_factor": pa.scale_factor,
            "difference": diff,
            "conserved": abs(diff) / scale < tolerance,
        })
    return pd.DataFrame(rows)
