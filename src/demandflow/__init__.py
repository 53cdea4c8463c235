"""
Regional Travel Demand Model

Trip generation and trip distribution steps of the classic 4-step travel
demand model:
1. Trip Generation - Regression trip rates per purpose, applied to zone
   aggregates, with attractions balanced to productions
2. Trip Distribution - Doubly-constrained gravity model solved by Furness
   balancing over the zone pairs present in a travel time skim
"""

from .zones import (
    ZoneTable,
    log2_income,
)

from .survey import (
    HouseholdSurvey,
    load_household_survey,
    prepare_household_survey,
)

from .trip_generation import (
    TripPurpose,
    TripPurposeModel,
    AttractionRates,
    ProductionAttraction,
    ProductionAttractionEngine,
    balance_attractions,
    fit_purpose_models,
    trip_ends_dataframe,
)

from .trip_distribution import (
    exponential_friction,
    FrictionFactorTable,
    PairFriction,
    FlowMatrix,
    ConvergenceStatus,
    StructuralGap,
    GravityModelResult,
    GravityBalancer,
    furness_balance,
    calibrate_decay_rate,
)

from .validation import (
    FlowAggregator,
    compare_tlfd,
    conservation_report,
)

from .exceptions import (
    DemandModelError,
    DataError,
    ModelDegeneracyError,
    ConvergenceFailure,
    StructuralGapError,
)

from .config import ModelConfig, get_model_config

from .pipeline import DemandModelResult, run_demand_model

__version__ = "0.1.0"
__all__ = [
    # Zones and survey
    "ZoneTable",
    "log2_income",
    "HouseholdSurvey",
    "load_household_survey",
    "prepare_household_survey",
    # Trip Generation
    "TripPurpose",
    "TripPurposeModel",
    "AttractionRates",
    "ProductionAttraction",
    "ProductionAttractionEngine",
    "balance_attractions",
    "fit_purpose_models",
    "trip_ends_dataframe",
    # Trip Distribution
    "exponential_friction",
    "FrictionFactorTable",
    "PairFriction",
    "FlowMatrix",
    "ConvergenceStatus",
    "StructuralGap",
    "GravityModelResult",
    "GravityBalancer",
    "furness_balance",
    "calibrate_decay_rate",
    # Validation
    "FlowAggregator",
    "compare_tlfd",
    "conservation_report",
    # Errors
    "DemandModelError",
    "DataError",
    "ModelDegeneracyError",
    "ConvergenceFailure",
    "StructuralGapError",
    # Configuration
    "ModelConfig",
    "get_model_config",
    # Pipeline
    "DemandModelResult",
    "run_demand_model",
]
