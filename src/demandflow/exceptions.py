"""
Exception types raised by the demand model.

DataError and ModelDegeneracyError are fatal for the affected purpose.
ConvergenceFailure and StructuralGapError carry the best available result so
callers can decide whether to accept it.
"""


class DemandModelError(Exception):
    """Base class for demand model errors."""


class DataError(DemandModelError, ValueError):
    """Missing or invalid zone, survey or skim data."""


class ModelDegeneracyError(DemandModelError):
    """Balancing is undefined, e.g. total raw attraction is zero for a purpose."""

    def __init__(self, message: str, purpose=None):
        super().__init__(message)
        self.purpose = purpose


class ConvergenceFailure(DemandModelError):
    """Iteration cap reached before the gravity model met its tolerance."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class StructuralGapError(DemandModelError):
    """One or more zones with positive demand have no usable zone pairs."""

    def __init__(self, message: str, result=None, gaps=()):
        super().__init__(message)
        self.result = result
        self.gaps = tuple(gaps)
