"""Uncertainty propagation."""

from nnsunfold.uncertainty.mc import (
    PoissonUncertainty,
    TrialFailurePolicy,
    UncertaintyEstimator,
)

__all__ = [
    "PoissonUncertainty",
    "TrialFailurePolicy",
    "UncertaintyEstimator",
]
