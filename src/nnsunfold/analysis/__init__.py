"""Parameters of interest and their iteration-number derivatives."""

from nnsunfold.analysis.poi import (
    PARAMETERS_OF_INTEREST,
    MetricContext,
    ParameterOfInterest,
    derivatives,
    resolve_parameter_of_interest,
)

__all__ = [
    "PARAMETERS_OF_INTEREST",
    "MetricContext",
    "ParameterOfInterest",
    "derivatives",
    "resolve_parameter_of_interest",
]
