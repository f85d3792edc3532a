"""
Parameters of interest (POI) derived from an unfolded spectrum.

A POI is any scalar reported as a function of iteration number (and of
beta for MAP sweeps): dose, total fluence, MLEM ratio statistics,
goodness of fit, or the deviation from a reference spectrum.

Names are resolved once, when the settings are built, through
:func:`resolve_parameter_of_interest`, so an unknown name or a missing
input (e.g. no reference spectrum for ``rms``) fails before any
iteration is run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Optional

import numpy as np

from nnsunfold.core.errors import ConfigurationError
from nnsunfold.core.response import ArrayLike, ResponseModel, as_vector, check_dimensions
from nnsunfold.physics.dose import dose, total_flux
from nnsunfold.validation import metrics


@dataclass(frozen=True)
class MetricContext:
    """Everything a POI calculator may read after an iteration block."""

    spectrum: np.ndarray
    ratio: np.ndarray
    measurements: np.ndarray
    response: ResponseModel
    icrp_factors: Optional[np.ndarray] = None
    reference_spectrum: Optional[np.ndarray] = None
    penalty: Optional[np.ndarray] = None
    degrees_of_freedom: Optional[int] = None


@dataclass(frozen=True)
class ParameterOfInterest:
    """Registry entry: a named calculator and the inputs it needs."""

    name: str
    calculator: Callable[[MetricContext], float]
    description: str
    requires: FrozenSet[str] = field(default_factory=frozenset)
    algorithms: FrozenSet[str] = frozenset({"mlem", "map"})

    def __call__(self, context: MetricContext) -> float:
        return self.calculator(context)


def _dof(ctx: MetricContext) -> int:
    if ctx.degrees_of_freedom is not None:
        return ctx.degrees_of_freedom
    return ctx.response.n_channels


PARAMETERS_OF_INTEREST: Dict[str, ParameterOfInterest] = {
    poi.name: poi
    for poi in (
        ParameterOfInterest(
            "total_fluence",
            lambda c: total_flux(c.spectrum),
            "Total fluence rate [n cm^-2 s^-1]",
        ),
        ParameterOfInterest(
            "total_dose",
            lambda c: dose(c.spectrum, c.icrp_factors),
            "Ambient dose-equivalent rate [mSv/h]",
            requires=frozenset({"icrp_factors"}),
        ),
        ParameterOfInterest(
            "max_mlem_ratio",
            lambda c: metrics.max_ratio(c.ratio),
            "Maximum |ratio - 1| over channels",
        ),
        ParameterOfInterest(
            "avg_mlem_ratio",
            lambda c: metrics.avg_ratio(c.ratio),
            "Mean |ratio - 1| over channels",
        ),
        ParameterOfInterest(
            "chi_squared",
            lambda c: metrics.chi_squared(c.spectrum, c.measurements, c.response),
            "Pearson chi-squared of the forward-projected spectrum",
        ),
        ParameterOfInterest(
            "reduced_chi_squared",
            lambda c: metrics.reduced_chi_squared(c.spectrum, c.measurements, c.response, _dof(c)),
            "Chi-squared per degree of freedom",
        ),
        ParameterOfInterest(
            "j_factor",
            lambda c: metrics.j_factor(c.spectrum, c.measurements, c.response, c.ratio),
            "Fit quality plus spectral roughness",
        ),
        ParameterOfInterest(
            "rms",
            lambda c: metrics.rms(c.spectrum, c.reference_spectrum),
            "RMS difference from the reference spectrum",
            requires=frozenset({"reference_spectrum"}),
        ),
        ParameterOfInterest(
            "nrmsd",
            lambda c: metrics.nrmsd(c.spectrum, c.reference_spectrum),
            "Range-normalized RMS difference from the reference spectrum",
            requires=frozenset({"reference_spectrum"}),
        ),
        ParameterOfInterest(
            "chi_squared_g",
            lambda c: metrics.chi_squared_g(c.spectrum, c.reference_spectrum),
            "Poisson deviance from the reference spectrum",
            requires=frozenset({"reference_spectrum"}),
        ),
        ParameterOfInterest(
            "total_energy_correction",
            lambda c: metrics.total_energy_correction(c.penalty),
            "Sum of the MAP prior penalty",
            algorithms=frozenset({"map"}),
        ),
    )
}


def resolve_parameter_of_interest(
    name: str,
    algorithm: Optional[str] = None,
    available: Optional[Iterable[str]] = None,
) -> ParameterOfInterest:
    """
    Look up a POI and check it can be evaluated.

    Parameters
    ----------
    name : str
        Registry name, e.g. ``"total_dose"``.
    algorithm : str, optional
        ``"mlem"`` or ``"map"``; checked against the POI's algorithms.
    available : iterable of str, optional
        Names of optional inputs that will be supplied
        (``"icrp_factors"``, ``"reference_spectrum"``). When given, every
        input the POI requires must be present.
    """
    try:
        poi = PARAMETERS_OF_INTEREST[str(name).strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unrecognized parameter of interest; allowed values are {sorted(PARAMETERS_OF_INTEREST)}",
            setting="parameter_of_interest",
            value=name,
        ) from None

    if algorithm is not None and algorithm not in poi.algorithms:
        raise ConfigurationError(
            f"Parameter of interest {poi.name!r} is not available for algorithm {algorithm!r}",
            setting="parameter_of_interest",
            value=name,
        )
    if available is not None:
        missing = sorted(poi.requires - set(available))
        if missing:
            raise ConfigurationError(
                f"Parameter of interest {poi.name!r} requires {missing}",
                setting="parameter_of_interest",
                value=name,
            )
    return poi


def derivatives(poi_values: ArrayLike, iteration_counts: ArrayLike) -> np.ndarray:
    """
    Backward finite-difference slope of a POI series.

    Entry ``i - 1`` of the result is

        (poi[i] - poi[i-1]) / (iterations[i] - iterations[i-1])   for i >= 1

    The first sample has no predecessor, so no slope is reported for it and
    the result is one element shorter than the input.
    """
    poi = as_vector(poi_values, "POI values")
    its = as_vector(iteration_counts, "iteration counts")
    check_dimensions(its.size, "number of iteration counts", poi.size, "POI values")
    steps = np.diff(its)
    if np.any(steps <= 0):
        raise ConfigurationError(
            "Iteration counts must be strictly increasing",
            setting="iteration_counts",
            value=its.tolist(),
        )
    return np.diff(poi) / steps
