"""
Unfolding settings.

:class:`UnfoldingSettings` is the single configuration object the engine
consumes. It is built by the caller (typically from a parsed configuration
file) either directly or through :meth:`UnfoldingSettings.from_mapping`,
and validated in full on construction: malformed values, an unknown prior
or an unknown parameter of interest raise
:class:`~nnsunfold.core.errors.ConfigurationError` before any iteration runs.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

import numpy as np

from nnsunfold.analysis.poi import ParameterOfInterest, resolve_parameter_of_interest
from nnsunfold.core.errors import ConfigurationError
from nnsunfold.solvers.convergence import validate_error
from nnsunfold.solvers.iterative import validate_cutoff
from nnsunfold.solvers.map import validate_beta
from nnsunfold.solvers.priors import Prior, resolve_prior
from nnsunfold.uncertainty.mc import TrialFailurePolicy, validate_sample_count


class Algorithm(Enum):
    """Unfolding mode."""

    MLEM = "mlem"  # POI vs iteration number, plain MLEM
    MAP = "map"  # POI vs (beta, iteration number)
    TREND = "trend"  # reconstructed measurements vs iteration number
    CORRECTION_FACTORS = "correction_factors"  # per-bin correction vs iteration number


class TrendType(Enum):
    """Quantity reported by the trend sweep."""

    CPS = "cps"  # reconstructed count rate, measured / ratio
    RATIO = "ratio"  # MLEM ratio itself


def _coerce_enum(enum_cls, value: Any, setting: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ConfigurationError(f"Unrecognized value; allowed values are {allowed}", setting=setting, value=value) from None


def _positive_int(value: Any, setting: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise ConfigurationError("Must be a positive integer", setting=setting, value=value)
    return int(value)


def _positive_float(value: Any, setting: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError("Must be a number", setting=setting, value=value) from None
    if not math.isfinite(number) or number <= 0:
        raise ConfigurationError("Must be finite and positive", setting=setting, value=value)
    return number


@dataclass
class UnfoldingSettings:
    """
    Engine configuration.

    Attributes:
        cutoff: Maximum MLEM/MAP iterations for a full unfolding run
        error: Relative tolerance on the MLEM ratio (0 < error < 1)
        algorithm: Unfolding mode (mlem, map, trend, correction_factors)
        prior: Smoothness prior used by MAP
        beta: Regularization weight of a MAP unfolding run; required by
            unfold_spectrum when algorithm is map, rejected otherwise
        min_beta, max_beta: Beta range of the MAP sweep
        min_num_iterations, max_num_iterations, iteration_increment:
            Iteration schedule of the sweeps
        num_poisson_samples: Resampling trials for uncertainty estimation
        parameter_of_interest: POI name reported by mlem/map sweeps
        derivatives: Report finite-difference slopes of the POI (mlem sweep)
        trend_type: Quantity reported by the trend sweep
        degrees_of_freedom: Divisor of reduced chi-squared
            (default: number of channels)
        failure_policy: Handling of unstable resampling trials
        seed: Root seed of the resampling generators
        max_workers: Thread-pool size for resampling trials
    """

    cutoff: int = 1000
    error: float = 0.1
    algorithm: Algorithm = Algorithm.MLEM
    prior: str = "quadratic"
    beta: Optional[float] = None
    min_beta: float = 1e-3
    max_beta: float = 1.0
    min_num_iterations: int = 100
    max_num_iterations: int = 1000
    iteration_increment: int = 100
    num_poisson_samples: int = 1000
    parameter_of_interest: str = "total_dose"
    derivatives: bool = False
    trend_type: TrendType = TrendType.RATIO
    degrees_of_freedom: Optional[int] = None
    failure_policy: TrialFailurePolicy = TrialFailurePolicy.ABORT
    seed: Optional[int] = None
    max_workers: int = 1

    def __post_init__(self):
        self.cutoff = validate_cutoff(self.cutoff)
        self.error = validate_error(self.error)
        self.algorithm = _coerce_enum(Algorithm, self.algorithm, "algorithm")
        self.trend_type = _coerce_enum(TrendType, self.trend_type, "trend_type")
        self.failure_policy = _coerce_enum(TrialFailurePolicy, self.failure_policy, "failure_policy")
        self.prior = resolve_prior(self.prior).name
        if self.beta is not None:
            self.beta = validate_beta(self.beta)
            if self.algorithm is not Algorithm.MAP:
                raise ConfigurationError(
                    f"beta only applies to algorithm 'map', not '{self.algorithm.value}'",
                    setting="beta",
                    value=self.beta,
                )

        self.min_beta = _positive_float(self.min_beta, "min_beta")
        self.max_beta = _positive_float(self.max_beta, "max_beta")
        if self.max_beta < self.min_beta:
            raise ConfigurationError("max_beta must not be smaller than min_beta", setting="max_beta", value=self.max_beta)

        self.min_num_iterations = _positive_int(self.min_num_iterations, "min_num_iterations")
        self.max_num_iterations = _positive_int(self.max_num_iterations, "max_num_iterations")
        self.iteration_increment = _positive_int(self.iteration_increment, "iteration_increment")
        if self.max_num_iterations < self.min_num_iterations:
            raise ConfigurationError(
                "max_num_iterations must not be smaller than min_num_iterations",
                setting="max_num_iterations",
                value=self.max_num_iterations,
            )

        self.num_poisson_samples = validate_sample_count(self.num_poisson_samples)
        if self.degrees_of_freedom is not None:
            self.degrees_of_freedom = _positive_int(self.degrees_of_freedom, "degrees_of_freedom")
        self.max_workers = _positive_int(self.max_workers, "max_workers")
        if not isinstance(self.derivatives, bool):
            raise ConfigurationError("Must be a boolean", setting="derivatives", value=self.derivatives)

        poi_algorithm = self.algorithm.value if self.algorithm in (Algorithm.MLEM, Algorithm.MAP) else None
        self.parameter_of_interest = resolve_parameter_of_interest(
            self.parameter_of_interest, poi_algorithm
        ).name

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "UnfoldingSettings":
        """Build settings from a flat key/value mapping; unknown keys are rejected."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings {unknown}; allowed settings are {sorted(known)}")
        return cls(**dict(mapping))

    @property
    def prior_model(self) -> Prior:
        return resolve_prior(self.prior)

    def poi(self, available=None) -> ParameterOfInterest:
        """Resolve the configured parameter of interest against available inputs."""
        algorithm = self.algorithm.value if self.algorithm in (Algorithm.MLEM, Algorithm.MAP) else None
        return resolve_parameter_of_interest(self.parameter_of_interest, algorithm, available)

    def iteration_schedule(self) -> np.ndarray:
        """Iteration counts min, min + inc, ... (up to max) at which sweeps report."""
        count = (self.max_num_iterations - self.min_num_iterations) // self.iteration_increment + 1
        return self.min_num_iterations + self.iteration_increment * np.arange(count, dtype=int)

    def beta_schedule(self) -> np.ndarray:
        """
        Beta values of the MAP sweep.

        Ten linearly spaced values per decade from ``min_beta``
        (b, ..., 10 b), for floor(log10(max_beta / min_beta)) decades.
        Decade endpoints appear twice (end of one decade, start of the next).
        """
        decades = int(math.floor(math.log10(self.max_beta / self.min_beta) + 1e-12))
        if decades < 1:
            return np.array([self.min_beta])
        segments = [np.linspace(self.min_beta * 10**k, self.min_beta * 10 ** (k + 1), 10) for k in range(decades)]
        return np.concatenate(segments)
