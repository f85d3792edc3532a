"""Monte Carlo (Poisson resampling) uncertainty propagation for unfolded spectra."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from nnsunfold.core.errors import ConfigurationError, NumericalInstabilityError
from nnsunfold.core.response import ArrayLike
from nnsunfold.solvers.iterative import MLEMSolver

logger = logging.getLogger(__name__)

ScalarMetric = Callable[[np.ndarray], float]


class TrialFailurePolicy(Enum):
    """What to do when a resampling trial hits a NumericalInstabilityError."""

    ABORT = "abort"  # re-raise, tagged with the trial index
    DISCARD = "discard"  # drop the trial, log a warning, keep going


@dataclass
class PoissonUncertainty:
    """
    Aggregated result of a Poisson-resampling run.

    Uncertainties are RMS deviations of the trial results from the single
    reference estimate, sqrt(mean_t((x_t - x_ref)^2)), not standard
    deviations about the ensemble mean.

    Attributes
    ----------
    spectrum_uncertainty : np.ndarray
        Per-bin RMS deviation from the reference spectrum.
    scalar_uncertainties : Dict[str, float]
        RMS deviation of each scalar metric from its reference value.
    reference_scalars : Dict[str, float]
        Scalar metrics evaluated on the reference spectrum.
    n_samples : int
        Number of trials requested.
    n_used : int
        Number of trials that entered the aggregate.
    discarded_trials : List[int]
        Indices of trials dropped under the DISCARD policy.
    seed : int, optional
        Root seed of the per-trial generators.
    """

    spectrum_uncertainty: np.ndarray
    scalar_uncertainties: Dict[str, float] = field(default_factory=dict)
    reference_scalars: Dict[str, float] = field(default_factory=dict)
    n_samples: int = 0
    n_used: int = 0
    discarded_trials: List[int] = field(default_factory=list)
    seed: Optional[int] = None


def validate_sample_count(n_samples: int) -> int:
    if isinstance(n_samples, bool) or not isinstance(n_samples, (int, np.integer)) or n_samples < 1:
        raise ConfigurationError(
            "Number of Poisson samples must be a positive integer",
            setting="num_poisson_samples",
            value=n_samples,
        )
    return int(n_samples)


class UncertaintyEstimator:
    """
    Propagate counting statistics through the (non-linear) unfolding.

    For each trial a synthetic measurement vector is drawn channel by
    channel from Poisson(measured), the same solver configuration that
    produced the reference spectrum is rerun on it, and optional scalar
    metrics (e.g. dose) are evaluated on the trial spectrum.

    Every trial owns a ``numpy.random.Generator`` spawned from one
    ``SeedSequence``, and results are aggregated in trial order, so a
    fixed ``seed`` gives the same answer for any ``max_workers``.

    Parameters
    ----------
    solver : MLEMSolver
        Solver (MLEM or MAP) configured as for the reference run.
    n_samples : int
        Number of resampling trials.
    scalar_metrics : Mapping[str, Callable], optional
        Named functions spectrum -> float whose uncertainty is wanted.
    failure_policy : TrialFailurePolicy
        ABORT (default) or DISCARD for unstable trials.
    seed : int, optional
        Root seed. ``None`` draws fresh OS entropy.
    max_workers : int
        Size of the thread pool running trials (1 = run inline).
    """

    def __init__(
        self,
        solver: MLEMSolver,
        n_samples: int = 1000,
        scalar_metrics: Optional[Mapping[str, ScalarMetric]] = None,
        failure_policy: TrialFailurePolicy = TrialFailurePolicy.ABORT,
        seed: Optional[int] = None,
        max_workers: int = 1,
    ) -> None:
        if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
            raise ConfigurationError("max_workers must be a positive integer", setting="max_workers", value=max_workers)
        self.solver = solver
        self.n_samples = validate_sample_count(n_samples)
        self.scalar_metrics: Dict[str, ScalarMetric] = dict(scalar_metrics or {})
        self.failure_policy = TrialFailurePolicy(failure_policy)
        self.seed = seed
        self.max_workers = max_workers

    def _trial(
        self,
        index: int,
        seed_seq: np.random.SeedSequence,
        measured: np.ndarray,
        initial: np.ndarray,
    ) -> Tuple[int, Optional[np.ndarray], Optional[np.ndarray]]:
        rng = np.random.default_rng(seed_seq)
        synthetic = rng.poisson(measured).astype(float)
        try:
            solution = self.solver.solve(synthetic, initial)
        except NumericalInstabilityError as exc:
            if self.failure_policy is TrialFailurePolicy.ABORT:
                raise exc.with_trial(index) from exc
            logger.warning(f"Discarding Poisson trial {index}: {exc}")
            return index, None, None
        scalars = np.array([metric(solution.spectrum) for metric in self.scalar_metrics.values()], dtype=float)
        return index, solution.spectrum, scalars

    def estimate(
        self,
        reference_spectrum: ArrayLike,
        measurements: ArrayLike,
        initial_spectrum: ArrayLike,
    ) -> PoissonUncertainty:
        """Run all trials and aggregate RMS deviations from the reference."""
        response = self.solver.response
        reference = response.check_spectrum(reference_spectrum, "reference spectrum")
        measured = response.check_measurements(measurements)
        initial = response.check_spectrum(initial_spectrum, "initial spectrum")

        reference_scalars = {name: float(metric(reference)) for name, metric in self.scalar_metrics.items()}

        root = np.random.SeedSequence(self.seed)
        children = root.spawn(self.n_samples)
        logger.info(
            f"Running {self.n_samples} Poisson resampling trials "
            f"({self.solver.algorithm}, {self.max_workers} worker(s))"
        )

        if self.max_workers == 1:
            outcomes = [self._trial(t, s, measured, initial) for t, s in enumerate(children)]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._trial, t, s, measured, initial)
                    for t, s in enumerate(children)
                ]
                try:
                    outcomes = [future.result() for future in futures]
                except NumericalInstabilityError:
                    # ABORT: drop trials that have not started yet
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise

        outcomes.sort(key=lambda outcome: outcome[0])
        spectra = [spec for _, spec, _ in outcomes if spec is not None]
        scalars = [vals for _, spec, vals in outcomes if spec is not None]
        discarded = [index for index, spec, _ in outcomes if spec is None]

        if not spectra:
            raise NumericalInstabilityError(
                f"All {self.n_samples} Poisson trials were discarded; no uncertainty can be estimated"
            )
        if discarded:
            logger.warning(f"{len(discarded)} of {self.n_samples} Poisson trials discarded")

        ensemble = np.vstack(spectra)
        spectrum_uncertainty = np.sqrt(np.mean((ensemble - reference) ** 2, axis=0))

        scalar_uncertainties: Dict[str, float] = {}
        if self.scalar_metrics:
            values = np.vstack(scalars)
            for k, name in enumerate(self.scalar_metrics):
                deviation = values[:, k] - reference_scalars[name]
                scalar_uncertainties[name] = float(np.sqrt(np.mean(deviation**2)))

        return PoissonUncertainty(
            spectrum_uncertainty=spectrum_uncertainty,
            scalar_uncertainties=scalar_uncertainties,
            reference_scalars=reference_scalars,
            n_samples=self.n_samples,
            n_used=len(spectra),
            discarded_trials=discarded,
            seed=self.seed,
        )
