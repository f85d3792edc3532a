"""
Spectrum Unfolding Workflow Module

Runs the unfolding engine the way a nested neutron spectrometer (NNS)
analysis uses it:

- :func:`unfold_spectrum`: one MLEM (or MAP) unfolding to the configured
  cutoff, with dose and Poisson-resampled spectrum and dose uncertainties
- :func:`scan_iterations`: a parameter of interest (POI) as a function of
  iteration number
- :func:`scan_beta`: a POI as a function of MAP beta and iteration number
- :func:`trend`: reconstructed measurements (or ratios) per iteration count
- :func:`correction_factors`: per-bin MLEM correction per iteration count

Sweeps advance a single solve through the iteration schedule with
``resume``, running only the iterations since the previous report point.
All dimension checks happen before the first iteration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from nnsunfold.analysis.poi import MetricContext, ParameterOfInterest, derivatives
from nnsunfold.core.errors import ConfigurationError
from nnsunfold.core.response import (
    ArrayLike,
    ResponseModel,
    as_nonnegative_vector,
    as_response_model,
    check_dimensions,
)
from nnsunfold.core.settings import Algorithm, TrendType, UnfoldingSettings
from nnsunfold.physics.dose import dose, dose_per_bin
from nnsunfold.solvers.iterative import IterativeSolution, MLEMSolver
from nnsunfold.solvers.map import MAPSolver, build_solver
from nnsunfold.uncertainty.mc import PoissonUncertainty, UncertaintyEstimator

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class UnfoldingInputs:
    """Validated engine inputs sharing one response model."""

    response: ResponseModel
    measurements: np.ndarray
    initial_spectrum: np.ndarray
    icrp_factors: Optional[np.ndarray] = None
    reference_spectrum: Optional[np.ndarray] = None

    @property
    def available(self) -> List[str]:
        names = []
        if self.icrp_factors is not None:
            names.append("icrp_factors")
        if self.reference_spectrum is not None:
            names.append("reference_spectrum")
        return names


@dataclass
class UnfoldingResult:
    """
    Container for a full unfolding run.

    Attributes
    ----------
    spectrum : np.ndarray
        Unfolded fluence-rate spectrum [n cm^-2 s^-1]
    spectrum_uncertainty : np.ndarray
        Per-bin RMS deviation of the Poisson trials from ``spectrum``
    ratio : np.ndarray
        Final measured / estimated ratio per channel
    iterations : int
        Iterations actually executed (<= cutoff)
    converged : bool
        Whether every ratio reached the tolerance band
    dose : float
        Ambient dose-equivalent rate [mSv/h]
    dose_uncertainty : float
        RMS deviation of the trial doses from ``dose`` [mSv/h]
    dose_per_bin : np.ndarray
        Dose-rate contribution of each bin [mSv/h]
    method : str
        'mlem' or 'map'
    beta : float
        MAP regularization weight (0 for MLEM)
    uncertainty : PoissonUncertainty
        Full resampling summary
    """

    spectrum: np.ndarray
    spectrum_uncertainty: np.ndarray
    ratio: np.ndarray
    iterations: int
    converged: bool
    dose: float
    dose_uncertainty: float
    dose_per_bin: np.ndarray
    method: str = "mlem"
    beta: float = 0.0
    uncertainty: Optional[PoissonUncertainty] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IterationScan:
    """POI (or its derivative) at each scheduled iteration count."""

    parameter_of_interest: str
    iterations: np.ndarray
    values: np.ndarray
    derivatives: Optional[np.ndarray] = None

    def to_dataframe(self):
        """One row per iteration count; the derivative of the first row is NaN."""
        try:
            import pandas as pd
        except ImportError:
            raise ImportError("pandas required for DataFrame output")

        data = {"iterations": self.iterations, self.parameter_of_interest: self.values}
        if self.derivatives is not None:
            data["derivative"] = np.concatenate([[np.nan], self.derivatives])
        return pd.DataFrame(data)


@dataclass
class BetaScan:
    """POI grid: rows are beta values, columns iteration counts."""

    parameter_of_interest: str
    prior: str
    betas: np.ndarray
    iterations: np.ndarray
    values: np.ndarray

    def to_dataframe(self):
        try:
            import pandas as pd
        except ImportError:
            raise ImportError("pandas required for DataFrame output")

        frame = pd.DataFrame(self.values, index=self.betas, columns=self.iterations)
        frame.index.name = "beta"
        frame.columns.name = "iterations"
        return frame


@dataclass
class IterationTable:
    """
    Per-iteration-count vectors (trend or correction-factor sweeps).

    ``reference`` is the row the sweep compares against (measurements or
    unit ratios for trends), if any. ``columns`` labels the vector entries,
    e.g. bin energies for correction factors.
    """

    kind: str
    iterations: np.ndarray
    rows: np.ndarray
    reference: Optional[np.ndarray] = None
    columns: Optional[np.ndarray] = None

    def to_dataframe(self):
        try:
            import pandas as pd
        except ImportError:
            raise ImportError("pandas required for DataFrame output")

        index = [f"N = {n}" for n in self.iterations]
        rows = self.rows
        if self.reference is not None:
            index = ["Measured data"] + index
            rows = np.vstack([self.reference, rows])
        return pd.DataFrame(rows, index=index, columns=self.columns)


# =============================================================================
# Input validation
# =============================================================================

def prepare_inputs(
    response: Union[ResponseModel, ArrayLike],
    measurements: ArrayLike,
    initial_spectrum: ArrayLike,
    icrp_factors: Optional[ArrayLike] = None,
    reference_spectrum: Optional[ArrayLike] = None,
    energy_bins: Optional[ArrayLike] = None,
) -> UnfoldingInputs:
    """Check every input against the response matrix, once, before iterating.

    ``energy_bins`` (one energy per bin) is attached to the response model
    and labels the columns of per-bin tables.
    """
    model = as_response_model(response)
    if energy_bins is not None:
        model = ResponseModel(model.matrix, energy_bins)
    measured = model.check_measurements(measurements)
    initial = model.check_spectrum(initial_spectrum, "initial spectrum")

    icrp = None
    if icrp_factors is not None:
        icrp = as_nonnegative_vector(icrp_factors, "ICRP factors")
        check_dimensions(model.n_bins, "number of energy bins", icrp.size, "ICRP factors")
    reference = None
    if reference_spectrum is not None:
        reference = model.check_spectrum(reference_spectrum, "reference spectrum")

    return UnfoldingInputs(model, measured, initial, icrp, reference)


def _context(
    inputs: UnfoldingInputs,
    solution: IterativeSolution,
    settings: UnfoldingSettings,
) -> MetricContext:
    return MetricContext(
        spectrum=solution.spectrum,
        ratio=solution.ratio,
        measurements=inputs.measurements,
        response=inputs.response,
        icrp_factors=inputs.icrp_factors,
        reference_spectrum=inputs.reference_spectrum,
        penalty=solution.penalty,
        degrees_of_freedom=settings.degrees_of_freedom,
    )


def _walk_schedule(solver: MLEMSolver, inputs: UnfoldingInputs, schedule: np.ndarray):
    """Yield (iteration count, solution) at each schedule point."""
    solution = None
    previous = 0
    for target in schedule:
        step = int(target) - previous
        if solution is None:
            solution = solver.solve(inputs.measurements, inputs.initial_spectrum, max_iterations=step)
        else:
            solution = solver.resume(solution, inputs.measurements, step)
        previous = int(target)
        yield previous, solution


def _sweep_solver(inputs: UnfoldingInputs, settings: UnfoldingSettings, beta: Optional[float] = None) -> MLEMSolver:
    return build_solver(
        inputs.response,
        cutoff=settings.max_num_iterations,
        error=settings.error,
        beta=beta,
        prior=settings.prior,
    )


# =============================================================================
# Full unfolding
# =============================================================================

def unfold_spectrum(
    response: Union[ResponseModel, ArrayLike],
    measurements: ArrayLike,
    initial_spectrum: ArrayLike,
    icrp_factors: ArrayLike,
    settings: Optional[UnfoldingSettings] = None,
) -> UnfoldingResult:
    """
    Unfold a spectrum and propagate counting uncertainty.

    Runs MAP with ``settings.beta`` when ``settings.algorithm`` is map,
    otherwise MLEM, for at most
    ``settings.cutoff`` iterations, then reruns the same solver on
    ``settings.num_poisson_samples`` Poisson-resampled measurement vectors.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response matrix (channels x bins) [cm^2]
    measurements : array-like
        Measured count rates per channel [cps]
    initial_spectrum : array-like
        Starting spectrum [n cm^-2 s^-1]
    icrp_factors : array-like
        Fluence-to-dose conversion factors per bin [pSv cm^2]
    settings : UnfoldingSettings, optional
        Engine configuration (defaults if omitted)

    Returns
    -------
    UnfoldingResult
    """
    settings = settings or UnfoldingSettings()
    if settings.algorithm is Algorithm.MAP and settings.beta is None:
        raise ConfigurationError("A MAP unfolding run requires beta", setting="beta", value=None)
    inputs = prepare_inputs(response, measurements, initial_spectrum, icrp_factors)

    if settings.algorithm is Algorithm.MAP:
        solver = MAPSolver(
            inputs.response,
            cutoff=settings.cutoff,
            error=settings.error,
            beta=settings.beta,
            prior=settings.prior,
        )
    else:
        # trend and correction_factors sweeps are MLEM based
        solver = MLEMSolver(inputs.response, cutoff=settings.cutoff, error=settings.error)
    logger.info(f"Unfolding {inputs.response.n_channels} channels into {inputs.response.n_bins} bins with {solver!r}")
    solution = solver.solve(inputs.measurements, inputs.initial_spectrum)
    if not solution.converged:
        logger.warning(
            f"{solver.algorithm.upper()} did not reach the ratio tolerance {settings.error} "
            f"within {settings.cutoff} iterations"
        )
    else:
        logger.info(f"{solver.algorithm.upper()} converged after {solution.iterations} iterations")

    icrp = inputs.icrp_factors
    estimator = UncertaintyEstimator(
        solver,
        n_samples=settings.num_poisson_samples,
        scalar_metrics={"dose": lambda spectrum: dose(spectrum, icrp)},
        failure_policy=settings.failure_policy,
        seed=settings.seed,
        max_workers=settings.max_workers,
    )
    uncertainty = estimator.estimate(solution.spectrum, inputs.measurements, inputs.initial_spectrum)

    return UnfoldingResult(
        spectrum=solution.spectrum,
        spectrum_uncertainty=uncertainty.spectrum_uncertainty,
        ratio=solution.ratio,
        iterations=solution.iterations,
        converged=solution.converged,
        dose=uncertainty.reference_scalars["dose"],
        dose_uncertainty=uncertainty.scalar_uncertainties["dose"],
        dose_per_bin=dose_per_bin(solution.spectrum, icrp),
        method=solver.algorithm,
        beta=solver.beta,
        uncertainty=uncertainty,
        metadata={
            "cutoff": settings.cutoff,
            "error": settings.error,
            "prior": settings.prior if isinstance(solver, MAPSolver) else None,
            "num_poisson_samples": settings.num_poisson_samples,
            "seed": settings.seed,
        },
    )


# =============================================================================
# Sweeps
# =============================================================================

def scan_iterations(
    inputs: UnfoldingInputs,
    settings: UnfoldingSettings,
    poi: Optional[ParameterOfInterest] = None,
) -> IterationScan:
    """MLEM POI (and optionally its derivative) at each scheduled iteration count."""
    poi = poi or settings.poi(inputs.available)
    schedule = settings.iteration_schedule()
    solver = _sweep_solver(inputs, settings)

    values = np.array([poi(_context(inputs, solution, settings)) for _, solution in _walk_schedule(solver, inputs, schedule)])
    slope = derivatives(values, schedule) if settings.derivatives else None
    logger.info(f"Computed {poi.name} at {schedule.size} iteration counts")
    return IterationScan(poi.name, schedule, values, slope)


def scan_beta(
    inputs: UnfoldingInputs,
    settings: UnfoldingSettings,
    poi: Optional[ParameterOfInterest] = None,
) -> BetaScan:
    """MAP POI grid over the beta and iteration schedules.

    The spectrum restarts from the initial spectrum for every beta.
    """
    poi = poi or settings.poi(inputs.available)
    schedule = settings.iteration_schedule()
    betas = settings.beta_schedule()
    grid = np.empty((betas.size, schedule.size))

    for row, beta in enumerate(betas):
        solver = _sweep_solver(inputs, settings, beta=float(beta))
        for col, (_, solution) in enumerate(_walk_schedule(solver, inputs, schedule)):
            grid[row, col] = poi(_context(inputs, solution, settings))
        logger.debug(f"beta={beta:g}: {poi.name} = {grid[row, -1]:g} at N={schedule[-1]}")

    logger.info(f"Computed {betas.size} x {schedule.size} grid of {poi.name} (prior {settings.prior})")
    return BetaScan(poi.name, settings.prior, betas, schedule, grid)


def trend(inputs: UnfoldingInputs, settings: UnfoldingSettings) -> IterationTable:
    """Reconstructed measurements (cps) or MLEM ratios per iteration count."""
    schedule = settings.iteration_schedule()
    solver = _sweep_solver(inputs, settings)
    rows = []
    for _, solution in _walk_schedule(solver, inputs, schedule):
        if settings.trend_type is TrendType.CPS:
            # equals measured / ratio
            rows.append(solution.estimate)
        else:
            rows.append(solution.ratio)

    if settings.trend_type is TrendType.CPS:
        reference = inputs.measurements.copy()
    else:
        reference = np.ones(inputs.response.n_channels)
    return IterationTable(f"trend_{settings.trend_type.value}", schedule, np.vstack(rows), reference)


def correction_factors(inputs: UnfoldingInputs, settings: UnfoldingSettings) -> IterationTable:
    """Per-bin MLEM correction vector at each scheduled iteration count."""
    schedule = settings.iteration_schedule()
    solver = _sweep_solver(inputs, settings)
    rows = [solution.correction for _, solution in _walk_schedule(solver, inputs, schedule)]
    return IterationTable("correction_factors", schedule, np.vstack(rows), columns=inputs.response.energy_bins)


def run_sweep(
    response: Union[ResponseModel, ArrayLike],
    measurements: ArrayLike,
    initial_spectrum: ArrayLike,
    settings: UnfoldingSettings,
    icrp_factors: Optional[ArrayLike] = None,
    reference_spectrum: Optional[ArrayLike] = None,
    energy_bins: Optional[ArrayLike] = None,
) -> Union[IterationScan, BetaScan, IterationTable]:
    """Dispatch on ``settings.algorithm``.

    The POI is resolved against the supplied inputs before any iteration,
    so e.g. ``rms`` without a reference spectrum fails immediately.
    """
    inputs = prepare_inputs(response, measurements, initial_spectrum, icrp_factors, reference_spectrum, energy_bins)

    if settings.algorithm is Algorithm.MLEM:
        return scan_iterations(inputs, settings, settings.poi(inputs.available))
    if settings.algorithm is Algorithm.MAP:
        return scan_beta(inputs, settings, settings.poi(inputs.available))
    if settings.algorithm is Algorithm.TREND:
        return trend(inputs, settings)
    if settings.algorithm is Algorithm.CORRECTION_FACTORS:
        return correction_factors(inputs, settings)
    raise ConfigurationError("Unsupported algorithm", setting="algorithm", value=settings.algorithm)
