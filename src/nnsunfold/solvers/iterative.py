"""Iterative MLEM unfolding."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

from nnsunfold.core.errors import ConfigurationError, NumericalInstabilityError
from nnsunfold.core.response import ArrayLike, ResponseModel, as_response_model
from nnsunfold.solvers.convergence import ConvergenceMonitor

logger = logging.getLogger(__name__)


class SolverStatus(Enum):
    """Terminal states of an iterative solve."""

    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class IterativeSolution:
    """Container for iterative solver results.

    Attributes
    ----------
    spectrum : np.ndarray
        Final spectrum estimate, shape (n_bins,).
    ratio : np.ndarray
        Measured / estimated rate per channel from the last iteration.
    correction : np.ndarray
        Backprojected ratio from the last iteration.
    estimate : np.ndarray
        Forward projection the last ratio was computed from.
    iterations : int
        Total iterations executed, including those of resumed solutions.
    status : SolverStatus
        Whether the ratio band was reached or the iteration budget ran out.
    history : List[np.ndarray]
        Every iterate (starting spectrum first) when history is recorded.
    penalty : np.ndarray, optional
        Prior penalty of the last iteration (MAP only).
    beta : float
        Regularization weight (0 for MLEM).
    """

    spectrum: np.ndarray
    ratio: np.ndarray
    correction: np.ndarray
    estimate: np.ndarray
    iterations: int
    status: SolverStatus
    history: List[np.ndarray] = field(default_factory=list)
    penalty: Optional[np.ndarray] = None
    beta: float = 0.0

    @property
    def converged(self) -> bool:
        return self.status is SolverStatus.CONVERGED


def validate_cutoff(cutoff: int) -> int:
    if isinstance(cutoff, bool) or not isinstance(cutoff, (int, np.integer)) or cutoff < 1:
        raise ConfigurationError("Iteration cutoff must be a positive integer", setting="cutoff", value=cutoff)
    return int(cutoff)


class MLEMSolver:
    """
    Maximum-likelihood expectation maximization (MLEM) unfolding.

    Each iteration multiplies the spectrum by the backprojected ratio of
    measured to estimated rates, divided by the response sensitivity:

        spectrum_k = spectrum_{k-1} * R^T (m / R spectrum_{k-1}) / R^T 1

    The solver holds only read-only configuration, so one instance may be
    used from several threads; all iteration state is local to a call.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response matrix R (channels x bins).
    cutoff : int
        Maximum number of iterations for :meth:`solve`.
    error : float
        Relative ratio tolerance, 0 < error < 1.
    record_history : bool
        Keep a copy of every iterate on the solution.
    """

    algorithm = "mlem"

    def __init__(
        self,
        response: ResponseModel | ArrayLike,
        cutoff: int = 1000,
        error: float = 0.1,
        record_history: bool = False,
    ) -> None:
        self.response = as_response_model(response)
        self.cutoff = validate_cutoff(cutoff)
        self.monitor = ConvergenceMonitor(error)
        self.record_history = record_history

    @property
    def error(self) -> float:
        return self.monitor.error

    @property
    def beta(self) -> float:
        return 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def solve(
        self,
        measurements: ArrayLike,
        initial_spectrum: ArrayLike,
        max_iterations: Optional[int] = None,
    ) -> IterativeSolution:
        """Run up to ``max_iterations`` (default ``cutoff``) iterations."""
        measured = self.response.check_measurements(measurements)
        spectrum = self.response.check_spectrum(initial_spectrum, "initial spectrum")
        budget = self.cutoff if max_iterations is None else validate_cutoff(max_iterations)
        return self._iterate(measured, spectrum.copy(), budget, completed=0)

    def resume(
        self,
        solution: IterativeSolution,
        measurements: ArrayLike,
        additional_iterations: int,
    ) -> IterativeSolution:
        """Continue a previous solve for ``additional_iterations`` more iterations.

        The result equals running the extra iterations from scratch on
        ``solution.spectrum``; only the iteration count carries over.
        """
        measured = self.response.check_measurements(measurements)
        spectrum = self.response.check_spectrum(solution.spectrum, "resumed spectrum")
        budget = validate_cutoff(additional_iterations)
        return self._iterate(measured, spectrum.copy(), budget, completed=solution.iterations)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------
    def _denominator(self, spectrum: np.ndarray, iteration: int) -> tuple:
        """Per-bin update denominator and penalty (None for MLEM)."""
        return self.response.sensitivity(), None

    def _iterate(
        self,
        measured: np.ndarray,
        spectrum: np.ndarray,
        budget: int,
        completed: int,
    ) -> IterativeSolution:
        history: List[np.ndarray] = [spectrum.copy()] if self.record_history else []
        status = SolverStatus.MAX_ITERATIONS_REACHED
        ratio = correction = estimate = penalty = check = None
        iteration = completed

        for iteration in range(completed + 1, completed + budget + 1):
            estimate = self.response.forward(spectrum)
            ratio = self._ratio(measured, estimate, iteration)
            correction = self.response.backproject(ratio)
            denominator, penalty = self._denominator(spectrum, iteration)
            spectrum = self._update(spectrum, correction, denominator, iteration)

            if self.record_history:
                history.append(spectrum.copy())
            check = self.monitor.check(ratio)
            if check.converged:
                status = SolverStatus.CONVERGED
                break

        if status is SolverStatus.CONVERGED:
            logger.debug(f"{self.algorithm.upper()} converged after {iteration} iterations")
        else:
            logger.debug(
                f"{self.algorithm.upper()} stopped at iteration budget ({iteration} iterations); "
                f"worst channel {check.worst_channel} has |ratio - 1| = {check.max_deviation:.3g}"
            )

        return IterativeSolution(
            spectrum=spectrum.copy(),
            ratio=ratio,
            correction=correction,
            estimate=estimate,
            iterations=iteration,
            status=status,
            history=history,
            penalty=penalty,
            beta=self.beta,
        )

    def _ratio(self, measured: np.ndarray, estimate: np.ndarray, iteration: int) -> np.ndarray:
        bad = np.flatnonzero(~np.isfinite(estimate) | (estimate <= 0))
        if bad.size:
            i = int(bad[0])
            raise NumericalInstabilityError(
                f"Forward estimate is {estimate[i]!r}; measured/estimate ratio undefined",
                iteration=iteration,
                channel=i,
                beta=self.beta or None,
            )
        return measured / estimate

    def _update(
        self,
        spectrum: np.ndarray,
        correction: np.ndarray,
        denominator: np.ndarray,
        iteration: int,
    ) -> np.ndarray:
        bad = np.flatnonzero(~np.isfinite(denominator) | (denominator <= 0))
        if bad.size:
            j = int(bad[0])
            raise NumericalInstabilityError(
                f"Update denominator is {denominator[j]!r}; must be positive",
                iteration=iteration,
                bin=j,
                beta=self.beta or None,
            )
        updated = spectrum * correction / denominator
        bad = np.flatnonzero(~np.isfinite(updated) | (updated < 0))
        if bad.size:
            j = int(bad[0])
            raise NumericalInstabilityError(
                f"Updated spectrum value is {updated[j]!r}",
                iteration=iteration,
                bin=j,
                beta=self.beta or None,
            )
        return updated
