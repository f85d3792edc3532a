"""MAP (one-step-late) unfolding with a smoothness prior."""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from nnsunfold.core.errors import ConfigurationError
from nnsunfold.core.response import ArrayLike, ResponseModel
from nnsunfold.solvers.iterative import MLEMSolver
from nnsunfold.solvers.priors import Prior, resolve_prior


def validate_beta(beta: float) -> float:
    try:
        value = float(beta)
    except (TypeError, ValueError):
        raise ConfigurationError("beta must be a number", setting="beta", value=beta) from None
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError("beta must be finite and non-negative", setting="beta", value=beta)
    return value


class MAPSolver(MLEMSolver):
    """
    Maximum a posteriori unfolding (Green's one-step-late algorithm).

    Same loop as :class:`MLEMSolver`, with the update denominator replaced by

        sensitivity[j] + beta * penalty[j]

    where ``penalty`` is the prior gradient evaluated on the previous
    iterate. With ``beta == 0`` the trajectory is identical to MLEM.

    Parameters
    ----------
    response : ResponseModel or array-like
        Response matrix R (channels x bins).
    cutoff : int
        Maximum number of iterations for :meth:`solve`.
    error : float
        Relative ratio tolerance, 0 < error < 1.
    beta : float
        Non-negative regularization weight.
    prior : str or Prior
        Prior name from :data:`nnsunfold.solvers.priors.PRIORS`.
    """

    algorithm = "map"

    def __init__(
        self,
        response: ResponseModel | ArrayLike,
        cutoff: int = 1000,
        error: float = 0.1,
        beta: float = 0.0,
        prior: str | Prior = "quadratic",
        record_history: bool = False,
    ) -> None:
        self.prior = resolve_prior(prior)
        self._beta = validate_beta(beta)
        super().__init__(response, cutoff=cutoff, error=error, record_history=record_history)

    @property
    def beta(self) -> float:
        return self._beta

    def penalty(self, spectrum: ArrayLike) -> np.ndarray:
        """Prior penalty for a spectrum, for diagnostics."""
        vec = self.response.check_spectrum(spectrum)
        return self.prior(vec)

    def _denominator(self, spectrum: np.ndarray, iteration: int) -> tuple:
        penalty = self.prior(spectrum)
        return self.response.sensitivity() + self._beta * penalty, penalty

    def __repr__(self) -> str:
        return (
            f"MAPSolver(beta={self._beta}, prior={self.prior.name!r}, "
            f"cutoff={self.cutoff}, error={self.error})"
        )


def build_solver(
    response: ResponseModel | ArrayLike,
    cutoff: int,
    error: float,
    beta: Optional[float] = None,
    prior: str | Prior = "quadratic",
    record_history: bool = False,
) -> MLEMSolver:
    """MLEM when ``beta`` is None, otherwise MAP with the given prior."""
    if beta is None:
        return MLEMSolver(response, cutoff=cutoff, error=error, record_history=record_history)
    return MAPSolver(response, cutoff=cutoff, error=error, beta=beta, prior=prior, record_history=record_history)
