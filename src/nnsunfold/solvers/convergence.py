"""
Convergence test for iterative unfolding.

The MLEM ratio (measured / estimated rate) is the convergence signal: a
solve stops once every channel's ratio lies strictly inside the open band
(1 - error, 1 + error). A single channel outside the band forces another
iteration.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from nnsunfold.core.errors import ConfigurationError


def validate_error(error: float) -> float:
    """Check that a relative tolerance lies in (0, 1)."""
    try:
        value = float(error)
    except (TypeError, ValueError):
        raise ConfigurationError("Tolerance must be a number", setting="error", value=error) from None
    if not 0.0 < value < 1.0:
        raise ConfigurationError("Tolerance must satisfy 0 < error < 1", setting="error", value=error)
    return value


def ratio_within_tolerance(ratio: np.ndarray, error: float) -> bool:
    """
    True only if every ratio entry is strictly inside (1 - error, 1 + error).

    NaN entries never pass.
    """
    ratio = np.asarray(ratio, dtype=float)
    inside = (ratio > 1.0 - error) & (ratio < 1.0 + error)
    return bool(np.all(inside))


@dataclass(frozen=True)
class ConvergenceResult:
    """Outcome of one convergence check."""
    converged: bool
    max_deviation: float
    worst_channel: Optional[int]
    error: float


@dataclass(frozen=True)
class ConvergenceMonitor:
    """Stateless ratio-band predicate shared by the MLEM and MAP solvers."""

    error: float

    def __post_init__(self):
        object.__setattr__(self, "error", validate_error(self.error))

    def is_converged(self, ratio: np.ndarray) -> bool:
        return ratio_within_tolerance(ratio, self.error)

    def check(self, ratio: np.ndarray) -> ConvergenceResult:
        """Predicate plus the channel furthest from unity, for diagnostics."""
        ratio = np.asarray(ratio, dtype=float)
        deviation = np.abs(ratio - 1.0)
        if ratio.size == 0:
            return ConvergenceResult(True, 0.0, None, self.error)
        if np.any(np.isnan(deviation)):
            worst = int(np.flatnonzero(np.isnan(deviation))[0])
            return ConvergenceResult(False, float("nan"), worst, self.error)
        worst = int(np.argmax(deviation))
        return ConvergenceResult(
            converged=self.is_converged(ratio),
            max_deviation=float(deviation[worst]),
            worst_channel=worst,
            error=self.error,
        )
