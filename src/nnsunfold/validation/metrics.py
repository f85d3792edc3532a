"""Fit-quality and reference-comparison metrics for unfolded spectra."""

from __future__ import annotations

from typing import Union

import numpy as np

from nnsunfold.core.errors import ConfigurationError, NumericalInstabilityError
from nnsunfold.core.response import ArrayLike, ResponseModel, as_response_model, as_vector, check_dimensions


def _pair(spectrum: ArrayLike, reference: ArrayLike) -> tuple:
    spectrum = as_vector(spectrum, "spectrum")
    reference = as_vector(reference, "reference spectrum")
    check_dimensions(reference.size, "number of reference bins", spectrum.size, "spectrum")
    return spectrum, reference


def _estimate(
    spectrum: ArrayLike,
    measurements: ArrayLike,
    response: Union[ResponseModel, ArrayLike],
) -> tuple:
    """Forward-project and check both sides against the response shape."""
    model = as_response_model(response)
    measured = as_vector(measurements, "measurements")
    check_dimensions(model.n_channels, "number of measurements", measured.size, "measurements")
    estimate = model.forward(spectrum)
    bad = np.flatnonzero(estimate <= 0)
    if bad.size:
        raise NumericalInstabilityError(
            f"Forward estimate is {estimate[bad[0]]!r}; goodness of fit undefined",
            channel=int(bad[0]),
        )
    return measured, estimate


# ---------------------------------------------------------------------------
# Ratio statistics
# ---------------------------------------------------------------------------
def max_ratio(ratio: ArrayLike) -> float:
    """Largest deviation of the MLEM ratio from unity, max |r - 1|."""
    r = np.asarray(ratio, dtype=float)
    return float(np.max(np.abs(r - 1.0)))


def avg_ratio(ratio: ArrayLike) -> float:
    """Mean deviation of the MLEM ratio from unity, mean |r - 1|."""
    r = np.asarray(ratio, dtype=float)
    return float(np.mean(np.abs(r - 1.0)))


# ---------------------------------------------------------------------------
# Goodness of fit against the measurements
# ---------------------------------------------------------------------------
def chi_squared(
    spectrum: ArrayLike,
    measurements: ArrayLike,
    response: Union[ResponseModel, ArrayLike],
) -> float:
    """Pearson chi-squared, sum_i (m_i - e_i)^2 / e_i with e = R @ spectrum."""
    measured, estimate = _estimate(spectrum, measurements, response)
    return float(np.sum((measured - estimate) ** 2 / estimate))


def reduced_chi_squared(
    spectrum: ArrayLike,
    measurements: ArrayLike,
    response: Union[ResponseModel, ArrayLike],
    degrees_of_freedom: int,
) -> float:
    """Chi-squared divided by a configured number of degrees of freedom."""
    if isinstance(degrees_of_freedom, bool) or not isinstance(degrees_of_freedom, (int, np.integer)) \
            or degrees_of_freedom < 1:
        raise ConfigurationError(
            "Degrees of freedom must be a positive integer",
            setting="degrees_of_freedom",
            value=degrees_of_freedom,
        )
    return chi_squared(spectrum, measurements, response) / degrees_of_freedom


def roughness(spectrum: ArrayLike) -> float:
    """Relative roughness sum_j (f_{j+1} - f_j)^2 / sum_j f_j^2 (0 for a zero spectrum)."""
    f = np.asarray(spectrum, dtype=float)
    norm = float(np.sum(f**2))
    if norm == 0.0:
        return 0.0
    return float(np.sum(np.diff(f) ** 2)) / norm


def j_factor(
    spectrum: ArrayLike,
    measurements: ArrayLike,
    response: Union[ResponseModel, ArrayLike],
    ratio: ArrayLike,
) -> float:
    """
    Composite score of fit quality and spectral smoothness.

    J = [sum_i m_i (r_i - 1)^2 / r_i] / sum_i e_i + roughness(spectrum)

    The first term is the GRAVEL J factor (chi-squared over total estimated
    rate) written with the solver's own ratio, e_i = m_i / r_i, so it
    reflects the estimate the last iteration was judged on.
    """
    measured, estimate = _estimate(spectrum, measurements, response)
    r = as_vector(ratio, "ratio")
    check_dimensions(measured.size, "number of measurements", r.size, "ratio")
    bad = np.flatnonzero(~(r > 0))
    if bad.size:
        raise NumericalInstabilityError(
            f"Ratio is {r[bad[0]]!r}; J factor undefined", channel=int(bad[0])
        )
    fit = float(np.sum(measured * (r - 1.0) ** 2 / r)) / float(np.sum(estimate))
    return fit + roughness(spectrum)


# ---------------------------------------------------------------------------
# Comparison against a reference spectrum
# ---------------------------------------------------------------------------
def rms(spectrum: ArrayLike, reference: ArrayLike) -> float:
    """Root-mean-square difference from a reference spectrum."""
    spectrum, reference = _pair(spectrum, reference)
    return float(np.sqrt(np.sum((spectrum - reference) ** 2) / spectrum.size))


def nrmsd(spectrum: ArrayLike, reference: ArrayLike) -> float:
    """RMS difference normalized by the range of the reference spectrum."""
    spectrum, reference = _pair(spectrum, reference)
    span = float(np.max(reference) - np.min(reference))
    if span <= 0:
        raise NumericalInstabilityError("Reference spectrum has zero range; NRMSD undefined")
    return rms(spectrum, reference) / span


def chi_squared_g(spectrum: ArrayLike, reference: ArrayLike) -> float:
    """
    Poisson deviance (G statistic) of a spectrum against a reference.

    G = 2 sum_j [s_j ln(s_j / r_j) - (s_j - r_j)], with 0 ln 0 = 0.
    """
    s, r = _pair(spectrum, reference)
    bad = np.flatnonzero((r <= 0) & (s > 0))
    if bad.size:
        raise NumericalInstabilityError(
            "Reference bin is zero where the spectrum is not; deviance undefined",
            bin=int(bad[0]),
        )
    log_term = np.zeros_like(s)
    positive = s > 0
    log_term[positive] = s[positive] * np.log(s[positive] / r[positive])
    return float(2.0 * np.sum(log_term - (s - r)))


def total_energy_correction(penalty: ArrayLike) -> float:
    """Sum of the MAP penalty term (diagnostic only)."""
    return float(np.sum(np.asarray(penalty, dtype=float)))
