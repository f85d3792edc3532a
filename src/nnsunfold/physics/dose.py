"""
Neutron dose from an unfolded fluence-rate spectrum.

ICRP conversion factors h(E) [pSv cm^2] turn a per-bin fluence rate
[n cm^-2 s^-1] into an ambient dose-equivalent rate contribution [pSv/s].
Results are reported in mSv/h.
"""

from __future__ import annotations

import numpy as np

from nnsunfold.core.response import ArrayLike, as_nonnegative_vector, check_dimensions

# pSv/s -> mSv/h
PSV_PER_S_TO_MSV_PER_H = 3600 * 1e-9


def total_flux(spectrum: ArrayLike) -> float:
    """Total fluence rate, summed over all energy bins."""
    return float(np.sum(np.asarray(spectrum, dtype=float)))


def dose_per_bin(spectrum: ArrayLike, icrp_factors: ArrayLike) -> np.ndarray:
    """
    Dose-rate contribution of each energy bin.

    Parameters
    ----------
    spectrum : array-like
        Fluence rate per bin [n cm^-2 s^-1]
    icrp_factors : array-like
        Fluence-to-dose conversion factors per bin [pSv cm^2]

    Returns
    -------
    np.ndarray
        Dose rate per bin [mSv/h]
    """
    phi = as_nonnegative_vector(spectrum, "spectrum")
    h = as_nonnegative_vector(icrp_factors, "ICRP factors")
    check_dimensions(phi.size, "number of energy bins", h.size, "ICRP factors")
    return phi * h * PSV_PER_S_TO_MSV_PER_H


def dose(spectrum: ArrayLike, icrp_factors: ArrayLike) -> float:
    """Ambient dose-equivalent rate [mSv/h] of a spectrum."""
    phi = as_nonnegative_vector(spectrum, "spectrum")
    h = as_nonnegative_vector(icrp_factors, "ICRP factors")
    check_dimensions(phi.size, "number of energy bins", h.size, "ICRP factors")
    return float(np.sum(phi * h)) * PSV_PER_S_TO_MSV_PER_H
