"""Validation and comparison utilities."""

from .metrics import (
    avg_ratio,
    chi_squared,
    chi_squared_g,
    j_factor,
    max_ratio,
    nrmsd,
    reduced_chi_squared,
    rms,
    roughness,
    total_energy_correction,
)

__all__ = [
    "avg_ratio",
    "chi_squared",
    "chi_squared_g",
    "j_factor",
    "max_ratio",
    "nrmsd",
    "reduced_chi_squared",
    "rms",
    "roughness",
    "total_energy_correction",
]
