"""nnsunfold physics module."""

from nnsunfold.physics.dose import (
    PSV_PER_S_TO_MSV_PER_H,
    dose,
    dose_per_bin,
    total_flux,
)

__all__ = [
    "PSV_PER_S_TO_MSV_PER_H",
    "dose",
    "dose_per_bin",
    "total_flux",
]
