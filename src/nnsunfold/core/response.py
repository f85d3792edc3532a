"""Response matrix model: forward projection, backprojection and sensitivity."""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np

from nnsunfold.core.errors import ConfigurationError, DimensionError

ArrayLike = Union[Sequence[float], np.ndarray]


def check_dimensions(expected: int, expected_label: str, actual: int, actual_label: str) -> None:
    """Raise DimensionError unless ``actual`` equals ``expected``."""
    if expected != actual:
        raise DimensionError(
            f"Mismatch in {expected_label} ({expected}) and size of {actual_label} ({actual})",
            expected=expected,
            actual=actual,
            label=actual_label,
        )


def as_vector(values: ArrayLike, label: str) -> np.ndarray:
    """Convert to a 1-D float array; column vectors such as (n, 1) are rejected."""
    vec = np.asarray(values, dtype=float)
    if vec.ndim != 1:
        raise DimensionError(f"{label} must be one-dimensional, got shape {vec.shape}", label=label)
    return vec


def as_nonnegative_vector(values: ArrayLike, label: str) -> np.ndarray:
    """Convert to a 1-D float array, rejecting non-finite or negative entries."""
    vec = as_vector(values, label)
    bad = np.flatnonzero(~np.isfinite(vec) | (vec < 0))
    if bad.size:
        j = int(bad[0])
        raise ConfigurationError(
            f"{label} must be finite and non-negative; entry {j} is {vec[j]!r}"
        )
    return vec


class ResponseModel:
    """Dense detector response matrix R (channels x bins).

    R[i, j] is the expected count rate in channel ``i`` per unit fluence
    rate in energy bin ``j``. The matrix is copied and frozen on
    construction, and its column sums are computed once, so a single model
    can be shared read-only between concurrent solver runs.

    Parameters
    ----------
    matrix : array-like
        Non-negative response matrix, shape (n_channels, n_bins).
    energy_bins : array-like, optional
        Energy of each bin [MeV]; labels per-bin tables.
    """

    def __init__(self, matrix: ArrayLike, energy_bins: Optional[ArrayLike] = None) -> None:
        mat = np.array(matrix, dtype=float)
        if mat.ndim != 2 or mat.shape[0] == 0 or mat.shape[1] == 0:
            raise DimensionError(
                f"Response matrix must be a non-empty 2-D array, got shape {mat.shape}",
                label="response matrix",
            )
        if not np.all(np.isfinite(mat)) or np.any(mat < 0):
            raise ConfigurationError("Response matrix entries must be finite and non-negative")
        mat.setflags(write=False)
        self._matrix = mat

        self._sensitivity = mat.sum(axis=0)
        self._sensitivity.setflags(write=False)

        self.energy_bins: Optional[np.ndarray] = None
        if energy_bins is not None:
            bins = as_vector(energy_bins, "energy bins")
            check_dimensions(self.n_bins, "number of energy bins", bins.size, "energy bins")
            self.energy_bins = bins

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def n_channels(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_bins(self) -> int:
        return self._matrix.shape[1]

    @property
    def shape(self) -> tuple:
        return self._matrix.shape

    def check_spectrum(self, spectrum: ArrayLike, label: str = "spectrum") -> np.ndarray:
        vec = as_nonnegative_vector(spectrum, label)
        check_dimensions(self.n_bins, "number of energy bins", vec.size, label)
        return vec

    def check_measurements(self, measurements: ArrayLike, label: str = "measurements") -> np.ndarray:
        vec = as_nonnegative_vector(measurements, label)
        check_dimensions(self.n_channels, "number of measurements", vec.size, label)
        return vec

    def forward(self, spectrum: ArrayLike) -> np.ndarray:
        """Expected channel rates: estimate[i] = sum_j R[i, j] * spectrum[j]."""
        vec = as_vector(spectrum, "spectrum")
        check_dimensions(self.n_bins, "number of energy bins", vec.size, "spectrum")
        return self._matrix @ vec

    def backproject(self, ratio: ArrayLike) -> np.ndarray:
        """Per-bin correction: correction[j] = sum_i R[i, j] * ratio[i]."""
        vec = as_vector(ratio, "ratio")
        check_dimensions(self.n_channels, "number of measurements", vec.size, "ratio")
        return self._matrix.T @ vec

    def sensitivity(self) -> np.ndarray:
        """Cached column sums of R (the MLEM normalization vector)."""
        return self._sensitivity

    def __repr__(self) -> str:
        return f"ResponseModel(n_channels={self.n_channels}, n_bins={self.n_bins})"


def as_response_model(response: Union[ResponseModel, ArrayLike]) -> ResponseModel:
    if isinstance(response, ResponseModel):
        return response
    return ResponseModel(response)
