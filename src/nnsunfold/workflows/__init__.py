"""Unfolding workflows: full runs and iteration/beta sweeps."""

from nnsunfold.workflows.spectrum_unfolding import (
    BetaScan,
    IterationScan,
    IterationTable,
    UnfoldingInputs,
    UnfoldingResult,
    correction_factors,
    prepare_inputs,
    run_sweep,
    scan_beta,
    scan_iterations,
    trend,
    unfold_spectrum,
)

__all__ = [
    "BetaScan",
    "IterationScan",
    "IterationTable",
    "UnfoldingInputs",
    "UnfoldingResult",
    "correction_factors",
    "prepare_inputs",
    "run_sweep",
    "scan_beta",
    "scan_iterations",
    "trend",
    "unfold_spectrum",
]
