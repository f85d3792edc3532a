"""Solver package."""

from nnsunfold.solvers.convergence import ConvergenceMonitor, ratio_within_tolerance
from nnsunfold.solvers.iterative import IterativeSolution, MLEMSolver, SolverStatus
from nnsunfold.solvers.map import MAPSolver, build_solver
from nnsunfold.solvers.priors import PRIORS, resolve_prior

__all__ = [
    "ConvergenceMonitor",
    "ratio_within_tolerance",
    "IterativeSolution",
    "MLEMSolver",
    "SolverStatus",
    "MAPSolver",
    "build_solver",
    "PRIORS",
    "resolve_prior",
]
