import numpy as np
import pytest

from nnsunfold.core.errors import ConfigurationError, NumericalInstabilityError
from nnsunfold.solvers import MAPSolver, MLEMSolver, PRIORS, build_solver, resolve_prior
from nnsunfold.solvers.priors import median_root_penalty, quadratic_penalty, total_variation_penalty
from nnsunfold.validation import roughness


@pytest.fixture
def problem():
    rng = np.random.default_rng(11)
    response = rng.random((6, 12)) + 0.5
    measurements = response @ (rng.random(12) * 5) + 1.0
    return response, measurements, np.ones(12)


class TestPriors:
    def test_quadratic_penalty(self):
        np.testing.assert_allclose(quadratic_penalty(np.array([1.0, 5.0, 1.0])), [-4.0, 8.0, -4.0])

    def test_total_variation_penalty_is_bounded(self):
        penalty = total_variation_penalty(np.array([1.0, 5.0, 1.0]))
        np.testing.assert_allclose(penalty, [-1.0, 2.0, -1.0], atol=1e-12)
        np.testing.assert_allclose(total_variation_penalty(np.array([3.0, 3.0, 3.0])), np.zeros(3))

    def test_median_root_penalty(self):
        np.testing.assert_allclose(median_root_penalty(np.array([1.0, 5.0, 1.0])), [0.0, 4.0, 0.0])

    def test_median_root_penalty_zero_median(self):
        np.testing.assert_allclose(median_root_penalty(np.array([0.0, 0.0, 3.0, 0.0])), [0.0, 0.0, 0.0, 0.0])

    def test_flat_spectrum_has_no_penalty(self):
        flat = np.full(5, 2.0)
        for prior in PRIORS.values():
            np.testing.assert_allclose(prior(flat), np.zeros(5), atol=1e-12)

    def test_resolve_prior_is_case_insensitive(self):
        assert resolve_prior(" MRP ").name == "mrp"

    def test_unknown_prior_raises(self):
        with pytest.raises(ConfigurationError) as excinfo:
            resolve_prior("gaussian")
        assert excinfo.value.setting == "prior"


def test_zero_beta_reproduces_mlem(problem):
    response, measurements, initial = problem
    mlem = MLEMSolver(response, cutoff=40, error=1e-9, record_history=True)
    for name in PRIORS:
        map_solver = MAPSolver(response, cutoff=40, error=1e-9, beta=0.0, prior=name, record_history=True)
        expected = mlem.solve(measurements, initial)
        actual = map_solver.solve(measurements, initial)

        assert actual.iterations == expected.iterations
        for a, b in zip(actual.history, expected.history):
            np.testing.assert_array_equal(a, b)


def test_map_iterates_stay_non_negative(problem):
    response, measurements, initial = problem
    # sensitivity >= 3 and |tv penalty| <= 2, so the denominator stays positive
    solver = MAPSolver(response, cutoff=100, error=1e-9, beta=1.0, prior="total_variation", record_history=True)
    solution = solver.solve(measurements, initial)
    for iterate in solution.history:
        assert np.all(iterate >= 0)
    assert solution.penalty is not None
    assert solution.beta == 1.0


def test_map_smooths_relative_to_mlem():
    response = np.eye(5)
    measurements = np.array([10.0, 100.0, 10.0, 100.0, 10.0])
    initial = np.ones(5)

    mlem = MLEMSolver(response, cutoff=20, error=0.01).solve(measurements, initial)
    map_solution = MAPSolver(response, cutoff=20, error=0.01, beta=0.2, prior="total_variation").solve(
        measurements, initial
    )
    assert roughness(map_solution.spectrum) < roughness(mlem.spectrum)
    # Peak bin pulled down by 1 + 0.2 * 2
    assert map_solution.spectrum[1] == pytest.approx(100.0 / 1.4)


def test_non_positive_denominator_raises():
    solver = MAPSolver(np.eye(3), cutoff=10, error=0.1, beta=1.0, prior="quadratic")
    with pytest.raises(NumericalInstabilityError) as excinfo:
        solver.solve([1.0, 10.0, 1.0], [1.0, 10.0, 1.0])
    assert excinfo.value.iteration == 1
    assert excinfo.value.bin == 0
    assert excinfo.value.beta == 1.0
    assert "beta=1.0" in str(excinfo.value)


@pytest.mark.parametrize("beta", [-0.1, float("nan"), float("inf"), "large"])
def test_invalid_beta_raises(beta):
    with pytest.raises(ConfigurationError):
        MAPSolver(np.eye(2), beta=beta)


def test_build_solver_dispatch():
    assert type(build_solver(np.eye(2), cutoff=5, error=0.1)) is MLEMSolver
    solver = build_solver(np.eye(2), cutoff=5, error=0.1, beta=0.5, prior="mrp")
    assert isinstance(solver, MAPSolver)
    assert solver.prior.name == "mrp"
    assert solver.beta == 0.5


def test_penalty_diagnostic():
    solver = MAPSolver(np.eye(3), beta=0.1, prior="quadratic")
    np.testing.assert_allclose(solver.penalty([1.0, 5.0, 1.0]), [-4.0, 8.0, -4.0])
