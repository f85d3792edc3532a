import numpy as np
import pytest

from nnsunfold.core.errors import ConfigurationError, DimensionError
from nnsunfold.core.settings import UnfoldingSettings
from nnsunfold.solvers import MAPSolver, MLEMSolver
from nnsunfold.workflows import (
    BetaScan,
    IterationScan,
    IterationTable,
    prepare_inputs,
    run_sweep,
    scan_iterations,
    unfold_spectrum,
)


@pytest.fixture
def spectrometer():
    """Small well-conditioned system: 3 channels, 4 bins, entries >= 1."""
    rng = np.random.default_rng(21)
    response = rng.random((3, 4)) + 1.0
    measurements = response @ np.array([5.0, 20.0, 10.0, 2.0]) * 1.1
    return response, measurements, np.ones(4)


class TestUnfoldSpectrum:
    def test_identity_unfolding(self):
        measurements = np.array([400.0, 900.0])
        icrp = np.array([5.0, 2.0])
        settings = UnfoldingSettings(error=0.01, num_poisson_samples=200, seed=1)
        result = unfold_spectrum(np.eye(2), measurements, np.ones(2), icrp, settings)

        assert result.converged
        assert result.iterations == 2
        assert result.method == "mlem"
        assert result.beta == 0.0
        np.testing.assert_allclose(result.spectrum, measurements)
        assert result.dose == pytest.approx((400.0 * 5.0 + 900.0 * 2.0) * 3600 * 1e-9)
        assert result.dose_per_bin.sum() == pytest.approx(result.dose)
        np.testing.assert_allclose(result.spectrum_uncertainty, np.sqrt(measurements), rtol=0.25)
        assert result.dose_uncertainty > 0
        assert result.uncertainty.n_samples == 200
        assert result.metadata["prior"] is None

    def test_map_unfolding(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            algorithm="map",
            cutoff=50,
            error=0.01,
            beta=0.5,
            prior="total_variation",
            num_poisson_samples=10,
            seed=2,
        )
        result = unfold_spectrum(response, measurements, initial, np.ones(4), settings)
        assert result.method == "map"
        assert result.beta == 0.5
        assert result.metadata["prior"] == "total_variation"
        assert result.spectrum_uncertainty.shape == (4,)

    def test_dimension_mismatch_fails_before_iterating(self):
        response = np.full((7, 52), 0.1)
        with pytest.raises(DimensionError):
            unfold_spectrum(response, np.ones(8), np.ones(52), np.ones(52))

    def test_icrp_length_checked(self):
        with pytest.raises(DimensionError):
            unfold_spectrum(np.eye(2), [1.0, 2.0], [1.0, 1.0], [1.0, 1.0, 1.0])

    def test_column_shaped_icrp_factors_rejected(self):
        with pytest.raises(DimensionError):
            unfold_spectrum(np.eye(2), [400.0, 900.0], [1.0, 1.0], [[5.0], [2.0]])

    def test_negative_icrp_factors_rejected(self):
        with pytest.raises(ConfigurationError):
            unfold_spectrum(np.eye(2), [400.0, 900.0], [1.0, 1.0], [5.0, -2.0])

    def test_map_algorithm_requires_beta(self):
        settings = UnfoldingSettings(algorithm="map")
        with pytest.raises(ConfigurationError) as excinfo:
            unfold_spectrum(np.eye(2), [400.0, 900.0], [1.0, 1.0], [5.0, 2.0], settings)
        assert excinfo.value.setting == "beta"

    def test_algorithm_selects_solver(self):
        measurements = np.array([400.0, 900.0])
        mlem = unfold_spectrum(
            np.eye(2), measurements, np.ones(2), [5.0, 2.0], UnfoldingSettings(num_poisson_samples=5, seed=0)
        )
        map_run = unfold_spectrum(
            np.eye(2),
            measurements,
            np.ones(2),
            [5.0, 2.0],
            UnfoldingSettings(algorithm="map", beta=0.0, num_poisson_samples=5, seed=0),
        )
        assert mlem.method == "mlem"
        assert map_run.method == "map"
        # beta = 0 reproduces MLEM
        np.testing.assert_array_equal(map_run.spectrum, mlem.spectrum)

    def test_seeded_runs_are_reproducible(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(cutoff=40, num_poisson_samples=20, seed=7)
        threaded = UnfoldingSettings(cutoff=40, num_poisson_samples=20, seed=7, max_workers=3)
        a = unfold_spectrum(response, measurements, initial, np.ones(4), settings)
        b = unfold_spectrum(response, measurements, initial, np.ones(4), threaded)
        np.testing.assert_array_equal(a.spectrum_uncertainty, b.spectrum_uncertainty)
        assert a.dose_uncertainty == b.dose_uncertainty


class TestSweeps:
    def test_iteration_scan_matches_independent_solves(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            error=1e-9,
            min_num_iterations=5,
            max_num_iterations=25,
            iteration_increment=5,
            parameter_of_interest="total_fluence",
            derivatives=True,
        )
        scan = run_sweep(response, measurements, initial, settings)

        assert isinstance(scan, IterationScan)
        np.testing.assert_array_equal(scan.iterations, [5, 10, 15, 20, 25])
        solver = MLEMSolver(response, cutoff=25, error=1e-9)
        for n, value in zip(scan.iterations, scan.values):
            direct = solver.solve(measurements, initial, max_iterations=int(n))
            assert value == pytest.approx(direct.spectrum.sum(), rel=1e-12)
        np.testing.assert_allclose(scan.derivatives, np.diff(scan.values) / 5.0)

        frame = scan.to_dataframe()
        assert list(frame.columns) == ["iterations", "total_fluence", "derivative"]
        assert np.isnan(frame["derivative"].iloc[0])

    def test_iteration_scan_without_derivatives(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            min_num_iterations=10, max_num_iterations=30, iteration_increment=10, parameter_of_interest="j_factor"
        )
        inputs = prepare_inputs(response, measurements, initial)
        scan = scan_iterations(inputs, settings)
        assert scan.derivatives is None
        assert scan.values.shape == (3,)
        assert "derivative" not in scan.to_dataframe().columns

    def test_beta_scan_grid(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            algorithm="map",
            prior="total_variation",
            min_beta=0.01,
            max_beta=1.0,
            error=1e-9,
            min_num_iterations=10,
            max_num_iterations=20,
            iteration_increment=10,
            parameter_of_interest="total_energy_correction",
        )
        scan = run_sweep(response, measurements, initial, settings)

        assert isinstance(scan, BetaScan)
        assert scan.values.shape == (20, 2)
        assert scan.prior == "total_variation"

        # Each beta row restarts from the initial spectrum
        solver = MAPSolver(response, cutoff=20, error=1e-9, beta=float(scan.betas[5]), prior="total_variation")
        direct = solver.solve(measurements, initial, max_iterations=20)
        assert scan.values[5, 1] == pytest.approx(direct.penalty.sum(), abs=1e-9)

        frame = scan.to_dataframe()
        assert frame.shape == (20, 2)
        assert frame.index.name == "beta"
        assert list(frame.columns) == [10, 20]

    def test_trend_cps(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            algorithm="trend",
            trend_type="cps",
            min_num_iterations=10,
            max_num_iterations=30,
            iteration_increment=10,
        )
        table = run_sweep(response, measurements, initial, settings)

        assert isinstance(table, IterationTable)
        assert table.rows.shape == (3, 3)
        np.testing.assert_allclose(table.reference, measurements)
        solver = MLEMSolver(response, cutoff=30, error=settings.error)
        direct = solver.solve(measurements, initial, max_iterations=10)
        np.testing.assert_allclose(table.rows[0], measurements / direct.ratio)

        frame = table.to_dataframe()
        assert list(frame.index) == ["Measured data", "N = 10", "N = 20", "N = 30"]

    def test_trend_ratio(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            algorithm="trend", min_num_iterations=10, max_num_iterations=20, iteration_increment=10
        )
        table = run_sweep(response, measurements, initial, settings)
        np.testing.assert_array_equal(table.reference, np.ones(3))
        assert table.kind == "trend_ratio"

    def test_correction_factors(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            algorithm="correction_factors", min_num_iterations=5, max_num_iterations=15, iteration_increment=5
        )
        table = run_sweep(response, measurements, initial, settings)
        assert table.rows.shape == (3, 4)
        assert table.reference is None
        assert table.to_dataframe().shape == (3, 4)

    def test_correction_factors_labelled_by_energy(self, spectrometer):
        response, measurements, initial = spectrometer
        energies = [1e-8, 1e-3, 0.5, 14.0]
        settings = UnfoldingSettings(
            algorithm="correction_factors", min_num_iterations=5, max_num_iterations=10, iteration_increment=5
        )
        table = run_sweep(response, measurements, initial, settings, energy_bins=energies)
        np.testing.assert_array_equal(table.columns, energies)
        assert list(table.to_dataframe().columns) == energies

    def test_energy_bins_checked_against_response(self, spectrometer):
        response, measurements, initial = spectrometer
        with pytest.raises(DimensionError):
            prepare_inputs(response, measurements, initial, energy_bins=[1.0, 2.0, 3.0])
        with pytest.raises(DimensionError):
            prepare_inputs(response, measurements, initial, energy_bins=[[1.0], [2.0], [3.0], [4.0]])

    def test_column_shaped_reference_spectrum_rejected(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(parameter_of_interest="rms")
        with pytest.raises(DimensionError):
            run_sweep(response, measurements, initial, settings, reference_spectrum=[[5.0], [20.0], [10.0], [2.0]])

    def test_reference_metric_requires_reference_spectrum(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(parameter_of_interest="rms")
        with pytest.raises(ConfigurationError):
            run_sweep(response, measurements, initial, settings)

    def test_reference_metric_with_reference_spectrum(self, spectrometer):
        response, measurements, initial = spectrometer
        settings = UnfoldingSettings(
            parameter_of_interest="chi_squared_g",
            min_num_iterations=5,
            max_num_iterations=10,
            iteration_increment=5,
        )
        scan = run_sweep(
            response, measurements, initial, settings, reference_spectrum=[5.0, 20.0, 10.0, 2.0]
        )
        assert np.all(scan.values >= 0)

    def test_dose_sweep_requires_icrp_factors(self, spectrometer):
        response, measurements, initial = spectrometer
        with pytest.raises(ConfigurationError):
            run_sweep(response, measurements, initial, UnfoldingSettings())
