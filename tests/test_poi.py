import numpy as np
import pytest

from nnsunfold.analysis import (
    PARAMETERS_OF_INTEREST,
    MetricContext,
    derivatives,
    resolve_parameter_of_interest,
)
from nnsunfold.core import ConfigurationError, DimensionError, ResponseModel


@pytest.fixture
def context():
    return MetricContext(
        spectrum=np.array([2.0, 3.0]),
        ratio=np.array([1.0, 1.0]),
        measurements=np.array([2.0, 3.0]),
        response=ResponseModel(np.eye(2)),
        icrp_factors=np.array([1.0, 1.0]),
        reference_spectrum=np.array([2.0, 5.0]),
        penalty=np.array([0.5, -0.25]),
    )


def test_derivatives():
    np.testing.assert_allclose(derivatives([1.0, 2.0, 4.0], [10, 20, 40]), [0.1, 0.1])


def test_derivatives_length_mismatch():
    with pytest.raises(DimensionError):
        derivatives([1.0, 2.0, 4.0], [10, 20])


@pytest.mark.parametrize("counts", [[10, 10, 20], [30, 20, 10]])
def test_derivatives_require_increasing_counts(counts):
    with pytest.raises(ConfigurationError):
        derivatives([1.0, 2.0, 3.0], counts)


def test_registry_names():
    assert set(PARAMETERS_OF_INTEREST) == {
        "total_fluence",
        "total_dose",
        "max_mlem_ratio",
        "avg_mlem_ratio",
        "chi_squared",
        "reduced_chi_squared",
        "j_factor",
        "rms",
        "nrmsd",
        "chi_squared_g",
        "total_energy_correction",
    }


def test_calculators_read_context(context):
    assert PARAMETERS_OF_INTEREST["total_fluence"](context) == pytest.approx(5.0)
    assert PARAMETERS_OF_INTEREST["total_dose"](context) == pytest.approx(1.8e-5)
    assert PARAMETERS_OF_INTEREST["max_mlem_ratio"](context) == pytest.approx(0.0)
    assert PARAMETERS_OF_INTEREST["chi_squared"](context) == pytest.approx(0.0)
    assert PARAMETERS_OF_INTEREST["rms"](context) == pytest.approx(np.sqrt(2.0))
    assert PARAMETERS_OF_INTEREST["total_energy_correction"](context) == pytest.approx(0.25)


def test_reduced_chi_squared_defaults_to_channel_count(context):
    context = MetricContext(
        spectrum=np.array([1.0, 2.0]),
        ratio=np.array([2.0, 1.0]),
        measurements=np.array([2.0, 2.0]),
        response=context.response,
    )
    assert PARAMETERS_OF_INTEREST["reduced_chi_squared"](context) == pytest.approx(0.5)


def test_unknown_poi_raises():
    with pytest.raises(ConfigurationError) as excinfo:
        resolve_parameter_of_interest("peak_height")
    assert excinfo.value.setting == "parameter_of_interest"


def test_map_only_poi_rejected_for_mlem():
    assert resolve_parameter_of_interest("total_energy_correction", "map").name == "total_energy_correction"
    with pytest.raises(ConfigurationError):
        resolve_parameter_of_interest("total_energy_correction", "mlem")


def test_missing_required_input():
    with pytest.raises(ConfigurationError):
        resolve_parameter_of_interest("rms", "mlem", available=["icrp_factors"])
    poi = resolve_parameter_of_interest("RMS", "mlem", available=["reference_spectrum"])
    assert poi.name == "rms"


def test_derivatives_reject_column_vectors():
    with pytest.raises(DimensionError):
        derivatives([[1.0], [2.0], [4.0]], [10, 20, 40])
    with pytest.raises(DimensionError):
        derivatives([1.0, 2.0, 4.0], [[10], [20], [40]])
