import numpy as np
import pandas as pd
import pytest

from hmsc_latent.core import predict_latent_factor
from hmsc_latent.random_level import RandomLevel
from hmsc_latent.exceptions import (
    HmscLatentError, ConfigurationError, MissingCoordinateError, NumericalInstabilityError
)

ALPHAPW = np.array([[0.0, 0.5], [1.0, 0.5]])


def line_level(**kwargs):
    s_data = pd.DataFrame({'x': [0.0, 1.0, 2.0, 3.0]}, index=["A", "B", "C", "D"])
    return RandomLevel(s_data=s_data, alphapw=ALPHAPW, **kwargs)


def test_missing_coordinates_name_the_units():
    rL = line_level()
    with pytest.raises(MissingCoordinateError) as excinfo:
        predict_latent_factor(["D", "Z", "Y"], ["A", "B"], [np.zeros((2, 1))], [[1]], rL)
    assert excinfo.value.units == ["Z", "Y"]
    assert "'Z'" in str(excinfo.value)
    assert isinstance(excinfo.value, HmscLatentError)


def test_missing_distance_matrix_row():
    labels = ["A", "B", "C"]
    dist_mat = pd.DataFrame([[0, 1, 2], [1, 0, 1], [2, 1, 0]], index=labels, columns=labels)
    rL = RandomLevel(dist_mat=dist_mat, alphapw=ALPHAPW)
    with pytest.raises(MissingCoordinateError) as excinfo:
        predict_latent_factor(["X"], ["A", "B"], [np.zeros((2, 1))], [[1]], rL, predict_mean=True)
    assert excinfo.value.source == 'dist_mat'
    assert excinfo.value.units == ["X"]


@pytest.mark.parametrize("predict_mean", [False, True])
def test_duplicate_coordinates_are_reported(predict_mean):
    s_data = pd.DataFrame({'x': [0.5, 0.5, 2.0]}, index=["A", "B", "C"])
    rL = RandomLevel(s_data=s_data, alphapw=ALPHAPW)
    post_eta = [np.ones((2, 2))] * 2
    post_alpha = [[0, 0], [0, 1]]

    with pytest.raises(NumericalInstabilityError) as excinfo:
        predict_latent_factor(["C"], ["A", "B"], post_eta, post_alpha, rL, predict_mean=predict_mean)

    err = excinfo.value
    assert err.draw == 1
    assert err.factor == 1
    assert set(err.units) == {"A", "B"}
    assert "draw 1" in str(err) and "factor 1" in str(err)


def test_gpp_knot_on_old_unit_fails():
    s_data = pd.DataFrame([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.6, 0.6]], index=list("abcz"))
    knots = np.array([[0.0, 0.0], [1.0, 1.0]])
    rL = RandomLevel(s_data=s_data, s_method="GPP", s_knot=knots, alphapw=ALPHAPW)
    with pytest.raises(NumericalInstabilityError) as excinfo:
        predict_latent_factor(["z"], ["a", "b", "c"], [np.ones((3, 1))], [[1]], rL, random_state=0)
    assert excinfo.value.units == ["a"]
    assert excinfo.value.draw == 0


def test_unknown_spatial_method():
    with pytest.raises(ConfigurationError):
        line_level(s_method="Kriging")


def test_gpp_needs_knots_and_coordinates():
    with pytest.raises(ConfigurationError):
        line_level(s_method="GPP")
    labels = ["A", "B"]
    dist_mat = pd.DataFrame([[0.0, 1.0], [1.0, 0.0]], index=labels, columns=labels)
    with pytest.raises(ConfigurationError):
        RandomLevel(dist_mat=dist_mat, s_method="GPP", s_knot=[[0.0]])


def test_exactly_one_structure_source():
    with pytest.raises(ConfigurationError):
        RandomLevel()
    with pytest.raises(ConfigurationError):
        RandomLevel(s_data={"a": (0.0, 0.0)}, units=["a"])


def test_post_alpha_must_match_draws():
    rL = line_level()
    with pytest.raises(ConfigurationError):
        predict_latent_factor(["D"], ["A", "B"], [np.zeros((2, 1))] * 2, [[1]], rL)
    with pytest.raises(ConfigurationError):
        predict_latent_factor(["D"], ["A", "B"], [np.zeros((2, 1))], None, rL)


def test_post_alpha_must_cover_factors():
    rL = line_level()
    with pytest.raises(ConfigurationError):
        predict_latent_factor(["D"], ["A", "B"], [np.zeros((2, 2))], [[1]], rL)


def test_range_index_out_of_bounds_names_draw_and_factor():
    rL = line_level()
    post_eta = [np.zeros((2, 2))] * 2
    with pytest.raises(ConfigurationError) as excinfo:
        predict_latent_factor(["D"], ["A", "B"], post_eta, [[1, 1], [1, 7]], rL)
    msg = str(excinfo.value).lower()
    assert "draw 1" in msg
    assert "factor 1" in msg
    assert "index 7" in msg


def test_draw_rows_must_match_units():
    rL = line_level()
    with pytest.raises(ConfigurationError):
        predict_latent_factor(["D"], ["A", "B", "C"], [np.zeros((2, 1))], [[1]], rL)


def test_conditioned_units_must_be_unique():
    rL = line_level()
    with pytest.raises(ConfigurationError):
        predict_latent_factor(["D"], ["A", "A"], [np.zeros((2, 1))], [[1]], rL)


def test_no_new_units_needs_no_geometry():
    """Predicting only at conditioned units copies them, even if other units lack coordinates."""
    rL = line_level()
    eta = np.arange(6, dtype=float).reshape(3, 2)
    out = predict_latent_factor(["C", "A"], ["A", "B", "C"], [eta], [[1, 1]], rL)
    assert out[0].loc["C"].tolist() == [4.0, 5.0]
    assert out[0].loc["A"].tolist() == [0.0, 1.0]
