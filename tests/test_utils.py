import numpy as np
import pandas as pd
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from hmsc_latent.utils import (
    kernel, default_alphapw, construct_knots, clamp_variance, summarize_draws, stack_draws,
    chol_lower, chol_solve
)
from hmsc_latent.random_level import RandomLevel, SpatialMethod
from hmsc_latent.exceptions import ConfigurationError, NumericalInstabilityError


def test_kernel_is_exponential():
    D = np.array([[0.0, 1.0], [1.0, 0.0]])
    assert_allclose(kernel(D, 2.0), [[1.0, np.exp(-0.5)], [np.exp(-0.5), 1.0]])


def test_default_alphapw():
    alphapw = default_alphapw(10.0, alpha_n=100)
    assert alphapw.shape == (101, 2)
    assert alphapw[0, 0] == 0.0
    assert alphapw[-1, 0] == pytest.approx(10.0)
    assert alphapw[0, 1] == 0.5
    assert alphapw[:, 1].sum() == pytest.approx(1.0)


def test_random_level_default_alphapw_spans_max_distance():
    s_data = pd.DataFrame([[0.0, 0.0], [3.0, 4.0], [1.0, 1.0]], index=["a", "b", "c"])
    rL = RandomLevel(s_data=s_data, alpha_n=10)
    assert rL.alphapw.shape == (11, 2)
    assert rL.alphapw[-1, 0] == pytest.approx(5.0)
    assert rL.s_dim == 2


def test_random_level_from_mapping():
    rL = RandomLevel(s_data={"a": (0.0, 1.0), "b": (2.0, 3.0)}, alphapw=[0.0, 1.0])
    assert rL.units == ["a", "b"]
    assert_array_equal(rL.coordinates(["b"]), [[2.0, 3.0]])
    # A plain vector of length scales gets flat weights
    assert_allclose(rL.alphapw, [[0.0, 0.5], [1.0, 0.5]])


def test_nonspatial_level():
    rL = RandomLevel(units=["x", "y"])
    assert rL.s_dim == 0
    assert not rL.is_spatial
    assert rL.alphapw is None


def test_spatial_method_parsing():
    assert SpatialMethod.parse("nngp") is SpatialMethod.NNGP
    assert SpatialMethod.parse("Full") is SpatialMethod.FULL
    assert SpatialMethod.parse(SpatialMethod.GPP) is SpatialMethod.GPP
    with pytest.raises(ConfigurationError):
        SpatialMethod.parse("exact")


def test_construct_knots_regular_grid():
    corners = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0], [10.0, 10.0]])
    knots = construct_knots(corners, n_knots=5)
    # spacing 2 gives a 6 x 6 grid; the centre (5, 5) is ~7.07 from every corner, farther than 2 * 2
    assert knots.shape[1] == 2
    assert np.all(np.isclose(knots % 2.0, 0.0) | np.isclose(knots % 2.0, 2.0))
    assert not np.any(np.all(np.isclose(knots, [6.0, 6.0]), axis=1))
    assert np.any(np.all(np.isclose(knots, [0.0, 0.0]), axis=1))


def test_construct_knots_keeps_all_knots_near_dense_data():
    rng = np.random.RandomState(0)
    s_data = pd.DataFrame(rng.uniform(0, 1, size=(400, 2)), columns=['lon', 'lat'])
    knots = construct_knots(s_data, knot_dist=0.25, min_knot_dist=1.0)
    assert list(knots.columns) == ['lon', 'lat']
    assert len(knots) >= 9


def test_construct_knots_argument_checks():
    with pytest.raises(ConfigurationError):
        construct_knots(np.zeros((3, 2)) + np.arange(3)[:, None], n_knots=2, knot_dist=1.0)
    with pytest.raises(ConfigurationError):
        construct_knots(np.zeros((3, 3)))


def test_clamp_variance():
    assert_array_equal(clamp_variance([0.5, -1e-12, 0.0]), [0.5, 0.0, 0.0])
    with pytest.raises(NumericalInstabilityError) as excinfo:
        clamp_variance([0.5, -0.1], units=["a", "b"])
    assert excinfo.value.units == ["b"]


def test_chol_solve_and_failure():
    A = np.array([[4.0, 1.0], [1.0, 3.0]])
    L = chol_lower(A)
    assert_allclose(chol_solve(L, np.array([1.0, 2.0])), np.linalg.solve(A, [1.0, 2.0]))
    with pytest.raises(NumericalInstabilityError):
        chol_lower(np.array([[1.0, 2.0], [2.0, 1.0]]))


def test_summarize_draws():
    index = pd.Index(["a", "b"])
    draws = [pd.DataFrame([[1.0, 2.0], [3.0, 4.0]], index=index),
             pd.DataFrame([[3.0, 2.0], [5.0, 4.0]], index=index)]
    assert stack_draws(draws).shape == (2, 2, 2)

    summary = summarize_draws(draws, quantiles=(0.5,))
    assert list(summary.columns) == ['unit', 'factor', 'mean', 'sd', 'q0.5']
    row = summary[(summary.unit == "a") & (summary.factor == 0)].iloc[0]
    assert row['mean'] == pytest.approx(2.0)
    assert row['sd'] == pytest.approx(1.0)
    assert summary[(summary.unit == "b") & (summary.factor == 1)].iloc[0]['sd'] == 0.0
