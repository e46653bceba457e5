import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular
from scipy.spatial.distance import cdist
import logging

from hmsc_latent.exceptions import ConfigurationError, NumericalInstabilityError

# Conditional variances in [-VARIANCE_TOLERANCE, 0) are rounding error and get clamped to 0
VARIANCE_TOLERANCE = 1e-8
DEFAULT_N_NEIGHBOURS = 10
DEFAULT_ALPHA_N = 100

# ==============================================================================
# Helpers
# ==============================================================================

def nullcheck(value, default):
    """
    Returns default if value is null

    :param value: Nullable
    :param default: Default value
    """
    if value is None:
        return default
    return value

# ==============================================================================
# Distances and kernels
# ==============================================================================

def kernel(dist, ls):
    """
    Create the exponential kernel matrix e^(-dist / ls).
    Assumes dist holds plain (not squared) distances.

    :param dist: Distance matrix (or array of distances)
    :param ls: length scale, must be positive
    """
    return np.exp(-np.asarray(dist, dtype=np.float64) / ls)

def pairwise_distances(s1, s2=None):
    """
    Euclidean distances between the rows of s1 and the rows of s2 (s1 with itself if s2 is None).

    :param s1: (n1, d) coordinates
    :param s2: (n2, d) coordinates or None
    :return: (n1, n2) distance matrix
    """
    s1 = np.atleast_2d(np.asarray(s1, dtype=np.float64))
    if s2 is None:
        return cdist(s1, s1, 'euclidean')
    s2 = np.atleast_2d(np.asarray(s2, dtype=np.float64))
    return cdist(s1, s2, 'euclidean')

def get_max_distance(s_data=None, dist_mat=None, name="random level"):
    """
    Largest distance between any two units, the upper end of the default range-parameter grid.

    Args:
        s_data (np.ndarray): The unit coordinates (n_units, s_dim), or None.
        dist_mat (np.ndarray): A precomputed (n_units, n_units) distance matrix, or None.
        name (str): A name for logging purposes.

    Returns:
        float: The maximum pairwise distance.
    """
    if dist_mat is not None:
        max_dist = float(np.max(dist_mat))
    else:
        max_dist = float(pairwise_distances(s_data).max())
    logging.info(f"Determined max distance for {name}: {max_dist:.4f}")
    return max_dist

def default_alphapw(max_dist, alpha_n=DEFAULT_ALPHA_N):
    """
    Default discrete support of the range parameter: alpha_n + 1 equally spaced
    length scales from 0 to max_dist, with half of the prior mass on 0
    (no spatial correlation) and the rest spread uniformly.

    :param max_dist: Largest distance between units
    :param alpha_n: Number of non-zero grid points
    :return: (alpha_n + 1, 2) array of [length scale, prior weight]
    """
    if alpha_n < 1:
        raise ConfigurationError(f"alpha_n must be a positive integer, got {alpha_n}")
    values = max_dist * np.arange(alpha_n + 1) / alpha_n
    weights = np.concatenate(([0.5], np.full(alpha_n, 0.5 / alpha_n)))
    return np.column_stack((values, weights))

# ==============================================================================
# Linear algebra
# ==============================================================================

def chol_lower(K, units=None, what="kernel matrix"):
    """
    Lower Cholesky factor of a symmetric positive definite matrix.

    :param K: Matrix to factorize
    :param units: Unit labels the rows of K belong to, reported on failure
    :param what: Description of K for the error message
    :raises NumericalInstabilityError: if K is not numerically positive definite
    """
    try:
        return np.linalg.cholesky(K)
    except np.linalg.LinAlgError:
        raise NumericalInstabilityError(
            f"Cholesky factorization of the {what} failed; it is not positive definite "
            f"(duplicate coordinates?)",
            units=units,
        ) from None

def chol_solve(L, b):
    """
    Solve (L @ L.T) x = b given the lower Cholesky factor L.

    :param L: Lower triangular factor
    :param b: Right hand side, vector or matrix
    """
    y = solve_triangular(L, b, lower=True)
    return solve_triangular(L.T, y, lower=False)

def clamp_variance(v, units=None, tolerance=VARIANCE_TOLERANCE):
    """
    Clamp conditional variances that are negative by rounding error to zero.

    :param v: Array of variances
    :param units: Unit labels matching v, reported on failure
    :param tolerance: Largest negative magnitude accepted as rounding error
    :raises NumericalInstabilityError: if any variance is below -tolerance
    """
    v = np.asarray(v, dtype=np.float64)
    bad = v < -tolerance
    if np.any(bad):
        offending = None if units is None else [u for u, b in zip(units, bad) if b]
        raise NumericalInstabilityError(
            f"Conditional variance is negative (min {v.min():.3e})", units=offending
        )
    return np.maximum(v, 0.0)

# ==============================================================================
# Knots for the predictive process
# ==============================================================================

def construct_knots(s_data, n_knots=None, knot_dist=None, min_knot_dist=None):
    """
    Build a regular grid of knots covering two-dimensional unit coordinates.

    The grid spacing is knot_dist, or the shorter side of the bounding box divided by
    n_knots. Grid points farther than min_knot_dist from every unit are dropped.

    :param s_data: (n_units, 2) coordinates, array or DataFrame
    :param n_knots: Number of knots along the shorter side of the bounding box (default 10)
    :param knot_dist: Distance between neighbouring knots
    :param min_knot_dist: Knots farther than this from all units are dropped (default 2 * knot_dist)
    :return: (n_kept, 2) knot coordinates, a DataFrame when s_data is one
    """
    logger = logging.getLogger(__name__)

    coords = np.asarray(s_data, dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise ConfigurationError("construct_knots is only implemented for two-dimensional coordinates")
    if n_knots is not None and knot_dist is not None:
        raise ConfigurationError("Give either n_knots or knot_dist, not both")
    if knot_dist is None:
        n_knots = nullcheck(n_knots, 10)
        spans = coords.max(axis=0) - coords.min(axis=0)
        knot_dist = spans.min() / n_knots
    if knot_dist <= 0:
        raise ConfigurationError(f"knot_dist must be positive, got {knot_dist}")
    min_knot_dist = nullcheck(min_knot_dist, 2 * knot_dist)

    lo, hi = coords.min(axis=0), coords.max(axis=0)
    # Small slack so that the upper corner is on the grid when the span is a multiple of knot_dist
    xx = np.arange(lo[0], hi[0] + 1e-9 * knot_dist, knot_dist)
    yy = np.arange(lo[1], hi[1] + 1e-9 * knot_dist, knot_dist)
    grid = np.column_stack([g.ravel() for g in np.meshgrid(xx, yy, indexing='xy')])

    dist_to_units = pairwise_distances(grid, coords).min(axis=1)
    knots = grid[dist_to_units < min_knot_dist]
    logger.info(f"Constructed {knots.shape[0]} knots (spacing {knot_dist:.4f}) from a grid of {grid.shape[0]}")

    if isinstance(s_data, pd.DataFrame):
        return pd.DataFrame(knots, columns=s_data.columns)
    return knots

# ==============================================================================
# Post-processing of predicted draws
# ==============================================================================

def stack_draws(post_eta_pred):
    """
    Stack a list of per-draw latent factor matrices into one array.

    :param post_eta_pred: List of (n_units, n_factors) DataFrames or arrays
    :return: (n_draws, n_units, n_factors) array
    """
    if len(post_eta_pred) == 0:
        raise ConfigurationError("No draws to stack")
    return np.stack([np.asarray(eta, dtype=np.float64) for eta in post_eta_pred])

def summarize_draws(post_eta_pred, quantiles=(0.025, 0.5, 0.975)):
    """
    Posterior summary of predicted latent factors.

    Args:
        post_eta_pred (list): Output of predict_latent_factor, one DataFrame per draw.
        quantiles (tuple): Quantile levels to report.

    Returns:
        pd.DataFrame: One row per (unit, factor) with mean, sd and the requested quantiles.
    """
    samples = stack_draws(post_eta_pred)
    first = post_eta_pred[0]
    if isinstance(first, pd.DataFrame):
        units, factors = list(first.index), list(first.columns)
    else:
        units, factors = list(range(samples.shape[1])), list(range(samples.shape[2]))

    summary = {
        'unit': [u for u in units for _ in factors],
        'factor': [f for _ in units for f in factors],
        'mean': samples.mean(axis=0).ravel(),
        'sd': samples.std(axis=0).ravel(),
    }
    qs = np.quantile(samples, quantiles, axis=0)
    for q, values in zip(quantiles, qs):
        summary[f"q{q:g}"] = values.ravel()
    return pd.DataFrame(summary)
