import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular
from scipy.sparse import csr_matrix
from sklearn.neighbors import NearestNeighbors
from sklearn.utils import check_random_state
from tqdm import tqdm
import logging

from hmsc_latent.exceptions import (
    InvalidModeError, ConfigurationError, NumericalInstabilityError
)
from hmsc_latent.random_level import SpatialMethod
from hmsc_latent.utils import (
    kernel, pairwise_distances, chol_lower, chol_solve, clamp_variance, VARIANCE_TOLERANCE
)

# ==============================================================================
# Gaussian process conditioning
# ==============================================================================

def _coincident_units(D, labels):
    """Labels of units that have a zero distance to some other unit, or all labels if none do."""
    D = np.asarray(D)
    zero = (D <= 0) & ~np.eye(D.shape[0], dtype=bool)
    rows = np.flatnonzero(zero.any(axis=1))
    if labels is None:
        return None
    if rows.size == 0:
        return list(labels)
    return [labels[i] for i in rows]

def _factor_kernel(K, D, labels, what):
    """Cholesky factor of K, reporting units at coincident locations on failure."""
    try:
        return chol_lower(K, what=what)
    except NumericalInstabilityError as e:
        raise NumericalInstabilityError(e.message, units=_coincident_units(D, labels)) from None

def gp_conditional_mean_variance(D11, D12, eta_h, length_scale, compute_variance=True,
                                 units=None, new_units=None):
    """
    Conditional mean and marginal conditional variance of a unit-variance exponential GP
    at new units given its values at old units.

    :param D11: (n_old, n_old) distances between old units
    :param D12: (n_old, n_new) distances between old and new units
    :param eta_h: Values at the old units
    :param length_scale: Positive length scale
    :param compute_variance: Skip the variance (returned as None) when False
    :param units: Old unit labels, for error reporting
    :param new_units: New unit labels, for error reporting
    :return: (m, v)
    """
    K11 = kernel(D11, length_scale)
    K12 = kernel(D12, length_scale)
    L = _factor_kernel(K11, D11, units, "old-unit kernel matrix")
    iLK12 = solve_triangular(L, K12, lower=True)
    m = iLK12.T @ solve_triangular(L, eta_h, lower=True)
    if not compute_variance:
        return m, None
    v = clamp_variance(1 - np.sum(iLK12**2, axis=0), units=new_units)
    return m, v

def full_conditional(D, n_old, eta_h, length_scale, units=None):
    """
    Exact conditional distribution of the new units given the old ones.

    :param D: Distances over the old units followed by the new units
    :param n_old: Number of old units (leading rows/columns of D)
    :param eta_h: Values at the old units
    :param length_scale: Positive length scale
    :param units: Labels of all units in the order of D, for error reporting
    :return: (m, W) conditional mean and covariance
    """
    K = kernel(D, length_scale)
    K11 = K[:n_old, :n_old]
    K12 = K[:n_old, n_old:]
    K22 = K[n_old:, n_old:]
    old_labels = None if units is None else list(units)[:n_old]
    L = _factor_kernel(K11, D[:n_old, :n_old], old_labels, "old-unit kernel matrix")
    iLK12 = solve_triangular(L, K12, lower=True)
    m = iLK12.T @ solve_triangular(L, eta_h, lower=True)
    W = K22 - iLK12.T @ iLK12
    W = (W + W.T) / 2
    return m, W

def nngp_conditional(neighbour_index, D11_blocks, D12_blocks, n_old, length_scale,
                     units=None, new_units=None):
    """
    Nearest-neighbour approximation of the conditional distribution at new units.

    Each new unit is conditioned only on its own neighbours among the old units.

    :param neighbour_index: (n_new, k) row indices of the neighbours among the old units
    :param D11_blocks: (n_new, k, k) distances among the neighbours of each new unit
    :param D12_blocks: (n_new, k) distances from each new unit to its neighbours
    :param n_old: Number of old units
    :param length_scale: Positive length scale
    :param units: Old unit labels, for error reporting
    :param new_units: New unit labels, for error reporting
    :return: (B, F) sparse (n_new, n_old) weight matrix and conditional variances
    """
    n_new, k = neighbour_index.shape
    K12 = kernel(D12_blocks, length_scale)
    K11 = kernel(D11_blocks, length_scale)
    weights = np.empty_like(K12)
    for i in range(n_new):
        ind = neighbour_index[i]
        labels = None if units is None else [units[j] for j in ind]
        try:
            L = _factor_kernel(K11[i], D11_blocks[i], labels, "neighbour kernel matrix")
        except NumericalInstabilityError as e:
            new_label = i if new_units is None else new_units[i]
            raise NumericalInstabilityError(
                f"{e.message} for new unit {new_label!r}", units=e.units
            ) from None
        weights[i] = chol_solve(L, K12[i])

    rows = np.repeat(np.arange(n_new), k)
    B = csr_matrix((weights.ravel(), (rows, neighbour_index.ravel())), shape=(n_new, n_old))
    F = clamp_variance(1 - np.sum(weights * K12, axis=1), units=new_units)
    return B, F

def gpp_conditional(d_knots, d_old_knot, d_new_knot, length_scale, units=None, new_units=None):
    """
    Gaussian predictive process (knot based) conditional distribution.

    The field is eta = W12 u + nugget with u ~ N(0, Wss^-1) living on the knots.
    Conditioning on the old units gives u | eta ~ N(G eta, FMat^-1) with
    FMat = Wss + W12' diag(1/dD) W12, dD being the nugget variances.

    :param d_knots: (n_knots, n_knots) distances between knots
    :param d_old_knot: (n_old, n_knots) distances from old units to knots
    :param d_new_knot: (n_new, n_knots) distances from new units to knots
    :param length_scale: Positive length scale
    :return: (G, L_F, Wns, dDn) where mu = G @ eta, FMat = L_F @ L_F.T and dDn are the
        nugget variances at the new units
    """
    Wss = kernel(d_knots, length_scale)
    W12 = kernel(d_old_knot, length_scale)
    Wns = kernel(d_new_knot, length_scale)

    L_ss = chol_lower(Wss, what="knot kernel matrix")
    A12 = solve_triangular(L_ss, W12.T, lower=True)
    dD = 1 - np.sum(A12**2, axis=0)
    vanishing = dD <= VARIANCE_TOLERANCE
    if np.any(vanishing):
        offending = None if units is None else [u for u, b in zip(units, vanishing) if b]
        raise NumericalInstabilityError(
            "Predictive process nugget variance vanishes at old unit(s) located on a knot",
            units=offending,
        )
    idDW12 = W12 / dD[:, np.newaxis]
    FMat = Wss + W12.T @ idDW12
    FMat = (FMat + FMat.T) / 2
    L_F = chol_lower(FMat, what="knot-space precision matrix")
    G = chol_solve(L_F, idDW12.T)

    Ans = solve_triangular(L_ss, Wns.T, lower=True)
    dDn = clamp_variance(1 - np.sum(Ans**2, axis=0), units=new_units)
    return G, L_F, Wns, dDn

# ==============================================================================
# Per-call strategies. prepare_* runs once per call, sample_* once per draw and factor.
# ==============================================================================

def _prepare_conditional(rL, units, new_units, predict_mean):
    return {
        'D11': rL.distances(units),
        'D12': rL.distances(units, new_units),
        'units': units,
        'new_units': new_units,
        'predict_mean': predict_mean,
    }

def _sample_conditional(geom, eta_h, length_scale, rng):
    m, v = gp_conditional_mean_variance(
        geom['D11'], geom['D12'], eta_h, length_scale,
        compute_variance=not geom['predict_mean'],
        units=geom['units'], new_units=geom['new_units'],
    )
    if geom['predict_mean']:
        return m
    return m + np.sqrt(v) * rng.standard_normal(len(m))

def _prepare_full(rL, units, new_units):
    units_all = list(units) + list(new_units)
    return {'D': rL.distances(units_all), 'n_old': len(units), 'units_all': units_all,
            'new_units': new_units}

def _sample_full(geom, eta_h, length_scale, rng):
    m, W = full_conditional(geom['D'], geom['n_old'], eta_h, length_scale, units=geom['units_all'])
    n_old = geom['n_old']
    L = _factor_kernel(W, geom['D'][n_old:, n_old:], geom['new_units'],
                       "conditional covariance of the new units")
    return m + L @ rng.standard_normal(len(m))

def _prepare_nngp(rL, units, new_units):
    logger = logging.getLogger(__name__)

    if len(units) == 0:
        # Nothing to condition on: every new unit keeps its N(0, 1) prior
        if rL.has_coordinates:
            rL.coordinates(new_units)
        else:
            rL.distances(new_units)
        logger.warning("No old units to condition on; NNGP draws come from the prior")
        return {'n_old': 0, 'units': units, 'new_units': new_units}

    k = rL.n_neighbours
    if k > len(units):
        logger.warning(f"n_neighbours={k} exceeds the {len(units)} old units; using {len(units)}")
        k = len(units)

    if rL.has_coordinates:
        s_old = rL.coordinates(units)
        s_new = rL.coordinates(new_units)
        nbrs = NearestNeighbors(n_neighbors=k).fit(s_old)
        dist12, ind = nbrs.kneighbors(s_new)
        D11_blocks = np.stack([pairwise_distances(s_old[i]) for i in ind])
    else:
        D_old = rL.distances(units)
        D_new_old = rL.distances(new_units, units)
        nbrs = NearestNeighbors(n_neighbors=k, metric='precomputed').fit(D_old)
        dist12, ind = nbrs.kneighbors(D_new_old)
        D11_blocks = np.stack([D_old[np.ix_(i, i)] for i in ind])
    logger.debug(f"NNGP neighbour search done: {len(new_units)} new units, k={k}")

    return {'neighbour_index': ind, 'D11_blocks': D11_blocks, 'D12_blocks': dist12,
            'n_old': len(units), 'units': units, 'new_units': new_units, 'cache': {}}

def _sample_nngp(geom, eta_h, length_scale, rng):
    if geom['n_old'] == 0:
        return rng.standard_normal(len(geom['new_units']))
    # B and F only depend on the length scale, which takes few distinct values across draws
    if length_scale not in geom['cache']:
        geom['cache'][length_scale] = nngp_conditional(
            geom['neighbour_index'], geom['D11_blocks'], geom['D12_blocks'], geom['n_old'],
            length_scale, units=geom['units'], new_units=geom['new_units'],
        )
    B, F = geom['cache'][length_scale]
    return B @ eta_h + np.sqrt(F) * rng.standard_normal(B.shape[0])

def _prepare_gpp(rL, units, new_units):
    s_knot = rL.s_knot
    return {
        'd_knots': pairwise_distances(s_knot),
        'd_old_knot': pairwise_distances(rL.coordinates(units), s_knot),
        'd_new_knot': pairwise_distances(rL.coordinates(new_units), s_knot),
        'units': units, 'new_units': new_units, 'cache': {},
    }

def _sample_gpp(geom, eta_h, length_scale, rng):
    if length_scale not in geom['cache']:
        geom['cache'][length_scale] = gpp_conditional(
            geom['d_knots'], geom['d_old_knot'], geom['d_new_knot'], length_scale,
            units=geom['units'], new_units=geom['new_units'],
        )
    G, L_F, Wns, dDn = geom['cache'][length_scale]
    u = G @ eta_h + solve_triangular(L_F.T, rng.standard_normal(L_F.shape[0]), lower=False)
    return Wns @ u + np.sqrt(dDn) * rng.standard_normal(Wns.shape[0])

_JOINT_STRATEGIES = {
    SpatialMethod.FULL: (_prepare_full, _sample_full),
    SpatialMethod.NNGP: (_prepare_nngp, _sample_nngp),
    SpatialMethod.GPP: (_prepare_gpp, _sample_gpp),
}

# ==============================================================================
# Prediction
# ==============================================================================

def _mode_name(predict_mean, predict_mean_field):
    if predict_mean:
        return "mean"
    if predict_mean_field:
        return "mean-field"
    return "joint"

def predict_latent_factor(units_pred, units, post_eta, post_alpha, rL, predict_mean=False,
                          predict_mean_field=False, random_state=None, print_progress=False):
    """
    Draw samples from the conditional predictive distribution of latent factors.

    :param units_pred: Units for which predictions are made
    :param units: Units conditioned on; units[i] is row i of every post_eta matrix
    :param post_eta: List of (len(units), n_factors) posterior draws of the latent factors
    :param post_alpha: List of range parameter indices (rows of rL.alphapw), one array
        of length n_factors per draw. Not used by non-spatial levels and may be None there.
    :param rL: RandomLevel describing the structure of the level
    :param predict_mean: Return the mean of the predictive distribution
    :param predict_mean_field: Sample the mean-field (independent marginals) distribution
    :param random_state: Seed, RandomState or None
    :param print_progress: Show a progress bar over the draws
    :return: List of len(post_eta) DataFrames indexed by units_pred, one column per factor.
        Units present in `units` are copied from post_eta; the others are sampled.

    The joint sample with the 'Full' method scales cubically in the number of new units.
    Both predict_mean and predict_mean_field make it linear in the new units, and
    predict_mean_field keeps the marginal uncertainty while neglecting the dependence
    between the predicted units.
    """
    logger = logging.getLogger(__name__)

    if predict_mean and predict_mean_field:
        raise InvalidModeError("predict_mean and predict_mean_field cannot both be True")

    units = list(units)
    units_pred = list(units_pred)
    row_of = {}
    for i, u in enumerate(units):
        if u in row_of:
            raise ConfigurationError(f"Unit {u!r} appears more than once among the conditioned units")
        row_of[u] = i

    predN = len(post_eta)
    if rL.is_spatial:
        if post_alpha is None or len(post_alpha) != predN:
            raise ConfigurationError(
                f"post_alpha must have one entry per draw ({predN}), "
                f"got {None if post_alpha is None else len(post_alpha)}"
            )

    ind_old = np.array([u in row_of for u in units_pred], dtype=bool)
    ind_new = ~ind_old
    rows_old = np.array([row_of[u] for u, old in zip(units_pred, ind_old) if old], dtype=int)
    new_units = [u for u, old in zip(units_pred, ind_old) if not old]
    n = len(units_pred)
    nn = len(new_units)
    mode = _mode_name(predict_mean, predict_mean_field)
    logger.info(
        f"Predicting latent factors at {n} units ({nn} new, {n - nn} copied) "
        f"conditioned on {len(units)} units for {predN} draws with {rL!r}, mode={mode}"
    )

    geom = None
    sample = None
    if nn > 0 and rL.is_spatial:
        if predict_mean or predict_mean_field:
            geom = _prepare_conditional(rL, units, new_units, predict_mean)
            sample = _sample_conditional
        else:
            prepare, sample = _JOINT_STRATEGIES[rL.s_method]
            geom = prepare(rL, units, new_units)

    rng = check_random_state(random_state)
    index = pd.Index(units_pred)

    iterations = range(predN)
    if print_progress:
        iterations = tqdm(iterations, desc="Predicting latent factors")

    post_eta_pred = []
    for pN in iterations:
        eta_in = post_eta[pN]
        columns = eta_in.columns if isinstance(eta_in, pd.DataFrame) else None
        eta = np.asarray(eta_in, dtype=np.float64)
        if eta.ndim != 2 or eta.shape[0] != len(units):
            raise ConfigurationError(
                f"Draw {pN}: post_eta has shape {eta.shape}, expected ({len(units)}, n_factors)"
            )
        nf = eta.shape[1]
        eta_pred = np.empty((n, nf))
        eta_pred[ind_old] = eta[rows_old]

        if nn > 0:
            if not rL.is_spatial:
                if predict_mean:
                    eta_pred[ind_new] = 0
                else:
                    eta_pred[ind_new] = rng.standard_normal((nn, nf))
            else:
                alpha = np.asarray(post_alpha[pN]).ravel()
                if alpha.shape[0] != nf:
                    raise ConfigurationError(
                        f"Draw {pN}: post_alpha has {alpha.shape[0]} entries for {nf} factors"
                    )
                for h in range(nf):
                    try:
                        length_scale = rL.length_scale(alpha[h])
                    except ConfigurationError as e:
                        raise ConfigurationError(f"Draw {pN}, factor {h}: {e}") from e
                    if length_scale > 0:
                        try:
                            eta_pred[ind_new, h] = sample(geom, eta[:, h], length_scale, rng)
                        except NumericalInstabilityError as e:
                            raise e.with_context(draw=pN, factor=h) from e
                    elif predict_mean:
                        eta_pred[ind_new, h] = 0
                    else:
                        eta_pred[ind_new, h] = rng.standard_normal(nn)
                    logger.debug(f"Draw {pN}, factor {h}: length scale {length_scale:.4g}")

        post_eta_pred.append(pd.DataFrame(eta_pred, index=index, columns=columns))

    return post_eta_pred
