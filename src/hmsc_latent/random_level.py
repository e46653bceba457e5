from enum import Enum
import logging

import numpy as np
import pandas as pd

from hmsc_latent.exceptions import ConfigurationError, MissingCoordinateError
from hmsc_latent.utils import (
    nullcheck, pairwise_distances, get_max_distance, default_alphapw,
    DEFAULT_N_NEIGHBOURS, DEFAULT_ALPHA_N
)


class SpatialMethod(Enum):
    """Strategy used when drawing joint samples at new units of a spatial random level."""
    FULL = "Full"
    NNGP = "NNGP"
    GPP = "GPP"

    @classmethod
    def parse(cls, value):
        """Accept a SpatialMethod or its name in any letter case."""
        if isinstance(value, cls):
            return value
        for method in cls:
            if str(value).lower() == method.value.lower():
                return method
        allowed = ", ".join(m.value for m in cls)
        raise ConfigurationError(f"Unknown spatial method {value!r}; expected one of {allowed}")


class RandomLevel:
    """
    Structure of one layer of latent factors.

    Exactly one of s_data, dist_mat and units defines the level:
     - s_data: coordinates of the units (DataFrame indexed by unit, or dict unit -> coordinates)
     - dist_mat: square DataFrame of distances between units, labelled on both axes
     - units: plain unit labels for a level without spatial structure

    :param s_method: 'Full', 'NNGP' or 'GPP', used for joint sampling at new units
    :param n_neighbours: Number of nearest neighbours (NNGP only)
    :param s_knot: Knot coordinates (GPP only)
    :param alphapw: (n_alpha, 2) array of [length scale, prior weight]; rows with a
        length scale <= 0 mean "no spatial correlation"
    :param alpha_n: Grid size of the default alphapw
    """

    def __init__(self, s_data=None, dist_mat=None, units=None, s_method="Full",
                 n_neighbours=None, s_knot=None, alphapw=None, alpha_n=None):
        logger = logging.getLogger(__name__)

        given = [x is not None for x in (s_data, dist_mat, units)]
        if sum(given) != 1:
            raise ConfigurationError("Exactly one of s_data, dist_mat and units must be given")

        self.s_data = None
        self.dist_mat = None
        self.s_method = SpatialMethod.parse(s_method)
        self.n_neighbours = None
        self.s_knot = None
        self.alphapw = None

        if s_data is not None:
            if not isinstance(s_data, pd.DataFrame):
                s_data = pd.DataFrame.from_dict(
                    {k: np.atleast_1d(v) for k, v in dict(s_data).items()}, orient='index'
                )
            if not s_data.index.is_unique:
                raise ConfigurationError("s_data has duplicated unit labels")
            self.s_data = s_data.astype(np.float64)
            self.s_dim = self.s_data.shape[1]
            self.units = list(self.s_data.index)
        elif dist_mat is not None:
            if not isinstance(dist_mat, pd.DataFrame):
                raise ConfigurationError("dist_mat must be a DataFrame labelled by unit on both axes")
            if dist_mat.shape[0] != dist_mat.shape[1] or not dist_mat.index.equals(dist_mat.columns):
                raise ConfigurationError("dist_mat must be square with identical row and column labels")
            if not dist_mat.index.is_unique:
                raise ConfigurationError("dist_mat has duplicated unit labels")
            self.dist_mat = dist_mat.astype(np.float64)
            self.s_dim = np.inf
            self.units = list(self.dist_mat.index)
        else:
            self.s_dim = 0
            self.units = list(units)

        if self.s_dim == 0:
            logger.debug(f"Non-spatial random level with {len(self.units)} units")
            return

        if self.s_method is SpatialMethod.NNGP:
            self.n_neighbours = int(nullcheck(n_neighbours, DEFAULT_N_NEIGHBOURS))
            if self.n_neighbours < 1:
                raise ConfigurationError(f"n_neighbours must be positive, got {n_neighbours}")
        elif self.s_method is SpatialMethod.GPP:
            if self.s_data is None:
                raise ConfigurationError("The GPP method needs coordinates (s_data), not a distance matrix")
            if s_knot is None:
                raise ConfigurationError("The GPP method needs knot coordinates (s_knot)")
            s_knot = np.atleast_2d(np.asarray(s_knot, dtype=np.float64))
            if s_knot.shape[1] != self.s_dim:
                raise ConfigurationError(
                    f"s_knot has {s_knot.shape[1]} columns but the coordinates have {self.s_dim}"
                )
            self.s_knot = s_knot

        if alphapw is None:
            max_dist = get_max_distance(
                s_data=None if self.s_data is None else self.s_data.values,
                dist_mat=None if self.dist_mat is None else self.dist_mat.values,
            )
            alphapw = default_alphapw(max_dist, nullcheck(alpha_n, DEFAULT_ALPHA_N))
        alphapw = np.asarray(alphapw, dtype=np.float64)
        if alphapw.ndim == 1:
            # Length scales only, flat prior weights
            alphapw = np.column_stack((alphapw, np.full(alphapw.shape[0], 1.0 / alphapw.shape[0])))
        if alphapw.ndim != 2 or alphapw.shape[1] != 2:
            raise ConfigurationError("alphapw must have two columns: length scale and prior weight")
        self.alphapw = alphapw
        logger.debug(
            f"Spatial random level: {len(self.units)} units, s_dim={self.s_dim}, "
            f"method={self.s_method.value}, {self.alphapw.shape[0]} range values"
        )

    @property
    def is_spatial(self):
        return self.s_dim > 0

    @property
    def has_coordinates(self):
        return self.s_data is not None

    def length_scale(self, index):
        """Length scale of row `index` of alphapw."""
        index = int(index)
        if not 0 <= index < self.alphapw.shape[0]:
            raise ConfigurationError(
                f"Range parameter index {index} is outside alphapw (0..{self.alphapw.shape[0] - 1})"
            )
        return self.alphapw[index, 0]

    def coordinates(self, units):
        """(len(units), s_dim) array of coordinates, in the order of units."""
        if self.s_data is None:
            raise ConfigurationError("This random level was defined without coordinates")
        rows = self.s_data.index.get_indexer(list(units))
        if np.any(rows < 0):
            raise MissingCoordinateError([u for u, r in zip(units, rows) if r < 0], source='s_data')
        return self.s_data.values[rows]

    def distances(self, units1, units2=None):
        """
        Distances between two sets of units, taken from the coordinates or the distance matrix.

        :param units1: Row units
        :param units2: Column units, units1 if None
        """
        if units2 is None:
            units2 = units1
        if self.s_data is not None:
            return pairwise_distances(self.coordinates(units1), self.coordinates(units2))
        if self.dist_mat is None:
            raise ConfigurationError("This random level has no spatial structure")
        rows = self.dist_mat.index.get_indexer(list(units1))
        cols = self.dist_mat.index.get_indexer(list(units2))
        missing = [u for u, r in zip(units1, rows) if r < 0] + [u for u, c in zip(units2, cols) if c < 0]
        if missing:
            raise MissingCoordinateError(list(dict.fromkeys(missing)), source='dist_mat')
        return self.dist_mat.values[np.ix_(rows, cols)]

    def __repr__(self):
        if not self.is_spatial:
            return f"RandomLevel(units={len(self.units)}, non-spatial)"
        return f"RandomLevel(units={len(self.units)}, s_dim={self.s_dim}, s_method={self.s_method.value!r})"
