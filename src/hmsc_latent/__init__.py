from .core import (
    predict_latent_factor, gp_conditional_mean_variance, full_conditional,
    nngp_conditional, gpp_conditional
)
from .random_level import RandomLevel, SpatialMethod
from .exceptions import (
    HmscLatentError, InvalidModeError, ConfigurationError,
    MissingCoordinateError, NumericalInstabilityError
)
from .utils import construct_knots, default_alphapw, stack_draws, summarize_draws

__all__ = [
    "predict_latent_factor",
    "gp_conditional_mean_variance",
    "full_conditional",
    "nngp_conditional",
    "gpp_conditional",
    "RandomLevel",
    "SpatialMethod",
    "HmscLatentError",
    "InvalidModeError",
    "ConfigurationError",
    "MissingCoordinateError",
    "NumericalInstabilityError",
    "construct_knots",
    "default_alphapw",
    "stack_draws",
    "summarize_draws"
]
