class HmscLatentError(Exception):
    """Base class for all errors raised by hmsc_latent."""


class InvalidModeError(HmscLatentError, ValueError):
    """predict_mean and predict_mean_field were requested together."""


class ConfigurationError(HmscLatentError, ValueError):
    """Inconsistent random level or posterior draw inputs."""


class MissingCoordinateError(HmscLatentError, KeyError):
    """
    A unit needed for spatial conditioning has no coordinates or distance-matrix row.

    :param units: The offending unit labels
    :param source: Where the lookup was made ('s_data', 'dist_mat', ...)
    """

    def __init__(self, units, source="s_data"):
        self.units = list(units)
        self.source = source
        super().__init__(units)

    def __str__(self):
        shown = ", ".join(repr(u) for u in self.units[:10])
        if len(self.units) > 10:
            shown += f", ... ({len(self.units)} in total)"
        return f"No entry in {self.source} for unit(s): {shown}"


class NumericalInstabilityError(HmscLatentError, ArithmeticError):
    """
    A Cholesky factorization or solve failed, or a conditional variance came out negative.

    The draw index, factor index and offending units are attached when known so
    that the caller can decide whether to retry with jitter or give up.
    """

    def __init__(self, message, draw=None, factor=None, units=None):
        self.message = message
        self.draw = draw
        self.factor = factor
        self.units = None if units is None else list(units)
        super().__init__(message)

    def with_context(self, draw=None, factor=None):
        """Return a copy of this error with the draw and/or factor index filled in."""
        return NumericalInstabilityError(
            self.message,
            draw=self.draw if draw is None else draw,
            factor=self.factor if factor is None else factor,
            units=self.units,
        )

    def __str__(self):
        parts = []
        if self.draw is not None:
            parts.append(f"draw {self.draw}")
        if self.factor is not None:
            parts.append(f"factor {self.factor}")
        if self.units:
            shown = ", ".join(repr(u) for u in self.units[:10])
            if len(self.units) > 10:
                shown += ", ..."
            parts.append(f"units [{shown}]")
        if not parts:
            return self.message
        return f"{self.message} ({'; '.join(parts)})"
