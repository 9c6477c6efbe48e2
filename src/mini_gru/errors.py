"""Exceptions raised by the GRU cell and its driver."""


class ConfigurationError(ValueError):
    """Invalid cell property or input wiring, raised once at setup."""


class ShapeMismatchError(ValueError):
    """A tensor handed to the cell does not match the configured shape."""


class SweepOrderError(RuntimeError):
    """Backward calls were issued out of the reverse timestep order."""
