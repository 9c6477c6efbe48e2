"""Configuration surface of the GRU cell."""

import logging
from dataclasses import asdict, dataclass
from typing import Sequence

from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from mini_gru.errors import ConfigurationError
from mini_gru.layers.activations import ActivationType

logger = logging.getLogger(__name__)

# Dropout rates at or below this value disable the mask entirely.
DROPOUT_EPSILON = 1e-3

WEIGHT_INITIALIZERS = ("xavier_uniform", "orthogonal", "zeros", "ones")
BIAS_INITIALIZERS = ("zeros", "ones")


@dataclass
class GRUCellConfig:
    """Properties of a GRU cell, fixed at construction and immutable during a sweep.

    Args:
        unit: hidden state width
        max_timestep: number of timesteps of one unrolled sequence
        hidden_state_activation: activation of the candidate gate
        recurrent_activation: activation of the update and reset gates
        dropout_rate: probability of zeroing an element of the new hidden state
        disable_bias: drop every bias vector
        integrate_bias: use a single ``bias_h`` instead of ``bias_ih`` and ``bias_hh``
        reset_after: apply the reset gate after the hidden-to-hidden projection
        weight_initializer: initializer of ``weight_ih`` and ``weight_hh``
        bias_initializer: initializer of the bias vectors
    """

    unit: int = 1
    max_timestep: int = 1
    hidden_state_activation: str = ActivationType.TANH.value
    recurrent_activation: str = ActivationType.SIGMOID.value
    dropout_rate: float = 0.0
    disable_bias: bool = False
    integrate_bias: bool = False
    reset_after: bool = True
    weight_initializer: str = "xavier_uniform"
    bias_initializer: str = "zeros"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check every property.

        Raises:
            ConfigurationError: on the first invalid value.
        """
        if self.unit < 1:
            raise ConfigurationError(f"unit must be >= 1, got {self.unit}")
        if self.max_timestep < 1:
            raise ConfigurationError(
                f"max_timestep must be >= 1, got {self.max_timestep}"
            )
        for name in ("hidden_state_activation", "recurrent_activation"):
            value = getattr(self, name)
            try:
                ActivationType(value)
            except ValueError:
                allowed = [a.value for a in ActivationType]
                raise ConfigurationError(
                    f"{name} must be one of {allowed}, got {value!r}"
                ) from None
        if not 0.0 <= self.dropout_rate < 1.0:
            raise ConfigurationError(
                f"dropout_rate must be in [0, 1), got {self.dropout_rate}"
            )
        if self.weight_initializer not in WEIGHT_INITIALIZERS:
            raise ConfigurationError(
                f"weight_initializer must be one of {WEIGHT_INITIALIZERS}, "
                f"got {self.weight_initializer!r}"
            )
        if self.bias_initializer not in BIAS_INITIALIZERS:
            raise ConfigurationError(
                f"bias_initializer must be one of {BIAS_INITIALIZERS}, "
                f"got {self.bias_initializer!r}"
            )

    @property
    def use_dropout(self) -> bool:
        return self.dropout_rate > DROPOUT_EPSILON

    @classmethod
    def from_properties(cls, properties: Sequence[str]) -> "GRUCellConfig":
        """Build a config from ``key=value`` property strings.

        Example:
            >>> GRUCellConfig.from_properties(["unit=4", "reset_after=false"])

        Raises:
            ConfigurationError: on malformed strings, unknown keys or bad values.
        """
        for prop in properties:
            key, sep, value = prop.partition("=")
            if not sep or not key.strip() or not value.strip():
                raise ConfigurationError(f"property must be 'key=value', got {prop!r}")
        schema = OmegaConf.structured(cls)
        try:
            merged = OmegaConf.merge(
                schema, OmegaConf.from_dotlist([p.strip() for p in properties])
            )
        except OmegaConfBaseException as e:
            raise ConfigurationError(f"invalid GRU cell property: {e}") from e
        values = OmegaConf.to_container(merged)
        logger.debug("Parsed GRU cell properties: %s", values)
        return cls(**values)

    def to_properties(self) -> list[str]:
        """Export as ``key=value`` strings, the inverse of ``from_properties``."""
        return [
            f"{k}={str(v).lower() if isinstance(v, bool) else v}"
            for k, v in asdict(self).items()
        ]


def infer_input_dims(input_shapes: Sequence[Sequence[int]]) -> tuple[int, int]:
    """Validate the cell's input wiring and return ``(batch, feature_size)``.

    A GRU cell takes exactly one input holding a single timestep: either
    ``(batch, feature_size)`` or ``(batch, 1, 1, feature_size)``.

    Raises:
        ConfigurationError: if there is not exactly one input or it is not a single
            timestep, single channel batched vector.
    """
    if len(input_shapes) != 1:
        raise ConfigurationError(
            f"GRU cell takes only one input, got {len(input_shapes)}"
        )
    shape = tuple(input_shapes[0])
    if len(shape) == 4 and shape[1] == 1 and shape[2] == 1:
        batch, feature_size = shape[0], shape[3]
    elif len(shape) == 2:
        batch, feature_size = shape
    else:
        raise ConfigurationError(
            f"input must be a single time dimension for a GRU cell, got {shape}"
        )
    if batch < 1 or feature_size < 1:
        raise ConfigurationError(f"input dims must be positive, got {shape}")
    return batch, feature_size
