"""Parameter bundle shared by every timestep of one GRU sequence."""

import logging
from enum import Enum
from typing import Optional

import torch
import torch.nn as nn

from mini_gru.config import GRUCellConfig
from mini_gru.layers.gate_layout import GateLayout

logger = logging.getLogger(__name__)


class BiasMode(Enum):
    """How the gates are biased."""

    DISABLED = "disabled"
    INTEGRATED = "integrated"  # bias_h
    SEPARATE = "separate"  # bias_ih, bias_hh

    @classmethod
    def from_config(cls, config: GRUCellConfig) -> "BiasMode":
        if config.disable_bias:
            return cls.DISABLED
        return cls.INTEGRATED if config.integrate_bias else cls.SEPARATE


class GRUParameters(nn.Module):
    """Tied weights, biases and their gradient accumulators.

    One instance is created per logical sequence and handed by reference to every
    timestep cell. The gradient accumulators are the ``.grad`` tensors of the
    parameters, so any ``torch.optim`` optimizer can step them directly once a
    backward sweep has filled them.

    Shapes:
        weight_ih: (feature_size, 3 * unit), columns [Z | R | G]
        weight_hh: (unit, 3 * unit), columns [Z | R | G]
        bias_h | bias_ih, bias_hh: (3 * unit,)

    Args:
        feature_size: input width
        config: cell configuration
        dtype: parameter dtype
        device: parameter device
    """

    def __init__(
        self,
        feature_size: int,
        config: GRUCellConfig,
        dtype: Optional[torch.dtype] = None,
        device: Optional[torch.device] = None,
    ) -> None:
        super().__init__()  # pyright: ignore[reportUnknownMemberType]
        self.feature_size = feature_size
        self.config = config
        self.layout = GateLayout(config.unit)
        self.bias_mode = BiasMode.from_config(config)

        width = self.layout.width
        factory = dict(dtype=dtype, device=device)
        self.weight_ih = nn.Parameter(torch.empty(feature_size, width, **factory))
        self.weight_hh = nn.Parameter(torch.empty(config.unit, width, **factory))

        bias_names = {
            BiasMode.DISABLED: (),
            BiasMode.INTEGRATED: ("bias_h",),
            BiasMode.SEPARATE: ("bias_ih", "bias_hh"),
        }[self.bias_mode]
        for name in ("bias_h", "bias_ih", "bias_hh"):
            bias = None
            if name in bias_names:
                bias = nn.Parameter(torch.empty(width, **factory))
            self.register_parameter(name, bias)

        self.reset_parameters()
        self.zero_grad_accumulators()

    def reset_parameters(self) -> None:
        """Initialize parameters with the configured initializers."""
        for weight in (self.weight_ih, self.weight_hh):
            _init_weight(weight, self.config.weight_initializer)
        for bias in self.biases():
            if self.config.bias_initializer == "ones":
                nn.init.ones_(bias)
            else:
                nn.init.zeros_(bias)

    def biases(self) -> list[nn.Parameter]:
        return [b for b in (self.bias_h, self.bias_ih, self.bias_hh) if b is not None]

    @torch.no_grad()
    def zero_grad_accumulators(self) -> None:
        """Zero the gradient mirrors, allocating any that were released."""
        for p in self.parameters():
            if p.grad is None:
                p.grad = torch.zeros_like(p)
            else:
                p.grad.zero_()
        logger.debug("Zeroed GRU gradient accumulators")

    def grad(self, param: nn.Parameter) -> torch.Tensor:
        """Gradient accumulator of ``param``, allocated on first use."""
        if param.grad is None:
            param.grad = torch.zeros_like(param)
        return param.grad


def _init_weight(weight: nn.Parameter, initializer: str) -> None:
    if initializer == "xavier_uniform":
        nn.init.xavier_uniform_(weight)
    elif initializer == "orthogonal":
        nn.init.orthogonal_(weight)
    elif initializer == "ones":
        nn.init.ones_(weight)
    else:
        nn.init.zeros_(weight)
