"""Activations usable for the GRU gates, with derivatives taken at the output."""

from enum import Enum
from typing import Optional, Union

import torch
import torch.nn.functional as F


class ActivationType(str, Enum):
    """Activation kinds a cell can be configured with."""

    TANH = "tanh"
    SIGMOID = "sigmoid"
    RELU = "relu"
    SOFTPLUS = "softplus"
    NONE = "none"


class Activation:
    """An element-wise activation whose derivative is expressed through its output.

    The backward pass only keeps the activated gate values (``ZRG`` is overwritten in
    place during the forward pass), so ``prime`` receives ``y = f(x)`` rather than
    ``x``:

        tanh:     f'(x) = 1 - y^2
        sigmoid:  f'(x) = y (1 - y)
        relu:     f'(x) = 1[y > 0]
        softplus: f'(x) = 1 - exp(-y)
        none:     f'(x) = 1
    """

    def __init__(self, kind: Union[ActivationType, str]) -> None:
        self.kind = ActivationType(kind)

    def __repr__(self) -> str:
        return f"Activation({self.kind.value!r})"

    def run(self, x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Apply the activation, in place when ``out`` is ``x``.

        Args:
            x: pre-activation values
            out: destination tensor, may alias ``x``; a new tensor is returned if None

        Returns:
            The activated tensor (``out`` when given).
        """
        if self.kind is ActivationType.TANH:
            y = torch.tanh(x)
        elif self.kind is ActivationType.SIGMOID:
            y = torch.sigmoid(x)
        elif self.kind is ActivationType.RELU:
            y = torch.relu(x)
        elif self.kind is ActivationType.SOFTPLUS:
            y = F.softplus(x)
        else:
            y = x.clone()
        if out is None:
            return y
        return out.copy_(y)

    def prime(
        self, y: torch.Tensor, grad: torch.Tensor, out: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        """Chain ``grad`` through the activation, given its output ``y``.

        Args:
            y: activation output from the forward pass
            grad: gradient w.r.t. the activation output
            out: destination tensor, may alias ``grad``

        Returns:
            Gradient w.r.t. the activation input.
        """
        if self.kind is ActivationType.TANH:
            d = 1.0 - y * y
        elif self.kind is ActivationType.SIGMOID:
            d = y * (1.0 - y)
        elif self.kind is ActivationType.RELU:
            d = (y > 0).to(grad.dtype)
        elif self.kind is ActivationType.SOFTPLUS:
            d = -torch.expm1(-y)
        else:
            d = torch.ones_like(grad)
        if out is None:
            return d * grad
        return out.copy_(d * grad)
