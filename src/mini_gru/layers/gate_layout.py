"""Packed gate layout shared by the GRU weights and scratch tensors."""

from enum import IntEnum

import torch

from mini_gru.errors import ShapeMismatchError

NUM_GATE = 3


class Gate(IntEnum):
    """Gate position inside a packed ``[Z | R | G]`` buffer."""

    UPDATE = 0  # Z
    RESET = 1  # R
    CANDIDATE = 2  # G


class GateLayout:
    """Maps gates onto contiguous column ranges of packed tensors.

    Every packed tensor (``W_ih``, ``W_hh``, the biases, ``ZRG`` and ``dZRG``) stores
    its gates along the last dimension in the fixed order ``[Z | R | G]``, each block
    exactly ``unit`` columns wide. Views returned here are plain torch slices: they
    share storage with the packed tensor, so in-place ops on a view write through.

    Args:
        unit: width of one gate block
    """

    def __init__(self, unit: int) -> None:
        if unit <= 0:
            raise ValueError(f"unit must be positive, got {unit}")
        self.unit = unit

    @property
    def width(self) -> int:
        """Width of a full packed buffer."""
        return NUM_GATE * self.unit

    def columns(self, first: Gate, count: int = 1) -> slice:
        """Column range covering ``count`` consecutive gates starting at ``first``."""
        if count < 1 or first + count > NUM_GATE:
            raise ValueError(f"cannot take {count} gate(s) starting at {first.name}")
        start = int(first) * self.unit
        return slice(start, start + count * self.unit)

    def view(self, packed: torch.Tensor, first: Gate, count: int = 1) -> torch.Tensor:
        """Non-owning window onto ``count`` gates of ``packed``.

        Raises:
            ShapeMismatchError: if the last dimension of ``packed`` is not ``3 * unit``.
        """
        if packed.shape[-1] != self.width:
            raise ShapeMismatchError(
                f"packed tensor must have last dim {self.width}, "
                f"got {tuple(packed.shape)}"
            )
        return packed[..., self.columns(first, count)]

    def update_reset(self, packed: torch.Tensor) -> torch.Tensor:
        """The ``[Z | R]`` block, ``2 * unit`` wide."""
        return self.view(packed, Gate.UPDATE, 2)

    def update(self, packed: torch.Tensor) -> torch.Tensor:
        return self.view(packed, Gate.UPDATE)

    def reset(self, packed: torch.Tensor) -> torch.Tensor:
        return self.view(packed, Gate.RESET)

    def candidate(self, packed: torch.Tensor) -> torch.Tensor:
        return self.view(packed, Gate.CANDIDATE)
