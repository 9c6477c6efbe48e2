"""The two ways the reset gate can enter the GRU candidate gate.

reset-after (the default, as in cuDNN and Keras ``reset_after=True``):

    n = act(x W_ih_g + r ⊙ (h_prev W_hh_g + b_hh_g) + b_g)

reset-before (the original GRU formulation):

    n = act(x W_ih_g + (r ⊙ h_prev) W_hh_g + b_hh_g + b_g)

Each variant owns a forward/backward pair so both can be checked in isolation.
The forward adds its hidden-to-hidden contribution into the candidate slice of
``ZRG`` in place; the backward writes the reset gate gradient (before the
activation derivative), adds into the previous hidden state gradient and
accumulates the candidate slices of the weight and bias gradients.
"""

from enum import Enum
from typing import Optional, Union

import torch

from mini_gru.config import GRUCellConfig
from mini_gru.layers.sweep import GradientSweep


class CandidateVariant(Enum):
    RESET_AFTER = "reset_after"
    RESET_BEFORE = "reset_before"

    @classmethod
    def from_config(cls, config: GRUCellConfig) -> "CandidateVariant":
        return cls.RESET_AFTER if config.reset_after else cls.RESET_BEFORE


class ResetAfter:
    """Reset gate applied to the projected previous hidden state."""

    variant = CandidateVariant.RESET_AFTER

    def forward(
        self,
        h_prev: torch.Tensor,
        reset_gate: torch.Tensor,
        memory_cell: torch.Tensor,
        weight: torch.Tensor,
        bias: Optional[torch.Tensor],
    ) -> None:
        memory_cell.add_(self._projection(h_prev, weight, bias).mul_(reset_gate))

    def backward(
        self,
        sweep: GradientSweep,
        h_prev: torch.Tensor,
        reset_gate: torch.Tensor,
        d_memory_cell: torch.Tensor,
        weight: torch.Tensor,
        bias: Optional[torch.Tensor],
        d_reset_gate: torch.Tensor,
        d_prev: torch.Tensor,
        d_weight: torch.Tensor,
        d_bias: Optional[torch.Tensor],
    ) -> None:
        # The projection is recomputed rather than kept from the forward pass.
        d_reset_gate.copy_(d_memory_cell * self._projection(h_prev, weight, bias))

        gated = d_memory_cell * reset_gate
        if d_bias is not None:
            sweep.accumulate(d_bias, gated.sum(0))
        d_prev.add_(gated @ weight.T)
        sweep.accumulate(d_weight, h_prev.T @ gated)

    @staticmethod
    def _projection(
        h_prev: torch.Tensor, weight: torch.Tensor, bias: Optional[torch.Tensor]
    ) -> torch.Tensor:
        temp = h_prev @ weight
        if bias is not None:
            temp.add_(bias)
        return temp


class ResetBefore:
    """Reset gate applied to the previous hidden state before its projection."""

    variant = CandidateVariant.RESET_BEFORE

    def forward(
        self,
        h_prev: torch.Tensor,
        reset_gate: torch.Tensor,
        memory_cell: torch.Tensor,
        weight: torch.Tensor,
        bias: Optional[torch.Tensor],
    ) -> None:
        memory_cell.add_((reset_gate * h_prev) @ weight)
        if bias is not None:
            memory_cell.add_(bias)

    def backward(
        self,
        sweep: GradientSweep,
        h_prev: torch.Tensor,
        reset_gate: torch.Tensor,
        d_memory_cell: torch.Tensor,
        weight: torch.Tensor,
        bias: Optional[torch.Tensor],
        d_reset_gate: torch.Tensor,
        d_prev: torch.Tensor,
        d_weight: torch.Tensor,
        d_bias: Optional[torch.Tensor],
    ) -> None:
        if d_bias is not None:
            sweep.accumulate(d_bias, d_memory_cell.sum(0))

        d_gated_prev = d_memory_cell @ weight.T
        d_reset_gate.copy_(d_gated_prev * h_prev)
        d_prev.add_(d_gated_prev * reset_gate)
        sweep.accumulate(d_weight, (reset_gate * h_prev).T @ d_memory_cell)


CandidatePath = Union[ResetAfter, ResetBefore]

_PATHS: dict[CandidateVariant, type[CandidatePath]] = {
    CandidateVariant.RESET_AFTER: ResetAfter,
    CandidateVariant.RESET_BEFORE: ResetBefore,
}


def make_candidate_path(variant: CandidateVariant) -> CandidatePath:
    """Candidate path implementation for ``variant``."""
    return _PATHS[variant]()
