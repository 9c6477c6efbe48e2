"""Reverse-order gradient accumulation over one unrolled sequence."""

import logging
from typing import Optional

import torch

from mini_gru.errors import SweepOrderError
from mini_gru.layers.parameters import GRUParameters
from mini_gru.layers.state_ring import StateRing

logger = logging.getLogger(__name__)


class GradientSweep:
    """Owns the zero-once discipline of backpropagation through time.

    The backward pass visits timesteps ``T-1, T-2, ..., 0``. Entering the last
    timestep zeroes the parameter gradients and the hidden state gradient ring;
    every later timestep accumulates into them. ``enter`` must be called by each
    cell before it writes any gradient.

    Args:
        params: tied parameters whose ``.grad`` tensors are accumulated
        ring: hidden state ring of the sequence
    """

    def __init__(self, params: GRUParameters, ring: StateRing) -> None:
        self.params = params
        self.ring = ring
        self._next: Optional[int] = None

    @property
    def started(self) -> bool:
        return self._next is not None

    @property
    def finished(self) -> bool:
        return self._next == -1

    def enter(self, timestep: int) -> None:
        """Register the backward call of ``timestep``.

        Raises:
            SweepOrderError: if ``timestep`` is not the next one in reverse order.
        """
        last = self.ring.max_timestep - 1
        if timestep == last:
            self.params.zero_grad_accumulators()
            self.ring.zero_grad()
            logger.debug(f"Started gradient sweep at timestep {last}")
        elif self._next is None:
            raise SweepOrderError(
                f"gradient sweep must start at timestep {last}, got {timestep}"
            )
        elif timestep != self._next:
            raise SweepOrderError(
                f"expected backward call for timestep {self._next}, got {timestep}"
            )
        self._next = timestep - 1

    def accumulate(
        self, target: torch.Tensor, contribution: torch.Tensor, alpha: float = 1.0
    ) -> None:
        """Add ``alpha * contribution`` into an accumulator or a view of one."""
        if not self.started:
            raise SweepOrderError("accumulate called before the sweep was entered")
        target.add_(contribution, alpha=alpha)

    def grad(self, param: Optional[torch.nn.Parameter]) -> torch.Tensor:
        """Gradient accumulator of a tied parameter."""
        if param is None:
            raise ValueError("parameter is disabled for this cell")
        return self.params.grad(param)
