"""Per-timestep hidden state storage of one unrolled GRU sequence."""

import logging
from typing import Optional

import torch

logger = logging.getLogger(__name__)


class StateRing:
    """Hidden states ``H[0..T-1]`` and their gradients ``dH[0..T-1]``.

    Slot ``t`` holds the hidden state produced at timestep ``t``. The state before
    timestep 0 is never stored: ``previous(0)`` synthesizes a zero tensor and
    ``previous_grad(0)`` hands out a scratch tensor that nothing reads back.

    Shapes:
        hidden: (max_timestep, batch, unit)
        grad: (max_timestep, batch, unit)

    Args:
        max_timestep: number of slots, fixed for the ring's lifetime
        batch: batch size
        unit: hidden state width
    """

    def __init__(
        self,
        max_timestep: int,
        batch: int,
        unit: int,
        dtype: Optional[torch.dtype] = None,
        device: Optional[torch.device] = None,
    ) -> None:
        self.max_timestep = max_timestep
        self.unit = unit
        self.dtype = dtype
        self.device = device
        self.batch = 0
        self.hidden = torch.empty(0)
        self.grad = torch.empty(0)
        self.resize(batch)

    def resize(self, batch: int) -> None:
        """Reallocate both rings for a new batch size, dropping their contents."""
        if batch < 1:
            raise ValueError(f"batch must be >= 1, got {batch}")
        if batch == self.batch:
            return
        self._allocate(batch)

    def follow(self, like: torch.Tensor) -> None:
        """Move both rings to the dtype and device of ``like``, dropping contents."""
        if self.hidden.dtype == like.dtype and self.hidden.device == like.device:
            return
        self.dtype, self.device = like.dtype, like.device
        self._allocate(self.batch)

    def _allocate(self, batch: int) -> None:
        shape = (self.max_timestep, batch, self.unit)
        self.hidden = torch.zeros(shape, dtype=self.dtype, device=self.device)
        self.grad = torch.zeros(shape, dtype=self.dtype, device=self.device)
        self.batch = batch
        logger.debug(f"Allocated state ring of shape {shape} ({self.hidden.dtype})")

    def _check(self, timestep: int) -> None:
        if not 0 <= timestep < self.max_timestep:
            raise IndexError(
                f"timestep {timestep} out of range [0, {self.max_timestep})"
            )

    def slot(self, timestep: int) -> torch.Tensor:
        """View of ``H[timestep]``, shape (batch, unit)."""
        self._check(timestep)
        return self.hidden[timestep]

    def grad_slot(self, timestep: int) -> torch.Tensor:
        """View of ``dH[timestep]``, shape (batch, unit)."""
        self._check(timestep)
        return self.grad[timestep]

    def previous(self, timestep: int) -> torch.Tensor:
        """Hidden state feeding ``timestep``; zeros for the first timestep."""
        self._check(timestep)
        if timestep == 0:
            return self.hidden.new_zeros(self.batch, self.unit)
        return self.hidden[timestep - 1]

    def previous_grad(self, timestep: int) -> torch.Tensor:
        """Gradient slot receiving the contribution to the previous hidden state."""
        self._check(timestep)
        if timestep == 0:
            return self.grad.new_zeros(self.batch, self.unit)
        return self.grad[timestep - 1]

    def zero_grad(self) -> None:
        self.grad.zero_()
