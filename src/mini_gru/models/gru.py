"""A stacked GRU unrolled over a fixed number of timesteps, trained by manual BPTT."""

import logging
from typing import Any, Optional

import torch
import torch.nn as nn

from mini_gru.config import GRUCellConfig, infer_input_dims
from mini_gru.errors import ConfigurationError, ShapeMismatchError
from mini_gru.layers.grucell import GRUCell
from mini_gru.layers.parameters import GRUParameters
from mini_gru.layers.state_ring import StateRing
from mini_gru.layers.sweep import GradientSweep

logger = logging.getLogger(__name__)


class UnrolledGRU(nn.Module):
    """Drives one GRU cell per (layer, timestep) over tied weights.

    Unlike an autograd model, ``forward`` runs without building a graph and
    ``backward`` must be called explicitly with the gradient of the loss w.r.t. the
    outputs. It fills the ``.grad`` of every parameter, so a ``torch.optim``
    optimizer can step right after.

    Args:
        input_size: features per time step
        num_layers: number of stacked GRU layers
        batch_size: initial batch size; a different batch in ``forward`` resizes
        seed: seed of the dropout mask generator
        dtype: parameter and buffer dtype
        device: parameter and buffer device; buffers follow ``.to()`` on next forward
        **properties: GRU cell properties, see ``GRUCellConfig``
    """

    def __init__(
        self,
        input_size: int,
        num_layers: int = 1,
        batch_size: int = 1,
        seed: Optional[int] = None,
        dtype: Optional[torch.dtype] = None,
        device: Optional[torch.device] = None,
        **properties: Any,
    ) -> None:
        super().__init__()  # pyright: ignore[reportUnknownMemberType]
        if num_layers < 1:
            raise ConfigurationError(f"num_layers must be >= 1, got {num_layers}")
        try:
            config = GRUCellConfig(**properties)
        except TypeError as e:
            raise ConfigurationError(f"invalid GRU cell property: {e}") from e
        batch_size, input_size = infer_input_dims([(batch_size, input_size)])

        self.config = config
        self.input_size = input_size
        self.hidden_size = config.unit
        self.num_layers = num_layers
        self.batch_size = batch_size

        self.generator: Optional[torch.Generator] = None
        if seed is not None:
            self.generator = torch.Generator(device=device or "cpu").manual_seed(seed)

        layers: list[GRUParameters] = []
        for i in range(num_layers):
            in_size = input_size if i == 0 else config.unit
            layers.append(GRUParameters(in_size, config, dtype=dtype, device=device))
        self.layers = nn.ModuleList(layers)

        self.rings: list[StateRing] = []
        self.cells: list[list[GRUCell]] = []
        self.sweeps: list[GradientSweep] = []
        for params in layers:
            ring = StateRing(
                config.max_timestep, batch_size, config.unit, dtype=dtype, device=device
            )
            self.rings.append(ring)
            self.cells.append(
                [
                    GRUCell(t, config, params, ring, generator=self.generator)
                    for t in range(config.max_timestep)
                ]
            )
            self.sweeps.append(GradientSweep(params, ring))

    def set_batch(self, batch_size: int) -> None:
        """Reallocate every per-timestep buffer for a new batch size."""
        for cells in self.cells:
            for cell in cells:
                cell.set_batch(batch_size)
        if batch_size != self.batch_size:
            logger.debug(f"UnrolledGRU batch size {self.batch_size} -> {batch_size}")
        self.batch_size = batch_size

    def _check_sequence(self, seq: torch.Tensor, width: int, name: str) -> None:
        if seq.dim() != 3:
            raise ShapeMismatchError(
                f"{name} must be (B, T, {width}), got {tuple(seq.shape)}"
            )
        _, T, W = seq.shape
        if T == 0:
            raise ValueError("UnrolledGRU received a sequence with T=0.")
        if T != self.config.max_timestep or W != width:
            raise ShapeMismatchError(
                f"{name} must have shape (B, {self.config.max_timestep}, {width}), "
                f"got {tuple(seq.shape)}"
            )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Forward pass through all layers and timesteps.

        Args:
            x: input sequence, shape (B, T, input_size) with T == max_timestep

        Returns:
            Y: hidden states of the top layer, shape (B, T, hidden_size)
        """
        self._check_sequence(x, self.input_size, "x")
        B, T, _ = x.shape
        if B != self.batch_size:
            self.set_batch(B)

        Y = x.new_empty(B, T, self.hidden_size)
        for t in range(T):
            inp = x[:, t, :]
            for cells in self.cells:
                inp = cells[t].forward(inp, training=self.training)
            Y[:, t, :] = inp
        return Y

    def backward(self, dY: torch.Tensor) -> torch.Tensor:
        """Backpropagate through time, filling the parameter gradients.

        Args:
            dY: gradient of the loss w.r.t. the outputs, shape (B, T, hidden_size)

        Returns:
            dX: gradient of the loss w.r.t. the inputs, shape (B, T, input_size)
        """
        self._check_sequence(dY, self.hidden_size, "dY")
        B, T, _ = dY.shape
        if B != self.batch_size:
            raise ShapeMismatchError(
                f"dY batch {B} does not match forward batch {self.batch_size}"
            )

        dX = dY.new_empty(B, T, self.input_size)
        for t in reversed(range(T)):
            grad = dY[:, t, :]
            for l_idx in reversed(range(self.num_layers)):
                grad = self.cells[l_idx][t].backward(grad, self.sweeps[l_idx])
            dX[:, t, :] = grad
        return dX

    def final_hidden_state(self) -> torch.Tensor:
        """Last hidden state of every layer, shape (num_layers, B, hidden_size)."""
        T = self.config.max_timestep
        return torch.stack([ring.slot(T - 1).clone() for ring in self.rings])
