"""A GRU cell advancing one timestep, with hand-written backpropagation through time.

Forward, per timestep ``t`` (columns of every packed tensor are ``[Z | R | G]``):

    ZRG      = x W_ih
    [Z | R]  = sigmoid(ZRG[:, :2U] + h_prev W_hh[:, :2U] + b[:2U])
    G        = tanh(ZRG[:, 2U:] + candidate(h_prev, R) + b[2U:])
    h        = Z ⊙ h_prev + (1 - Z) ⊙ G

where ``candidate`` is one of the variants in :mod:`mini_gru.layers.candidate`.
"""

import logging
from typing import Optional

import torch

from mini_gru.config import GRUCellConfig
from mini_gru.errors import ShapeMismatchError, SweepOrderError
from mini_gru.layers.activations import Activation
from mini_gru.layers.candidate import CandidateVariant, make_candidate_path
from mini_gru.layers.parameters import BiasMode, GRUParameters
from mini_gru.layers.state_ring import StateRing
from mini_gru.layers.sweep import GradientSweep

logger = logging.getLogger(__name__)


class GRUCell:
    """One timestep position of an unrolled, weight-tied GRU sequence.

    The cell shares its parameters and hidden state ring with every other timestep
    of the same sequence, and owns the gate scratch ``ZRG``, its gradient ``dZRG``
    and the dropout mask of its own timestep.

    Shapes:
        x: (B, feature_size), or (B, 1, 1, feature_size)
        h: (B, unit)
        ZRG, dZRG: (B, 3 * unit)

    Args:
        timestep: position of this cell in the sequence
        config: cell configuration
        params: tied parameters of the sequence
        ring: hidden state ring of the sequence
        generator: random number generator for the dropout mask
    """

    def __init__(
        self,
        timestep: int,
        config: GRUCellConfig,
        params: GRUParameters,
        ring: StateRing,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        if not 0 <= timestep < config.max_timestep:
            raise ValueError(
                f"timestep must be in [0, {config.max_timestep}), got {timestep}"
            )
        if ring.max_timestep != config.max_timestep or ring.unit != config.unit:
            raise ValueError(
                f"state ring ({ring.max_timestep}, {ring.unit}) does not match "
                f"config (max_timestep={config.max_timestep}, unit={config.unit})"
            )
        self.timestep = timestep
        self.config = config
        self.params = params
        self.ring = ring
        self.generator = generator

        self.layout = params.layout
        self.acti_func = Activation(config.hidden_state_activation)
        self.recurrent_acti_func = Activation(config.recurrent_activation)
        self.variant = CandidateVariant.from_config(config)
        self.candidate_path = make_candidate_path(self.variant)

        self.batch = 0
        self.zrg = torch.empty(0)
        self.d_zrg = torch.empty(0)
        self.dropout_mask: Optional[torch.Tensor] = None
        self._mask_applied = False
        self._input: Optional[torch.Tensor] = None
        self.set_batch(ring.batch)

    def set_batch(self, batch: int) -> None:
        """Reallocate the per-timestep buffers for a new batch size.

        The shared ring is resized as well; the fixed ``max_timestep`` capacity is
        kept and no previous content is preserved. Buffers whose dtype or device
        no longer match the parameters (after ``.to()`` or ``.double()``) are
        reallocated even when the batch size is unchanged.
        """
        weight = self.params.weight_ih
        self.ring.resize(batch)
        self.ring.follow(weight)
        if (
            batch == self.batch
            and self.zrg.dtype == weight.dtype
            and self.zrg.device == weight.device
        ):
            return
        factory = dict(dtype=weight.dtype, device=weight.device)
        self.zrg = torch.zeros(batch, self.layout.width, **factory)
        self.d_zrg = torch.zeros(batch, self.layout.width, **factory)
        if self.config.use_dropout:
            self.dropout_mask = torch.ones(batch, self.config.unit, **factory)
        self._mask_applied = False
        self._input = None
        self.batch = batch
        logger.debug(f"GRU cell at timestep {self.timestep} resized to batch {batch}")

    def _check_input(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() == 4 and x.shape[1] == 1 and x.shape[2] == 1:
            x = x.reshape(x.shape[0], x.shape[3])
        expected = (self.batch, self.params.feature_size)
        if tuple(x.shape) != expected:
            raise ShapeMismatchError(
                f"input must have shape {expected}, got {tuple(x.shape)}"
            )
        return x

    def _gate_biases(
        self,
    ) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        """Biases of ``[Z | R]`` (combined) and of the non-recurrent part of ``G``."""
        p, layout = self.params, self.layout
        if p.bias_mode is BiasMode.INTEGRATED:
            return layout.update_reset(p.bias_h), layout.candidate(p.bias_h)
        if p.bias_mode is BiasMode.SEPARATE:
            return (
                layout.update_reset(p.bias_ih) + layout.update_reset(p.bias_hh),
                layout.candidate(p.bias_ih),
            )
        return None, None

    def _candidate_hidden_bias(self) -> Optional[torch.Tensor]:
        if self.params.bias_mode is BiasMode.SEPARATE:
            return self.layout.candidate(self.params.bias_hh)
        return None

    @torch.no_grad()
    def forward(self, x: torch.Tensor, training: bool = False) -> torch.Tensor:
        """Advance the hidden state by one timestep.

        Args:
            x: input at this timestep
            training: sample and apply the dropout mask if dropout is enabled

        Returns:
            A copy of the new hidden state, shape (B, unit). The state itself is
            stored in ring slot ``timestep``.
        """
        self.set_batch(self.batch)
        x = self._check_input(x)
        p, layout = self.params, self.layout
        h_prev = self.ring.previous(self.timestep)
        hidden_state = self.ring.slot(self.timestep)
        zrg = self.zrg

        torch.matmul(x, p.weight_ih, out=zrg)

        update_reset_gate = layout.update_reset(zrg)
        memory_cell = layout.candidate(zrg)

        update_reset_gate.add_(h_prev @ layout.update_reset(p.weight_hh))
        bias_update_reset, bias_memory_cell = self._gate_biases()
        if bias_update_reset is not None:
            update_reset_gate.add_(bias_update_reset)
        self.recurrent_acti_func.run(update_reset_gate, out=update_reset_gate)

        update_gate = layout.update(zrg)
        reset_gate = layout.reset(zrg)

        self.candidate_path.forward(
            h_prev,
            reset_gate,
            memory_cell,
            layout.candidate(p.weight_hh),
            self._candidate_hidden_bias(),
        )
        if bias_memory_cell is not None:
            memory_cell.add_(bias_memory_cell)
        self.acti_func.run(memory_cell, out=memory_cell)

        hidden_state.copy_(update_gate * h_prev + (1.0 - update_gate) * memory_cell)

        self._mask_applied = False
        if self.config.use_dropout and training:
            keep = 1.0 - self.config.dropout_rate
            mask = self.dropout_mask
            mask.bernoulli_(keep, generator=self.generator).div_(keep)
            hidden_state.mul_(mask)
            self._mask_applied = True

        self._input = x
        return hidden_state.clone()

    def _check_incoming(self, incoming: torch.Tensor) -> torch.Tensor:
        if incoming.dim() == 4 and incoming.shape[1] == 1 and incoming.shape[2] == 1:
            incoming = incoming.reshape(incoming.shape[0], incoming.shape[3])
        expected = (self.batch, self.config.unit)
        if tuple(incoming.shape) != expected:
            raise ShapeMismatchError(
                f"incoming derivative must have shape {expected}, "
                f"got {tuple(incoming.shape)}"
            )
        return incoming

    @torch.no_grad()
    def calc_gradient(self, incoming: torch.Tensor, sweep: GradientSweep) -> None:
        """Accumulate parameter gradients and the previous hidden state gradient.

        Args:
            incoming: gradient of the loss w.r.t. this timestep's output
            sweep: the backward sweep this call belongs to

        Raises:
            ShapeMismatchError: if ``incoming`` is not (B, unit); nothing is written.
            SweepOrderError: if called out of reverse timestep order or before
                ``forward``.
        """
        incoming = self._check_incoming(incoming)
        self.set_batch(self.batch)
        if self._input is None:
            raise SweepOrderError(
                f"backward called before forward at timestep {self.timestep}"
            )
        sweep.enter(self.timestep)

        p, layout = self.params, self.layout
        d_hidden_state = self.ring.grad_slot(self.timestep)
        d_hidden_state.add_(incoming)
        if self._mask_applied:
            d_hidden_state = d_hidden_state * self.dropout_mask

        h_prev = self.ring.previous(self.timestep)
        zrg, d_zrg = self.zrg, self.d_zrg
        update_gate = layout.update(zrg)
        reset_gate = layout.reset(zrg)
        memory_cell = layout.candidate(zrg)
        d_update_gate = layout.update(d_zrg)
        d_reset_gate = layout.reset(d_zrg)
        d_memory_cell = layout.candidate(d_zrg)

        d_prev_hidden_state = d_hidden_state * update_gate  # through Z ⊙ h_prev
        d_update_gate.copy_(d_hidden_state * (h_prev - memory_cell))
        d_memory_cell.copy_(d_hidden_state * (1.0 - update_gate))

        self.recurrent_acti_func.prime(update_gate, d_update_gate, out=d_update_gate)
        self.acti_func.prime(memory_cell, d_memory_cell, out=d_memory_cell)

        d_weight_hh = sweep.grad(p.weight_hh)
        d_bias_hh = sweep.grad(p.bias_hh) if p.bias_mode is BiasMode.SEPARATE else None
        self.candidate_path.backward(
            sweep,
            h_prev,
            reset_gate,
            d_memory_cell.contiguous(),
            layout.candidate(p.weight_hh),
            self._candidate_hidden_bias(),
            d_reset_gate,
            d_prev_hidden_state,
            layout.candidate(d_weight_hh),
            layout.candidate(d_bias_hh) if d_bias_hh is not None else None,
        )

        self.recurrent_acti_func.prime(reset_gate, d_reset_gate, out=d_reset_gate)

        d_update_reset_gate = layout.update_reset(d_zrg)
        if p.bias_mode is BiasMode.INTEGRATED:
            sweep.accumulate(sweep.grad(p.bias_h), d_zrg.sum(0))
        elif p.bias_mode is BiasMode.SEPARATE:
            sweep.accumulate(sweep.grad(p.bias_ih), d_zrg.sum(0))
            sweep.accumulate(
                layout.update_reset(d_bias_hh), d_update_reset_gate.sum(0)
            )

        sweep.accumulate(
            layout.update_reset(d_weight_hh), h_prev.T @ d_update_reset_gate
        )
        sweep.accumulate(sweep.grad(p.weight_ih), self._input.T @ d_zrg)

        d_prev_hidden_state.add_(
            d_update_reset_gate @ layout.update_reset(p.weight_hh).T
        )
        self.ring.previous_grad(self.timestep).add_(d_prev_hidden_state)

    @torch.no_grad()
    def calc_derivative(self) -> torch.Tensor:
        """Gradient w.r.t. this timestep's input, from the last ``calc_gradient``."""
        return self.d_zrg @ self.params.weight_ih.T

    def backward(self, incoming: torch.Tensor, sweep: GradientSweep) -> torch.Tensor:
        """Run ``calc_gradient`` then return ``calc_derivative``.

        Returns:
            dx: gradient w.r.t. the input, shape (B, feature_size)
        """
        self.calc_gradient(incoming, sweep)
        return self.calc_derivative()
