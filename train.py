"""Trainer entry point for the manually backpropagated GRU."""

import logging

import hydra
import torch
import torch.nn as nn
from hydra.utils import instantiate
from mini_gru.models.gru import UnrolledGRU
from omegaconf import DictConfig
from torch.utils.data import DataLoader

logger = logging.getLogger("GRU Trainer")


class RandomSequenceDataset(torch.utils.data.IterableDataset):
    """Generates random (x, y) pairs where y is a delayed copy of x.

    Purely for smoke-testing the training loop.
    """

    def __init__(
        self, input_size: int, seq_len: int, num_batches: int, batch_size: int
    ):
        super().__init__()
        self.input_size = input_size
        self.seq_len = seq_len
        self.num_batches = num_batches
        self.batch_size = batch_size

    def __iter__(self):
        """Y is X delayed by one time step, with zeros at the end."""
        for _ in range(self.num_batches):
            x = torch.randn(self.batch_size, self.seq_len, self.input_size)
            y = torch.roll(x, shifts=-1, dims=1)
            y[:, -1, :] = 0.0
            yield x, y


def _make_loader(cfg: DictConfig) -> torch.utils.data.DataLoader:
    ds = RandomSequenceDataset(
        input_size=cfg.data.input_size,
        seq_len=cfg.data.seq_len,
        num_batches=cfg.data.num_batches,
        batch_size=cfg.data.batch_size,
    )
    return torch.utils.data.DataLoader(ds, batch_size=None)


def train_step(
    model: UnrolledGRU,
    head: nn.Module,
    x: torch.Tensor,
    y: torch.Tensor,
    criterion: nn.Module,
) -> float:
    """One forward/backward pass; leaves gradients on the GRU and the head.

    The GRU runs its own BPTT: the head is trained by autograd on detached GRU
    outputs and the gradient w.r.t. those outputs is fed to ``model.backward``.
    """
    h = model(x).requires_grad_()
    loss = criterion(head(h), y)
    loss.backward()
    model.backward(h.grad)
    return loss.item()


def _train_one_epoch(
    model: UnrolledGRU,
    head: nn.Module,
    loader: DataLoader,
    criterion: nn.Module,
    optimizer: torch.optim.Optimizer,
    device: torch.device,
) -> float:
    model.train()  # pyright: ignore[reportUnknownMemberType]
    head.train()
    total_loss, n = 0.0, 0
    for x, y in loader:
        x, y = x.to(device), y.to(device)
        optimizer.zero_grad(set_to_none=True)
        total_loss += train_step(model, head, x, y, criterion)
        optimizer.step()
        n += 1
    return total_loss / max(n, 1)


@hydra.main(version_base=None, config_path="conf", config_name="config")
def run(cfg: DictConfig):
    """Entry point that trains the GRU on the delayed-copy task."""
    device = torch.device(cfg.trainer.device)

    model: UnrolledGRU = instantiate(cfg.model, device=device)
    head = nn.Linear(model.hidden_size, cfg.data.input_size).to(device)
    criterion = instantiate(cfg.loss)
    optimizer = instantiate(
        cfg.optimizer, params=list(model.parameters()) + list(head.parameters())
    )

    # Data
    loader = _make_loader(cfg)

    # Train
    for epoch in range(1, cfg.trainer.epochs + 1):
        loss = _train_one_epoch(model, head, loader, criterion, optimizer, device)
        logger.info(f"[epoch {epoch:03d}] loss={loss:.4f}")

    # Optionally save
    if cfg.trainer.save_path:
        torch.save(
            {"model": model.state_dict(), "head": head.state_dict()},
            cfg.trainer.save_path,
        )
        logger.info(f"Saved weights to: {cfg.trainer.save_path}")


if __name__ == "__main__":
    run()
