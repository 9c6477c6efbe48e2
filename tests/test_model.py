"""Behavior locks for :class:`mini_gru.models.gru.UnrolledGRU`.

Pins:
- full-sequence finite-difference check of the accumulated weight gradients
- stacked layers agree with an autograd reference
- batch resizing: idempotent for the same size, transparent for a new size
- gradients are consumable by torch optimizers across repeated sweeps
- dropout masks gate the recurrent gradient as well as the external one
- working buffers follow dtype conversions of the module
- sequence shape errors
"""

import itertools
import unittest

import torch

from mini_gru.errors import ConfigurationError, ShapeMismatchError
from mini_gru.models.gru import UnrolledGRU

from gru_reference import detached_params, numeric_grad, reference_sequence


def _model(**kwargs) -> UnrolledGRU:
    torch.manual_seed(11)
    defaults = dict(input_size=2, unit=3, max_timestep=3, batch_size=2)
    defaults.update(kwargs)
    model = UnrolledGRU(dtype=torch.float64, **defaults)
    with torch.no_grad():
        for p in model.parameters():
            p.uniform_(-0.8, 0.8)
    return model


class TestUnrolledGRU(unittest.TestCase):

    def test_sequence_finite_difference(self) -> None:
        flags = (True, False)
        for integrate_bias, reset_after in itertools.product(flags, flags):
            with self.subTest(integrate_bias=integrate_bias, reset_after=reset_after):
                model = _model(integrate_bias=integrate_bias, reset_after=reset_after)
                x = torch.randn(2, 3, 2, dtype=torch.float64)
                coeff = torch.randn(2, 3, 3, dtype=torch.float64)

                def loss() -> float:
                    return float((model(x) * coeff).sum())

                loss()
                dX = model.backward(coeff)

                for name, p in model.named_parameters():
                    torch.testing.assert_close(
                        p.grad, numeric_grad(loss, p), rtol=1e-5, atol=1e-7, msg=name
                    )
                torch.testing.assert_close(
                    dX, numeric_grad(loss, x), rtol=1e-5, atol=1e-7
                )

    def test_stacked_layers_match_autograd(self) -> None:
        model = _model(num_layers=2, max_timestep=4, batch_size=3)
        x = torch.randn(3, 4, 2, dtype=torch.float64)
        coeff = torch.randn(3, 4, 3, dtype=torch.float64)

        Y = model(x)
        dX = model.backward(coeff)

        refs = [detached_params(params) for params in model.layers]
        x_ref = x.clone().requires_grad_()
        Y_ref = reference_sequence(x_ref, refs, model.config)
        (Y_ref * coeff).sum().backward()

        torch.testing.assert_close(Y, Y_ref.detach())
        torch.testing.assert_close(dX, x_ref.grad)
        for params, ref in zip(model.layers, refs):
            for name, p in params.named_parameters():
                torch.testing.assert_close(p.grad, ref[name].grad, msg=name)
        torch.testing.assert_close(model.final_hidden_state()[1], Y[:, -1, :])

    def test_repeated_sweeps_do_not_accumulate_across_sweeps(self) -> None:
        model = _model()
        x = torch.randn(2, 3, 2, dtype=torch.float64)
        coeff = torch.randn(2, 3, 3, dtype=torch.float64)
        model(x)
        model.backward(coeff)
        first = [p.grad.clone() for p in model.parameters()]
        model(x)
        model.backward(coeff)
        for before, p in zip(first, model.parameters()):
            torch.testing.assert_close(p.grad, before)

    def test_set_batch_same_size_is_idempotent(self) -> None:
        model = _model()
        x = torch.randn(2, 3, 2, dtype=torch.float64)
        before = model(x)
        model.set_batch(2)
        model.set_batch(2)
        self.assertTrue(torch.equal(model(x), before))

    def test_batch_change(self) -> None:
        model = _model()
        x = torch.randn(5, 3, 2, dtype=torch.float64)
        Y = model(x)
        self.assertEqual(model.batch_size, 5)
        self.assertEqual(model.rings[0].hidden.shape, (3, 5, 3))
        self.assertEqual(model.cells[0][0].zrg.shape, (5, 9))
        refs = [detached_params(params) for params in model.layers]
        expected = reference_sequence(x, refs, model.config).detach()
        torch.testing.assert_close(Y, expected)
        dX = model.backward(torch.ones(5, 3, 3, dtype=torch.float64))
        self.assertEqual(dX.shape, (5, 3, 2))

    def test_optimizer_step(self) -> None:
        model = _model()
        optimizer = torch.optim.SGD(model.parameters(), lr=0.1)
        x = torch.randn(2, 3, 2, dtype=torch.float64)
        target = torch.zeros(2, 3, 3, dtype=torch.float64)

        losses = []
        for _ in range(20):
            optimizer.zero_grad(set_to_none=True)
            Y = model(x)
            losses.append(float(((Y - target) ** 2).mean()))
            model.backward(2.0 * (Y - target) / Y.numel())
            optimizer.step()
        self.assertLess(losses[-1], losses[0])

    def test_dropout_only_in_training(self) -> None:
        model = _model(dropout_rate=0.5, seed=0, unit=8)
        x = torch.randn(2, 3, 2, dtype=torch.float64)
        model.eval()
        first = model(x)
        self.assertTrue(torch.equal(model(x), first))
        model.train()
        self.assertFalse(torch.equal(model(x), first))

    def test_dropout_sequence_finite_difference(self) -> None:
        # The mask gates the whole dH[t], including the part coming from t + 1.
        model = _model(dropout_rate=0.4, seed=0, unit=4, batch_size=3)
        model.train()
        x = torch.randn(3, 3, 2, dtype=torch.float64)
        coeff = torch.randn(3, 3, 4, dtype=torch.float64)

        def loss() -> float:
            model.generator.manual_seed(0)
            return float((model(x) * coeff).sum())

        loss()
        masks = [cell.dropout_mask for cell in model.cells[0]]
        self.assertTrue(any(bool((m == 0.0).any()) for m in masks))
        dX = model.backward(coeff)

        for name, p in model.named_parameters():
            torch.testing.assert_close(
                p.grad, numeric_grad(loss, p), rtol=1e-5, atol=1e-7, msg=name
            )
        torch.testing.assert_close(dX, numeric_grad(loss, x), rtol=1e-5, atol=1e-7)

    def test_buffers_follow_dtype_conversion(self) -> None:
        torch.manual_seed(5)
        model = UnrolledGRU(input_size=2, unit=3, max_timestep=2, batch_size=2)
        model.double()
        x = torch.randn(2, 2, 2, dtype=torch.float64)

        Y = model(x)
        self.assertEqual(Y.dtype, torch.float64)
        self.assertEqual(model.rings[0].hidden.dtype, torch.float64)
        self.assertEqual(model.cells[0][1].zrg.dtype, torch.float64)
        refs = [detached_params(params) for params in model.layers]
        expected = reference_sequence(x, refs, model.config).detach()
        torch.testing.assert_close(Y, expected)

        dX = model.backward(torch.ones(2, 2, 3, dtype=torch.float64))
        self.assertEqual(dX.dtype, torch.float64)
        for p in model.parameters():
            self.assertEqual(p.grad.dtype, torch.float64)

    def test_sequence_length_must_match_capacity(self) -> None:
        model = _model()
        with self.assertRaises(ShapeMismatchError):
            model(torch.randn(2, 2, 2, dtype=torch.float64))
        with self.assertRaises(ValueError):
            model(torch.randn(2, 0, 2, dtype=torch.float64))
        with self.assertRaises(ShapeMismatchError):
            model(torch.randn(2, 3, 4, dtype=torch.float64))

    def test_gradient_batch_must_match_forward(self) -> None:
        model = _model()
        model(torch.randn(2, 3, 2, dtype=torch.float64))
        with self.assertRaises(ShapeMismatchError):
            model.backward(torch.ones(4, 3, 3, dtype=torch.float64))

    def test_invalid_configuration(self) -> None:
        with self.assertRaises(ConfigurationError):
            UnrolledGRU(input_size=2, unit=3, max_timestep=2, units=4)
        with self.assertRaises(ConfigurationError):
            UnrolledGRU(input_size=2, unit=3, max_timestep=2, num_layers=0)
        with self.assertRaises(ConfigurationError):
            UnrolledGRU(input_size=0, unit=3, max_timestep=2)


if __name__ == "__main__":
    unittest.main()
