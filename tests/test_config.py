"""Behavior locks for :mod:`mini_gru.config`.

Pins:
- defaults (tanh / sigmoid / reset-after / separate bias)
- invalid property values raise ConfigurationError at construction
- ``key=value`` property parsing and export
- input wiring: one input, single timestep, single channel
"""

import unittest

from mini_gru.config import GRUCellConfig, infer_input_dims
from mini_gru.errors import ConfigurationError


class TestGRUCellConfig(unittest.TestCase):

    def test_defaults(self) -> None:
        config = GRUCellConfig()
        self.assertEqual(config.hidden_state_activation, "tanh")
        self.assertEqual(config.recurrent_activation, "sigmoid")
        self.assertTrue(config.reset_after)
        self.assertFalse(config.integrate_bias)
        self.assertFalse(config.disable_bias)
        self.assertFalse(config.use_dropout)

    def test_invalid_values(self) -> None:
        bad = [
            dict(unit=0),
            dict(max_timestep=0),
            dict(hidden_state_activation="gelu"),
            dict(recurrent_activation="swish"),
            dict(dropout_rate=1.0),
            dict(dropout_rate=-0.1),
            dict(weight_initializer="he_normal"),
            dict(bias_initializer="xavier_uniform"),
        ]
        for kwargs in bad:
            with self.subTest(**kwargs):
                with self.assertRaises(ConfigurationError):
                    GRUCellConfig(**kwargs)

    def test_dropout_epsilon(self) -> None:
        self.assertFalse(GRUCellConfig(dropout_rate=1e-3).use_dropout)
        self.assertTrue(GRUCellConfig(dropout_rate=0.2).use_dropout)

    def test_from_properties(self) -> None:
        config = GRUCellConfig.from_properties(
            [
                "unit=4",
                "max_timestep=3",
                "reset_after=false",
                "integrate_bias=true",
                "dropout_rate=0.25",
                "hidden_state_activation=relu",
            ]
        )
        self.assertEqual(config.unit, 4)
        self.assertEqual(config.max_timestep, 3)
        self.assertFalse(config.reset_after)
        self.assertTrue(config.integrate_bias)
        self.assertAlmostEqual(config.dropout_rate, 0.25)
        self.assertEqual(config.hidden_state_activation, "relu")

    def test_properties_round_trip(self) -> None:
        config = GRUCellConfig(unit=5, max_timestep=7, reset_after=False)
        self.assertIn("reset_after=false", config.to_properties())
        self.assertEqual(GRUCellConfig.from_properties(config.to_properties()), config)

    def test_bad_properties(self) -> None:
        for props in (["unit"], ["unit="], ["units=3"], ["unit=abc"], ["unit=-2"]):
            with self.subTest(props=props):
                with self.assertRaises(ConfigurationError):
                    GRUCellConfig.from_properties(props)


class TestInferInputDims(unittest.TestCase):

    def test_two_dimensional(self) -> None:
        self.assertEqual(infer_input_dims([(8, 3)]), (8, 3))

    def test_four_dimensional(self) -> None:
        self.assertEqual(infer_input_dims([(8, 1, 1, 3)]), (8, 3))

    def test_more_than_one_input(self) -> None:
        with self.assertRaises(ConfigurationError):
            infer_input_dims([(8, 3), (8, 3)])

    def test_multiple_timesteps(self) -> None:
        with self.assertRaises(ConfigurationError):
            infer_input_dims([(8, 1, 5, 3)])
        with self.assertRaises(ConfigurationError):
            infer_input_dims([(8, 5, 3)])


if __name__ == "__main__":
    unittest.main()
