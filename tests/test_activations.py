"""
Tests for activation and cost registries.
"""
import numpy as np
import pytest

from slab_neat.activations import ACTIVATION_TO_ID, ACTIVATIONS, apply_activation_by_id, squash
from slab_neat.cost import COSTS, resolve_cost


class TestActivations:
    """Tests for the activation registry."""

    @pytest.mark.parametrize("name", list(ACTIVATIONS))
    def test_jax_kernel_matches_numpy(self, name):
        """The jnp dispatcher agrees with the numpy function."""
        xs = np.linspace(-2.0, 2.0, 9)
        expected = np.asarray(ACTIVATIONS[name](xs), dtype=np.float64)
        got = np.asarray(apply_activation_by_id(ACTIVATION_TO_ID[name], xs.astype(np.float32)))
        np.testing.assert_allclose(got, expected, rtol=1e-5, atol=1e-5)

    def test_squash_returns_float(self):
        """squash yields plain floats."""
        assert isinstance(squash("tanh", 0.5), float)
        assert squash("logistic", 0.0) == pytest.approx(0.5)
        assert squash("logistic", 0.0, derivative=True) == pytest.approx(0.25)


class TestCosts:
    """Tests for cost functions."""

    def test_mse(self):
        """Mean squared error."""
        assert COSTS["mse"]([1.0, 0.0], [0.5, 0.5]) == pytest.approx(0.25)

    def test_binary(self):
        """Binary counts rounding mismatches."""
        assert COSTS["binary"]([1.0, 0.0], [0.9, 0.9]) == 1.0

    def test_resolve(self):
        """Names resolve; callables pass through; unknown names raise."""
        fn = lambda t, o: 0.0
        assert resolve_cost(fn) is fn
        assert resolve_cost("mae") is COSTS["mae"]
        with pytest.raises(ValueError):
            resolve_cost("nope")
