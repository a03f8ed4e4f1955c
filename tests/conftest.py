"""
Pytest fixtures shared by the slab_neat tests.

Provides fixtures for:
- The XOR dataset
- Small seeded networks (cyclic and acyclic runtimes)
"""
import pytest

from slab_neat.config import RuntimeConfig
from slab_neat.network import Network


@pytest.fixture
def xor_dataset():
    """Return the four XOR samples."""
    return [
        {"input": [0, 0], "output": [0]},
        {"input": [0, 1], "output": [1]},
        {"input": [1, 0], "output": [1]},
        {"input": [1, 1], "output": [0]},
    ]


@pytest.fixture
def acyclic_runtime():
    """Runtime that enforces feed-forward structure."""
    return RuntimeConfig(enforce_acyclic=True)


@pytest.fixture
def small_network():
    """A seeded, fully connected 2-input, 1-output network."""
    return Network(2, 1, seed=7)


@pytest.fixture
def hidden_network():
    """A 1-1 network with a single hidden node between input and output."""
    net = Network(1, 1, seed=3, connect_io=False)
    hidden = net.new_node("hidden")
    net.insert_node(hidden, 1)
    net.connect(net.nodes[0], hidden, 0.5)
    net.connect(hidden, net.nodes[2], -0.5)
    return net
