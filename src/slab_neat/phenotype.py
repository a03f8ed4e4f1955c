"""JAX forward pass compiled from a network's connection slab.

Only networks that qualify for the slab fast path (acyclic, ungated, no
self-connections, no stochastic regularizers) can be compiled; the batched
outputs then agree with ``Network.activate`` up to float32 precision.
"""

from __future__ import annotations

from typing import Any, Sequence

import jax
import jax.numpy as jnp
import numpy as np

from .activations import ACTIVATION_TO_ID, apply_activation_by_id
from .cost import resolve_cost
from .genes import FLAG_ENABLED
from .network import Network


class SlabPhenotype:
    def __init__(self, network: Network):
        if not self.eligible(network):
            raise ValueError("Network does not qualify for the slab fast path")
        self.input_size = network.input
        self.output_size = network.output

        view = network.get_connection_slab()
        index = network.node_index()
        order = network.compute_topo_order()
        n = view.used
        enabled = np.nonzero((view.flags[:n] & FLAG_ENABLED) != 0)[0]
        src = view.src[:n][enabled].astype(np.int32)
        dst = view.dst[:n][enabled].astype(np.int32)

        self.input_idx = np.arange(network.input, dtype=np.int32)
        self.output_idx = np.arange(len(network.nodes) - network.output, len(network.nodes), dtype=np.int32)
        self.compute_idx = np.asarray(
            [index[nid] for nid in order if network.nodes[index[nid]].kind != "input"], dtype=np.int32
        )
        self.activation_ids = np.asarray(
            [ACTIVATION_TO_ID.get(node.activation, 0) for node in network.nodes], dtype=np.int32
        )

        self.incoming_src: dict[int, np.ndarray] = {}
        self.incoming_edge: dict[int, np.ndarray] = {}
        for node_idx in self.compute_idx.tolist():
            edge_ids = np.where(dst == node_idx)[0].astype(np.int32)
            self.incoming_edge[node_idx] = edge_ids
            self.incoming_src[node_idx] = src[edge_ids]

        self.node_count = len(network.nodes)
        self.weights = jnp.asarray(view.weights[:n][enabled] * view.gain[:n][enabled], dtype=jnp.float32)
        self.biases = jnp.asarray([node.bias for node in network.nodes], dtype=jnp.float32)

    @staticmethod
    def eligible(network: Network) -> bool:
        # Topology staleness is irrelevant here; the order is recomputed on compile.
        return (
            network.enforce_acyclic
            and not network.gates
            and not network.selfconns
            and network.dropout == 0
            and network.weight_noise_std == 0
            and not any(network.stochastic_depth)
        )

    def _forward_single(self, x: jnp.ndarray) -> jnp.ndarray:
        acts = jnp.zeros((self.node_count,), dtype=jnp.float32)
        acts = acts.at[self.input_idx].set(x)

        for node_idx in self.compute_idx.tolist():
            edge_idx = self.incoming_edge[node_idx]
            total = self.biases[node_idx]
            if edge_idx.size > 0:
                total = total + jnp.sum(acts[self.incoming_src[node_idx]] * self.weights[edge_idx])
            act_id = int(self.activation_ids[node_idx])
            acts = acts.at[node_idx].set(apply_activation_by_id(act_id, total))

        return acts[self.output_idx]

    def forward(self, x: Any) -> jnp.ndarray:
        x = jnp.asarray(x, dtype=jnp.float32)
        if x.ndim == 1:
            return self._forward_single(x)
        return jax.vmap(self._forward_single)(x)

    def test(self, dataset: Sequence[dict], cost: Any = "mse") -> dict[str, float]:
        """Batched equivalent of ``Network.test``; the ``time`` field is omitted."""
        cost_fn = resolve_cost(cost)
        if not dataset:
            return {"error": 0.0}
        x = np.asarray([sample["input"] for sample in dataset], dtype=np.float32)
        outputs = np.asarray(self.forward(x), dtype=np.float64)
        error = sum(cost_fn(sample["output"], out) for sample, out in zip(dataset, outputs))
        return {"error": error / len(dataset)}
