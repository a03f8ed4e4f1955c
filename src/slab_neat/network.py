from __future__ import annotations

import copy
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from .activations import squash
from .config import RuntimeConfig, warn
from .cost import resolve_cost
from .errors import InputSizeError, NodeNotFoundError, StructuralAnchorError
from .genes import ConnectionGene, NodeGene
from .mutation import MutationOp, apply_mutation
from .pools import DEFAULT_ARENA, Arena
from .slab import ConnectionSlab, SlabView

logger = logging.getLogger(__name__)

DEFAULT_ACTIVATION = "logistic"


@dataclass
class DirtyFlags:
    topo: bool = True
    node_index: bool = True
    slab: bool = True
    adjacency: bool = True

    def mark_structure(self) -> None:
        self.topo = True
        self.node_index = True
        self.slab = True
        self.adjacency = True


class Network:
    """A genome: ordered nodes (inputs, hidden, outputs) plus connection lists.

    Adjacency is kept in id-keyed tables owned by the network, so nodes and
    connections never hold references to each other.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        runtime: RuntimeConfig | None = None,
        arena: Arena | None = None,
        seed: int | None = None,
        rng: np.random.Generator | None = None,
        min_hidden: int = 0,
        connect_io: bool = True,
    ):
        if input_size <= 0 or output_size <= 0:
            raise ValueError("Network needs at least one input and one output")

        self.input = input_size
        self.output = output_size
        self.runtime = runtime if runtime is not None else RuntimeConfig()
        self.arena = arena if arena is not None else DEFAULT_ARENA
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.enforce_acyclic = self.runtime.enforce_acyclic

        self.nodes: list[NodeGene] = []
        self.connections: list[ConnectionGene] = []
        self.selfconns: list[ConnectionGene] = []
        self.gates: list[ConnectionGene] = []

        self._by_id: dict[int, NodeGene] = {}
        self._incoming: dict[int, list[ConnectionGene]] = {}
        self._outgoing: dict[int, list[ConnectionGene]] = {}
        self._gated: dict[int, list[ConnectionGene]] = {}
        self._self: dict[int, ConnectionGene] = {}
        self._index: dict[int, int] = {}
        self._next_node_id = 0

        self.dirty = DirtyFlags()
        self.topo_order: list[int] = []
        self.slab = ConnectionSlab(self)

        self.dropout = 0.0
        self.weight_noise_std = 0.0
        self.stochastic_depth: tuple[float, ...] = ()

        self.score: float | None = None
        self.genome_id = 0
        self.parents: list[int] = []
        self.depth = 0
        self.reenable_prob = 0.25
        self.mo_rank: int | None = None
        self.mo_crowding = 0.0
        self.det_chain: list[int] | None = None
        self.mut_rate: float | None = None
        self.mut_amount: int | None = None
        self.prune_baseline: int | None = None

        for i in range(input_size + output_size):
            kind = "input" if i < input_size else "output"
            self._append_node(self.new_node(kind))

        if connect_io:
            for i in range(input_size):
                for j in range(input_size, input_size + output_size):
                    weight = float(self.rng.random() * input_size * math.sqrt(2.0 / input_size))
                    self.connect(self.nodes[i], self.nodes[j], weight)

        if min_hidden > 0:
            self._grow_min_hidden(min_hidden)

    # Node bookkeeping.

    def new_node(self, kind: str = "hidden", activation: str | None = None) -> NodeGene:
        node_id = self._next_node_id
        self._next_node_id += 1
        bias = 0.0 if kind == "input" else float(self.rng.random() * 0.2 - 0.1)
        activation = activation or ("identity" if kind == "input" else DEFAULT_ACTIVATION)
        if self.runtime.enable_node_pooling:
            return self.arena.nodes.acquire(node_id, kind, activation, bias)
        return NodeGene(node_id=node_id, kind=kind, bias=bias, activation=activation)

    def _register(self, node: NodeGene) -> None:
        self._by_id[node.node_id] = node
        self._incoming[node.node_id] = []
        self._outgoing[node.node_id] = []
        self._gated[node.node_id] = []
        self._next_node_id = max(self._next_node_id, node.node_id + 1)

    def _append_node(self, node: NodeGene) -> None:
        self._register(node)
        self.nodes.append(node)
        self.dirty.mark_structure()

    def insert_node(self, node: NodeGene, position: int) -> None:
        self._register(node)
        self.nodes.insert(position, node)
        self.dirty.mark_structure()

    def _grow_min_hidden(self, min_hidden: int) -> None:
        while len(self.hidden_nodes()) < min_hidden:
            before = len(self.hidden_nodes())
            self.mutate(MutationOp.ADD_NODE)
            if len(self.hidden_nodes()) == before:
                break

    def node(self, node_id: int) -> NodeGene:
        try:
            return self._by_id[node_id]
        except KeyError:
            raise NodeNotFoundError(f"Node {node_id} not in network") from None

    def has_node(self, node: NodeGene) -> bool:
        return self._by_id.get(node.node_id) is node

    def has_node_id(self, node_id: int) -> bool:
        return node_id in self._by_id

    def node_index(self) -> dict[int, int]:
        if self.dirty.node_index:
            self._index = {n.node_id: i for i, n in enumerate(self.nodes)}
            self.dirty.node_index = False
        return self._index

    def index(self, node: NodeGene) -> int:
        return self.node_index()[node.node_id]

    def hidden_nodes(self) -> list[NodeGene]:
        return [n for n in self.nodes if n.kind == "hidden"]

    def incoming(self, node: NodeGene) -> list[ConnectionGene]:
        return self._incoming[node.node_id]

    def outgoing(self, node: NodeGene) -> list[ConnectionGene]:
        return self._outgoing[node.node_id]

    def gated_by(self, node: NodeGene) -> list[ConnectionGene]:
        return self._gated[node.node_id]

    def self_connection(self, node: NodeGene) -> ConnectionGene | None:
        return self._self.get(node.node_id)

    def is_projecting(self, src: NodeGene, dst: NodeGene) -> bool:
        if src.node_id == dst.node_id:
            return src.node_id in self._self
        return any(c.dst == dst.node_id for c in self._outgoing[src.node_id])

    def find_connection(self, src: NodeGene, dst: NodeGene) -> ConnectionGene | None:
        if src.node_id == dst.node_id:
            return self._self.get(src.node_id)
        for conn in self._outgoing[src.node_id]:
            if conn.dst == dst.node_id:
                return conn
        return None

    # Structural primitives.

    def connect(self, src: NodeGene, dst: NodeGene, weight: float | None = None) -> list[ConnectionGene]:
        if weight is None:
            weight = float(self.rng.random() * 0.2 - 0.1)

        if src.node_id == dst.node_id:
            if self.enforce_acyclic or src.node_id in self._self:
                return []
            conn = ConnectionGene(src=src.node_id, dst=dst.node_id, weight=weight)
            self._self[src.node_id] = conn
            self.selfconns.append(conn)
        else:
            if self.enforce_acyclic and self.index(src) > self.index(dst):
                return []
            if self.is_projecting(src, dst):
                return []
            conn = ConnectionGene(src=src.node_id, dst=dst.node_id, weight=weight)
            self._outgoing[src.node_id].append(conn)
            self._incoming[dst.node_id].append(conn)
            self.connections.append(conn)

        self.dirty.mark_structure()
        return [conn]

    def disconnect(self, src: NodeGene, dst: NodeGene) -> None:
        conn = self.find_connection(src, dst)
        if conn is None:
            return
        if conn.gater is not None:
            self.ungate(conn)

        if conn.is_self:
            del self._self[src.node_id]
            self.selfconns.remove(conn)
        else:
            self._outgoing[src.node_id].remove(conn)
            self._incoming[dst.node_id].remove(conn)
            self.connections.remove(conn)
        self.dirty.mark_structure()

    def gate(self, node: NodeGene, conn: ConnectionGene) -> None:
        if not self.has_node(node):
            raise NodeNotFoundError("Gating node must be part of the network to gate a connection!")
        if conn.gater is not None:
            warn(logger, self.runtime, "Connection already gated; skipping")
            return
        conn.gater = node.node_id
        self._gated[node.node_id].append(conn)
        self.gates.append(conn)
        self.dirty.slab = True

    def ungate(self, conn: ConnectionGene) -> None:
        if conn.gater is None or conn not in self.gates:
            warn(logger, self.runtime, "Attempted to ungate a connection that is not gated")
            return
        self.gates.remove(conn)
        gated = self._gated.get(conn.gater)
        if gated is not None and conn in gated:
            gated.remove(conn)
        conn.gater = None
        conn.gain = 1.0
        self.dirty.slab = True

    def remove_node(self, node: NodeGene) -> None:
        if not self.has_node(node):
            raise NodeNotFoundError("Node not in network")
        if node.kind in ("input", "output"):
            raise StructuralAnchorError("Cannot remove input or output node from the network.")

        nid = node.node_id
        for conn in list(self._gated[nid]):
            self.ungate(conn)

        sources: list[int] = []
        for conn in self._incoming[nid]:
            if conn.src not in sources:
                sources.append(conn.src)
        targets: list[int] = []
        for conn in self._outgoing[nid]:
            if conn.dst not in targets:
                targets.append(conn.dst)

        for conn in list(self._incoming[nid]):
            self.disconnect(self._by_id[conn.src], node)
        for conn in list(self._outgoing[nid]):
            self.disconnect(node, self._by_id[conn.dst])
        if nid in self._self:
            self.disconnect(node, node)

        self.nodes.remove(node)
        for table in (self._by_id, self._incoming, self._outgoing, self._gated):
            table.pop(nid, None)
        if self.det_chain is not None and nid in self.det_chain:
            self.det_chain.remove(nid)
        self.dirty.mark_structure()

        # Bridge every former source to every former target.
        for s in sources:
            for t in targets:
                if s == t:
                    continue
                src, dst = self._by_id[s], self._by_id[t]
                if not self.is_projecting(src, dst):
                    self.connect(src, dst)

        if self.runtime.enable_node_pooling:
            self.arena.nodes.release(node)

    def prune_to_sparsity(self, target_sparsity: float) -> int:
        """Remove the smallest-magnitude edges until ``target_sparsity`` of the
        baseline edge count is gone. The baseline is captured on first call.

        Returns the number of edges removed.
        """
        if target_sparsity <= 0:
            return 0
        target_sparsity = min(target_sparsity, 0.999)
        if not self.prune_baseline:
            self.prune_baseline = len(self.connections)
        keep = max(1, int(math.floor(self.prune_baseline * (1 - target_sparsity))))
        excess = len(self.connections) - keep
        if excess <= 0:
            return 0
        ranked = sorted(self.connections, key=lambda c: abs(c.weight))[:excess]
        for conn in ranked:
            self.disconnect(self._by_id[conn.src], self._by_id[conn.dst])
        return len(ranked)

    # Topology.

    def compute_topo_order(self) -> list[int]:
        in_degree = {n.node_id: 0 for n in self.nodes}
        for conn in self.connections:
            in_degree[conn.dst] += 1

        queue = deque(n.node_id for n in self.nodes if in_degree[n.node_id] == 0)
        order: list[int] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for conn in self._outgoing[nid]:
                in_degree[conn.dst] -= 1
                if in_degree[conn.dst] == 0:
                    queue.append(conn.dst)

        if len(order) != len(self.nodes):
            order = [n.node_id for n in self.nodes]
        self.topo_order = order
        self.dirty.topo = False
        return order

    def has_path(self, src: NodeGene, dst: NodeGene) -> bool:
        if src.node_id == dst.node_id:
            return True
        seen: set[int] = set()
        stack = [src.node_id]
        while stack:
            nid = stack.pop()
            if nid == dst.node_id:
                return True
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(c.dst for c in self._outgoing[nid])
        return False

    def mark_topology_dirty(self) -> None:
        self.dirty.topo = True

    # Evaluation.

    def activate(self, inputs: Sequence[float], training: bool = False) -> list[float]:
        if len(inputs) != self.input:
            raise InputSizeError(f"Input size mismatch: expected {self.input}, got {len(inputs)}")
        if self.enforce_acyclic and self.dirty.topo:
            self.compute_topo_order()
        if self.slab.can_use_fast_path(training):
            return self.slab.fast_activate(inputs)
        return self.activate_nodes(inputs, training)

    def activate_nodes(self, inputs: Sequence[float], training: bool = False) -> list[float]:
        """General object-graph forward pass in node order."""
        if len(inputs) != self.input:
            raise InputSizeError(f"Input size mismatch: expected {self.input}, got {len(inputs)}")

        output: list[float] = []
        for i, node in enumerate(self.nodes):
            if node.kind == "input":
                node.value = float(inputs[i])
                continue

            nid = node.node_id
            node.old = node.state
            state = node.bias
            self_conn = self._self.get(nid)
            if self_conn is not None and self_conn.enabled:
                state += self_conn.gain * self_conn.weight * node.state
            for conn in self._incoming[nid]:
                if not conn.enabled:
                    continue
                weight = conn.weight
                if training and self.weight_noise_std > 0:
                    weight += float(self.rng.normal(0.0, self.weight_noise_std))
                state += self._by_id[conn.src].value * weight * conn.gain
            node.state = state

            if training and self.dropout > 0 and node.kind == "hidden":
                node.mask = 0.0 if self.rng.random() < self.dropout else 1.0
            else:
                node.mask = 1.0

            node.value = squash(node.activation, state) * node.mask
            node.derivative = squash(node.activation, state, derivative=True)
            for conn in self._gated[nid]:
                conn.gain = node.value

            if node.kind == "output":
                output.append(node.value)
        return output

    def clear(self) -> None:
        for node in self.nodes:
            node.reset_state()

    def test(self, dataset: Sequence[dict], cost: Any = "mse") -> dict[str, float]:
        cost_fn = resolve_cost(cost)
        start = time.perf_counter()
        error = 0.0
        for sample in dataset:
            error += cost_fn(sample["output"], self.activate(sample["input"]))
        return {
            "error": error / max(len(dataset), 1),
            "time": (time.perf_counter() - start) * 1000.0,
        }

    def get_connection_slab(self) -> SlabView:
        return self.slab.view()

    def fast_slab_activate(self, inputs: Sequence[float]) -> list[float]:
        if len(inputs) != self.input:
            raise InputSizeError(f"Input size mismatch: expected {self.input}, got {len(inputs)}")
        return self.slab.fast_activate(inputs)

    # Mutation and evolution.

    def mutate(self, op: MutationOp | str, **params: Any) -> bool:
        return apply_mutation(self, op, **params)

    async def evolve(self, dataset: Sequence[dict], options: Any = None) -> dict[str, float]:
        from .evolve import evolve_network

        return await evolve_network(self, dataset, options)

    # Complexity helpers used by fitness penalties and telemetry.

    def complexity(self) -> tuple[int, int]:
        enabled = sum(1 for c in self.connections if c.enabled)
        return len(self.hidden_nodes()), enabled

    # Copy and serialization.

    def clone(self) -> "Network":
        twin = Network.from_dict(self.to_dict(), runtime=self.runtime, arena=self.arena)
        twin.rng = copy.deepcopy(self.rng)
        twin.score = self.score
        twin.genome_id = self.genome_id
        twin.parents = list(self.parents)
        twin.depth = self.depth
        twin.reenable_prob = self.reenable_prob
        twin.mut_rate = self.mut_rate
        twin.mut_amount = self.mut_amount
        return twin

    def adopt(self, other: "Network", clear: bool = False) -> None:
        """Replace this network's structure in place with a copy of ``other``."""
        twin = other.clone()
        self.slab.release()
        self.input = twin.input
        self.output = twin.output
        self.nodes = twin.nodes
        self.connections = twin.connections
        self.selfconns = twin.selfconns
        self.gates = twin.gates
        self._by_id = twin._by_id
        self._incoming = twin._incoming
        self._outgoing = twin._outgoing
        self._gated = twin._gated
        self._self = twin._self
        self._next_node_id = twin._next_node_id
        self.dropout = twin.dropout
        self.dirty.mark_structure()
        if clear:
            self.clear()

    def set_seed(self, seed: int | None) -> None:
        self.rng = np.random.default_rng(seed)

    def release_resources(self) -> None:
        self.slab.release()

    def to_dict(self) -> dict[str, Any]:
        index = self.node_index()
        conns = []
        for conn in self.connections + self.selfconns:
            conns.append(
                {
                    "from": index[conn.src],
                    "to": index[conn.dst],
                    "weight": conn.weight,
                    "gain": conn.gain,
                    "gater": index[conn.gater] if conn.gater is not None else None,
                    "enabled": conn.enabled,
                    "plasticity_rate": conn.plasticity_rate,
                }
            )
        return {
            "input": self.input,
            "output": self.output,
            "dropout": self.dropout,
            "enforce_acyclic": self.enforce_acyclic,
            "nodes": [
                {
                    "node_id": n.node_id,
                    "type": n.kind,
                    "bias": n.bias,
                    "squash": n.activation,
                    "tag": n.tag,
                }
                for n in self.nodes
            ],
            "connections": conns,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        runtime: RuntimeConfig | None = None,
        arena: Arena | None = None,
        seed: int | None = None,
    ) -> "Network":
        net = cls(data["input"], data["output"], runtime=runtime, arena=arena, seed=seed, connect_io=False)
        net.enforce_acyclic = bool(data.get("enforce_acyclic", net.enforce_acyclic))
        net.dropout = float(data.get("dropout", 0.0))
        if net.runtime.enable_node_pooling:
            for node in net.nodes:
                net.arena.nodes.release(node)
        net.nodes = []
        net._by_id, net._incoming, net._outgoing, net._gated, net._self = {}, {}, {}, {}, {}
        net._next_node_id = 0

        for i, item in enumerate(data["nodes"]):
            node = NodeGene(
                node_id=int(item.get("node_id", i)),
                kind=item["type"],
                bias=float(item["bias"]),
                activation=item["squash"],
                tag=item.get("tag"),
            )
            net._append_node(node)

        gated: list[tuple[int, ConnectionGene]] = []
        acyclic = net.enforce_acyclic
        net.enforce_acyclic = False
        for item in data["connections"]:
            src = net.nodes[item["from"]]
            dst = net.nodes[item["to"]]
            made = net.connect(src, dst, float(item["weight"]))
            if not made:
                continue
            conn = made[0]
            conn.gain = float(item.get("gain", 1.0))
            conn.enabled = bool(item.get("enabled", True))
            conn.plasticity_rate = float(item.get("plasticity_rate", 0.0))
            if item.get("gater") is not None:
                gated.append((item["gater"], conn))
        net.enforce_acyclic = acyclic

        for gater_index, conn in gated:
            if gater_index < len(net.nodes):
                net.gate(net.nodes[gater_index], conn)
        net.dirty.mark_structure()
        return net

    def __repr__(self) -> str:
        return (
            f"Network(id={self.genome_id}, nodes={len(self.nodes)}, "
            f"connections={len(self.connections)}, score={self.score})"
        )
