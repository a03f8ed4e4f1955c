from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from .activations import ACTIVATIONS
from .config import warn
from .genes import ConnectionGene, NodeGene

if TYPE_CHECKING:
    from .network import Network

logger = logging.getLogger(__name__)

ALLOWED_ACTIVATIONS: tuple[str, ...] = tuple(ACTIVATIONS)

SUB_NODE_NUDGE = 1e-4


class MutationOp(str, Enum):
    ADD_NODE = "ADD_NODE"
    SUB_NODE = "SUB_NODE"
    ADD_CONN = "ADD_CONN"
    SUB_CONN = "SUB_CONN"
    MOD_WEIGHT = "MOD_WEIGHT"
    MOD_BIAS = "MOD_BIAS"
    MOD_ACTIVATION = "MOD_ACTIVATION"
    ADD_SELF_CONN = "ADD_SELF_CONN"
    SUB_SELF_CONN = "SUB_SELF_CONN"
    ADD_GATE = "ADD_GATE"
    SUB_GATE = "SUB_GATE"
    ADD_BACK_CONN = "ADD_BACK_CONN"
    SUB_BACK_CONN = "SUB_BACK_CONN"
    SWAP_NODES = "SWAP_NODES"
    ADD_LSTM_NODE = "ADD_LSTM_NODE"
    ADD_GRU_NODE = "ADD_GRU_NODE"
    REINIT_WEIGHT = "REINIT_WEIGHT"
    BATCH_NORM = "BATCH_NORM"


FFW: tuple[MutationOp, ...] = (
    MutationOp.ADD_NODE,
    MutationOp.SUB_NODE,
    MutationOp.ADD_CONN,
    MutationOp.SUB_CONN,
    MutationOp.MOD_WEIGHT,
    MutationOp.MOD_BIAS,
    MutationOp.MOD_ACTIVATION,
    MutationOp.SWAP_NODES,
)

ALL: tuple[MutationOp, ...] = FFW[:-1] + (
    MutationOp.ADD_GATE,
    MutationOp.SUB_GATE,
    MutationOp.ADD_SELF_CONN,
    MutationOp.SUB_SELF_CONN,
    MutationOp.ADD_BACK_CONN,
    MutationOp.SUB_BACK_CONN,
    MutationOp.SWAP_NODES,
)


def _pick(net: "Network", items: list):
    return items[int(net.rng.integers(len(items)))]


def _random_activation(net: "Network", exclude: str | None = None, allowed=ALLOWED_ACTIVATIONS) -> str | None:
    choices = [a for a in allowed if a != exclude]
    if not choices:
        return None
    return _pick(net, choices)


def _io_nodes(net: "Network") -> tuple[list[NodeGene], list[NodeGene]]:
    inputs = [n for n in net.nodes if n.kind == "input"]
    outputs = [n for n in net.nodes if n.kind == "output"]
    return inputs, outputs


def _insert_position(net: "Network", dst: NodeGene) -> int:
    return min(net.index(dst), len(net.nodes) - net.output)


def add_node(net: "Network", **_: Any) -> None:
    if net.runtime.deterministic_chain_mode:
        _extend_chain(net)
        return

    if not net.connections:
        inputs, outputs = _io_nodes(net)
        if not inputs or not outputs:
            warn(logger, net.runtime, "ADD_NODE: no connection to split")
            return
        net.connect(inputs[0], outputs[0])
        if not net.connections:
            return

    conn = _pick(net, net.connections)
    src, dst = net.node(conn.src), net.node(conn.dst)
    gater = conn.gater
    weight = conn.weight
    net.disconnect(src, dst)

    hidden = net.new_node("hidden", activation=_random_activation(net))
    net.insert_node(hidden, _insert_position(net, dst))
    first = net.connect(src, hidden, 1.0)
    second = net.connect(hidden, dst, weight)

    if gater is not None and net.has_node_id(gater):
        edges = first + second
        if edges:
            net.gate(net.node(gater), _pick(net, edges))


def _extend_chain(net: "Network") -> None:
    inputs, outputs = _io_nodes(net)
    if not inputs or not outputs:
        return
    out = outputs[0]

    chain = [nid for nid in (net.det_chain or []) if net.has_node_id(nid)]
    if not chain:
        chain = [inputs[0].node_id]
    tail = net.node(chain[-1])

    link = net.find_connection(tail, out)
    weight = link.weight if link is not None else 1.0
    if link is not None:
        net.disconnect(tail, out)

    hidden = net.new_node("hidden", activation=_random_activation(net))
    net.insert_node(hidden, _insert_position(net, out))
    net.connect(tail, hidden, 1.0)
    net.connect(hidden, out, weight)
    chain.append(hidden.node_id)
    net.det_chain = chain

    # Each chain node keeps a single edge to its successor.
    for k, nid in enumerate(chain):
        node = net.node(nid)
        successor = chain[k + 1] if k + 1 < len(chain) else out.node_id
        for c in list(net.outgoing(node)):
            if c.dst != successor:
                net.disconnect(node, net.node(c.dst))


def sub_node(net: "Network", **_: Any) -> None:
    hidden = net.hidden_nodes()
    if not hidden:
        warn(logger, net.runtime, "SUB_NODE: no hidden nodes to remove")
        return
    net.remove_node(_pick(net, hidden))
    if net.connections:
        net.connections[0].weight += SUB_NODE_NUDGE


def add_conn(net: "Network", **_: Any) -> None:
    nodes = net.nodes
    candidates: list[tuple[NodeGene, NodeGene]] = []
    for i in range(len(nodes) - net.output):
        for j in range(max(i + 1, net.input), len(nodes)):
            if not net.is_projecting(nodes[i], nodes[j]):
                candidates.append((nodes[i], nodes[j]))
    if not candidates:
        warn(logger, net.runtime, "ADD_CONN: no more forward connections can be added")
        return
    src, dst = _pick(net, candidates)
    net.connect(src, dst)


def sub_conn(net: "Network", **_: Any) -> None:
    index = net.node_index()
    span = max(net.input, net.output)
    candidates: list[ConnectionGene] = []
    for conn in net.connections:
        src, dst = net.node(conn.src), net.node(conn.dst)
        if len(net.outgoing(src)) <= 1 or len(net.incoming(dst)) <= 1:
            continue
        to_index = index[dst.node_id]
        if to_index <= index[src.node_id]:
            continue
        peers = {
            n.node_id
            for k, n in enumerate(net.nodes)
            if n.kind == dst.kind and abs(k - to_index) < span
        }
        if sum(1 for c in net.outgoing(src) if c.dst in peers) <= 1:
            continue
        candidates.append(conn)
    if not candidates:
        warn(logger, net.runtime, "SUB_CONN: no connection can be removed safely")
        return
    conn = _pick(net, candidates)
    net.disconnect(net.node(conn.src), net.node(conn.dst))


def mod_weight(net: "Network", low: float = -1.0, high: float = 1.0, **_: Any) -> None:
    pool = net.connections + net.selfconns
    if not pool:
        warn(logger, net.runtime, "MOD_WEIGHT: no connections to modify")
        return
    conn = _pick(net, pool)
    conn.weight += float(net.rng.uniform(low, high))


def mod_bias(net: "Network", low: float = -1.0, high: float = 1.0, **_: Any) -> None:
    pool = [n for n in net.nodes if n.kind != "input"]
    if not pool:
        return
    node = _pick(net, pool)
    node.bias += float(net.rng.uniform(low, high))


def mod_activation(
    net: "Network",
    mutate_output: bool = True,
    allowed: tuple[str, ...] = ALLOWED_ACTIVATIONS,
    **_: Any,
) -> None:
    pool = [
        n
        for n in net.nodes
        if n.kind != "input" and (mutate_output or n.kind != "output")
    ]
    if not pool:
        warn(logger, net.runtime, "MOD_ACTIVATION: no eligible nodes")
        return
    node = _pick(net, pool)
    choice = _random_activation(net, exclude=node.activation, allowed=allowed)
    if choice is not None:
        node.activation = choice


def add_self_conn(net: "Network", **_: Any) -> None:
    if net.enforce_acyclic:
        warn(logger, net.runtime, "ADD_SELF_CONN rejected: network is acyclic")
        return
    pool = [n for n in net.nodes if n.kind != "input" and net.self_connection(n) is None]
    if not pool:
        warn(logger, net.runtime, "ADD_SELF_CONN: every node already has a self connection")
        return
    node = _pick(net, pool)
    net.connect(node, node)


def sub_self_conn(net: "Network", **_: Any) -> None:
    if not net.selfconns:
        warn(logger, net.runtime, "SUB_SELF_CONN: no self connections")
        return
    conn = _pick(net, net.selfconns)
    node = net.node(conn.src)
    net.disconnect(node, node)


def add_gate(net: "Network", **_: Any) -> None:
    ungated = [c for c in net.connections + net.selfconns if c.gater is None]
    if not ungated:
        warn(logger, net.runtime, "ADD_GATE: all connections are already gated")
        return
    gaters = [n for n in net.nodes if n.kind != "input"]
    if not gaters:
        return
    net.gate(_pick(net, gaters), _pick(net, ungated))


def sub_gate(net: "Network", **_: Any) -> None:
    if not net.gates:
        warn(logger, net.runtime, "SUB_GATE: no gated connections")
        return
    net.ungate(_pick(net, net.gates))


def add_back_conn(net: "Network", **_: Any) -> None:
    if net.enforce_acyclic:
        warn(logger, net.runtime, "ADD_BACK_CONN rejected: network is acyclic")
        return
    nodes = net.nodes
    candidates: list[tuple[NodeGene, NodeGene]] = []
    for i in range(net.input, len(nodes)):
        for j in range(net.input, i):
            if not net.is_projecting(nodes[i], nodes[j]):
                candidates.append((nodes[i], nodes[j]))
    if not candidates:
        warn(logger, net.runtime, "ADD_BACK_CONN: no backward connection available")
        return
    src, dst = _pick(net, candidates)
    net.connect(src, dst)


def sub_back_conn(net: "Network", **_: Any) -> None:
    index = net.node_index()
    candidates = [
        c
        for c in net.connections
        if len(net.outgoing(net.node(c.src))) > 1
        and len(net.incoming(net.node(c.dst))) > 1
        and index[c.src] > index[c.dst]
    ]
    if not candidates:
        warn(logger, net.runtime, "SUB_BACK_CONN: no removable backward connection")
        return
    conn = _pick(net, candidates)
    net.disconnect(net.node(conn.src), net.node(conn.dst))


def swap_nodes(net: "Network", mutate_output: bool = True, **_: Any) -> None:
    pool = [
        n
        for n in net.nodes
        if n.kind != "input" and (mutate_output or n.kind != "output")
    ]
    if len(pool) < 2:
        warn(logger, net.runtime, "SWAP_NODES: fewer than two eligible nodes")
        return
    a = int(net.rng.integers(len(pool)))
    b = int(net.rng.integers(len(pool) - 1))
    if b >= a:
        b += 1
    first, second = pool[a], pool[b]
    first.bias, second.bias = second.bias, first.bias
    first.activation, second.activation = second.activation, first.activation


def _replace_with_block(net: "Network", label: str, build: Callable) -> None:
    if net.enforce_acyclic:
        warn(logger, net.runtime, "%s rejected: network is acyclic", label)
        return
    if not net.connections:
        warn(logger, net.runtime, "%s: no connection to replace", label)
        return

    conn = _pick(net, net.connections)
    src, dst = net.node(conn.src), net.node(conn.dst)
    gater, weight = conn.gater, conn.weight
    net.disconnect(src, dst)

    block_out = build(net, src, _insert_position(net, dst))
    last = net.connect(block_out, dst, weight)
    if gater is not None and last and net.has_node_id(gater):
        net.gate(net.node(gater), last[0])


def _insert_block(net: "Network", position: int, activations: tuple[str, ...]) -> list[NodeGene]:
    block = []
    for k, activation in enumerate(activations):
        node = net.new_node("hidden", activation=activation)
        net.insert_node(node, position + k)
        block.append(node)
    return block


def _build_lstm(net: "Network", src: NodeGene, position: int) -> NodeGene:
    input_gate, forget_gate, cell, output_gate, block_out = _insert_block(
        net, position, ("logistic", "logistic", "tanh", "logistic", "identity")
    )
    for gate_node in (input_gate, forget_gate, output_gate):
        net.connect(src, gate_node)
    for gate_node, edge in (
        (input_gate, net.connect(src, cell)),
        (forget_gate, net.connect(cell, cell, 1.0)),
        (output_gate, net.connect(cell, block_out, 1.0)),
    ):
        if edge:
            net.gate(gate_node, edge[0])
    return block_out


def _build_gru(net: "Network", src: NodeGene, position: int) -> NodeGene:
    update_gate, reset_gate, candidate, block_out = _insert_block(
        net, position, ("logistic", "logistic", "tanh", "identity")
    )
    net.connect(src, update_gate)
    net.connect(src, reset_gate)
    net.connect(src, candidate)
    net.connect(candidate, block_out, 1.0)
    for gate_node, edge in (
        (update_gate, net.connect(block_out, block_out, 1.0)),
        (reset_gate, net.connect(block_out, candidate, 1.0)),
    ):
        if edge:
            net.gate(gate_node, edge[0])
    return block_out


def add_lstm_node(net: "Network", **_: Any) -> None:
    _replace_with_block(net, "ADD_LSTM_NODE", _build_lstm)


def add_gru_node(net: "Network", **_: Any) -> None:
    _replace_with_block(net, "ADD_GRU_NODE", _build_gru)


def reinit_weight(net: "Network", low: float = -1.0, high: float = 1.0, **_: Any) -> None:
    pool = [n for n in net.nodes if n.kind != "input"]
    if not pool:
        return
    node = _pick(net, pool)
    edges = list(net.incoming(node)) + list(net.outgoing(node))
    self_conn = net.self_connection(node)
    if self_conn is not None:
        edges.append(self_conn)
    for conn in edges:
        conn.weight = float(net.rng.uniform(low, high))


def batch_norm(net: "Network", **_: Any) -> None:
    hidden = net.hidden_nodes()
    if not hidden:
        return
    _pick(net, hidden).tag = "batch_norm"


MUTATION_DISPATCH: dict[MutationOp, Callable[..., None]] = {
    MutationOp.ADD_NODE: add_node,
    MutationOp.SUB_NODE: sub_node,
    MutationOp.ADD_CONN: add_conn,
    MutationOp.SUB_CONN: sub_conn,
    MutationOp.MOD_WEIGHT: mod_weight,
    MutationOp.MOD_BIAS: mod_bias,
    MutationOp.MOD_ACTIVATION: mod_activation,
    MutationOp.ADD_SELF_CONN: add_self_conn,
    MutationOp.SUB_SELF_CONN: sub_self_conn,
    MutationOp.ADD_GATE: add_gate,
    MutationOp.SUB_GATE: sub_gate,
    MutationOp.ADD_BACK_CONN: add_back_conn,
    MutationOp.SUB_BACK_CONN: sub_back_conn,
    MutationOp.SWAP_NODES: swap_nodes,
    MutationOp.ADD_LSTM_NODE: add_lstm_node,
    MutationOp.ADD_GRU_NODE: add_gru_node,
    MutationOp.REINIT_WEIGHT: reinit_weight,
    MutationOp.BATCH_NORM: batch_norm,
}


def resolve_op(op: MutationOp | str) -> MutationOp | None:
    if isinstance(op, MutationOp):
        return op
    try:
        return MutationOp(op)
    except ValueError:
        return None


def apply_mutation(net: "Network", op: MutationOp | str, **params: Any) -> bool:
    key = resolve_op(op)
    if key is None:
        warn(logger, net.runtime, "Unknown mutation operator %r; ignoring", op)
        return False
    MUTATION_DISPATCH[key](net, **params)
    net.mark_topology_dirty()
    net.dirty.slab = True
    return True
