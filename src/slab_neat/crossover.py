"""Positional node alignment plus index-keyed connection gene recombination.

Every random draw goes through one ``np.random.Generator``: the caller's
``rng`` when given, otherwise parent A's generator.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import IncompatibleParentsError
from .network import Network


def innovation_id(a: int, b: int) -> int:
    return int(0.5 * (a + b) * (a + b + 1) + b)


@dataclass
class _Gene:
    src: int
    dst: int
    weight: float
    gain: float
    gater: int | None
    enabled: bool


def _remap(position: int, parent_size: int, size: int, outputs: int) -> int | None:
    parent_out_start = parent_size - outputs
    if position >= parent_out_start:
        return size - outputs + (position - parent_out_start)
    if position >= size - outputs:
        return None
    return position


def _genes(parent: Network, size: int) -> dict[int, _Gene]:
    index = parent.node_index()
    n = len(parent.nodes)
    genes: dict[int, _Gene] = {}
    for conn in parent.connections + parent.selfconns:
        src = _remap(index[conn.src], n, size, parent.output)
        dst = _remap(index[conn.dst], n, size, parent.output)
        if src is None or dst is None:
            continue
        gater = None
        if conn.gater is not None:
            gater = _remap(index[conn.gater], n, size, parent.output)
        genes[innovation_id(src, dst)] = _Gene(src, dst, conn.weight, conn.gain, gater, conn.enabled)
    return genes


def crossover(
    parent_a: Network,
    parent_b: Network,
    equal: bool = False,
    rng: np.random.Generator | None = None,
) -> Network:
    if parent_a.input != parent_b.input or parent_a.output != parent_b.output:
        raise IncompatibleParentsError("Cannot crossover networks with different input/output sizes")

    rng = rng if rng is not None else parent_a.rng
    score_a = parent_a.score or 0.0
    score_b = parent_b.score or 0.0
    size_a, size_b = len(parent_a.nodes), len(parent_b.nodes)
    n_in, n_out = parent_a.input, parent_a.output

    if equal or score_a == score_b:
        low, high = min(size_a, size_b), max(size_a, size_b)
        size = int(low + rng.integers(high - low + 1))
    elif score_a > score_b:
        size = size_a
    else:
        size = size_b

    a_keeps = equal or score_a >= score_b
    b_keeps = equal or score_b >= score_a

    slots: list[dict | None] = []
    for i in range(size):
        if i < n_in:
            chosen = parent_a.nodes[i]
        elif i >= size - n_out:
            k = i - (size - n_out)
            node_a = parent_a.nodes[size_a - n_out + k]
            node_b = parent_b.nodes[size_b - n_out + k]
            chosen = node_a if rng.random() >= 0.5 else node_b
        else:
            node_a = parent_a.nodes[i] if i < size_a - n_out else None
            node_b = parent_b.nodes[i] if i < size_b - n_out else None
            if node_a is not None and node_b is not None:
                chosen = node_a if rng.random() >= 0.5 else node_b
            elif node_a is not None and a_keeps:
                chosen = node_a
            elif node_b is not None and b_keeps:
                chosen = node_b
            else:
                chosen = None
        if chosen is None:
            slots.append(None)
        else:
            slots.append({"type": chosen.kind, "bias": chosen.bias, "squash": chosen.activation, "tag": chosen.tag})

    genes_a = _genes(parent_a, size)
    genes_b = _genes(parent_b, size)
    reenable_prob = parent_a.reenable_prob

    inherited: list[_Gene] = []
    for key, gene_a in genes_a.items():
        gene_b = genes_b.get(key)
        if gene_b is not None:
            pick = gene_a if rng.random() >= 0.5 else gene_b
            gene = _Gene(**vars(pick))
            if not gene_a.enabled or not gene_b.enabled:
                gene.enabled = bool(rng.random() < reenable_prob)
            inherited.append(gene)
        elif a_keeps:
            if not gene_a.enabled:
                gene_a.enabled = bool(rng.random() < reenable_prob)
            inherited.append(gene_a)
    if b_keeps:
        for key, gene_b in genes_b.items():
            if key in genes_a:
                continue
            if not gene_b.enabled:
                gene_b.enabled = bool(rng.random() < parent_b.reenable_prob)
            inherited.append(gene_b)

    # Compact surviving slots and drop genes that touch a missing slot.
    position = {}
    nodes = []
    for i, slot in enumerate(slots):
        if slot is not None:
            position[i] = len(nodes)
            nodes.append(slot)

    seen: set[tuple[int, int]] = set()
    conns = []
    for gene in inherited:
        if gene.src >= gene.dst:
            continue
        if gene.src not in position or gene.dst not in position:
            continue
        pair = (position[gene.src], position[gene.dst])
        if pair in seen:
            continue
        seen.add(pair)
        gater = position.get(gene.gater) if gene.gater is not None else None
        conns.append(
            {
                "from": pair[0],
                "to": pair[1],
                "weight": gene.weight,
                "gain": gene.gain if gater is not None else 1.0,
                "gater": gater,
                "enabled": gene.enabled,
            }
        )

    child = Network.from_dict(
        {
            "input": n_in,
            "output": n_out,
            "enforce_acyclic": parent_a.enforce_acyclic,
            "nodes": nodes,
            "connections": conns,
        },
        runtime=parent_a.runtime,
        arena=parent_a.arena,
        seed=int(rng.integers(2**32)),
    )
    child.reenable_prob = reenable_prob
    return child
