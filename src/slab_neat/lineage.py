from __future__ import annotations

from collections import deque
from typing import Sequence

import numpy as np

from .network import Network

ANCESTOR_WINDOW = 4
MAX_UNIQUENESS_PAIRS = 30


def build_ancestors(genome: Network, population: Sequence[Network], window: int = ANCESTOR_WINDOW) -> set[int]:
    """Ancestor ids reachable through parent links within ``window`` generations.

    Only ancestors still present in ``population`` are expanded further.
    """
    by_id = {g.genome_id: g for g in population}
    ancestors: set[int] = set()
    queue = deque((pid, 1) for pid in genome.parents)
    while queue:
        pid, depth = queue.popleft()
        if depth > window:
            continue
        ancestors.add(pid)
        parent = by_id.get(pid)
        if parent is not None:
            queue.extend((gid, depth + 1) for gid in parent.parents)
    return ancestors


def ancestor_uniqueness(population: Sequence[Network], rng: np.random.Generator) -> float:
    """Mean Jaccard distance between the ancestor sets of sampled genome pairs."""
    n = len(population)
    if n < 2:
        return 0.0
    samples = min(MAX_UNIQUENESS_PAIRS, n * (n - 1) // 2)
    total = 0.0
    counted = 0
    for _ in range(samples):
        i = int(rng.integers(n))
        j = int(rng.integers(n))
        if i == j:
            j = (j + 1) % n
        anc_a = build_ancestors(population[i], population)
        anc_b = build_ancestors(population[j], population)
        if not anc_a and not anc_b:
            continue
        inter = len(anc_a & anc_b)
        union = len(anc_a) + len(anc_b) - inter or 1
        total += 1 - inter / union
        counted += 1
    return round(total / counted, 3) if counted else 0.0


def lineage_snapshot(best: Network, population: Sequence[Network], inbreeding: int, uniqueness: float) -> dict:
    depths = [g.depth for g in population]
    return {
        "parents": list(best.parents),
        "depth_best": best.depth,
        "mean_depth": round(float(np.mean(depths)), 2) if depths else 0.0,
        "inbreeding": inbreeding,
        "ancestor_uniq": uniqueness,
    }
