"""Per-generation telemetry: diversity statistics, entry assembly and export."""

from __future__ import annotations

import csv
import io
import json
import logging
import math
from typing import Callable, Iterable, Sequence

import numpy as np

from .config import TelemetryConfig
from .network import Network

logger = logging.getLogger(__name__)

CORE_FIELDS = ("gen", "best", "species")
FLATTENED_FIELDS = ("complexity", "perf", "lineage")
ENTROPY_EPS = 1e-9


def structural_entropy(net: Network) -> float:
    """Shannon entropy of the degree histogram over enabled connections."""
    degree = {n.node_id: 0 for n in net.nodes}
    for conn in net.connections:
        if conn.enabled:
            degree[conn.src] += 1
            degree[conn.dst] += 1
    hist: dict[int, int] = {}
    for d in degree.values():
        hist[d] = hist.get(d, 0) + 1
    total = len(net.nodes) or 1
    entropy = 0.0
    for count in hist.values():
        p = count / total
        if p > 0:
            entropy -= p * math.log(p + ENTROPY_EPS)
    return entropy


def _graphlet_entropy(population: Sequence[Network], samples: int, rng: np.random.Generator) -> float:
    motifs = [0, 0, 0, 0]
    n = len(population)
    for _ in range(samples):
        if n == 0:
            break
        net = population[int(rng.integers(n))]
        if len(net.nodes) < 3:
            continue
        picked = rng.choice(len(net.nodes), size=3, replace=False)
        ids = {net.nodes[int(i)].node_id for i in picked}
        edges = sum(1 for c in net.connections if c.enabled and c.src in ids and c.dst in ids)
        motifs[min(edges, 3)] += 1
    total = sum(motifs) or 1
    entropy = 0.0
    for count in motifs:
        p = count / total
        if p > 0:
            entropy -= p * math.log(p)
    return entropy


def _sample_pairs(n: int, count: int, rng: np.random.Generator) -> Iterable[tuple[int, int]]:
    for _ in range(count):
        if n < 2:
            return
        i = int(rng.integers(n))
        j = int(rng.integers(n))
        if i == j:
            j = (j + 1) % n
        yield i, j


def compute_diversity_stats(
    population: Sequence[Network],
    distance: Callable[[Network, Network], float],
    rng: np.random.Generator,
    pair_sample: int = 40,
    graphlet_sample: int = 60,
    lineage: bool = True,
) -> dict[str, float]:
    n = len(population)

    dists = [distance(population[i], population[j]) for i, j in _sample_pairs(n, pair_sample, rng)]
    mean_compat = float(np.mean(dists)) if dists else 0.0
    var_compat = max(0.0, float(np.mean(np.square(dists))) - mean_compat**2) if dists else 0.0

    entropies = np.array([structural_entropy(g) for g in population], dtype=float)
    stats = {
        "mean_compat": mean_compat,
        "var_compat": var_compat,
        "mean_entropy": float(entropies.mean()) if n else 0.0,
        "var_entropy": float(entropies.var()) if n else 0.0,
        "graphlet_entropy": _graphlet_entropy(population, graphlet_sample, rng),
        "lineage_mean_depth": 0.0,
        "lineage_mean_pair_dist": 0.0,
    }

    if lineage and n:
        depths = [g.depth for g in population]
        stats["lineage_mean_depth"] = float(np.mean(depths))
        pairs = min(pair_sample, n * (n - 1) // 2)
        gaps = [abs(depths[i] - depths[j]) for i, j in _sample_pairs(n, pairs, rng)]
        stats["lineage_mean_pair_dist"] = float(np.mean(gaps)) if gaps else 0.0
    return stats


def hypervolume_proxy(population: Sequence[Network], complexity_metric: str = "connections") -> float:
    """Normalized score weighted by inverse complexity, summed over front 0."""
    if not population:
        return 0.0
    scores = [g.score or 0.0 for g in population]
    low, high = min(scores), max(scores)
    total = 0.0
    for genome in population:
        if (genome.mo_rank or 0) != 0:
            continue
        norm = ((genome.score or 0.0) - low) / (high - low) if high > low else 0.0
        size = len(genome.nodes) if complexity_metric == "nodes" else len(genome.connections)
        total += norm / (size + 1)
    return total


def front_sizes(population: Sequence[Network], limit: int = 5) -> list[int]:
    sizes = []
    for rank in range(limit):
        size = sum(1 for g in population if (g.mo_rank or 0) == rank)
        if not size:
            break
        sizes.append(size)
    return sizes


def complexity_stats(
    population: Sequence[Network],
    previous: tuple[float, float] | None,
    max_nodes: float,
    max_conns: float,
) -> dict:
    nodes = np.array([len(g.nodes) for g in population], dtype=float)
    conns = np.array([len(g.connections) for g in population], dtype=float)
    ratios = []
    for g in population:
        total = len(g.connections)
        ratios.append(sum(1 for c in g.connections if c.enabled) / total if total else 0.0)
    mean_nodes = float(nodes.mean()) if nodes.size else 0.0
    mean_conns = float(conns.mean()) if conns.size else 0.0
    growth_nodes = mean_nodes - previous[0] if previous else 0.0
    growth_conns = mean_conns - previous[1] if previous else 0.0
    return {
        "mean_nodes": round(mean_nodes, 2),
        "mean_conns": round(mean_conns, 2),
        "max_nodes": int(nodes.max()) if nodes.size else 0,
        "max_conns": int(conns.max()) if conns.size else 0,
        "mean_enabled_ratio": round(float(np.mean(ratios)) if ratios else 0.0, 3),
        "growth_nodes": round(growth_nodes, 2),
        "growth_conns": round(growth_conns, 2),
        "budget_max_nodes": max_nodes,
        "budget_max_conns": max_conns,
    }


def build_telemetry_entry(
    generation: int,
    best: float | None,
    species: int,
    population: Sequence[Network],
    operator_stats: dict[str, dict[str, int]],
    diversity: dict | None = None,
    obj_importance: dict | None = None,
    multi_objective: bool = False,
    complexity_metric: str = "connections",
) -> dict:
    hyper = hypervolume_proxy(population, complexity_metric) if multi_objective else 0.0
    entry = {
        "gen": generation,
        "best": best,
        "species": species,
        "hyper": hyper,
        "diversity": diversity,
        "ops": [{"op": op, "succ": s["success"], "att": s["attempts"]} for op, s in operator_stats.items()],
        "obj_importance": obj_importance or {},
    }
    if multi_objective:
        entry["fronts"] = front_sizes(population)
    return entry


def apply_telemetry_select(entry: dict, select: Iterable[str]) -> dict:
    keep = set(select)
    if not keep:
        return entry
    for key in list(entry):
        if key not in CORE_FIELDS and key not in keep:
            del entry[key]
    return entry


class TelemetryLog:
    """Bounded in-memory telemetry buffer with an optional stream callback."""

    def __init__(self, cfg: TelemetryConfig):
        self.cfg = cfg
        self.entries: list[dict] = []

    def record(self, entry: dict) -> dict:
        apply_telemetry_select(entry, self.cfg.select)
        self.entries.append(entry)
        if self.cfg.on_entry is not None:
            try:
                self.cfg.on_entry(entry)
            except Exception:
                logger.warning("Telemetry stream callback failed", exc_info=True)
        if len(self.entries) > self.cfg.cap:
            del self.entries[: len(self.entries) - self.cfg.cap]
        return entry

    def clear(self) -> None:
        self.entries = []

    def __len__(self) -> int:
        return len(self.entries)

    def to_jsonl(self) -> str:
        return "\n".join(json.dumps(entry) for entry in self.entries)

    def to_csv(self, max_entries: int = 500) -> str:
        recent = self.entries[-max_entries:]
        if not recent:
            return ""
        rows = [_flatten(entry) for entry in recent]
        fieldnames: list[str] = []
        for row in rows:
            for key in row:
                if key not in fieldnames:
                    fieldnames.append(key)
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=fieldnames, lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return buf.getvalue().rstrip("\n")


def _flatten(entry: dict) -> dict:
    row = {}
    for key, value in entry.items():
        if key in FLATTENED_FIELDS and isinstance(value, dict):
            for sub, sub_value in value.items():
                row[f"{key}.{sub}"] = json.dumps(sub_value)
        elif isinstance(value, (list, dict)):
            row[key] = json.dumps(value)
        else:
            row[key] = value
    return row
