from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from .config import SpeciationConfig
from .crossover import innovation_id
from .network import Network
from .telemetry import structural_entropy

DistanceFn = Callable[[Network, Network], float]


@dataclass
class Species:
    species_id: int
    representative: Network
    members: list[Network] = field(default_factory=list)
    last_improved: int = 0
    best_score: float = -math.inf
    created: int = 0


def _innovation_list(net: Network) -> list[tuple[int, float]]:
    index = net.node_index()
    genes = [(innovation_id(index[c.src], index[c.dst]), c.weight) for c in net.connections]
    genes.sort(key=lambda g: g[0])
    return genes


def compatibility_distance(
    a: Network,
    b: Network,
    excess_coeff: float = 1.0,
    disjoint_coeff: float = 1.0,
    weight_diff_coeff: float = 0.4,
) -> float:
    genes_a = _innovation_list(a)
    genes_b = _innovation_list(b)
    max_a = genes_a[-1][0] if genes_a else 0
    max_b = genes_b[-1][0] if genes_b else 0

    i = j = 0
    matching = disjoint = excess = 0
    weight_diff = 0.0
    while i < len(genes_a) and j < len(genes_b):
        innov_a, weight_a = genes_a[i]
        innov_b, weight_b = genes_b[j]
        if innov_a == innov_b:
            matching += 1
            weight_diff += abs(weight_a - weight_b)
            i += 1
            j += 1
        elif innov_a < innov_b:
            if innov_a > max_b:
                excess += 1
            else:
                disjoint += 1
            i += 1
        else:
            if innov_b > max_a:
                excess += 1
            else:
                disjoint += 1
            j += 1
    excess += len(genes_a) - i + len(genes_b) - j

    n = max(1, len(genes_a), len(genes_b))
    avg_weight_diff = weight_diff / matching if matching else 0.0
    return excess_coeff * excess / n + disjoint_coeff * disjoint / n + weight_diff_coeff * avg_weight_diff


class SpeciesManager:
    """Threshold-based clustering with a PI-controlled compatibility threshold.

    The distance function defaults to innovation-aligned compatibility with a
    per-generation cache keyed by genome id pairs; pass ``distance_fn`` to
    override it.
    """

    def __init__(
        self,
        cfg: SpeciationConfig,
        rng: np.random.Generator | None = None,
        distance_fn: DistanceFn | None = None,
    ):
        self.cfg = cfg
        self.rng = rng if rng is not None else np.random.default_rng()
        self.distance_fn = distance_fn
        self.threshold = cfg.compatibility_threshold
        self.excess_coeff = cfg.excess_coeff
        self.disjoint_coeff = cfg.disjoint_coeff
        self.weight_diff_coeff = cfg.weight_diff_coeff

        self.species: list[Species] = []
        self.next_species_id = 0
        self.generation = 0
        self.history: list[dict] = []

        self._ema: float | None = None
        self._integral = 0.0
        self._prev_members: dict[int, set[int]] = {}
        self._last_stats: dict[int, dict[str, float]] = {}
        self._cache_gen: int | None = None
        self._cache: dict[tuple[int, int], float] = {}

    def distance(self, a: Network, b: Network) -> float:
        if self.distance_fn is not None:
            return float(self.distance_fn(a, b))
        if a.genome_id == b.genome_id and a is not b:
            return compatibility_distance(a, b, self.excess_coeff, self.disjoint_coeff, self.weight_diff_coeff)
        if self._cache_gen != self.generation:
            self._cache_gen = self.generation
            self._cache = {}
        key = (min(a.genome_id, b.genome_id), max(a.genome_id, b.genome_id))
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        dist = compatibility_distance(a, b, self.excess_coeff, self.disjoint_coeff, self.weight_diff_coeff)
        self._cache[key] = dist
        return dist

    def speciate(self, population: list[Network], generation: int | None = None) -> None:
        if generation is not None:
            self.generation = generation
        gen = self.generation

        self._prev_members = {sp.species_id: {m.genome_id for m in sp.members} for sp in self.species}
        for sp in self.species:
            sp.members = []

        for genome in population:
            for sp in self.species:
                if self.distance(genome, sp.representative) < self.threshold:
                    sp.members.append(genome)
                    break
            else:
                sid = self.next_species_id
                self.next_species_id += 1
                score = genome.score if genome.score is not None else -math.inf
                self.species.append(
                    Species(
                        species_id=sid,
                        representative=genome,
                        members=[genome],
                        last_improved=gen,
                        best_score=score,
                        created=gen,
                    )
                )

        self.species = [sp for sp in self.species if sp.members]
        for sp in self.species:
            sp.representative = sp.members[0]

        self._apply_age_penalty()
        self._adjust_threshold()
        self._tune_coefficients(len(population))
        self._record_history()

    def _apply_age_penalty(self) -> None:
        cfg = self.cfg
        if cfg.old_age_penalty >= 1:
            return
        for sp in self.species:
            if self.generation - sp.created >= cfg.age_grace * cfg.old_age_multiplier:
                for member in sp.members:
                    if member.score is not None:
                        member.score *= cfg.old_age_penalty

    def _adjust_threshold(self) -> None:
        cfg = self.cfg
        target = cfg.target_species or 0
        if not cfg.enabled or target <= 0:
            return

        observed = len(self.species)
        alpha = 2.0 / (max(1, cfg.smoothing_window) + 1)
        self._ema = observed if self._ema is None else self._ema + alpha * (observed - self._ema)
        error = target - self._ema
        self._integral = self._integral * cfg.integral_decay + error
        delta = cfg.kp * error + cfg.ki * self._integral

        threshold = self.threshold - delta
        if threshold < cfg.min_threshold:
            threshold = cfg.min_threshold
            self._integral = 0.0
        if threshold > cfg.max_threshold:
            threshold = cfg.max_threshold
            self._integral = 0.0
        self.threshold = threshold

    def _tune_coefficients(self, popsize: int) -> None:
        auto = self.cfg.auto_compat
        if not auto.enabled:
            return
        target = auto.target or self.cfg.target_species or max(2, round(math.sqrt(popsize)))
        error = target - (len(self.species) or 1)
        if error == 0:
            factor = 1 + (self.rng.random() - 0.5) * auto.adjust_rate * 0.5
        else:
            factor = 1 - auto.adjust_rate * np.sign(error)
        self.excess_coeff = float(np.clip(self.excess_coeff * factor, auto.min_coeff, auto.max_coeff))
        self.disjoint_coeff = float(np.clip(self.disjoint_coeff * factor, auto.min_coeff, auto.max_coeff))

    def _record_history(self) -> None:
        if self.cfg.extended_history:
            stats = [self._extended_stats(sp) for sp in self.species]
            for st in stats:
                self._last_stats[st["id"]] = {
                    "mean_nodes": st["mean_nodes"],
                    "mean_conns": st["mean_conns"],
                    "best": st["best"],
                }
        else:
            stats = [
                {"id": sp.species_id, "size": len(sp.members), "best": sp.best_score, "last_improved": sp.last_improved}
                for sp in self.species
            ]
        self.history.append({"generation": self.generation, "stats": stats})
        if len(self.history) > self.cfg.history_cap:
            del self.history[: len(self.history) - self.cfg.history_cap]

    def _extended_stats(self, sp: Species) -> dict:
        members = sp.members
        nodes = np.array([len(m.nodes) for m in members], dtype=float)
        conns = np.array([len(m.connections) for m in members], dtype=float)
        scores = np.array([m.score or 0.0 for m in members], dtype=float)
        entropies = [structural_entropy(m) for m in members]

        head = members[:10]
        dists = [self.distance(head[i], head[j]) for i in range(len(head)) for j in range(i + 1, len(head))]

        last = self._last_stats.get(sp.species_id)
        mean_nodes = float(nodes.mean())
        mean_conns = float(conns.mean())

        turnover = 0.0
        prev = self._prev_members.get(sp.species_id)
        if prev is not None and members:
            turnover = sum(1 for m in members if m.genome_id not in prev) / len(members)

        innovations = []
        enabled = 0
        for m in members:
            index = m.node_index()
            for c in m.connections:
                innovations.append(innovation_id(index[c.src], index[c.dst]))
                enabled += int(c.enabled)
        total = len(innovations)

        return {
            "id": sp.species_id,
            "size": len(members),
            "best": sp.best_score,
            "last_improved": sp.last_improved,
            "age": self.generation - sp.created,
            "mean_nodes": mean_nodes,
            "mean_conns": mean_conns,
            "mean_score": float(scores.mean()),
            "mean_compat": float(np.mean(dists)) if dists else 0.0,
            "mean_entropy": float(np.mean(entropies)),
            "var_nodes": float(nodes.var()),
            "var_conns": float(conns.var()),
            "delta_mean_nodes": mean_nodes - last["mean_nodes"] if last else 0.0,
            "delta_mean_conns": mean_conns - last["mean_conns"] if last else 0.0,
            "delta_best_score": sp.best_score - last["best"] if last else 0.0,
            "turnover_rate": turnover,
            "mean_innovation": float(np.mean(innovations)) if innovations else 0.0,
            "innovation_range": float(max(innovations) - min(innovations)) if innovations else 0.0,
            "enabled_ratio": enabled / total if total else 0.0,
        }

    def apply_fitness_sharing(self) -> None:
        sigma = self.cfg.sharing_sigma
        for sp in self.species:
            members = sp.members
            if sigma > 0:
                shared = []
                for i, mi in enumerate(members):
                    if mi.score is None:
                        shared.append(None)
                        continue
                    share = 0.0
                    for j, mj in enumerate(members):
                        d = 0.0 if i == j else self.distance(mi, mj)
                        if d < sigma:
                            share += 1 - (d / sigma) ** 2
                    shared.append(mi.score / (share if share > 0 else 1.0))
                for member, score in zip(members, shared):
                    if score is not None:
                        member.score = score
            else:
                size = len(members)
                for member in members:
                    if member.score is not None:
                        member.score = member.score / size

    def update_stagnation(self) -> None:
        window = self.cfg.stagnation_generations
        for sp in self.species:
            sp.members.sort(key=lambda m: m.score or 0.0, reverse=True)
            top = sp.members[0].score
            top = top if top is not None else -math.inf
            if top > sp.best_score:
                sp.best_score = top
                sp.last_improved = self.generation
        survivors = [sp for sp in self.species if self.generation - sp.last_improved <= window]
        if survivors:
            self.species = survivors

    def offspring_allocation(self, remaining: int) -> list[int]:
        """Offspring counts per species from age-adjusted summed scores.

        Species that improved recently get ``young_multiplier``, long stalled
        ones ``old_multiplier``. Adjusted totals are shifted to be non-negative
        before shares are taken, so all-negative fitness landscapes still
        allocate proportionally.
        """
        cfg = self.cfg
        if not self.species or remaining <= 0:
            return [0] * len(self.species)

        adjusted = []
        for sp in self.species:
            base = sum(m.score or 0.0 for m in sp.members if m.score is None or math.isfinite(m.score))
            age = self.generation - sp.last_improved
            if age <= cfg.young_threshold:
                base *= cfg.young_multiplier
            elif age >= cfg.old_threshold:
                base *= cfg.old_multiplier
            adjusted.append(base)

        low = min(adjusted)
        if low < 0:
            adjusted = [a - low for a in adjusted]
        total = sum(adjusted) or 1.0
        if not any(adjusted):
            adjusted = [1.0] * len(adjusted)
            total = float(len(adjusted))

        raw = [a / total * remaining for a in adjusted]
        alloc = [int(math.floor(s)) for s in raw]
        if remaining >= len(self.species) * cfg.min_offspring:
            alloc = [max(a, cfg.min_offspring) for a in alloc]

        left = remaining - sum(alloc)
        for i in sorted(range(len(raw)), key=lambda k: raw[k] - math.floor(raw[k]), reverse=True):
            if left <= 0:
                break
            alloc[i] += 1
            left -= 1
        if left < 0:
            for i in sorted(range(len(alloc)), key=lambda k: alloc[k], reverse=True):
                if left == 0:
                    break
                if alloc[i] > cfg.min_offspring:
                    alloc[i] -= 1
                    left += 1
        return alloc

    def stats(self) -> list[dict]:
        return [
            {
                "id": sp.species_id,
                "size": len(sp.members),
                "best_score": sp.best_score,
                "last_improved": sp.last_improved,
            }
            for sp in self.species
        ]

    def reset(self) -> None:
        self.species = []
        self.history = []
        self._ema = None
        self._integral = 0.0
        self._prev_members = {}
        self._last_stats = {}
