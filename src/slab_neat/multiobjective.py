"""Pareto ranking over registered objectives (NSGA-II style)."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Sequence

from .network import Network

logger = logging.getLogger(__name__)

MAX_FRONTS = 50


@dataclass(frozen=True)
class ObjectiveDescriptor:
    key: str
    direction: str
    accessor: Callable[[Network], float]


def _fitness(genome: Network) -> float:
    return genome.score or 0.0


FITNESS_OBJECTIVE = ObjectiveDescriptor("fitness", "max", _fitness)


class ObjectiveRegistry:
    def __init__(self, include_fitness: bool = True):
        self.include_fitness = include_fitness
        self._extra: list[ObjectiveDescriptor] = []

    def register(self, key: str, direction: str, accessor: Callable[[Network], float]) -> None:
        if direction not in ("max", "min"):
            raise ValueError(f"Unsupported objective direction: {direction}")
        self._extra = [o for o in self._extra if o.key != key]
        self._extra.append(ObjectiveDescriptor(key, direction, accessor))

    def clear(self) -> None:
        self._extra = []

    def objectives(self) -> list[ObjectiveDescriptor]:
        base = [FITNESS_OBJECTIVE] if self.include_fitness else []
        return base + [o for o in self._extra if o.key != "fitness" or not self.include_fitness]

    def keys(self) -> list[str]:
        return [o.key for o in self.objectives()]

    def __len__(self) -> int:
        return len(self.objectives())


def objective_value(obj: ObjectiveDescriptor, genome: Network) -> float:
    try:
        return float(obj.accessor(genome))
    except Exception:
        logger.debug("Objective %s accessor failed", obj.key, exc_info=True)
        return 0.0


def dominates(a: Sequence[float], b: Sequence[float], directions: Sequence[str]) -> bool:
    better = False
    for va, vb, direction in zip(a, b, directions):
        if direction == "max":
            if va < vb:
                return False
            if va > vb:
                better = True
        else:
            if va > vb:
                return False
            if va < vb:
                better = True
    return better


def crowding_distance(front: list[Network], values: dict[int, list[float]]) -> None:
    """Annotate ``mo_crowding``; ``values`` maps ``id(genome)`` to its vector."""
    if not front:
        return
    for genome in front:
        genome.mo_crowding = 0.0
    n_obj = len(values[id(front[0])])
    for k in range(n_obj):
        ordered = sorted(front, key=lambda g: values[id(g)][k])
        ordered[0].mo_crowding = math.inf
        ordered[-1].mo_crowding = math.inf
        low = values[id(ordered[0])][k]
        high = values[id(ordered[-1])][k]
        span = (high - low) or 1.0
        for i in range(1, len(ordered) - 1):
            gap = values[id(ordered[i + 1])][k] - values[id(ordered[i - 1])][k]
            ordered[i].mo_crowding += gap / span


def fast_non_dominated(
    population: Sequence[Network],
    objectives: Sequence[ObjectiveDescriptor],
) -> list[list[Network]]:
    """Peel successive non-dominated fronts, setting ``mo_rank`` and ``mo_crowding``."""
    n = len(population)
    directions = [o.direction for o in objectives]
    vectors = [[objective_value(o, g) for o in objectives] for g in population]

    dominated_by: list[list[int]] = [[] for _ in range(n)]
    counts = [0] * n
    current: list[int] = []
    for p in range(n):
        for q in range(n):
            if p == q:
                continue
            if dominates(vectors[p], vectors[q], directions):
                dominated_by[p].append(q)
            elif dominates(vectors[q], vectors[p], directions):
                counts[p] += 1
        if counts[p] == 0:
            current.append(p)

    fronts: list[list[Network]] = []
    rank = 0
    while current:
        following: list[int] = []
        for p in current:
            population[p].mo_rank = rank
            for q in dominated_by[p]:
                counts[q] -= 1
                if counts[q] == 0:
                    following.append(q)
        fronts.append([population[i] for i in current])
        current = following
        rank += 1
        if rank > MAX_FRONTS:
            break

    values = {id(g): v for g, v in zip(population, vectors)}
    for front in fronts:
        crowding_distance(front, values)
    return fronts


def sort_by_rank_and_crowding(population: list[Network]) -> None:
    population.sort(key=lambda g: (g.mo_rank if g.mo_rank is not None else 0, -g.mo_crowding))


def objective_importance(population: Sequence[Network], objectives: Sequence[ObjectiveDescriptor]) -> dict:
    out = {}
    for obj in objectives:
        vals = [objective_value(obj, g) for g in population]
        if not vals:
            continue
        mean = sum(vals) / len(vals)
        var = sum((v - mean) ** 2 for v in vals) / len(vals)
        out[obj.key] = {"range": max(vals) - min(vals), "var": var}
    return out
