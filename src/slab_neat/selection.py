from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from .config import SelectionConfig
from .errors import TournamentSizeError
from .network import Network

POWER = "POWER"
FITNESS_PROPORTIONATE = "FITNESS_PROPORTIONATE"
TOURNAMENT = "TOURNAMENT"


def _score(genome: Network) -> float:
    return genome.score if genome.score is not None else 0.0


def sort_population(population: list[Network]) -> None:
    population.sort(key=_score, reverse=True)


def power(population: list[Network], cfg: SelectionConfig, rng: np.random.Generator) -> Network:
    if len(population) > 1 and population[0].score is not None and population[1].score is not None:
        if population[0].score < population[1].score:
            sort_population(population)
    index = int(math.floor(rng.random() ** (cfg.power or 1) * len(population)))
    return population[index]


def fitness_proportionate(population: Sequence[Network], rng: np.random.Generator) -> Network:
    scores = [_score(g) for g in population]
    shift = abs(min(0.0, min(scores)))
    total = sum(scores) + shift * len(population)
    threshold = rng.random() * total
    cumulative = 0.0
    for genome, score in zip(population, scores):
        cumulative += score + shift
        if threshold < cumulative:
            return genome
    return population[int(rng.integers(len(population)))]


def tournament(
    population: Sequence[Network],
    cfg: SelectionConfig,
    rng: np.random.Generator,
    suppress_error: bool = False,
) -> Network:
    size = cfg.size or 2
    if size > len(population):
        if not suppress_error:
            raise TournamentSizeError("Tournament size must be less than population size.")
        return population[int(rng.integers(len(population)))]

    entrants = [population[int(rng.integers(len(population)))] for _ in range(size)]
    entrants.sort(key=_score, reverse=True)
    for i, genome in enumerate(entrants):
        if rng.random() < cfg.probability or i == len(entrants) - 1:
            return genome
    return entrants[0]


def get_parent(
    population: list[Network],
    cfg: SelectionConfig,
    rng: np.random.Generator,
    suppress_error: bool = False,
) -> Network:
    method = cfg.method.upper()
    if method == POWER:
        return power(population, cfg, rng)
    if method == FITNESS_PROPORTIONATE:
        return fitness_proportionate(population, rng)
    if method == TOURNAMENT:
        return tournament(population, cfg, rng, suppress_error)
    return population[0]
