"""Train-until-target loop that drives a ``Neat`` population from a labeled dataset."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import time
from typing import TYPE_CHECKING, Callable, Sequence

from .config import EvolveOptions, NeatConfig
from .errors import DatasetShapeError, StoppingCriterionError
from .workers import WorkerPool, create_worker_pool

if TYPE_CHECKING:
    from .network import Network

logger = logging.getLogger(__name__)

MAX_INF = 5
SMALL_POPULATION = 10
SMALL_POPULATION_MUTATION_RATE = 0.5
SMALL_POPULATION_MUTATION_AMOUNT = 1


class ComplexityPenalty:
    """``growth * (hidden nodes + connections + gates)``, memoized per structure size."""

    def __init__(self, growth: float):
        self.growth = growth
        self._cache: dict[tuple[int, int, int, int, int], float] = {}

    def __call__(self, genome: "Network") -> float:
        key = (len(genome.nodes), len(genome.connections), len(genome.gates), genome.input, genome.output)
        base = self._cache.get(key)
        if base is None:
            base = float(key[0] - genome.input - genome.output + key[1] + key[2])
            self._cache[key] = base
        return base * self.growth


def validate_dataset(network: "Network", dataset: Sequence[dict]) -> None:
    if (
        not dataset
        or len(dataset[0]["input"]) != network.input
        or len(dataset[0]["output"]) != network.output
    ):
        raise DatasetShapeError("Dataset is invalid or dimensions do not match network input/output size!")


def _make_tester(dataset: Sequence[dict], cost, batched: bool) -> Callable[["Network"], float]:
    if not batched:
        return lambda genome: genome.test(dataset, cost)["error"]

    from .phenotype import SlabPhenotype

    def tester(genome: "Network") -> float:
        if SlabPhenotype.eligible(genome):
            return SlabPhenotype(genome).test(dataset, cost)["error"]
        return genome.test(dataset, cost)["error"]

    return tester


def build_single_thread_fitness(
    dataset: Sequence[dict],
    cost,
    amount: int,
    penalty: ComplexityPenalty,
    batched: bool = False,
) -> Callable[["Network"], float]:
    tester = _make_tester(dataset, cost, batched)
    amount = max(1, amount)

    def fitness(genome: "Network") -> float:
        score = 0.0
        for _ in range(amount):
            try:
                score -= tester(genome)
            except Exception as exc:
                if genome.runtime.warnings:
                    logger.warning("Genome evaluation failed: %s. Penalizing with -inf fitness.", exc)
                return -math.inf
        score -= penalty(genome)
        if math.isnan(score):
            return -math.inf
        return score / amount

    return fitness


def build_multi_thread_fitness(pool: WorkerPool, penalty: ComplexityPenalty) -> Callable:
    """Population fitness: every genome is scored as ``-error - penalty`` on the pool."""

    async def score(genome: "Network") -> None:
        try:
            result = await pool.evaluate(genome)
        except Exception:
            logger.debug("Worker evaluation failed for genome %d", genome.genome_id, exc_info=True)
            genome.score = -math.inf
            return
        genome.score = -math.inf if math.isnan(result) else -result - penalty(genome)

    async def fitness(population: list["Network"]) -> None:
        await asyncio.gather(*(score(genome) for genome in population))

    return fitness


def _neat_config(options: EvolveOptions, population_fitness: bool) -> NeatConfig:
    base = options.neat
    popsize = options.popsize if options.popsize is not None else base.popsize
    mutation_rate = options.mutation_rate
    mutation_amount = options.mutation_amount
    if popsize <= SMALL_POPULATION:
        if mutation_rate is None:
            mutation_rate = SMALL_POPULATION_MUTATION_RATE
        if mutation_amount is None:
            mutation_amount = SMALL_POPULATION_MUTATION_AMOUNT
    return dataclasses.replace(
        base,
        popsize=popsize,
        clear=options.clear or base.clear,
        fitness_population=population_fitness,
        mutation_rate=base.mutation_rate if mutation_rate is None else mutation_rate,
        mutation_amount=base.mutation_amount if mutation_amount is None else mutation_amount,
    )


async def evolve_network(
    network: "Network",
    dataset: Sequence[dict],
    options: EvolveOptions | None = None,
) -> dict[str, float]:
    """Evolve ``network`` in place until ``options.error`` or ``options.iterations`` is reached.

    With only ``error`` given the loop has no generation cap; with only
    ``iterations`` given it runs exactly that many generations (barring the
    non-finite error guard). Returns ``{"error", "iterations", "time"}`` where
    ``time`` is wall-clock milliseconds.
    """
    from .neat import Neat

    options = options if options is not None else EvolveOptions()
    start = time.perf_counter()

    validate_dataset(network, dataset)
    if options.iterations is None and options.error is None:
        raise StoppingCriterionError(
            "At least one stopping condition (`iterations` or `error`) must be specified for evolution."
        )
    target = options.error if options.error is not None else -1.0
    penalty = ComplexityPenalty(options.growth)

    pool: WorkerPool | None = None
    if options.threads > 1:
        pool = create_worker_pool(dataset, options.cost, options.threads)
    if pool is not None:
        fitness = build_multi_thread_fitness(pool, penalty)
    else:
        fitness = build_single_thread_fitness(dataset, options.cost, options.amount, penalty, options.batched)

    neat = Neat(
        network.input,
        network.output,
        fitness,
        config=_neat_config(options, pool is not None),
        network=network,
    )

    error = math.inf
    best_fitness = -math.inf
    best_genome: "Network" | None = None
    infinite_errors = 0
    schedule = options.schedule

    try:
        while (target == -1 or error > target) and (
            options.iterations is None or neat.generation < options.iterations
        ):
            fittest = await neat.evolve()
            fitness_value = fittest.score if fittest.score is not None else -math.inf
            error = -(fitness_value + penalty(fittest)) if math.isfinite(fitness_value) else math.inf

            if fitness_value > best_fitness:
                best_fitness = fitness_value
                best_genome = fittest

            if not math.isfinite(error):
                infinite_errors += 1
                if infinite_errors >= MAX_INF:
                    logger.warning("Stopping evolution after %d generations without a finite error", MAX_INF)
                    break
            else:
                infinite_errors = 0

            if options.log > 0 and neat.generation % options.log == 0:
                logger.info(
                    "[gen %03d] best=%.4f error=%.6f species=%d",
                    neat.generation,
                    best_fitness,
                    error,
                    len(neat.species.species),
                )

            if schedule is not None and schedule.iterations > 0 and neat.generation % schedule.iterations == 0:
                try:
                    schedule.function({"fitness": best_fitness, "error": error, "iteration": neat.generation})
                except Exception:
                    logger.warning("Schedule callback failed", exc_info=True)
    finally:
        if pool is not None:
            pool.terminate()

    if best_genome is not None:
        network.adopt(best_genome, clear=options.clear)
    else:
        logger.warning("Evolution completed without finding a valid best genome")

    return {
        "error": error,
        "iterations": neat.generation,
        "time": (time.perf_counter() - start) * 1000.0,
    }
