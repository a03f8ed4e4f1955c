from __future__ import annotations

import inspect
import logging
import math
import time
from dataclasses import asdict
from typing import Any, Callable, Sequence

import numpy as np

from .adaptive import (
    AdaptiveState,
    apply_adaptive_mutation,
    apply_adaptive_pruning,
    apply_complexity_budget,
    apply_evolution_pruning,
    apply_minimal_criterion,
    apply_operator_adaptation,
    apply_phased_complexity,
    effective_mutation,
    operator_pool,
    phase_pool,
)
from .config import NeatConfig, config_from_dict, warn
from .crossover import crossover
from .lineage import ancestor_uniqueness, lineage_snapshot
from .multiobjective import (
    ObjectiveRegistry,
    fast_non_dominated,
    objective_importance,
    sort_by_rank_and_crowding,
)
from .mutation import FFW, MutationOp, resolve_op
from .network import Network
from .pools import DEFAULT_ARENA, Arena
from .selection import get_parent, sort_population
from .species import DistanceFn, SpeciesManager
from .telemetry import TelemetryLog, build_telemetry_entry, complexity_stats, compute_diversity_stats

logger = logging.getLogger(__name__)

EXTRA_CONNECTION_PROBABILITY = 0.5
STAGNATION_REPLACE_FRACTION = 0.2

FitnessFn = Callable[..., Any]


class Neat:
    """Population engine: evaluation, speciation, reproduction and bookkeeping.

    ``fitness`` scores one genome, or the whole population in place when
    ``config.fitness_population`` is set. Either form may be a coroutine.
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        fitness: FitnessFn,
        config: NeatConfig | None = None,
        network: Network | None = None,
        arena: Arena | None = None,
        distance_fn: DistanceFn | None = None,
    ):
        self.input = input_size
        self.output = output_size
        self.fitness = fitness
        self.cfg = config if config is not None else NeatConfig()
        self.arena = arena if arena is not None else DEFAULT_ARENA
        self.rng = np.random.default_rng(self.cfg.seed)
        self.seed_network = network

        self.generation = 0
        self.population: list[Network] = []
        self.species = SpeciesManager(self.cfg.speciation, self.rng, distance_fn)
        self.objectives = ObjectiveRegistry()
        self.telemetry = TelemetryLog(self.cfg.telemetry)
        self.operator_stats: dict[str, dict[str, float]] = {}
        self.pareto_archive: list[dict] = []
        self.diversity_stats: dict | None = None
        self.last_offspring_alloc: list[dict] = []
        self.adaptive = AdaptiveState()

        self._next_genome_id = 0
        self._best_score_last: float | None = None
        self._best_global = -math.inf
        self._last_global_improve = 0
        self._inbreeding = 0
        self._prev_inbreeding = 0
        self._last_mean_complexity: tuple[float, float] | None = None
        self._last_eval_ms = 0.0
        self._last_evolve_ms = 0.0
        self.elite_count = 0
        self._suppress_tournament_error = False

        self.create_pool(network)

    # Population construction.

    def _child_seed(self) -> int:
        return int(self.rng.integers(2**32))

    def _fresh_genome(self, min_hidden: int | None = None) -> Network:
        return Network(
            self.input,
            self.output,
            runtime=self.cfg.runtime,
            arena=self.arena,
            seed=self._child_seed(),
            min_hidden=self.cfg.min_hidden if min_hidden is None else min_hidden,
        )

    def _stamp(self, genome: Network, parents: Sequence[int] = (), depth: int = 0) -> None:
        genome.genome_id = self._next_genome_id
        self._next_genome_id += 1
        genome.reenable_prob = self.cfg.reenable_prob
        if self.cfg.lineage:
            genome.parents = list(parents)
            genome.depth = depth
        else:
            genome.parents = []
            genome.depth = 0

    def _enforce_invariants(self, genome: Network) -> None:
        try:
            self.ensure_min_hidden_nodes(genome)
            self.ensure_no_dead_ends(genome)
        except Exception:
            logger.warning("Invariant enforcement failed for genome %d", genome.genome_id, exc_info=True)

    def create_pool(self, network: Network | None = None) -> None:
        self.population = []
        for _ in range(self.cfg.popsize):
            if network is not None:
                genome = network.clone()
                genome.set_seed(self._child_seed())
            else:
                genome = self._fresh_genome()
            genome.score = None
            self._stamp(genome)
            self._enforce_invariants(genome)
            self.population.append(genome)

    def spawn_from_parent(self, parent: Network, mutate_count: int = 1) -> Network:
        child = parent.clone()
        child.set_seed(self._child_seed())
        child.score = None
        self._stamp(child, parents=[parent.genome_id], depth=parent.depth + 1)
        self._enforce_invariants(child)
        for _ in range(mutate_count):
            try:
                op = self.select_mutation_method(child)
                if op is not None:
                    child.mutate(op)
            except Exception:
                logger.debug("Mutation failed while spawning from %d", parent.genome_id, exc_info=True)
        return child

    def add_genome(self, genome: Network, parent_ids: Sequence[int] | None = None) -> None:
        try:
            parents = list(parent_ids or [])
            by_id = {g.genome_id: g for g in self.population}
            depths = [by_id[p].depth for p in parents if p in by_id]
            genome.score = None
            self._stamp(genome, parents=parents, depth=max(depths) + 1 if depths else 0)
            self._enforce_invariants(genome)
        except Exception:
            logger.warning("add_genome bookkeeping failed", exc_info=True)
        self.population.append(genome)

    # Invariants.

    def _forward_candidates(self, net: Network, node, pool: list, before: bool) -> list:
        if not net.enforce_acyclic:
            return pool
        index = net.node_index()
        pos = index[node.node_id]
        if before:
            return [n for n in pool if index[n.node_id] < pos]
        return [n for n in pool if index[n.node_id] > pos]

    def _attach(self, net: Network, node, sources: list | None, targets: list | None) -> None:
        if sources is not None:
            sources = self._forward_candidates(net, node, sources, before=True)
            if sources:
                net.connect(sources[int(self.rng.integers(len(sources)))], node)
        if targets is not None:
            targets = self._forward_candidates(net, node, targets, before=False)
            if targets:
                net.connect(node, targets[int(self.rng.integers(len(targets)))])

    def ensure_min_hidden_nodes(self, net: Network) -> None:
        inputs = [n for n in net.nodes if n.kind == "input"]
        outputs = [n for n in net.nodes if n.kind == "output"]
        if not inputs or not outputs:
            warn(logger, net.runtime, "Network is missing input or output nodes; skipping min hidden enforcement")
            return

        hidden = net.hidden_nodes()
        min_hidden = min(self.cfg.min_hidden, self.cfg.max_nodes - (len(net.nodes) - len(hidden)))
        while len(hidden) < min_hidden and len(net.nodes) < self.cfg.max_nodes:
            node = net.new_node("hidden")
            net.insert_node(node, len(net.nodes) - net.output)
            hidden.append(node)

        for node in hidden:
            others = [h for h in hidden if h is not node]
            if not net.incoming(node):
                self._attach(net, node, inputs + others, None)
            if not net.outgoing(node):
                self._attach(net, node, None, outputs + others)

    def ensure_no_dead_ends(self, net: Network) -> None:
        inputs = [n for n in net.nodes if n.kind == "input"]
        outputs = [n for n in net.nodes if n.kind == "output"]
        hidden = net.hidden_nodes()

        for node in inputs:
            if not net.outgoing(node):
                self._attach(net, node, None, hidden or outputs)
        for node in outputs:
            if not net.incoming(node):
                self._attach(net, node, hidden or inputs, None)
        for node in hidden:
            others = [h for h in hidden if h is not node]
            if not net.incoming(node):
                self._attach(net, node, inputs + others, None)
            if not net.outgoing(node):
                self._attach(net, node, None, outputs + others)

    # Mutation.

    def _mutation_pool(self) -> list[MutationOp]:
        raw = self.cfg.mutation or FFW
        pool = [resolve_op(op) for op in raw]
        return [op for op in pool if op is not None]

    def select_mutation_method(self, genome: Network) -> MutationOp | None:
        pool = self._mutation_pool()
        if not pool:
            return None
        pool = operator_pool(self, phase_pool(self, pool))
        op = pool[int(self.rng.integers(len(pool)))]
        cfg = self.cfg
        if op is MutationOp.ADD_GATE and len(genome.gates) >= cfg.max_gates:
            return None
        if op is MutationOp.ADD_NODE and len(genome.nodes) >= cfg.max_nodes:
            return None
        if op is MutationOp.ADD_CONN and len(genome.connections) >= cfg.max_conns:
            return None
        if not cfg.allow_recurrent and op in (MutationOp.ADD_BACK_CONN, MutationOp.ADD_SELF_CONN):
            return None
        return op

    def _record_op(self, op: MutationOp, grew: bool) -> None:
        stats = self.operator_stats.setdefault(op.value, {"success": 0, "attempts": 0})
        stats["attempts"] += 1
        if grew:
            stats["success"] += 1

    def mutate(self) -> None:
        cfg = self.cfg
        for genome in self.population[self.elite_count :]:
            rate, amount = effective_mutation(self, genome)
            if self.rng.random() > rate:
                continue
            for _ in range(amount):
                op = self.select_mutation_method(genome)
                if op is None:
                    continue
                before = (len(genome.nodes), len(genome.connections))
                try:
                    genome.mutate(op)
                    if op in (MutationOp.ADD_NODE, MutationOp.ADD_CONN):
                        genome.mutate(MutationOp.MOD_WEIGHT)
                    if self.rng.random() < EXTRA_CONNECTION_PROBABILITY and len(genome.connections) < cfg.max_conns:
                        genome.mutate(MutationOp.ADD_CONN)
                except Exception:
                    logger.debug("Mutation %s failed on genome %d", op.value, genome.genome_id, exc_info=True)
                if cfg.operator_stats:
                    grew = len(genome.nodes) > before[0] or len(genome.connections) > before[1]
                    self._record_op(op, grew)

    # Evaluation and selection.

    async def evaluate(self) -> None:
        start = time.perf_counter()
        if self.cfg.fitness_population:
            if self.cfg.clear:
                for genome in self.population:
                    genome.clear()
            result = self.fitness(self.population)
            if inspect.isawaitable(result):
                await result
        else:
            for genome in self.population:
                if self.cfg.clear:
                    genome.clear()
                try:
                    score = self.fitness(genome)
                    if inspect.isawaitable(score):
                        score = await score
                    genome.score = float(score)
                except Exception:
                    logger.debug("Fitness evaluation failed for genome %d", genome.genome_id, exc_info=True)
                    genome.score = -math.inf
        for genome in self.population:
            if genome.score is not None and math.isnan(genome.score):
                genome.score = -math.inf
        self._last_eval_ms = (time.perf_counter() - start) * 1000.0

    def sort(self) -> None:
        sort_population(self.population)

    def get_parent(self) -> Network:
        return get_parent(self.population, self.cfg.selection, self.rng, self._suppress_tournament_error)

    def get_offspring(self) -> Network:
        return self._breed(self.get_parent(), self.get_parent())

    async def _ensure_scores(self) -> None:
        if any(g.score is None for g in self.population):
            await self.evaluate()

    async def get_fittest(self) -> Network:
        await self._ensure_scores()
        if len(self.population) > 1 and (self.population[0].score or 0) < (self.population[1].score or 0):
            self.sort()
        return self.population[0]

    async def get_average(self) -> float:
        await self._ensure_scores()
        if not self.population:
            return 0.0
        return sum(g.score or 0.0 for g in self.population) / len(self.population)

    def compatibility_distance(self, a: Network, b: Network) -> float:
        self.species.generation = self.generation
        return self.species.distance(a, b)

    # Reproduction.

    def _breed(self, parent_a: Network, parent_b: Network) -> Network:
        child = crossover(parent_a, parent_b, equal=self.cfg.equal, rng=self.rng)
        self._stamp(child, parents=[parent_a.genome_id, parent_b.genome_id], depth=1 + max(parent_a.depth, parent_b.depth))
        if self.cfg.lineage and parent_a.genome_id == parent_b.genome_id:
            self._inbreeding += 1
        child.mut_rate = parent_a.mut_rate
        child.mut_amount = parent_a.mut_amount
        return child

    def _survivors(self, members: list[Network]) -> list[Network]:
        members.sort(key=lambda g: g.score or 0.0, reverse=True)
        keep = max(1, int(math.floor(len(members) * self.cfg.survival_threshold)))
        return members[:keep]

    def _speciated_offspring(self, remaining: int) -> list[Network]:
        groups = self.species.species
        alloc = self.species.offspring_allocation(remaining)
        self.last_offspring_alloc = [{"id": sp.species_id, "alloc": n} for sp, n in zip(groups, alloc)]

        children = []
        for idx, (sp, count) in enumerate(zip(groups, alloc)):
            if count <= 0:
                continue
            survivors = self._survivors(sp.members)
            for _ in range(count):
                parent_a = survivors[int(self.rng.integers(len(survivors)))]
                mate_pool = survivors
                prob = self.cfg.cross_species_mating_prob
                if prob and len(groups) > 1 and self.rng.random() < prob:
                    other = idx
                    guard = 0
                    while other == idx and guard < 5:
                        other = int(self.rng.integers(len(groups)))
                        guard += 1
                    mate_pool = self._survivors(groups[other].members)
                parent_b = mate_pool[int(self.rng.integers(len(mate_pool)))]
                children.append(self._breed(parent_a, parent_b))
        return children

    def _rank_multi_objective(self) -> None:
        objectives = self.objectives.objectives()
        fronts = fast_non_dominated(self.population, objectives)
        sort_by_rank_and_crowding(self.population)
        if not fronts:
            return
        first = fronts[0]
        self.pareto_archive.append(
            {
                "gen": self.generation,
                "size": len(first),
                "genomes": [
                    {"id": g.genome_id, "score": g.score or 0.0, "nodes": len(g.nodes), "connections": len(g.connections)}
                    for g in first
                ],
            }
        )
        cap = self.cfg.multi_objective.archive_cap
        if len(self.pareto_archive) > cap:
            del self.pareto_archive[: len(self.pareto_archive) - cap]

    def _record_telemetry(self, fittest: Network) -> None:
        cfg = self.cfg
        mo = cfg.multi_objective
        tcfg = cfg.telemetry
        objectives = self.objectives.objectives()
        entry = build_telemetry_entry(
            generation=self.generation,
            best=fittest.score,
            species=len(self.species.species),
            population=self.population,
            operator_stats=self.operator_stats,
            diversity=self.diversity_stats,
            obj_importance=objective_importance(self.population, objectives),
            multi_objective=mo.enabled,
            complexity_metric=mo.complexity_metric,
        )
        if mo.enabled:
            entry["objectives"] = self.objectives.keys()
        if self.last_offspring_alloc:
            entry["species_alloc"] = list(self.last_offspring_alloc)
        if cfg.lineage and self.population:
            uniq = ancestor_uniqueness(self.population, self.rng)
            entry["lineage"] = lineage_snapshot(self.population[0], self.population, self._prev_inbreeding, uniq)
        if tcfg.hypervolume and mo.enabled:
            entry["hv"] = round(entry["hyper"], 4)
        if tcfg.complexity:
            entry["complexity"] = complexity_stats(
                self.population, self._last_mean_complexity, cfg.max_nodes, cfg.max_conns
            )
            self._last_mean_complexity = (
                float(np.mean([len(g.nodes) for g in self.population])),
                float(np.mean([len(g.connections) for g in self.population])),
            )
        if tcfg.performance:
            entry["perf"] = {"eval_ms": self._last_eval_ms, "evolve_ms": self._last_evolve_ms}
        self.telemetry.record(entry)

    def _inject_fresh_genomes(self) -> None:
        cfg = self.cfg
        start = max(cfg.elitism, int(math.floor(len(self.population) * (1 - STAGNATION_REPLACE_FRACTION))))
        for i in range(start, len(self.population)):
            fresh = self._fresh_genome(min_hidden=max(1, cfg.min_hidden))
            fresh.score = None
            self._stamp(fresh)
            self._enforce_invariants(fresh)
            self.population[i] = fresh
        self._last_global_improve = self.generation

    async def evolve(self) -> Network:
        """Advance one generation and return a clone of the current fittest genome."""
        start = time.perf_counter()
        cfg = self.cfg
        await self._ensure_scores()
        self.sort()
        apply_complexity_budget(self)
        apply_phased_complexity(self)

        best = self.population[0].score if self.population else None
        if best is not None and (self._best_score_last is None or best > self._best_score_last):
            self._best_score_last = best
            self._last_global_improve = self.generation

        if cfg.minimal_criterion.enabled:
            apply_minimal_criterion(self)
            self.sort()

        if cfg.diversity.enabled:
            self.diversity_stats = compute_diversity_stats(
                self.population,
                self.compatibility_distance,
                self.rng,
                pair_sample=cfg.diversity.pair_sample,
                graphlet_sample=cfg.diversity.graphlet_sample,
                lineage=cfg.lineage,
            )

        if cfg.multi_objective.enabled:
            self._rank_multi_objective()

        if cfg.speciation.enabled:
            self.species.speciate(self.population, self.generation)
            self.species.apply_fitness_sharing()
            self.species.update_stagnation()
            self.sort()

        fittest = self.population[0].clone()
        fittest.score = self.population[0].score

        if cfg.telemetry.enabled:
            self._record_telemetry(fittest)
        if fittest.score is not None and fittest.score > self._best_global:
            self._best_global = fittest.score
            self._last_global_improve = self.generation

        # Offspring inherit the adapted rates of their first parent.
        apply_adaptive_mutation(self)

        new_population: list[Network] = []
        elites = max(0, min(cfg.elitism, len(self.population)))
        for genome in self.population[:elites]:
            new_population.append(genome.clone())
        self.elite_count = len(new_population)

        provenance = max(0, min(cfg.provenance, cfg.popsize - len(new_population)))
        for _ in range(provenance):
            if self.seed_network is not None:
                genome = self.seed_network.clone()
                genome.set_seed(self._child_seed())
            else:
                genome = self._fresh_genome()
            self._stamp(genome)
            new_population.append(genome)

        self._prev_inbreeding = self._inbreeding
        self._inbreeding = 0
        self._suppress_tournament_error = True
        try:
            remaining = cfg.popsize - len(new_population)
            if cfg.speciation.enabled and self.species.species and remaining > 0:
                new_population.extend(self._speciated_offspring(remaining))
            while len(new_population) < cfg.popsize:
                new_population.append(self.get_offspring())
        finally:
            self._suppress_tournament_error = False
        del new_population[cfg.popsize :]

        for genome in new_population[self.elite_count :]:
            self._enforce_invariants(genome)
        self.population = new_population
        apply_evolution_pruning(self)
        apply_adaptive_pruning(self)
        self.mutate()

        for genome in self.population:
            genome.score = None
        self.generation += 1
        self.species.generation = self.generation

        stagnation = cfg.global_stagnation_generations
        if stagnation > 0 and self.generation - self._last_global_improve > stagnation:
            self._inject_fresh_genomes()

        apply_operator_adaptation(self)
        self._last_evolve_ms = (time.perf_counter() - start) * 1000.0
        return fittest

    # Introspection and persistence.

    def get_species_stats(self) -> list[dict]:
        return self.species.stats()

    def get_species_history(self) -> list[dict]:
        return self.species.history

    def get_telemetry(self) -> list[dict]:
        return self.telemetry.entries

    def export_telemetry_jsonl(self) -> str:
        return self.telemetry.to_jsonl()

    def export_telemetry_csv(self, max_entries: int = 500) -> str:
        return self.telemetry.to_csv(max_entries)

    def register_objective(self, key: str, direction: str, accessor: Callable[[Network], float]) -> None:
        self.objectives.register(key, direction, accessor)

    def clear_objectives(self) -> None:
        self.objectives.clear()

    def get_pareto_archive(self, max_entries: int = 50) -> list[dict]:
        return self.pareto_archive[-max_entries:]

    def get_operator_stats(self) -> list[dict]:
        return [{"name": op, **stats} for op, stats in self.operator_stats.items()]

    def get_lineage_snapshot(self, limit: int = 10) -> list[dict]:
        return [{"id": g.genome_id, "parents": list(g.parents)} for g in self.population[:limit]]

    def export(self) -> list[dict]:
        return [g.to_dict() for g in self.population]

    def import_population(self, data: Sequence[dict]) -> None:
        population = []
        for item in data:
            genome = Network.from_dict(item, runtime=self.cfg.runtime, arena=self.arena, seed=self._child_seed())
            self._stamp(genome)
            population.append(genome)
        self.population = population
        self.cfg.popsize = len(population)

    def export_state(self) -> dict:
        """Engine metadata, options, controller state and population in one bundle."""
        return {
            "neat": {
                "input": self.input,
                "output": self.output,
                "generation": self.generation,
                "next_genome_id": self._next_genome_id,
                "options": asdict(self.cfg),
                "operator_stats": {op: dict(stats) for op, stats in self.operator_stats.items()},
                "adaptive": asdict(self.adaptive),
                "best_global": self._best_global,
            },
            "population": self.export(),
        }

    @classmethod
    def import_state(
        cls,
        state: dict,
        fitness: FitnessFn,
        arena: Arena | None = None,
        distance_fn: DistanceFn | None = None,
    ) -> "Neat":
        if not isinstance(state, dict) or not isinstance(state.get("neat"), dict):
            raise ValueError("Invalid state bundle")
        meta = state["neat"]
        cfg = config_from_dict(NeatConfig, meta.get("options", {}))
        neat = cls(meta["input"], meta["output"], fitness, config=cfg, arena=arena, distance_fn=distance_fn)
        neat.generation = int(meta.get("generation", 0))
        neat.species.generation = neat.generation
        neat._next_genome_id = int(meta.get("next_genome_id", neat._next_genome_id))
        neat._best_global = float(meta.get("best_global", -math.inf))
        neat.operator_stats = {op: dict(stats) for op, stats in meta.get("operator_stats", {}).items()}
        if isinstance(meta.get("adaptive"), dict):
            neat.adaptive = AdaptiveState(**meta["adaptive"])
        if isinstance(state.get("population"), list):
            neat.import_population(state["population"])
        return neat
