"""Per-generation controllers that retune the engine while it runs.

Each ``apply_*`` function reads its section of ``NeatConfig``, returns early
when that section is disabled, and keeps its running values in the engine's
``AdaptiveState``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from .mutation import MutationOp

if TYPE_CHECKING:
    from .neat import Neat

COMPLEXIFY = "complexify"
SIMPLIFY = "simplify"


@dataclass
class AdaptiveState:
    budget_history: list[float] = field(default_factory=list)
    budget_max_nodes: int | None = None
    budget_max_conns: int | None = None
    phase: str | None = None
    phase_start: int = 0
    mc_threshold: float | None = None
    prune_level: float = 0.0
    prune_reference: float | None = None


def _trend(history: list[float]) -> float:
    n = len(history)
    if n <= 2:
        return 0.0
    x = np.arange(n, dtype=np.float64)
    y = np.asarray(history, dtype=np.float64)
    denom = n * float(np.sum(x * x)) - float(np.sum(x)) ** 2 or 1.0
    return (n * float(np.sum(x * y)) - float(np.sum(x)) * float(np.sum(y))) / denom


def apply_complexity_budget(neat: "Neat") -> None:
    """Move ``max_nodes`` (and optionally ``max_conns``) along the configured budget."""
    cfg = neat.cfg.complexity_budget
    if not cfg.enabled:
        return
    state = neat.adaptive
    floor = neat.input + neat.output + 2
    start = cfg.max_nodes_start if cfg.max_nodes_start is not None else floor

    if cfg.mode != "adaptive":
        end = cfg.max_nodes_end if cfg.max_nodes_end is not None else start * 4
        t = min(1.0, neat.generation / max(cfg.horizon, 1))
        neat.cfg.max_nodes = int(math.floor(start + (end - start) * t))
        return

    best = neat.population[0].score if neat.population else None
    state.budget_history.append(best if best is not None and math.isfinite(best) else 0.0)
    window = cfg.improvement_window
    del state.budget_history[:-window]
    history = state.budget_history

    improvement = history[-1] - history[0] if len(history) > 1 else 0.0
    slope = _trend(history)
    slope_mag = min(2.0, max(-2.0, slope / (abs(history[0]) + 1e-9)))
    grow = cfg.increase_factor + 0.05 * max(0.0, slope_mag)
    shrink = cfg.stagnation_factor - 0.03 * max(0.0, -slope_mag)
    improving = improvement > 0 or slope > 0
    full = len(history) == window

    if state.budget_max_nodes is None:
        state.budget_max_nodes = start
    cap = cfg.max_nodes_end if cfg.max_nodes_end is not None else state.budget_max_nodes * 4
    lowest = cfg.min_nodes if cfg.min_nodes is not None else floor
    if improving:
        state.budget_max_nodes = min(cap, int(math.floor(state.budget_max_nodes * grow)))
    elif full:
        state.budget_max_nodes = max(lowest, int(math.floor(state.budget_max_nodes * shrink)))
    if cfg.min_nodes is not None:
        state.budget_max_nodes = max(cfg.min_nodes, state.budget_max_nodes)
    neat.cfg.max_nodes = state.budget_max_nodes

    if cfg.max_conns_start:
        if state.budget_max_conns is None:
            state.budget_max_conns = cfg.max_conns_start
        cap = cfg.max_conns_end if cfg.max_conns_end is not None else state.budget_max_conns * 4
        if improving:
            state.budget_max_conns = min(cap, int(math.floor(state.budget_max_conns * grow)))
        elif full:
            state.budget_max_conns = max(cfg.max_conns_start, int(math.floor(state.budget_max_conns * shrink)))
        neat.cfg.max_conns = state.budget_max_conns


def apply_phased_complexity(neat: "Neat") -> None:
    cfg = neat.cfg.phased_complexity
    if not cfg.enabled:
        return
    state = neat.adaptive
    if state.phase is None:
        state.phase = cfg.initial_phase
        state.phase_start = neat.generation
    if neat.generation - state.phase_start >= cfg.phase_length:
        state.phase = SIMPLIFY if state.phase == COMPLEXIFY else COMPLEXIFY
        state.phase_start = neat.generation


def phase_pool(neat: "Neat", pool: list[MutationOp]) -> list[MutationOp]:
    """Duplicate the growing (or shrinking) operators during their phase."""
    phase = neat.adaptive.phase
    if not neat.cfg.phased_complexity.enabled or phase is None:
        return pool
    prefix = "SUB_" if phase == SIMPLIFY else "ADD_"
    favoured = [op for op in pool if op.value.startswith(prefix)]
    return pool + favoured


def operator_pool(neat: "Neat", pool: list[MutationOp]) -> list[MutationOp]:
    """Weight operators with a good success record by repeating them in the pool."""
    cfg = neat.cfg.operator_adaptation
    if not cfg.enabled:
        return pool
    augmented = []
    for op in pool:
        augmented.append(op)
        stats = neat.operator_stats.get(op.value)
        if stats and stats["attempts"] > 5:
            ratio = stats["success"] / stats["attempts"]
            if ratio > 0.55:
                augmented.extend([op] * min(cfg.boost, int(math.floor(ratio * cfg.boost))))
    return augmented


def apply_operator_adaptation(neat: "Neat") -> None:
    """Decay operator tallies so recent generations dominate the success ratio."""
    cfg = neat.cfg.operator_adaptation
    if not cfg.enabled:
        return
    for stats in neat.operator_stats.values():
        stats["success"] *= cfg.decay
        stats["attempts"] *= cfg.decay


def apply_minimal_criterion(neat: "Neat") -> None:
    """Zero the score of genomes under an acceptance threshold steered toward a target rate."""
    cfg = neat.cfg.minimal_criterion
    if not cfg.enabled:
        return
    state = neat.adaptive
    if state.mc_threshold is None:
        state.mc_threshold = cfg.initial_threshold
    scores = [g.score or 0.0 for g in neat.population]
    accepted = sum(1 for s in scores if s >= state.mc_threshold)
    prop = accepted / len(scores) if scores else 0.0
    if prop > cfg.target_acceptance * 1.05:
        state.mc_threshold *= 1 + cfg.adjust_rate
    elif prop < cfg.target_acceptance * 0.95:
        state.mc_threshold *= 1 - cfg.adjust_rate
    for genome in neat.population:
        if (genome.score or 0.0) < state.mc_threshold:
            genome.score = 0.0


def initial_rate(neat: "Neat") -> float:
    cfg = neat.cfg.adaptive_mutation
    return cfg.initial_rate if cfg.initial_rate is not None else neat.cfg.mutation_rate


def effective_mutation(neat: "Neat", genome) -> tuple[float, int]:
    """Mutation rate and amount for ``genome``, seeding its own values on first use."""
    cfg = neat.cfg.adaptive_mutation
    if not cfg.enabled:
        return neat.cfg.mutation_rate, neat.cfg.mutation_amount
    if genome.mut_rate is None:
        genome.mut_rate = initial_rate(neat)
    if cfg.adapt_amount and genome.mut_amount is None:
        genome.mut_amount = neat.cfg.mutation_amount
    amount = genome.mut_amount if cfg.adapt_amount else neat.cfg.mutation_amount
    return genome.mut_rate, amount


def apply_adaptive_mutation(neat: "Neat") -> None:
    """Nudge each genome's mutation rate (and amount) by its standing in the population.

    ``twoTier`` lowers the rate of the better half and raises the worse half,
    ``exploreLow`` pushes mostly the worse half up, ``anneal`` shrinks the
    random step as generations pass.
    """
    cfg = neat.cfg.adaptive_mutation
    if not cfg.enabled:
        return
    if cfg.adapt_every > 1 and neat.generation % cfg.adapt_every != 0:
        return

    rng = neat.rng
    scored = sorted((g for g in neat.population if g.score is not None), key=lambda g: g.score)
    mid = len(scored) // 2
    bottom = {id(g) for g in scored[:mid]}
    top = {id(g) for g in scored[mid:]}
    sigma = cfg.sigma * 1.5
    baseline = initial_rate(neat)
    split = bool(top) and bool(bottom)
    any_up = any_down = False

    for index, genome in enumerate(neat.population):
        effective_mutation(neat, genome)
        delta = (rng.random() * 2 - 1) * sigma
        if cfg.strategy == "twoTier":
            if not split:
                delta = abs(delta) if index % 2 == 0 else -abs(delta)
            elif id(genome) in top:
                delta = -abs(delta)
            else:
                delta = abs(delta)
        elif cfg.strategy == "exploreLow":
            delta = abs(delta * 1.5) if id(genome) in bottom else -abs(delta * 0.5)
        elif cfg.strategy == "anneal":
            progress = min(1.0, neat.generation / (50 + len(neat.population)))
            delta *= 1 - progress

        rate = min(cfg.max_rate, max(cfg.min_rate, genome.mut_rate + delta))
        any_up = any_up or rate > baseline
        any_down = any_down or rate < baseline
        genome.mut_rate = rate

        if cfg.adapt_amount:
            step = (rng.random() * 2 - 1) * cfg.amount_sigma
            if cfg.strategy == "twoTier":
                if not split:
                    step = abs(step) if index % 2 == 0 else -abs(step)
                else:
                    step = abs(step) if id(genome) in bottom else -abs(step)
            amount = int(round(genome.mut_amount + step))
            genome.mut_amount = min(cfg.max_amount, max(cfg.min_amount, amount))

    if cfg.strategy == "twoTier" and not (any_up and any_down):
        half = len(neat.population) // 2
        for index, genome in enumerate(neat.population):
            if index < half:
                genome.mut_rate = min(genome.mut_rate + sigma, 1.0)
            else:
                genome.mut_rate = max(genome.mut_rate - sigma, 0.01)


def apply_evolution_pruning(neat: "Neat") -> None:
    """Prune every genome toward a sparsity that ramps in after ``start_generation``."""
    cfg = neat.cfg.evolution_pruning
    if not cfg.enabled or neat.generation < cfg.start_generation:
        return
    elapsed = neat.generation - cfg.start_generation
    if elapsed % max(cfg.interval, 1) != 0:
        return
    ramp = 1.0
    if cfg.ramp_generations > 0:
        ramp = min(1.0, max(0.0, elapsed / cfg.ramp_generations))
    target = cfg.target_sparsity * ramp
    for genome in neat.population[neat.elite_count :]:
        genome.prune_to_sparsity(target)


def apply_adaptive_pruning(neat: "Neat") -> None:
    """Raise or lower a shared prune level until mean size reaches the target fraction."""
    cfg = neat.cfg.adaptive_pruning
    if not cfg.enabled or not neat.population:
        return
    state = neat.adaptive
    if cfg.metric == "nodes":
        current = float(np.mean([len(g.nodes) for g in neat.population]))
    else:
        current = float(np.mean([len(g.connections) for g in neat.population]))
    if state.prune_reference is None:
        state.prune_reference = current
    reference = state.prune_reference
    target = reference * (1 - cfg.target_sparsity)
    diff = (current - target) / (reference or 1.0)
    if abs(diff) <= cfg.tolerance:
        return
    step = cfg.adjust_rate if diff > 0 else -cfg.adjust_rate
    state.prune_level = max(0.0, min(cfg.target_sparsity, state.prune_level + step))
    for genome in neat.population[neat.elite_count :]:
        genome.prune_to_sparsity(state.prune_level)
