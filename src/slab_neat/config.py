from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Callable


@dataclass
class RuntimeConfig:
    warnings: bool = False
    float32_mode: bool = False
    deterministic_chain_mode: bool = False
    enforce_acyclic: bool = False
    enable_node_pooling: bool = False
    node_pool_max: int = 256
    enable_slab_array_pooling: bool = False
    slab_pool_max_per_key: int = 4
    # Cooperative (async) rebuilds use the smaller growth factor and chunk timing.
    browser_like: bool = False
    slab_chunk_target_ms: float | None = None


def warn(logger: logging.Logger, runtime: RuntimeConfig | None, msg: str, *args: Any) -> None:
    if runtime is not None and runtime.warnings:
        logger.warning(msg, *args)


@dataclass
class SelectionConfig:
    method: str = "POWER"
    power: float = 4.0
    size: int = 5
    probability: float = 0.5


@dataclass
class AutoCompatConfig:
    enabled: bool = False
    target: int | None = None
    adjust_rate: float = 0.01
    min_coeff: float = 0.1
    max_coeff: float = 5.0


@dataclass
class SpeciationConfig:
    enabled: bool = False
    compatibility_threshold: float = 3.0
    excess_coeff: float = 1.0
    disjoint_coeff: float = 1.0
    weight_diff_coeff: float = 0.4
    target_species: int | None = None
    kp: float = 0.5
    ki: float = 0.05
    smoothing_window: int = 5
    integral_decay: float = 0.95
    min_threshold: float = 0.5
    max_threshold: float = 10.0
    stagnation_generations: int = 15
    age_grace: int = 3
    old_age_multiplier: int = 10
    old_age_penalty: float = 0.5
    young_threshold: int = 5
    young_multiplier: float = 1.3
    old_threshold: int = 30
    old_multiplier: float = 0.7
    min_offspring: int = 1
    sharing_sigma: float = 0.0
    extended_history: bool = False
    history_cap: int = 200
    auto_compat: AutoCompatConfig = field(default_factory=AutoCompatConfig)


@dataclass
class MultiObjectiveConfig:
    enabled: bool = False
    complexity_metric: str = "connections"
    archive_cap: int = 200


@dataclass
class DiversityConfig:
    enabled: bool = False
    pair_sample: int = 40
    graphlet_sample: int = 60


@dataclass
class TelemetryConfig:
    enabled: bool = True
    select: tuple[str, ...] = ()
    complexity: bool = False
    performance: bool = False
    hypervolume: bool = False
    on_entry: Callable[[dict], None] | None = None
    cap: int = 500


@dataclass
class AdaptiveMutationConfig:
    enabled: bool = False
    # None starts every genome at NeatConfig.mutation_rate.
    initial_rate: float | None = None
    sigma: float = 0.05
    min_rate: float = 0.01
    max_rate: float = 1.0
    adapt_every: int = 1
    # One of "twoTier", "exploreLow", "anneal".
    strategy: str = "twoTier"
    adapt_amount: bool = False
    amount_sigma: float = 0.25
    min_amount: int = 1
    max_amount: int = 10


@dataclass
class OperatorAdaptationConfig:
    enabled: bool = False
    decay: float = 0.9
    boost: int = 2


@dataclass
class ComplexityBudgetConfig:
    enabled: bool = False
    # "linear" ramps max_nodes over ``horizon``; "adaptive" follows the best-score trend.
    mode: str = "linear"
    max_nodes_start: int | None = None
    max_nodes_end: int | None = None
    min_nodes: int | None = None
    horizon: int = 100
    improvement_window: int = 10
    increase_factor: float = 1.1
    stagnation_factor: float = 0.95
    max_conns_start: int | None = None
    max_conns_end: int | None = None


@dataclass
class PhasedComplexityConfig:
    enabled: bool = False
    phase_length: int = 10
    initial_phase: str = "complexify"


@dataclass
class MinimalCriterionConfig:
    enabled: bool = False
    initial_threshold: float = 0.0
    target_acceptance: float = 0.5
    adjust_rate: float = 0.1


@dataclass
class EvolutionPruningConfig:
    enabled: bool = False
    start_generation: int = 0
    interval: int = 1
    ramp_generations: int = 0
    target_sparsity: float = 0.0


@dataclass
class AdaptivePruningConfig:
    enabled: bool = False
    # "connections" or "nodes".
    metric: str = "connections"
    target_sparsity: float = 0.5
    tolerance: float = 0.05
    adjust_rate: float = 0.02


@dataclass
class NeatConfig:
    popsize: int = 50
    elitism: int = 0
    provenance: int = 0
    mutation_rate: float = 0.3
    mutation_amount: int = 1
    # None selects the feed-forward operator pool.
    mutation: tuple[Any, ...] | None = None
    equal: bool = False
    clear: bool = False
    fitness_population: bool = False
    max_nodes: float = math.inf
    max_conns: float = math.inf
    max_gates: float = math.inf
    min_hidden: int = 0
    survival_threshold: float = 0.5
    cross_species_mating_prob: float = 0.0
    reenable_prob: float = 0.25
    allow_recurrent: bool = False
    operator_stats: bool = True
    lineage: bool = True
    global_stagnation_generations: int = 0
    seed: int | None = None
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    speciation: SpeciationConfig = field(default_factory=SpeciationConfig)
    multi_objective: MultiObjectiveConfig = field(default_factory=MultiObjectiveConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    adaptive_mutation: AdaptiveMutationConfig = field(default_factory=AdaptiveMutationConfig)
    operator_adaptation: OperatorAdaptationConfig = field(default_factory=OperatorAdaptationConfig)
    complexity_budget: ComplexityBudgetConfig = field(default_factory=ComplexityBudgetConfig)
    phased_complexity: PhasedComplexityConfig = field(default_factory=PhasedComplexityConfig)
    minimal_criterion: MinimalCriterionConfig = field(default_factory=MinimalCriterionConfig)
    evolution_pruning: EvolutionPruningConfig = field(default_factory=EvolutionPruningConfig)
    adaptive_pruning: AdaptivePruningConfig = field(default_factory=AdaptivePruningConfig)


_NESTED: dict[str, dict[str, type]] = {
    "NeatConfig": {
        "selection": SelectionConfig,
        "speciation": SpeciationConfig,
        "multi_objective": MultiObjectiveConfig,
        "diversity": DiversityConfig,
        "telemetry": TelemetryConfig,
        "runtime": RuntimeConfig,
        "adaptive_mutation": AdaptiveMutationConfig,
        "operator_adaptation": OperatorAdaptationConfig,
        "complexity_budget": ComplexityBudgetConfig,
        "phased_complexity": PhasedComplexityConfig,
        "minimal_criterion": MinimalCriterionConfig,
        "evolution_pruning": EvolutionPruningConfig,
        "adaptive_pruning": AdaptivePruningConfig,
    },
    "SpeciationConfig": {"auto_compat": AutoCompatConfig},
}


def config_from_dict(cls: type, data: dict[str, Any]) -> Any:
    """Rebuild a (possibly nested) config record from ``dataclasses.asdict`` output.

    Unknown keys are ignored so older snapshots still load.
    """
    names = {f.name for f in fields(cls)}
    nested = _NESTED.get(cls.__name__, {})
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        if key in nested and isinstance(value, dict):
            value = config_from_dict(nested[key], value)
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass
class ScheduleHook:
    iterations: int
    function: Callable[[dict], None]


@dataclass
class EvolveOptions:
    iterations: int | None = None
    error: float | None = None
    growth: float = 0.0001
    cost: str | Callable = "mse"
    amount: int = 1
    threads: int = 1
    log: int = 0
    schedule: ScheduleHook | None = None
    clear: bool = False
    batched: bool = False
    popsize: int | None = None
    mutation_rate: float | None = None
    mutation_amount: int | None = None
    neat: NeatConfig = field(default_factory=NeatConfig)
