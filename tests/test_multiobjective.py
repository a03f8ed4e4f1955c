"""
Tests for Pareto ranking.

Covers:
- Objective registry
- Dominance
- Non-dominated fronts and crowding distance
"""
import math

import pytest

from slab_neat.multiobjective import (
    FITNESS_OBJECTIVE,
    ObjectiveDescriptor,
    ObjectiveRegistry,
    dominates,
    fast_non_dominated,
    objective_importance,
    sort_by_rank_and_crowding,
)
from slab_neat.network import Network


def _scored(scores):
    pop = []
    for i, score in enumerate(scores):
        net = Network(1, 1, seed=i)
        net.genome_id = i
        net.score = score
        pop.append(net)
    return pop


class TestRegistry:
    """Tests for ObjectiveRegistry."""

    def test_fitness_is_default(self):
        """Fitness leads the objective list."""
        registry = ObjectiveRegistry()
        assert registry.objectives() == [FITNESS_OBJECTIVE]

    def test_register_replaces_by_key(self):
        """Registering the same key twice keeps the latest accessor."""
        registry = ObjectiveRegistry()
        registry.register("size", "min", lambda g: 1.0)
        registry.register("size", "max", lambda g: 2.0)
        assert registry.keys() == ["fitness", "size"]
        assert registry.objectives()[1].direction == "max"

    def test_bad_direction(self):
        """Directions are max or min."""
        with pytest.raises(ValueError):
            ObjectiveRegistry().register("x", "up", lambda g: 0.0)

    def test_clear(self):
        """clear() drops every registered objective."""
        registry = ObjectiveRegistry()
        registry.register("size", "min", lambda g: 1.0)
        registry.clear()
        assert registry.keys() == ["fitness"]


class TestDominance:
    """Tests for dominates."""

    def test_mixed_directions(self):
        """Max and min objectives are compared in their own sense."""
        assert dominates([2.0, 1.0], [1.0, 2.0], ["max", "min"])
        assert not dominates([2.0, 3.0], [1.0, 2.0], ["max", "min"])

    def test_equal_vectors(self):
        """Equal vectors do not dominate each other."""
        assert not dominates([1.0, 1.0], [1.0, 1.0], ["max", "max"])


class TestFronts:
    """Tests for fast_non_dominated and crowding."""

    def test_single_objective_chain(self):
        """With fitness alone every genome sits on its own front."""
        pop = _scored([1.0, 3.0, 2.0])
        fronts = fast_non_dominated(pop, [FITNESS_OBJECTIVE])
        assert [len(f) for f in fronts] == [1, 1, 1]
        assert [g.mo_rank for g in pop] == [2, 0, 1]

    def test_trade_off_front(self):
        """Fitness against size yields a multi-member first front."""
        pop = _scored([1.0, 2.0, 3.0, 0.5])
        sizes = {0: 1.0, 1: 2.0, 2: 3.0, 3: 4.0}
        size = ObjectiveDescriptor("size", "min", lambda g: sizes[g.genome_id])
        fronts = fast_non_dominated(pop, [FITNESS_OBJECTIVE, size])
        assert {g.genome_id for g in fronts[0]} == {0, 1, 2}
        assert pop[3].mo_rank == 1

    def test_crowding_boundaries_infinite(self):
        """Boundary members of a front get infinite crowding."""
        pop = _scored([1.0, 2.0, 3.0])
        sizes = {0: 1.0, 1: 2.0, 2: 3.0}
        size = ObjectiveDescriptor("size", "min", lambda g: sizes[g.genome_id])
        fast_non_dominated(pop, [FITNESS_OBJECTIVE, size])
        assert math.isinf(pop[0].mo_crowding)
        assert math.isinf(pop[2].mo_crowding)
        # Normalized gaps: 1.0 for each objective.
        assert pop[1].mo_crowding == pytest.approx(2.0)

    def test_sort_by_rank_then_crowding(self):
        """Lower rank first, then larger crowding."""
        pop = _scored([1.0, 2.0, 3.0, 0.5])
        sizes = {0: 1.0, 1: 2.0, 2: 3.0, 3: 4.0}
        size = ObjectiveDescriptor("size", "min", lambda g: sizes[g.genome_id])
        fast_non_dominated(pop, [FITNESS_OBJECTIVE, size])
        sort_by_rank_and_crowding(pop)
        assert pop[-1].genome_id == 3
        assert pop[0].mo_rank == 0 and math.isinf(pop[0].mo_crowding)

    def test_failing_accessor_counts_as_zero(self):
        """A raising accessor contributes zero instead of aborting."""

        def boom(genome):
            raise RuntimeError("no value")

        pop = _scored([1.0, 2.0])
        fronts = fast_non_dominated(pop, [FITNESS_OBJECTIVE, ObjectiveDescriptor("x", "max", boom)])
        assert fronts[0] == [pop[1]]

    def test_objective_importance(self):
        """Range and variance per objective."""
        pop = _scored([1.0, 3.0])
        importance = objective_importance(pop, [FITNESS_OBJECTIVE])
        assert importance["fitness"] == {"range": 2.0, "var": 1.0}
