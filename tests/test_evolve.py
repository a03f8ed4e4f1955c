"""
Tests for the evolution loop driver, worker contract and batched phenotype.

Covers:
- Validation errors and the zero-iteration scenario
- Complexity penalty and fitness construction
- Schedule hooks and best-genome adoption
- Population fitness over a worker pool
- JAX phenotype agreement with the object graph
"""
import asyncio
import logging
import math

import numpy as np
import pytest

from slab_neat import workers
from slab_neat.config import EvolveOptions, NeatConfig, RuntimeConfig, ScheduleHook
from slab_neat.errors import DatasetShapeError, StoppingCriterionError
from slab_neat.evolve import (
    ComplexityPenalty,
    build_multi_thread_fitness,
    build_single_thread_fitness,
    evolve_network,
)
from slab_neat.mutation import MutationOp
from slab_neat.neat import Neat
from slab_neat.network import Network
from slab_neat.phenotype import SlabPhenotype


class TestValidation:
    """Tests for driver argument validation."""

    def test_zero_iterations(self, xor_dataset, caplog):
        """iterations=0 runs nothing, reports inf and warns."""
        net = Network(2, 1, seed=0)
        with caplog.at_level(logging.WARNING, logger="slab_neat.evolve"):
            result = asyncio.run(evolve_network(net, xor_dataset, EvolveOptions(iterations=0)))
        assert result["error"] == math.inf
        assert result["iterations"] == 0
        assert "without finding a valid best genome" in caplog.text

    def test_dataset_shape(self, xor_dataset):
        """Dataset dimensions must match the network."""
        net = Network(3, 1, seed=0)
        with pytest.raises(DatasetShapeError, match="Dataset is invalid"):
            asyncio.run(evolve_network(net, xor_dataset, EvolveOptions(iterations=1)))

    def test_empty_dataset(self):
        """An empty dataset is invalid."""
        with pytest.raises(DatasetShapeError):
            asyncio.run(evolve_network(Network(2, 1), [], EvolveOptions(iterations=1)))

    def test_requires_stopping_condition(self, xor_dataset):
        """Either iterations or error must be set."""
        with pytest.raises(StoppingCriterionError, match="At least one stopping condition"):
            asyncio.run(evolve_network(Network(2, 1), xor_dataset, EvolveOptions()))


class TestFitness:
    """Tests for penalty and fitness builders."""

    def test_complexity_penalty(self, hidden_network):
        """growth * (hidden + connections + gates)."""
        penalty = ComplexityPenalty(0.5)
        assert penalty(hidden_network) == pytest.approx(0.5 * (1 + 2 + 0))
        hidden_network.gate(hidden_network.nodes[1], hidden_network.connections[0])
        assert penalty(hidden_network) == pytest.approx(0.5 * (1 + 2 + 1))

    def test_single_thread_fitness(self, small_network, xor_dataset):
        """Fitness is negative error minus penalty, averaged over repeats."""
        penalty = ComplexityPenalty(0.01)
        fitness = build_single_thread_fitness(xor_dataset, "mse", 2, penalty)
        error = small_network.test(xor_dataset)["error"]
        expected = (-2 * error - penalty(small_network)) / 2
        assert fitness(small_network) == pytest.approx(expected)

    def test_failing_evaluation(self, xor_dataset):
        """Evaluation errors map to -inf."""

        def broken_cost(targets, outputs):
            raise ArithmeticError("boom")

        fitness = build_single_thread_fitness(xor_dataset, broken_cost, 1, ComplexityPenalty(0.0))
        assert fitness(Network(2, 1, seed=0)) == -math.inf

    def test_nan_evaluation(self, xor_dataset):
        """NaN errors map to -inf."""
        fitness = build_single_thread_fitness(xor_dataset, lambda t, o: math.nan, 1, ComplexityPenalty(0.0))
        assert fitness(Network(2, 1, seed=0)) == -math.inf

    def test_multi_thread_fitness(self):
        """Worker results become -error - penalty; a failed genome scores -inf."""

        class FakePool:
            def __init__(self):
                self.calls = 0

            async def evaluate(self, genome):
                self.calls += 1
                if genome.genome_id == 2:
                    raise RuntimeError("worker died")
                return 0.25

            def terminate(self):
                pass

        population = []
        for gid in range(3):
            net = Network(2, 1, seed=gid)
            net.genome_id = gid
            population.append(net)

        pool = FakePool()
        fitness = build_multi_thread_fitness(pool, ComplexityPenalty(0.1))
        asyncio.run(fitness(population))
        assert pool.calls == 3
        assert population[0].score == pytest.approx(-0.25 - 0.2)
        assert population[2].score == -math.inf

    def test_failed_worker_never_ranks_first(self):
        """A genome whose worker raised sorts last and the fittest stays valid."""

        class FailFirstPool:
            def __init__(self):
                self.calls = 0

            async def evaluate(self, genome):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("worker died")
                return 0.25

            def terminate(self):
                pass

        fitness = build_multi_thread_fitness(FailFirstPool(), ComplexityPenalty(0.001))
        neat = Neat(2, 1, fitness, config=NeatConfig(popsize=5, seed=2, fitness_population=True))
        fittest = asyncio.run(neat.get_fittest())
        assert fittest.score is not None
        assert math.isfinite(fittest.score)
        assert neat.population[-1].score == -math.inf
        assert all(g.score is not None for g in neat.population)


class TestWorkerEntryPoint:
    """Tests for the process worker functions, run in-process."""

    def test_worker_rebuilds_and_scores(self, small_network, xor_dataset):
        """A worker scores a genome snapshot against its dataset."""
        workers._init_worker(workers.serialize_dataset(xor_dataset), "mse")
        error = workers._evaluate_worker(small_network.to_dict())
        assert error == pytest.approx(small_network.test(xor_dataset)["error"])

    def test_serialize_dataset(self):
        """Samples are reduced to plain float lists."""
        data = workers.serialize_dataset([{"input": np.array([1, 0]), "output": (1,)}])
        assert data == [{"input": [1.0, 0.0], "output": [1.0]}]


class TestLoop:
    """Tests for the main loop."""

    def _options(self, **kwargs):
        return EvolveOptions(neat=NeatConfig(popsize=6, seed=5), **kwargs)

    def test_runs_requested_generations(self, xor_dataset):
        """The loop stops at the iteration cap and adopts the best genome."""
        net = Network(2, 1, seed=0)
        result = asyncio.run(evolve_network(net, xor_dataset, self._options(iterations=3)))
        assert result["iterations"] == 3
        assert math.isfinite(result["error"])
        assert result["time"] >= 0
        assert len(net.activate([0, 1])) == 1

    def test_error_target_stops_early(self, xor_dataset):
        """A generous error target ends the loop after one generation."""
        net = Network(2, 1, seed=0)
        result = asyncio.run(evolve_network(net, xor_dataset, self._options(error=10.0, iterations=50)))
        assert result["iterations"] == 1
        assert result["error"] <= 10.0

    def test_error_only_is_unbounded(self, xor_dataset):
        """With only an error target the loop runs until it is met."""
        net = Network(2, 1, seed=0)
        result = asyncio.run(evolve_network(net, xor_dataset, self._options(error=10.0)))
        assert result["iterations"] == 1

    def test_schedule_hook(self, xor_dataset):
        """The schedule callback sees fitness, error and iteration."""
        seen = []
        hook = ScheduleHook(iterations=2, function=lambda ctx: seen.append(ctx))
        net = Network(2, 1, seed=0)
        asyncio.run(evolve_network(net, xor_dataset, self._options(iterations=4, schedule=hook)))
        assert [ctx["iteration"] for ctx in seen] == [2, 4]
        assert set(seen[0]) == {"fitness", "error", "iteration"}

    def test_schedule_failure_is_contained(self, xor_dataset):
        """A raising schedule callback does not stop evolution."""

        def hook(ctx):
            raise RuntimeError("listener crashed")

        net = Network(2, 1, seed=0)
        options = self._options(iterations=2, schedule=ScheduleHook(iterations=1, function=hook))
        result = asyncio.run(evolve_network(net, xor_dataset, options))
        assert result["iterations"] == 2

    def test_non_finite_guard(self, xor_dataset):
        """Five generations without a finite error end the loop."""
        net = Network(2, 1, seed=0)
        options = self._options(iterations=50, cost=lambda t, o: math.nan)
        result = asyncio.run(evolve_network(net, xor_dataset, options))
        assert result["iterations"] == 5
        assert result["error"] == math.inf

    def test_network_evolve_wrapper(self, xor_dataset):
        """Network.evolve delegates to the driver."""
        net = Network(2, 1, seed=0)
        result = asyncio.run(net.evolve(xor_dataset, self._options(iterations=1)))
        assert result["iterations"] == 1

    def test_log_progress(self, xor_dataset, caplog):
        """Progress lines are logged at INFO every ``log`` generations."""
        net = Network(2, 1, seed=0)
        with caplog.at_level(logging.INFO, logger="slab_neat.evolve"):
            asyncio.run(evolve_network(net, xor_dataset, self._options(iterations=2, log=1)))
        assert "[gen 001]" in caplog.text
        assert "[gen 002]" in caplog.text

    def test_batched_evaluation(self, xor_dataset):
        """Batched scoring runs through the JAX phenotype on acyclic genomes."""
        runtime = RuntimeConfig(enforce_acyclic=True)
        net = Network(2, 1, runtime=runtime, seed=0)
        options = EvolveOptions(iterations=2, batched=True, neat=NeatConfig(popsize=4, seed=1, runtime=runtime))
        result = asyncio.run(evolve_network(net, xor_dataset, options))
        assert result["iterations"] == 2
        assert math.isfinite(result["error"])


class TestPhenotype:
    """Tests for the JAX slab phenotype."""

    def _network(self):
        net = Network(3, 2, runtime=RuntimeConfig(enforce_acyclic=True), seed=21)
        for _ in range(4):
            net.mutate(MutationOp.ADD_NODE)
            net.mutate(MutationOp.ADD_CONN)
        return net

    def test_matches_activate(self):
        """Batched outputs agree with the object-graph forward pass."""
        net = self._network()
        phenotype = SlabPhenotype(net)
        xs = np.array([[0.0, 0.5, 1.0], [1.0, -1.0, 0.25], [0.3, 0.3, 0.3]], dtype=np.float32)
        batched = np.asarray(phenotype.forward(xs))
        for x, out in zip(xs, batched):
            np.testing.assert_allclose(out, net.activate_nodes(x.tolist()), rtol=1e-5, atol=1e-5)

    def test_single_sample(self):
        """A 1-D input gives one output vector."""
        phenotype = SlabPhenotype(self._network())
        assert np.asarray(phenotype.forward([0.1, 0.2, 0.3])).shape == (2,)

    def test_test_matches_network(self, xor_dataset):
        """Batched dataset error matches Network.test."""
        net = Network(2, 1, runtime=RuntimeConfig(enforce_acyclic=True), seed=3)
        net.mutate(MutationOp.ADD_NODE)
        expected = net.test(xor_dataset)["error"]
        assert SlabPhenotype(net).test(xor_dataset)["error"] == pytest.approx(expected, abs=1e-5)

    def test_rejects_cyclic_networks(self, small_network):
        """Networks outside the fast-path contract are refused."""
        assert not SlabPhenotype.eligible(small_network)
        with pytest.raises(ValueError):
            SlabPhenotype(small_network)
