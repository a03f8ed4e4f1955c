"""
Tests for genetic recombination.

Covers:
- Innovation ids
- Offspring size selection
- Feed-forward materialization
- Re-enable policy for disabled matching, disjoint and excess genes
"""
import numpy as np
import pytest

from slab_neat.crossover import crossover, innovation_id
from slab_neat.errors import IncompatibleParentsError
from slab_neat.mutation import MutationOp
from slab_neat.network import Network


def _grown(seed, steps):
    net = Network(2, 1, seed=seed)
    for _ in range(steps):
        net.mutate(MutationOp.ADD_NODE)
        net.mutate(MutationOp.ADD_CONN)
    return net


class TestInnovationId:
    """Tests for the pairing function."""

    def test_known_values(self):
        """Cantor pairing of (from, to) indices."""
        assert innovation_id(0, 0) == 0
        assert innovation_id(1, 0) == 1
        assert innovation_id(0, 1) == 2
        assert innovation_id(2, 3) == 18

    def test_order_matters(self):
        """Reversed pairs get distinct ids."""
        assert innovation_id(3, 5) != innovation_id(5, 3)


class TestCrossover:
    """Tests for crossover."""

    def test_interface_mismatch(self):
        """Parents must share input and output sizes."""
        with pytest.raises(IncompatibleParentsError):
            crossover(Network(2, 1, seed=0), Network(3, 1, seed=0))

    def test_child_interface(self):
        """Inputs lead and outputs trail in the offspring."""
        child = crossover(_grown(1, 3), _grown(2, 2), rng=np.random.default_rng(0))
        kinds = [n.kind for n in child.nodes]
        assert kinds[:2] == ["input", "input"]
        assert kinds[-1] == "output"
        assert child.input == 2 and child.output == 1

    def test_fitter_parent_sets_size(self):
        """Without equal mode the fitter parent's node count wins."""
        a, b = _grown(1, 4), _grown(2, 1)
        a.score, b.score = 1.0, 0.0
        child = crossover(a, b, rng=np.random.default_rng(3))
        assert len(child.nodes) == len(a.nodes)

        a.score, b.score = 0.0, 1.0
        child = crossover(a, b, rng=np.random.default_rng(3))
        assert len(child.nodes) == len(b.nodes)

    def test_equal_mode_size_between_parents(self):
        """Equal mode draws a size between the parents' sizes."""
        a, b = _grown(1, 4), _grown(2, 1)
        rng = np.random.default_rng(5)
        for _ in range(10):
            child = crossover(a, b, equal=True, rng=rng)
            assert len(b.nodes) <= len(child.nodes) <= len(a.nodes)

    def test_offspring_is_feed_forward(self):
        """Every inherited edge points forward and pairs are unique."""
        a, b = _grown(1, 5), _grown(2, 5)
        a.mutate(MutationOp.ADD_SELF_CONN)
        a.mutate(MutationOp.ADD_BACK_CONN)
        rng = np.random.default_rng(11)
        for _ in range(10):
            child = crossover(a, b, equal=True, rng=rng)
            index = child.node_index()
            pairs = [(index[c.src], index[c.dst]) for c in child.connections]
            assert all(s < d for s, d in pairs)
            assert len(pairs) == len(set(pairs))
            assert child.selfconns == []

    def test_seeded_rng_is_reproducible(self):
        """The same seed yields the same child."""
        a, b = _grown(1, 3), _grown(2, 3)
        first = crossover(a, b, equal=True, rng=np.random.default_rng(42))
        second = crossover(a, b, equal=True, rng=np.random.default_rng(42))
        assert first.to_dict() == second.to_dict()

    def test_disabled_gene_stays_disabled(self):
        """With a zero re-enable chance a disabled matching gene stays off."""
        a = Network(2, 1, seed=0)
        a.connections[0].enabled = False
        a.reenable_prob = 0.0
        b = a.clone()
        child = crossover(a, b, rng=np.random.default_rng(1))
        assert sorted(c.enabled for c in child.connections) == [False, True]
        assert child.reenable_prob == 0.0

    def test_disabled_gene_reenabled(self):
        """With certainty of re-enabling, the gene comes back on."""
        a = Network(2, 1, seed=0)
        a.connections[0].enabled = False
        a.reenable_prob = 1.0
        b = a.clone()
        child = crossover(a, b, rng=np.random.default_rng(1))
        assert all(c.enabled for c in child.connections)

    def test_gater_dropped_when_missing(self):
        """Gates survive only if the gater slot survives."""
        a = _grown(1, 3)
        hidden = a.hidden_nodes()[-1]
        a.gate(hidden, a.connections[0])
        b = Network(2, 1, seed=9)
        a.score, b.score = 0.0, 1.0
        child = crossover(a, b, rng=np.random.default_rng(0))
        assert child.hidden_nodes() == []
        assert child.gates == []

    def _disjoint_pair(self):
        a = Network(2, 1, seed=0)
        b = a.clone()
        b.disconnect(b.nodes[0], b.nodes[2])
        a.find_connection(a.nodes[0], a.nodes[2]).enabled = False
        return a, b

    def test_disabled_disjoint_gene_reenabled(self):
        """A disabled gene only the fitter parent carries also gets the re-enable draw."""
        a, b = self._disjoint_pair()
        a.score, b.score = 1.0, 0.0
        a.reenable_prob = 1.0
        child = crossover(a, b, rng=np.random.default_rng(2))
        assert len(child.connections) == 2
        assert all(c.enabled for c in child.connections)

    def test_disabled_disjoint_gene_kept_off(self):
        """With a zero chance the disjoint gene stays disabled."""
        a, b = self._disjoint_pair()
        a.score, b.score = 1.0, 0.0
        a.reenable_prob = 0.0
        child = crossover(a, b, rng=np.random.default_rng(2))
        assert sorted(c.enabled for c in child.connections) == [False, True]

    def test_disabled_excess_gene_uses_second_parent_chance(self):
        """Genes inherited from the fitter second parent use its re-enable chance."""
        b, a = self._disjoint_pair()
        a.score, b.score = 0.0, 1.0
        a.reenable_prob = 0.0
        b.reenable_prob = 1.0
        child = crossover(a, b, rng=np.random.default_rng(4))
        assert all(c.enabled for c in child.connections)
