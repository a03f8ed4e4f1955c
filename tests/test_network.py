"""
Tests for the genome structural model.

Covers:
- Construction layout and connection primitives
- Node removal with connectivity repair
- Gating bookkeeping
- Serialization, cloning and adoption
"""
import numpy as np
import pytest

from slab_neat.errors import InputSizeError, NodeNotFoundError, StructuralAnchorError
from slab_neat.genes import NodeGene
from slab_neat.network import Network


class TestConstruction:
    """Tests for Network construction."""

    def test_layout(self, small_network):
        """Inputs come first and outputs occupy the trailing positions."""
        kinds = [n.kind for n in small_network.nodes]
        assert kinds == ["input", "input", "output"]
        assert len(small_network.connections) == 2

    def test_rejects_empty_interface(self):
        """A network needs at least one input and one output."""
        with pytest.raises(ValueError):
            Network(0, 1)

    def test_min_hidden(self):
        """min_hidden grows hidden nodes at construction time."""
        net = Network(2, 1, seed=1, min_hidden=2)
        assert len(net.hidden_nodes()) == 2
        assert net.nodes[-1].kind == "output"


class TestConnect:
    """Tests for connect and disconnect."""

    def test_duplicate_is_noop(self, small_network):
        """A second edge between the same ordered pair is rejected."""
        src, dst = small_network.nodes[0], small_network.nodes[2]
        assert small_network.connect(src, dst) == []
        assert len(small_network.connections) == 2

    def test_connect_marks_caches_dirty(self, small_network):
        """Structural edits invalidate the slab and topology caches."""
        small_network.get_connection_slab()
        assert small_network.dirty.slab is False
        small_network.disconnect(small_network.nodes[0], small_network.nodes[2])
        small_network.connect(small_network.nodes[0], small_network.nodes[2], 0.3)
        assert small_network.dirty.slab
        assert small_network.dirty.topo
        assert small_network.dirty.adjacency

    def test_acyclic_rejects_backward_edge(self, acyclic_runtime):
        """Backward and self edges are refused when acyclicity is enforced."""
        net = Network(1, 1, runtime=acyclic_runtime, seed=0)
        out, inp = net.nodes[1], net.nodes[0]
        assert net.connect(out, inp) == []
        assert net.connect(out, out) == []

    def test_self_connection_is_separate(self, small_network):
        """Self loops are tracked in selfconns, not connections."""
        out = small_network.nodes[2]
        made = small_network.connect(out, out, 0.2)
        assert made and made[0].is_self
        assert small_network.selfconns == made
        assert len(small_network.connections) == 2

    def test_disconnect_missing_is_noop(self, small_network):
        """Disconnecting an absent edge leaves the network unchanged."""
        small_network.disconnect(small_network.nodes[2], small_network.nodes[0])
        assert len(small_network.connections) == 2


class TestRemoveNode:
    """Tests for remove_node."""

    def test_bridges_sole_hidden_node(self, hidden_network):
        """Removing a 1-in/1-out hidden node leaves one direct edge."""
        hidden = hidden_network.hidden_nodes()[0]
        hidden_network.remove_node(hidden)

        assert hidden_network.hidden_nodes() == []
        assert len(hidden_network.connections) == 1
        conn = hidden_network.connections[0]
        assert conn.src == hidden_network.nodes[0].node_id
        assert conn.dst == hidden_network.nodes[1].node_id

    def test_bridge_skips_existing_edge(self, hidden_network):
        """No duplicate edge is created when source and target are already linked."""
        hidden_network.connect(hidden_network.nodes[0], hidden_network.nodes[2], 1.0)
        hidden_network.remove_node(hidden_network.hidden_nodes()[0])
        assert len(hidden_network.connections) == 1
        assert hidden_network.connections[0].weight == 1.0

    def test_bridges_every_source_to_every_target(self):
        """A node with 3 inbound and 3 outbound edges leaves up to 3 x 3 bridges.

        The shared neighbour ``g`` is both a source and a target, so the
        g -> g pair is skipped, and in0 -> out0 already exists.
        """
        net = Network(2, 2, seed=5, connect_io=False)
        in0, in1, out0, out1 = net.nodes
        h, g = net.new_node("hidden"), net.new_node("hidden")
        net.insert_node(h, 2)
        net.insert_node(g, 3)
        for src in (in0, in1, g):
            net.connect(src, h, 0.3)
        for dst in (out0, out1, g):
            net.connect(h, dst, 0.3)
        net.connect(in0, out0, 0.9)
        assert len(net.connections) == 7

        net.remove_node(h)

        pairs = {(c.src, c.dst) for c in net.connections}
        expected = {
            (s.node_id, t.node_id)
            for s in (in0, in1, g)
            for t in (out0, out1, g)
            if s is not t
        }
        assert pairs == expected
        # 9 pairs, minus the self pair, minus the edge that already existed.
        assert len(net.connections) == 1 + (9 - 1 - 1)
        assert net.selfconns == []
        assert net.find_connection(in0, out0).weight == 0.9
        assert [n.kind for n in net.nodes].count("input") == 2
        assert [n.kind for n in net.nodes].count("output") == 2
        assert net.hidden_nodes() == [g]

    def test_anchor_nodes_cannot_be_removed(self, small_network):
        """Input and output nodes are structural anchors."""
        with pytest.raises(StructuralAnchorError):
            small_network.remove_node(small_network.nodes[0])
        with pytest.raises(StructuralAnchorError):
            small_network.remove_node(small_network.nodes[-1])

    def test_foreign_node(self, small_network):
        """Nodes from another network are rejected."""
        with pytest.raises(NodeNotFoundError):
            small_network.remove_node(NodeGene(node_id=99))

    def test_gated_connections_are_ungated(self, hidden_network):
        """Connections gated by a removed node survive ungated."""
        net = hidden_network
        extra = net.connect(net.nodes[0], net.nodes[2], 0.1)[0]
        hidden = net.hidden_nodes()[0]
        net.gate(hidden, extra)
        assert net.gates == [extra]

        net.remove_node(hidden)
        assert net.gates == []
        assert extra.gater is None
        assert extra in net.connections


class TestGating:
    """Tests for gate and ungate."""

    def test_gate_requires_member(self, small_network):
        """Only member nodes can gate."""
        with pytest.raises(NodeNotFoundError):
            small_network.gate(NodeGene(node_id=50), small_network.connections[0])

    def test_ungate_resets_gain(self, small_network):
        """Ungating restores the neutral gain."""
        conn = small_network.connections[0]
        small_network.gate(small_network.nodes[2], conn)
        conn.gain = 0.3
        small_network.ungate(conn)
        assert conn.gater is None
        assert conn.gain == 1.0
        assert small_network.gates == []


class TestActivation:
    """Tests for forward evaluation."""

    def test_input_size_checked(self, small_network):
        """Wrong input length raises."""
        with pytest.raises(InputSizeError):
            small_network.activate([1.0])

    def test_fast_slab_input_size_checked(self, acyclic_runtime):
        """The slab fast path rejects short and long inputs alike."""
        net = Network(2, 1, runtime=acyclic_runtime, seed=7)
        with pytest.raises(InputSizeError):
            net.fast_slab_activate([1.0])
        with pytest.raises(InputSizeError):
            net.fast_slab_activate([1.0, 0.0, 0.5])
        assert len(net.fast_slab_activate([1.0, 0.0])) == 1

    def test_output_length(self, small_network):
        """One value per output node."""
        assert len(small_network.activate([0.5, -0.5])) == 1

    def test_test_reports_error(self, small_network, xor_dataset):
        """test() returns mean cost and elapsed time."""
        result = small_network.test(xor_dataset)
        assert result["error"] >= 0
        assert result["time"] >= 0


class TestCopying:
    """Tests for clone, serialization and adopt."""

    def test_round_trip_preserves_outputs(self, hidden_network):
        """from_dict(to_dict()) rebuilds an equivalent network."""
        twin = Network.from_dict(hidden_network.to_dict())
        x = [0.7]
        np.testing.assert_allclose(twin.activate(x), hidden_network.activate(x))

    def test_clone_is_independent(self, small_network):
        """Editing a clone does not touch the original."""
        twin = small_network.clone()
        twin.connections[0].weight = 42.0
        assert small_network.connections[0].weight != 42.0

    def test_adopt(self, small_network, hidden_network):
        """adopt() replaces structure in place."""
        host = Network(1, 1, seed=9)
        host.adopt(hidden_network)
        assert len(host.hidden_nodes()) == 1
        assert len(host.connections) == 2
        np.testing.assert_allclose(host.activate([0.2]), hidden_network.activate([0.2]))
