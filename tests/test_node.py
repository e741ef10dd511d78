"""
test_node.py
~~~~~~~~~~~~

Unit tests for edges and nodes: weight initialization, delta accumulation,
out-of-range accessors and the per-node lock.
"""

import math
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralgraph import gmath
from neuralgraph import rng
from neuralgraph.edge import Edge, MAX_PREV_DELTAS
from neuralgraph.node import Node, RANDOM_RANGE


@pytest.fixture
def seeded():
    """Reseed the thread's default engine so weight draws are repeatable."""
    rng.seed(1234)
    yield
    rng.seed(rng.DEFAULT_SEED)


@pytest.fixture
def node(seeded):
    """A node with three edges of known weights."""
    n = Node(7)
    n.init_weights(3, Node.INIT_EMPTY)
    for i, value in enumerate([0.5, -0.25, 0.1]):
        n.set_edge_weight(i, value)
    return n


@pytest.mark.unit
class TestEdge:
    """Delta history of a single edge."""

    def test_history_starts_with_zero(self):
        """A new edge has a single zero in its delta history."""
        edge = Edge(0, 1.5)
        assert edge.delta_history == [0.0]
        assert edge.last_prev_delta() == 0.0

    def test_history_is_bounded(self):
        """Only the most recent deltas are kept."""
        edge = Edge(0)
        for i in range(MAX_PREV_DELTAS + 5):
            edge.add_prev_delta(float(i))
        assert edge.num_prev_deltas() == MAX_PREV_DELTAS
        assert edge.last_prev_delta() == float(MAX_PREV_DELTAS + 4)

    def test_clear_keeps_history_non_empty(self):
        """Clearing reseeds the history with a zero instead of emptying it."""
        edge = Edge(0)
        edge.add_prev_delta(0.3)
        edge.clear_prev_deltas()
        assert edge.delta_history == [0.0]

    def test_out_of_range_prev_delta(self):
        """Reading past the history returns 0.0."""
        assert Edge(0).get_prev_delta(10) == 0.0


@pytest.mark.unit
class TestNodeInit:
    """Weight initialization schemes."""

    def test_empty_scheme_zeroes_edges(self, seeded):
        """INIT_EMPTY allocates zero-weight edges."""
        n = Node()
        n.init_weights(5, Node.INIT_EMPTY)
        assert n.num_edges() == 5
        assert n.get_edge_weights() == [0.0] * 5

    def test_edge_ids_are_indices(self, seeded):
        """Each edge's id is its index within the node."""
        n = Node()
        n.init_weights(4, Node.INIT_RANDOM)
        assert [n.get_edge_id(i) for i in range(4)] == [0, 1, 2, 3]

    def test_random_within_range(self, seeded):
        """INIT_RANDOM draws fall in [-RANDOM_RANGE, RANDOM_RANGE)."""
        n = Node()
        n.init_weights(200, Node.INIT_RANDOM)
        assert all(-RANDOM_RANGE <= w < RANDOM_RANGE for w in n.get_edge_weights())

    def test_posrand_is_non_negative(self, seeded):
        """INIT_POSRAND draws fall in [0, RANDOM_RANGE)."""
        n = Node()
        n.init_weights(200, Node.INIT_POSRAND)
        assert all(0.0 <= w < RANDOM_RANGE for w in n.get_edge_weights())

    def test_posxavier_is_non_negative(self, seeded):
        """INIT_POSXAVIER keeps the magnitude of the Xavier draw."""
        n = Node()
        n.init_weights(100, Node.INIT_POSXAVIER, fan_in=10)
        assert all(w >= 0.0 for w in n.get_edge_weights())

    def test_xavier_scale_depends_on_activation(self, seeded):
        """ReLU nodes get a wider Xavier spread than tanh nodes."""
        rng.seed(99)
        tanh_node = Node()
        tanh_node.init_weights(2000, Node.INIT_XAVIER, fan_in=50, activation_type=gmath.TANH)
        rng.seed(99)
        relu_node = Node()
        relu_node.init_weights(2000, Node.INIT_XAVIER, fan_in=50, activation_type=gmath.RELU)

        # same draws, scaled by the gain
        for t, r in zip(tanh_node.get_edge_weights()[:10], relu_node.get_edge_weights()[:10]):
            assert r == pytest.approx(t * math.sqrt(2.0))

    def test_same_seed_same_weights(self):
        """Seeding the engine makes initialization repeatable."""
        rng.seed(42)
        a = Node()
        a.init_weights(10, Node.INIT_XAVIER)
        rng.seed(42)
        b = Node()
        b.init_weights(10, Node.INIT_XAVIER)
        assert a.get_edge_weights() == b.get_edge_weights()

    def test_presets_fill_prefix(self, seeded):
        """Preset weights are copied and the scheme fills the rest."""
        n = Node()
        n.init_weights(4, Node.INIT_EMPTY, presets=[1.0, 2.0])
        assert n.get_edge_weights() == [1.0, 2.0, 0.0, 0.0]


@pytest.mark.unit
class TestNodeAccessors:
    """Scalar fields and out-of-range handling."""

    def test_out_of_range_getters_are_neutral(self, node):
        """Out-of-range edge reads return neutral values."""
        assert node.get_edge_weight(3) == 0.0
        assert node.get_edge_weight(-1) == 0.0
        assert node.get_edge_id(99) == -1
        assert node.get_prev_deltas(5) == []
        assert node.get_last_prev_delta(5) == 0.0

    def test_out_of_range_setters_are_noops(self, node):
        """Out-of-range edge writes change nothing."""
        before = node.get_edge_weights()
        node.set_edge_weight(3, 9.0)
        node.set_activation(10, 9.0)
        node.add_prev_delta(10, 9.0)
        assert node.get_edge_weights() == before
        assert node.get_activation() == 0.0

    def test_activation_sums_contributions(self, node):
        """get_activation sums the contributions recorded this pass."""
        node.set_activation(0, 0.5)
        node.set_activation(2, 0.25)
        assert node.get_activation() == pytest.approx(0.75)

        node.clear_activation()
        assert node.get_activation() == 0.0
        assert node.get_activation_scalar() == 0.0

    def test_err_der_accumulates(self, node):
        """adjust_err_der adds; clear_err_der resets."""
        node.adjust_err_der(0.2)
        node.adjust_err_der(0.3)
        assert node.get_err_der() == pytest.approx(0.5)
        node.clear_err_der()
        assert node.get_err_der() == 0.0

    def test_concurrent_err_der_updates(self, node):
        """Concurrent adjust_err_der calls are not lost."""
        def worker():
            for _ in range(1000):
                node.adjust_err_der(1.0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert node.get_err_der() == 8000.0


@pytest.mark.unit
class TestNodeDeltas:
    """Delta computation and application."""

    def test_get_delta_does_not_touch_weight(self, node):
        """Computing a delta only fills the pending buffer."""
        delta = node.get_delta(0, input_value=2.0, err_der=0.5, learning_rate=0.1, momentum=0.0)
        assert delta == pytest.approx(-0.1)
        assert node.get_edge_weight(0) == 0.5
        assert node.get_pending_delta(0) == pytest.approx(-0.1)

    def test_apply_sum(self, node):
        """DELTA_SUM applies the accumulated deltas and records them."""
        node.get_delta(0, 1.0, 1.0, 0.1, 0.0)
        node.get_delta(0, 1.0, 1.0, 0.1, 0.0)
        node.apply_deltas(2, Node.DELTA_SUM)
        assert node.get_edge_weight(0) == pytest.approx(0.3)
        assert node.get_last_prev_delta(0) == pytest.approx(-0.2)
        assert node.get_pending_delta(0) == 0.0

    def test_apply_mean(self, node):
        """DELTA_MEAN applies the average over the batch."""
        node.get_delta(1, 1.0, 1.0, 0.1, 0.0)
        node.get_delta(1, 3.0, 1.0, 0.1, 0.0)
        node.apply_deltas(2, Node.DELTA_MEAN)
        assert node.get_edge_weight(1) == pytest.approx(-0.25 - 0.2)

    def test_momentum_uses_last_applied_delta(self, node):
        """The momentum term reads the edge's last applied delta."""
        node.get_delta(2, 1.0, 1.0, 0.1, 0.0)
        node.apply_deltas(1)
        delta = node.get_delta(2, 0.0, 0.0, 0.1, momentum=0.5)
        assert delta == pytest.approx(-0.05)

    def test_weight_decay(self, node):
        """L1 and L2 penalties push the weight towards zero."""
        delta = node.get_delta(0, 0.0, 0.0, 1.0, 0.0, weight_decay1=0.1, weight_decay2=0.2)
        assert delta == pytest.approx(-(0.1 + 0.2 * 0.5))
