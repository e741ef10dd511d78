"""
node.py
~~~~~~~

Graph node: owns its incoming edges and the mutable per-pass scalars.

A node's edge list encodes one or more logical weight rows packed end to end:

- dense nodes: ``[w_0 .. w_{n-1}, bias]``
- gated nodes: ``gate_count`` blocks of ``[w_0 .. w_{n-1}, bias]``
- context nodes: ``gate_count`` blocks of width ``hidden_size``

The edge list's shape never changes after :meth:`Node.init_weights`, so it
may be read concurrently without locking. The scalar fields (weight, error
derivative, activation scalar) and the per-edge activation contributions are
guarded by the node's own lock.
"""

import math
import logging
import threading
from typing import List, Optional, Sequence

from . import gmath
from . import rng
from .edge import Edge

logger = logging.getLogger(__name__)

# Half-width of the uniform range used by INIT_RANDOM / INIT_POSRAND
RANDOM_RANGE = 0.5


class Node:
    """
    A weighted node in the layered graph.

    Out-of-range edge indices are absorbed: getters return ``0.0`` and
    setters do nothing. This keeps the hot numeric loops free of error
    handling; structural errors are reported by the builder instead.
    """

    INIT_EMPTY = 0
    INIT_RANDOM = 1
    INIT_POSRAND = 2
    INIT_XAVIER = 3
    INIT_POSXAVIER = 4

    DELTA_SUM = 0
    DELTA_MEAN = 1

    def __init__(self, node_id: int = 0):
        self.id = int(node_id)
        self._weight = 0.0
        self._err_der = 0.0
        self._activation_scalar = 0.0
        self.edges: List[Edge] = []
        self._pending: List[float] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ gets
    def num_edges(self) -> int:
        return len(self.edges)

    def _valid(self, index: int) -> bool:
        if 0 <= index < len(self.edges):
            return True
        logger.debug(f"Node {self.id}: edge index {index} out of range ({len(self.edges)} edges)")
        return False

    def get_edge_weight(self, index: int) -> float:
        if not self._valid(index):
            return 0.0
        return self.edges[index].weight

    def get_edge_id(self, index: int) -> int:
        if not self._valid(index):
            return -1
        return self.edges[index].id

    def get_edge_weights(self) -> List[float]:
        return [edge.weight for edge in self.edges]

    def get_prev_deltas(self, index: int) -> List[float]:
        if not self._valid(index):
            return []
        return list(self.edges[index].delta_history)

    def get_last_prev_delta(self, index: int) -> float:
        if not self._valid(index):
            return 0.0
        return self.edges[index].last_prev_delta()

    def get_pending_delta(self, index: int) -> float:
        if not 0 <= index < len(self._pending):
            return 0.0
        return self._pending[index]

    def get_weight(self) -> float:
        with self._lock:
            return self._weight

    def get_err_der(self) -> float:
        with self._lock:
            return self._err_der

    def get_activation(self) -> float:
        """Sum of the weighted input contributions recorded this pass."""
        with self._lock:
            return sum(edge.activation for edge in self.edges if edge.activated)

    def get_activation_scalar(self) -> float:
        with self._lock:
            return self._activation_scalar

    # ------------------------------------------------------------------ sets
    def set_weight(self, value: float) -> None:
        with self._lock:
            self._weight = float(value)

    def set_edge_weight(self, index: int, value: float) -> None:
        if self._valid(index):
            self.edges[index].weight = float(value)

    def set_activation(self, index: int, value: float) -> None:
        if not self._valid(index):
            return
        with self._lock:
            self.edges[index].set_activation(value)

    def set_activation_scalar(self, value: float) -> None:
        with self._lock:
            self._activation_scalar = float(value)

    def clear_activation(self) -> None:
        with self._lock:
            for edge in self.edges:
                edge.deactivate()
            self._activation_scalar = 0.0

    def adjust_err_der(self, value: float) -> None:
        """Add one downstream consumer's partial derivative."""
        with self._lock:
            self._err_der += value

    def clear_err_der(self) -> None:
        with self._lock:
            self._err_der = 0.0

    def add_prev_delta(self, index: int, delta: float) -> None:
        if self._valid(index):
            self.edges[index].add_prev_delta(delta)

    def clear_prev_deltas(self, index: int) -> None:
        if self._valid(index):
            self.edges[index].clear_prev_deltas()

    def clean(self) -> None:
        """Release all edges."""
        self.edges = []
        self._pending = []

    # --------------------------------------------------------------- weights
    def init_weights(
        self,
        count: int,
        scheme: int,
        fan_in: Optional[int] = None,
        activation_type: int = gmath.TANH,
        activation_param: float = gmath.DEFAULT_LEAKY_SLOPE,
        presets: Optional[Sequence[float]] = None,
    ) -> None:
        """
        Allocate ``count`` edges and assign their initial weights.

        Args:
            count: Number of edges to allocate
            scheme: One of the ``INIT_*`` flags
            fan_in: Inputs feeding this node; Xavier scaling uses
                ``1/sqrt(fan_in)``. Defaults to ``count``.
            activation_type: Activation of this node; non-saturating
                activations get He-style gain in the Xavier schemes
            activation_param: Leaky ReLU slope
            presets: Optional prefix of weights copied as-is; the scheme only
                fills the remaining edges
        """
        count = max(0, int(count))
        if fan_in is None:
            fan_in = count
        preset_count = 0 if presets is None else min(len(presets), count)

        self.edges = []
        for i in range(count):
            if i < preset_count:
                value = float(presets[i])
            else:
                value = self._draw(scheme, fan_in, activation_type, activation_param)
            self.edges.append(Edge(i, value))
        self._pending = [0.0] * count

    @staticmethod
    def _draw(scheme: int, fan_in: int, activation_type: int, activation_param: float) -> float:
        if scheme == Node.INIT_RANDOM:
            return rng.uniform(-RANDOM_RANGE, RANDOM_RANGE)
        if scheme == Node.INIT_POSRAND:
            return rng.uniform(0.0, RANDOM_RANGE)
        if scheme in (Node.INIT_XAVIER, Node.INIT_POSXAVIER):
            if gmath.is_saturating(activation_type):
                gain = 1.0
            elif activation_type == gmath.LEAKY:
                gain = math.sqrt(2.0 / (1.0 + activation_param * activation_param))
            elif activation_type == gmath.RELU:
                gain = math.sqrt(2.0)
            else:
                gain = 1.0
            value = rng.normal(0.0, gain / math.sqrt(max(1, fan_in)))
            return abs(value) if scheme == Node.INIT_POSXAVIER else value
        return 0.0

    def get_delta(
        self,
        index: int,
        input_value: float,
        err_der: float,
        learning_rate: float,
        momentum: float,
        weight_decay1: float = 0.0,
        weight_decay2: float = 0.0,
    ) -> float:
        """
        Compute the update for one edge and add it to the pending buffer.

        The update is ``-lr * (err_der * input + wd1 * sign(w) + wd2 * w)``
        plus ``momentum`` times the edge's last applied delta. The edge
        itself is not modified until :meth:`apply_deltas`.

        Args:
            index: Edge index
            input_value: Activation flowing through the edge (1.0 for a bias)
            err_der: Error signal of this node with respect to its pre-activation
            learning_rate: Step size
            momentum: Momentum factor
            weight_decay1: L1 penalty
            weight_decay2: L2 penalty

        Returns:
            float: The computed delta, or 0.0 for an invalid index
        """
        if not self._valid(index):
            return 0.0
        edge = self.edges[index]
        w = edge.weight
        sign = (w > 0.0) - (w < 0.0)
        gradient = err_der * input_value + weight_decay1 * sign + weight_decay2 * w
        delta = -learning_rate * gradient + momentum * edge.last_prev_delta()
        self._pending[index] += delta
        return delta

    def apply_deltas(self, count: int, mode: int = DELTA_SUM) -> None:
        """
        Commit the pending deltas to the edge weights.

        Args:
            count: Number of samples accumulated into the pending buffer
            mode: ``DELTA_SUM`` to apply the sum, ``DELTA_MEAN`` to apply
                the average over ``count`` samples
        """
        scale = 1.0
        if mode == Node.DELTA_MEAN and count > 1:
            scale = 1.0 / count
        for i, edge in enumerate(self.edges):
            delta = self._pending[i] * scale
            edge.weight += delta
            edge.add_prev_delta(delta)
            self._pending[i] = 0.0

    def __repr__(self) -> str:
        return f"Node(id={self.id}, edges={len(self.edges)})"
