"""
edge.py
~~~~~~~

A single directed, weighted connection into a node.
"""

from typing import List

# Momentum only looks at the most recent delta; a short tail is kept for inspection
MAX_PREV_DELTAS = 8


class Edge:
    """
    Weighted connection with a bounded history of applied deltas.

    The history is seeded with a single zero so momentum terms always have a
    previous delta to read.
    """

    def __init__(self, edge_id: int, weight: float = 0.0):
        self.id = int(edge_id)
        self.weight = float(weight)
        self.delta_history: List[float] = [0.0]
        self.activation = 0.0
        self.activated = False

    def get_prev_delta(self, index: int) -> float:
        if 0 <= index < len(self.delta_history):
            return self.delta_history[index]
        return 0.0

    def last_prev_delta(self) -> float:
        return self.delta_history[-1]

    def num_prev_deltas(self) -> int:
        return len(self.delta_history)

    def add_prev_delta(self, delta: float) -> None:
        self.delta_history.append(float(delta))
        if len(self.delta_history) > MAX_PREV_DELTAS:
            del self.delta_history[:-MAX_PREV_DELTAS]

    def clear_prev_deltas(self) -> None:
        self.delta_history = [0.0]

    def set_activation(self, value: float) -> None:
        self.activation = float(value)
        self.activated = True

    def deactivate(self) -> None:
        self.activation = 0.0
        self.activated = False

    def __repr__(self) -> str:
        return f"Edge(id={self.id}, weight={self.weight:.6f})"
