"""
layer.py
~~~~~~~~

Ordered collection of nodes that share one role in the graph.

Each layer keeps an index-aligned dropout mask next to its nodes. The two
lists are always resized together, so ``len(dropout_flags) == size()``
holds after every mutation.
"""

import logging
from typing import List, Optional, Sequence

from . import gmath
from . import rng
from .node import Node

logger = logging.getLogger(__name__)


class Layer:
    """
    A layer of nodes.

    Bias is stored only in the nodes' bias edges. The scalar bias accessors
    are a view over those edges, kept for display and for older callers.
    """

    INPUT_TYPE = 0
    HIDDEN_TYPE = 1
    OUTPUT_TYPE = 2
    CONTEXT_TYPE = 3

    def __init__(self, layer_type: int, size: int = 0, bias_init: float = 0.0):
        """
        Create a layer of ``size`` nodes with ids ``0..size-1``.

        Args:
            layer_type: One of the ``*_TYPE`` flags
            size: Number of nodes to create (0 for an empty layer)
            bias_init: Bias written to every bias edge by the next
                ``init_weights`` / ``init_gated_weights`` call when non-zero
        """
        self.type = int(layer_type)
        self.children: List[Node] = [Node(i) for i in range(max(0, int(size)))]
        self.dropout_flags: List[bool] = [False] * len(self.children)
        self.bias_init = float(bias_init)
        self.gate_count = 1
        self.prev_size = 0

    # ------------------------------------------------------------------ gets
    def size(self) -> int:
        return len(self.children)

    def __len__(self) -> int:
        return len(self.children)

    def __iter__(self):
        return iter(self.children)

    def get_node(self, index: int) -> Optional[Node]:
        if 0 <= index < len(self.children):
            return self.children[index]
        logger.debug(f"Layer node index {index} out of range ({len(self.children)} nodes)")
        return None

    def __getitem__(self, index: int) -> Optional[Node]:
        return self.get_node(index)

    def get_children(self) -> List[Node]:
        return self.children

    def bias_edge_index(self, gate: int = 0) -> int:
        """Edge offset of a gate's bias within each node."""
        return gate * (self.prev_size + 1) + self.prev_size

    def get_bias_weight(self) -> float:
        """Average of the first gate's bias edge across all nodes."""
        if not self.children:
            return 0.0
        index = self.bias_edge_index(0)
        total = sum(node.get_edge_weight(index) for node in self.children)
        return total / len(self.children)

    def set_bias_weight(self, value: float) -> None:
        """Assign ``value`` to every bias edge of every node."""
        for node in self.children:
            for gate in range(self.gate_count):
                node.set_edge_weight(self.bias_edge_index(gate), value)

    # --------------------------------------------------------------- weights
    def init_weights(
        self,
        init_type: int,
        prev_layer_size: int,
        activation_type: int = gmath.TANH,
        activation_param: float = gmath.DEFAULT_LEAKY_SLOPE,
    ) -> None:
        """Give every node ``prev_layer_size`` input edges plus one bias edge."""
        self.gate_count = 1
        self.prev_size = max(0, int(prev_layer_size))
        for node in self.children:
            node.init_weights(
                self.prev_size + 1, init_type,
                fan_in=self.prev_size,
                activation_type=activation_type,
                activation_param=activation_param,
            )
        if self.bias_init != 0.0:
            self.set_bias_weight(self.bias_init)

    def init_gated_weights(
        self,
        prev_layer_size: int,
        current_layer_size: int,
        init_type: int,
        activation_type: int = gmath.TANH,
        gate_count: int = 1,
    ) -> None:
        """
        Give every node ``gate_count`` contiguous blocks of input weights + bias.

        Block ``g`` occupies edges ``[g*(prev+1), (g+1)*(prev+1))`` and its
        last edge is that gate's bias. ``current_layer_size`` grows or shrinks
        the layer to match before the weights are allocated.
        """
        self.resize(current_layer_size)
        self.gate_count = max(1, int(gate_count))
        self.prev_size = max(0, int(prev_layer_size))
        for node in self.children:
            node.init_weights(
                self.gate_count * (self.prev_size + 1), init_type,
                fan_in=self.prev_size,
                activation_type=activation_type,
            )
        if self.bias_init != 0.0:
            self.set_bias_weight(self.bias_init)

    def setup_context(self, gate_count: int = 1) -> 'Layer':
        """
        Build the context layer holding this layer's previous hidden state.

        Returns:
            Layer: A CONTEXT layer with a single node of
            ``gate_count * size()`` zeroed edges, one block per gate
        """
        gate_count = max(1, int(gate_count))
        context = Layer(Layer.CONTEXT_TYPE, 1)
        context.gate_count = gate_count
        context.prev_size = self.size()
        context.children[0].init_weights(gate_count * self.size(), Node.INIT_EMPTY)
        return context

    def resize(self, size: int) -> None:
        size = max(0, int(size))
        while len(self.children) < size:
            self.children.append(Node(len(self.children)))
        del self.children[size:]
        self.setup_dropout()

    # --------------------------------------------------------------- dropout
    def setup_dropout(self) -> None:
        """Reset the mask to one ``False`` per node."""
        self.dropout_flags = [False] * len(self.children)

    def generate_dropout(self, probability: float) -> None:
        """Drop each node independently with ``probability``."""
        self.dropout_flags = [rng.unit_float() < probability for _ in self.children]

    def apply_dropout_mask(self, probability: float, mask: Sequence[float]) -> None:
        """Drop node ``i`` iff ``mask[i] < probability``; missing entries keep the node."""
        self.dropout_flags = [
            i < len(mask) and mask[i] < probability for i in range(len(self.children))
        ]

    def clear_dropout(self) -> None:
        self.setup_dropout()

    def possible_path(self, index: int) -> bool:
        """True if node ``index`` exists and is not dropped."""
        if not 0 <= index < len(self.dropout_flags):
            return False
        return not self.dropout_flags[index]

    def first_valid_path(self) -> int:
        """Index of the first non-dropped node, or ``size()`` if none."""
        for i, dropped in enumerate(self.dropout_flags):
            if not dropped:
                return i
        return len(self.children)

    def last_valid_path(self) -> int:
        """Index of the last non-dropped node, or ``size()`` if none."""
        for i in range(len(self.dropout_flags) - 1, -1, -1):
            if not self.dropout_flags[i]:
                return i
        return len(self.children)

    # -------------------------------------------------------------- children
    def add_node(self, node: Node) -> None:
        self.children.append(node)
        self.dropout_flags.append(False)

    def remove_node(self, node: Node) -> bool:
        """
        Remove ``node`` while keeping the remaining order.

        Order matters because the next layer's edge ``i`` reads node ``i``
        of this layer.
        """
        for i, child in enumerate(self.children):
            if child is node:
                del self.children[i]
                del self.dropout_flags[i]
                return True
        return False

    def clean(self) -> None:
        for node in self.children:
            node.clean()
        self.children = []
        self.setup_dropout()

    def __repr__(self) -> str:
        return f"Layer(type={self.type}, size={len(self.children)}, gates={self.gate_count})"
