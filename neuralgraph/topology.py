"""
topology.py
~~~~~~~~~~~

Network topology descriptor: layer sizes and per-layer training settings.

The engine treats an :class:`NNInfo` as read-only input. It can be converted
to and from a plain dict so it can be stored as JSON next to saved weights.
"""

from typing import Any, Dict, List, Optional, Sequence

from . import gmath
from .node import Node

INIT_TYPES = {
    'empty': Node.INIT_EMPTY,
    'random': Node.INIT_RANDOM,
    'posrand': Node.INIT_POSRAND,
    'xavier': Node.INIT_XAVIER,
    'posxavier': Node.INIT_POSXAVIER,
}


class LayerInfo:
    """Settings for one layer of the descriptor."""

    INPUT = 0
    HIDDEN = 1
    OUTPUT = 2

    def __init__(
        self,
        size: int,
        learning_rate: float = 0.1,
        momentum_factor: float = 0.0,
        weight_decay1: float = 0.0,
        weight_decay2: float = 0.0,
        p_dropout: float = 0.0,
        activation_type: int = gmath.TANH,
        activation_param: float = gmath.DEFAULT_LEAKY_SLOPE,
        init_type: int = Node.INIT_XAVIER,
        bias_init: float = 0.0,
    ):
        self.size = int(size)
        self.learning_rate = float(learning_rate)
        self.momentum_factor = float(momentum_factor)
        self.weight_decay1 = float(weight_decay1)
        self.weight_decay2 = float(weight_decay2)
        self.p_dropout = float(p_dropout)
        self.activation_type = gmath.parse_activation(activation_type)
        self.activation_param = float(activation_param)
        self.init_type = _parse_init(init_type)
        # non-zero values overwrite the freshly initialized bias edges
        self.bias_init = float(bias_init)

    def copy_params_from(self, other: 'LayerInfo') -> None:
        for key, value in other.to_dict().items():
            if key != 'size':
                setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'size': self.size,
            'learning_rate': self.learning_rate,
            'momentum_factor': self.momentum_factor,
            'weight_decay1': self.weight_decay1,
            'weight_decay2': self.weight_decay2,
            'p_dropout': self.p_dropout,
            'activation_type': self.activation_type,
            'activation_param': self.activation_param,
            'init_type': self.init_type,
            'bias_init': self.bias_init,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerInfo':
        return cls(**data)

    def __repr__(self) -> str:
        return f"LayerInfo(size={self.size}, activation={self.activation_type})"


def _parse_init(value) -> int:
    if isinstance(value, str):
        try:
            return INIT_TYPES[value.lower()]
        except KeyError:
            raise ValueError(f"Unknown init type '{value}'") from None
    return int(value)


class NNInfo:
    """
    Topology descriptor: one input layer, any number of hidden layers, one
    output layer.

    Layer numbering used throughout the engine: 0 is the input layer,
    ``1..n`` the hidden layers, ``n+1`` the output layer.
    """

    BATCH_FULL = 0
    BATCH_STOCHASTIC = 1

    def __init__(
        self,
        name: str,
        input_layer: LayerInfo,
        hidden_layers: Sequence[LayerInfo],
        output_layer: LayerInfo,
        batch_size: int = 1,
        output_type: int = gmath.REGRESSION,
        gate_count: Optional[int] = None,
    ):
        self.name = name
        self.input_layer = input_layer
        self.hidden_layers: List[LayerInfo] = list(hidden_layers)
        self.output_layer = output_layer
        self.batch_size = int(batch_size)
        self.output_type = int(output_type)
        self.gate_count = None if gate_count is None else int(gate_count)

    @classmethod
    def from_sizes(cls, name: str, sizes: Sequence[int], **layer_kwargs: Any) -> 'NNInfo':
        """
        Build a descriptor from ``[input, hidden..., output]`` sizes.

        Example:
            >>> info = NNInfo.from_sizes("xor", [2, 3, 1], learning_rate=0.5)
            >>> info.num_layers()
            3
        """
        if len(sizes) < 2:
            raise ValueError("A topology needs at least an input and an output layer")
        layers = [LayerInfo(size, **layer_kwargs) for size in sizes]
        return cls(name, layers[0], layers[1:-1], layers[-1])

    # ------------------------------------------------------------------ gets
    def num_layers(self) -> int:
        return len(self.hidden_layers) + 2

    def num_hidden_layers(self) -> int:
        return len(self.hidden_layers)

    def get_input_layer_size(self) -> int:
        return self.input_layer.size

    def get_hidden_layer_size(self, index: int) -> int:
        if 0 <= index < len(self.hidden_layers):
            return self.hidden_layers[index].size
        return 0

    def get_output_layer_size(self) -> int:
        return self.output_layer.size

    def get_layer(self, index: int) -> Optional[LayerInfo]:
        """Layer settings by engine layer number (0 = input)."""
        layers = self.all_layers()
        if 0 <= index < len(layers):
            return layers[index]
        return None

    def all_layers(self) -> List[LayerInfo]:
        return [self.input_layer] + self.hidden_layers + [self.output_layer]

    def sizes(self) -> List[int]:
        return [layer.size for layer in self.all_layers()]

    # ------------------------------------------------------------------ sets
    def add_hidden_layer(self, layer: LayerInfo) -> None:
        self.hidden_layers.append(layer)

    def remove_hidden_layer(self, index: int) -> None:
        if 0 <= index < len(self.hidden_layers):
            del self.hidden_layers[index]

    # ------------------------------------------------------------ conversion
    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'input_layer': self.input_layer.to_dict(),
            'hidden_layers': [layer.to_dict() for layer in self.hidden_layers],
            'output_layer': self.output_layer.to_dict(),
            'batch_size': self.batch_size,
            'output_type': self.output_type,
            'gate_count': self.gate_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NNInfo':
        """
        Build a descriptor from its dict form.

        ``sizes`` may be given instead of explicit layers, in which case the
        optional ``layer_defaults`` dict is applied to every layer.
        """
        if 'sizes' in data:
            info = cls.from_sizes(
                data.get('name', 'network'), data['sizes'], **data.get('layer_defaults', {})
            )
        else:
            info = cls(
                data.get('name', 'network'),
                LayerInfo.from_dict(data['input_layer']),
                [LayerInfo.from_dict(layer) for layer in data.get('hidden_layers', [])],
                LayerInfo.from_dict(data['output_layer']),
            )
        info.batch_size = int(data.get('batch_size', info.batch_size))
        info.output_type = int(data.get('output_type', info.output_type))
        gate_count = data.get('gate_count')
        info.gate_count = None if gate_count is None else int(gate_count)
        return info

    def __repr__(self) -> str:
        return f"NNInfo(name={self.name!r}, sizes={self.sizes()})"
