"""
layer_builder.py
~~~~~~~~~~~~~~~~

Materializes the layered graph from a topology descriptor and a dataset,
and owns everything that lives across rows and timesteps: the reusable
input layer, feature standardization, recurrent context state, dropout
scrambling and weight persistence.

Lifecycle::

    Empty -> Built -> (Attached <-> Detached) -> Cleaned

A dataset reference is only held between :meth:`LayerBuilder.attach_data_input`
and :meth:`LayerBuilder.detach_data_input`; training drivers bracket every
run with the pair.
"""

import os
import logging
import threading
import warnings
from typing import List, Optional, Sequence, Tuple

import numpy as np

from . import weight_format
from .data_input import DataInput, TRAIN
from .errors import BuildError, LoadError
from .layer import Layer
from .node import Node
from .topology import NNInfo
from .weight_format import LayerRecord, WeightSnapshot

logger = logging.getLogger(__name__)

TYPE_DFF = 0
TYPE_RNN = 1
TYPE_GRU = 2
TYPE_LSTM = 3

NET_TYPES = {
    'dff': TYPE_DFF,
    'rnn': TYPE_RNN,
    'gru': TYPE_GRU,
    'lstm': TYPE_LSTM,
}

GATE_COUNTS = {
    TYPE_DFF: 1,
    TYPE_RNN: 1,
    TYPE_GRU: 3,
    TYPE_LSTM: 4,
}

DEFAULT_STATE_DIR = os.path.join('database', 'nn-state')


def is_recurrent(net_type: int) -> bool:
    return net_type in (TYPE_RNN, TYPE_GRU, TYPE_LSTM)


def is_gated(net_type: int) -> bool:
    return net_type in (TYPE_GRU, TYPE_LSTM)


def parse_net_type(value) -> int:
    """Accept a net type flag or its name ('dff', 'rnn', 'gru', 'lstm')."""
    if isinstance(value, str):
        try:
            return NET_TYPES[value.lower()]
        except KeyError:
            raise ValueError(f"Unknown network type '{value}'") from None
    return int(value)


def legacy_state_path(name: str) -> str:
    """
    Location of a named state under the legacy layout.

    The directory defaults to ``database/nn-state`` and can be moved with the
    ``NEURALGRAPH_STATE_DIR`` environment variable.
    """
    state_dir = os.getenv('NEURALGRAPH_STATE_DIR', DEFAULT_STATE_DIR)
    return os.path.join(state_dir, name)


class LayerBuilder:
    """
    Builds and holds the layers of one network.

    ``layers`` holds the hidden layers followed by the output layer. The
    input layer is kept apart because it is rewritten for every row instead
    of being rebuilt. Recurrent types get one context layer per hidden layer.
    """

    def __init__(self, net_type: int = TYPE_DFF):
        self.net_type = parse_net_type(net_type)
        self.layers: List[Layer] = []
        self.input_layer: Optional[Layer] = None
        self.context_layers: List[Layer] = []
        self.input_row_count = 0
        self.input_feature_count = 0
        self.standardize = False
        self.x_min = 0.0
        self.x_max = 0.0
        self.x_range = 1.0
        # layer x node x timestep
        self.time_state: List[List[List[float]]] = []
        self.last_error = ''
        self._data_input: Optional[DataInput] = None
        self._input_lock = threading.Lock()

    # ------------------------------------------------------------- dataset
    def attach_data_input(self, data_input: DataInput) -> None:
        self._data_input = data_input

    def detach_data_input(self) -> None:
        self._data_input = None

    @property
    def data_input(self) -> Optional[DataInput]:
        return self._data_input

    @property
    def gate_count(self) -> int:
        return GATE_COUNTS.get(self.net_type, 1)

    # --------------------------------------------------------------- build
    def build(
        self,
        skeleton: NNInfo,
        data_input: Optional[DataInput],
        net_type: Optional[int] = None,
        standardize: bool = False,
    ) -> bool:
        """
        Construct every layer described by ``skeleton``.

        Args:
            skeleton: Topology descriptor
            data_input: Dataset whose feature and target counts must match the
                skeleton. Only read during the build; attach it separately for
                row access. ``None`` builds from the skeleton alone.
            net_type: Overrides the builder's network type
            standardize: Enable min-max scaling of input values, with bounds
                taken from the training split

        Returns:
            bool: True on success. On failure ``last_error`` describes the
            problem and the previous topology is left untouched.
        """
        try:
            new_type = self.net_type if net_type is None else parse_net_type(net_type)
            self._validate(skeleton, data_input, new_type)
            feature_count = skeleton.get_input_layer_size()
            layers, contexts = self._build_layers(skeleton, feature_count, new_type)
        except (BuildError, ValueError) as e:
            self.last_error = str(e)
            logger.warning(f"Build failed: {self.last_error}")
            return False

        self.net_type = new_type
        self.layers = layers
        self.context_layers = contexts
        self.rebuild_input_layers(feature_count)
        self.input_row_count = data_input.get_train_size() if data_input is not None else 0
        if standardize and data_input is not None:
            self.standardize_weights(data_input)
        else:
            self.set_bounds(None)
        self.reset_context_state()
        self.last_error = ''

        logger.info(
            f"Built '{skeleton.name}' type={self.net_type} sizes={skeleton.sizes()} "
            f"contexts={len(self.context_layers)}"
        )
        return True

    def _validate(self, skeleton: Optional[NNInfo], data_input: Optional[DataInput], net_type: int) -> None:
        if skeleton is None:
            raise BuildError("No topology descriptor supplied")
        if net_type not in GATE_COUNTS:
            raise BuildError(f"Unsupported network type {net_type}")
        if skeleton.gate_count is not None and skeleton.gate_count != GATE_COUNTS[net_type]:
            raise BuildError(
                f"Gate count {skeleton.gate_count} is not valid for network type {net_type} "
                f"(expected {GATE_COUNTS[net_type]})"
            )
        for index, size in enumerate(skeleton.sizes()):
            if size <= 0:
                raise BuildError(f"Layer {index} has {size} nodes")
        if data_input is None:
            return
        if data_input.get_feature_count() != skeleton.get_input_layer_size():
            raise BuildError(
                f"Dataset has {data_input.get_feature_count()} features but the input layer "
                f"declares {skeleton.get_input_layer_size()}"
            )
        if data_input.get_expected_count() != skeleton.get_output_layer_size():
            raise BuildError(
                f"Dataset has {data_input.get_expected_count()} target columns but the output "
                f"layer declares {skeleton.get_output_layer_size()}"
            )

    def _build_layers(
        self,
        skeleton: NNInfo,
        feature_count: int,
        net_type: int,
        init_override: Optional[int] = None,
    ):
        """Allocate fresh hidden/output/context layers without touching ``self``."""
        gate_count = GATE_COUNTS[net_type]
        layers: List[Layer] = []
        contexts: List[Layer] = []

        prev_size = feature_count
        for info in skeleton.hidden_layers:
            init_type = info.init_type if init_override is None else init_override
            layer = Layer(Layer.HIDDEN_TYPE, info.size, info.bias_init)
            if is_gated(net_type):
                layer.init_gated_weights(prev_size, info.size, init_type, info.activation_type, gate_count)
            else:
                layer.init_weights(init_type, prev_size, info.activation_type, info.activation_param)
            if is_recurrent(net_type):
                contexts.append(layer.setup_context(gate_count))
            layers.append(layer)
            prev_size = info.size

        info = skeleton.output_layer
        init_type = info.init_type if init_override is None else init_override
        output = Layer(Layer.OUTPUT_TYPE, info.size, info.bias_init)
        output.init_weights(init_type, prev_size, info.activation_type, info.activation_param)
        layers.append(output)
        return layers, contexts

    def rebuild_input_layers(self, feature_count: int) -> None:
        """Create the reusable input layer, or resize it if the feature count changed."""
        if self.input_layer is None:
            self.input_layer = Layer(Layer.INPUT_TYPE, feature_count)
        elif self.input_layer.size() != feature_count:
            logger.info(f"Resizing input layer {self.input_layer.size()} -> {feature_count}")
            self.input_layer.resize(feature_count)
        self.input_feature_count = feature_count

    # --------------------------------------------------------------- input
    def get_input_layer(self, row_index: int, column_counter: int = 0, split: Optional[int] = None) -> Optional[Layer]:
        """
        Load one dataset row into the reusable input layer and return it.

        Args:
            row_index: Row of the requested split
            column_counter: Timestep offset within a sequence; the row read is
                ``row_index + column_counter``
            split: TRAIN or TEST. Omitting it is deprecated and reads TRAIN.

        Returns:
            Layer: The input layer (the same object on every call), or None
            before the first build. A missing row leaves all inputs at zero.
        """
        if split is None:
            warnings.warn(
                "get_input_layer() without an explicit split is deprecated; pass split=TRAIN",
                DeprecationWarning,
                stacklevel=2,
            )
            split = TRAIN

        with self._input_lock:
            layer = self.input_layer
            if layer is None:
                logger.warning("get_input_layer() called before build()")
                return None

            values = None
            if self._data_input is None:
                logger.warning("get_input_layer() called with no dataset attached")
            else:
                values = self._data_input.get_row(split, row_index + column_counter)
                if values is None:
                    logger.debug(f"Row {row_index + column_counter} of split {split} does not exist")

            for i, node in enumerate(layer.children):
                if values is not None and i < len(values):
                    value = float(values[i])
                    if self.standardize:
                        value = self.standardize_value(value)
                else:
                    value = 0.0
                node.set_weight(value)
                node.set_activation_scalar(value)
            return layer

    def set_input_values(self, values: Sequence[float]) -> Optional[Layer]:
        """Load an explicit feature vector (not from the dataset) into the input layer."""
        with self._input_lock:
            layer = self.input_layer
            if layer is None:
                return None
            for i, node in enumerate(layer.children):
                value = float(values[i]) if i < len(values) else 0.0
                if self.standardize:
                    value = self.standardize_value(value)
                node.set_weight(value)
                node.set_activation_scalar(value)
            return layer

    def get_expected(self, row_index: int, column_counter: int = 0, split: int = TRAIN) -> List[float]:
        """Target vector for a row, or an empty list if unavailable."""
        if self._data_input is None:
            return []
        values = self._data_input.get_expected_row(split, row_index + column_counter)
        if values is None:
            return []
        return [float(v) for v in values]

    # ------------------------------------------------------ standardization
    def standardize_weights(self, data_input: DataInput) -> None:
        """Compute min-max bounds from the training split and enable scaling."""
        rows = [data_input.get_train_row(i) for i in range(data_input.get_train_size())]
        if rows:
            table = np.asarray(rows, dtype=np.float64)
            self.set_bounds((float(table.min()), float(table.max())))
        else:
            self.set_bounds((0.0, 0.0))

    def set_bounds(self, bounds: Optional[Tuple[float, float]]) -> None:
        """Enable scaling with ``(x_min, x_max)``, or turn it off with None."""
        if bounds is None:
            self.standardize = False
            self.x_min, self.x_max, self.x_range = 0.0, 0.0, 1.0
            return
        self.x_min, self.x_max = float(bounds[0]), float(bounds[1])
        self.x_range = self.x_max - self.x_min
        if self.x_range == 0.0:
            self.x_range = 1.0
        self.standardize = True

    def standardize_value(self, value: float) -> float:
        return (value - self.x_min) / self.x_range

    def unstandardize(self, value: float) -> float:
        return value * self.x_range + self.x_min

    # ------------------------------------------------------------- context
    def get_context_layer(self, index: int) -> Optional[Layer]:
        if 0 <= index < len(self.context_layers):
            return self.context_layers[index]
        return None

    def get_context_node(self, index: int) -> Optional[Node]:
        layer = self.get_context_layer(index)
        return layer.get_node(0) if layer is not None else None

    def get_context_value(self, layer_index: int, node_index: int, gate: int = 0) -> float:
        """Previous hidden activation of a node, as seen by one gate."""
        layer = self.get_context_layer(layer_index)
        if layer is None:
            return 0.0
        return layer.children[0].get_edge_weight(gate * layer.prev_size + node_index)

    def reset_context_state(self, value: float = 0.0) -> None:
        """Start a new sequence: every context edge becomes ``value``."""
        for context in self.context_layers:
            node = context.children[0]
            for i in range(node.num_edges()):
                node.set_edge_weight(i, value)
        self.time_state = [[[] for _ in range(context.prev_size)] for context in self.context_layers]

    def update_context_from_hidden_activations(self) -> None:
        """
        Copy each hidden layer's activations into its context node.

        Must run after the hidden layers have settled for the current
        timestep and before the next timestep reads the context.
        """
        for index, context in enumerate(self.context_layers):
            hidden = self.layers[index]
            node = context.children[0]
            width = context.prev_size
            activations = [child.get_activation_scalar() for child in hidden.children]
            for gate in range(context.gate_count):
                for j, value in enumerate(activations[:width]):
                    node.set_edge_weight(gate * width + j, value)
            if index < len(self.time_state):
                for j, value in enumerate(activations[:width]):
                    self.time_state[index][j].append(value)

    def get_time_state(self, layer_index: int, node_index: int, timestep: int) -> float:
        try:
            return self.time_state[layer_index][node_index][timestep]
        except IndexError:
            return 0.0

    def num_timesteps(self) -> int:
        if not self.time_state or not self.time_state[0]:
            return 0
        return len(self.time_state[0][0])

    # ------------------------------------------------------------- dropout
    def get_layer(self, index: int) -> Optional[Layer]:
        """Layer by engine numbering: 0 is the input layer, then ``layers``."""
        if index == 0:
            return self.input_layer
        if 1 <= index <= len(self.layers):
            return self.layers[index - 1]
        return None

    def scramble_dropout(self, layer_index: int, probability: float, mask: Sequence[float]) -> None:
        """
        Drop nodes of one layer using caller-supplied random draws.

        Node ``i`` is dropped iff ``mask[i] < probability``, so a run is
        reproducible from its sequence of draws.
        """
        layer = self.get_layer(layer_index)
        if layer is None:
            logger.debug(f"scramble_dropout: no layer {layer_index}")
            return
        layer.apply_dropout_mask(probability, mask)

    def clear_dropout(self) -> None:
        if self.input_layer is not None:
            self.input_layer.clear_dropout()
        for layer in self.layers:
            layer.clear_dropout()

    # ---------------------------------------------------------------- gets
    def get_layers(self) -> List[Layer]:
        return self.layers

    def get_layers_size(self) -> int:
        return len(self.layers)

    def get_input_layers_size(self) -> int:
        return 0 if self.input_layer is None else 1

    def is_built(self) -> bool:
        return bool(self.layers)

    # --------------------------------------------------------- persistence
    def snapshot(self) -> WeightSnapshot:
        """Copy the current weights into the serializable form."""
        def record(layer: Layer) -> LayerRecord:
            weights = np.array([node.get_edge_weights() for node in layer.children], dtype=np.float64)
            if weights.ndim != 2:
                weights = weights.reshape(layer.size(), 0)
            return LayerRecord(layer.type, weights)

        return WeightSnapshot(
            self.net_type,
            self.gate_count,
            [record(layer) for layer in self.layers],
            [record(context) for context in self.context_layers],
            (self.x_min, self.x_max) if self.standardize else None,
        )

    def save_state_to_file(self, path: str) -> bool:
        """Write the weight file to an explicit path."""
        if not self.layers:
            self.last_error = "Nothing to save: the network has not been built"
            logger.warning(self.last_error)
            return False
        try:
            directory = os.path.dirname(path)
            if directory and not os.path.exists(directory):
                os.makedirs(directory)
            weight_format.write_file(path, self.snapshot())
        except OSError as e:
            self.last_error = f"Cannot write weight file '{path}': {e}"
            logger.error(self.last_error)
            return False
        logger.info(f"Saved weights to {path}")
        return True

    def load_state_from_file(self, skeleton: NNInfo, path: str) -> bool:
        """Restore weights from an explicit path; see :meth:`load_state_from_bytes`."""
        try:
            snapshot = weight_format.read_file(path)
        except LoadError as e:
            self.last_error = str(e)
            logger.warning(f"Load failed: {self.last_error}")
            return False
        if not self._apply_snapshot(skeleton, snapshot):
            return False
        logger.info(f"Loaded weights from {path}")
        return True

    def load_state_from_bytes(self, skeleton: NNInfo, data: bytes) -> bool:
        """
        Restore weights from serialized bytes.

        The data is fully parsed and checked against the shape ``skeleton``
        implies for this builder's network type before anything changes. On
        failure the in-memory topology is left exactly as it was.
        """
        try:
            snapshot = weight_format.loads(data)
        except LoadError as e:
            self.last_error = str(e)
            logger.warning(f"Load failed: {self.last_error}")
            return False
        return self._apply_snapshot(skeleton, snapshot)

    def _apply_snapshot(self, skeleton: NNInfo, snapshot: WeightSnapshot) -> bool:
        try:
            self._validate(skeleton, None, self.net_type)
            feature_count = skeleton.get_input_layer_size()
            layers, contexts = self._build_layers(skeleton, feature_count, self.net_type, Node.INIT_EMPTY)
            candidate = WeightSnapshot(
                self.net_type,
                self.gate_count,
                [LayerRecord(layer.type, np.zeros((layer.size(), layer.children[0].num_edges())))
                 for layer in layers],
                [LayerRecord(context.type, np.zeros((1, context.children[0].num_edges())))
                 for context in contexts],
            )
            if candidate.shape() != snapshot.shape():
                raise LoadError(
                    f"Weight file shape {snapshot.shape()} does not match skeleton "
                    f"'{skeleton.name}' shape {candidate.shape()}"
                )
        except (BuildError, LoadError) as e:
            self.last_error = str(e)
            logger.warning(f"Load failed: {self.last_error}")
            return False

        for layer, record in zip(layers + contexts, snapshot.layers + snapshot.contexts):
            for node, row in zip(layer.children, record.weights):
                for i, value in enumerate(row):
                    node.set_edge_weight(i, float(value))

        self.layers = layers
        self.context_layers = contexts
        self.rebuild_input_layers(feature_count)
        self.time_state = [[[] for _ in range(context.prev_size)] for context in self.context_layers]
        self.set_bounds(snapshot.scaling)
        self.last_error = ''
        return True

    def save_state(self, name: str) -> bool:
        """Save under the legacy named location (see :func:`legacy_state_path`)."""
        if not name or not isinstance(name, str):
            self.last_error = "Invalid state name: must be a non-empty string"
            logger.error(self.last_error)
            return False
        return self.save_state_to_file(legacy_state_path(name))

    def load_state(self, skeleton: NNInfo, name: str) -> bool:
        """Load from the legacy named location (see :func:`legacy_state_path`)."""
        if not name or not isinstance(name, str):
            self.last_error = "Invalid state name: must be a non-empty string"
            logger.error(self.last_error)
            return False
        return self.load_state_from_file(skeleton, legacy_state_path(name))

    # --------------------------------------------------------------- clean
    def clean(self) -> None:
        """Release every layer and forget the attached dataset."""
        for layer in self.layers + self.context_layers:
            layer.clean()
        if self.input_layer is not None:
            self.input_layer.clean()
        self.layers = []
        self.context_layers = []
        self.input_layer = None
        self.input_row_count = 0
        self.input_feature_count = 0
        self.time_state = []
        self.set_bounds(None)
        self._data_input = None

    def __repr__(self) -> str:
        sizes = [layer.size() for layer in self.layers]
        return f"LayerBuilder(type={self.net_type}, inputs={self.input_feature_count}, layers={sizes})"
