"""
network.py
~~~~~~~~~~

Training and inference driver for the layered graph.

:class:`NNetwork` owns a :class:`~neuralgraph.layer_builder.LayerBuilder` and
drives it row by row: load the input layer, evaluate the layers in order,
backpropagate, and commit the accumulated deltas every minibatch.

Feed-forward networks visit the training rows in shuffled order. Recurrent
networks (RNN, GRU, LSTM) treat the training split as one sequence: the
context is reset at the start of every epoch and updated after every
timestep. Backpropagation for recurrent networks is truncated to the current
timestep (the context is treated as a constant input).

Recurrent input is element-wise: hidden node ``j`` (and each of its gates)
reads its own previous activation from the context node.

Gate order inside a node's edges: GRU ``[update, reset, candidate]``, LSTM
``[input, forget, candidate, output]``.
"""

import time
import logging
from collections import namedtuple
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import gmath
from . import metrics
from . import rng
from .data_input import DataInput, TEST, TRAIN
from .layer import Layer
from .layer_builder import (
    LayerBuilder,
    TYPE_DFF,
    TYPE_GRU,
    TYPE_LSTM,
    is_gated,
    is_recurrent,
)
from .node import Node
from .topology import LayerInfo, NNInfo
from .training_config import Terminator, TrainingConfig

logger = logging.getLogger(__name__)

# Regression outputs within this distance of the target count as correct
REGRESSION_TOLERANCE = 0.1

# One evaluated pass over a split; outputs and targets are per row
SplitPass = namedtuple('SplitPass', ['error', 'correct', 'total', 'outputs', 'targets'])


class NNetwork:
    """
    A trainable network built from a topology descriptor.

    Args:
        skeleton: Topology descriptor (may be supplied later via ``load``)
        net_type: TYPE_DFF, TYPE_RNN, TYPE_GRU or TYPE_LSTM (or their names)
        config: Run-level overrides (batch size, clipping, LR schedule)
        executor: Optional executor used to evaluate the nodes of one layer
            in parallel; layers are always evaluated in order
        seed: Seed for this network's private random engine. Without it the
            calling thread's default engine is used.
        standardize: Min-max scale inputs with bounds from the training split

    Example:
        >>> info = NNInfo.from_sizes("xor", [2, 4, 1], learning_rate=0.5)
        >>> net = NNetwork(info, seed=7)
        >>> status = net.train(data, Terminator(epoch=200))
    """

    RUN_TRAIN = 0
    RUN_TEST = 1

    def __init__(
        self,
        skeleton: Optional[NNInfo] = None,
        net_type=TYPE_DFF,
        config: Optional[TrainingConfig] = None,
        executor: Optional[Executor] = None,
        seed: Optional[int] = None,
        standardize: bool = False,
    ):
        self.skeleton = skeleton
        self.builder = LayerBuilder(net_type)
        self.config = config or TrainingConfig()
        self.executor = executor
        self.engine = rng.Engine(seed) if seed is not None else None
        self.standardize = standardize

        self.running = False
        self.epochs = 0
        self.accuracy = 0.0
        self.total_error = 0.0
        self.metrics: Dict[str, float] = {}
        self.learning_curve: List[float] = []
        self._stop_requested = False

        # per-pass caches, indexed like builder.layers
        self._inputs: List[List[float]] = []
        self._input_scales: List[float] = []
        self._gate_cache: List[List[tuple]] = []
        # LSTM cell state, one list per hidden layer
        self._cell_state: List[List[float]] = []
        self._next_cell_state: List[List[float]] = []

    # ---------------------------------------------------------------- gets
    @property
    def net_type(self) -> int:
        return self.builder.net_type

    @property
    def sizes(self) -> List[int]:
        return self.skeleton.sizes() if self.skeleton is not None else []

    def get_name(self) -> str:
        return self.skeleton.name if self.skeleton is not None else ''

    def get_learning_curve(self) -> List[float]:
        return list(self.learning_curve)

    def node_activations(self) -> List[List[float]]:
        """Read-only snapshot of every node's activation, input layer first."""
        layers = []
        if self.builder.input_layer is not None:
            layers.append(self.builder.input_layer)
        layers.extend(self.builder.layers)
        return [[node.get_activation_scalar() for node in layer.children] for layer in layers]

    def stop(self) -> None:
        """Ask a running ``train``/``test`` to finish after the current row."""
        self._stop_requested = True

    # -------------------------------------------------------------- setup
    def build(self, data_input: Optional[DataInput] = None) -> bool:
        """Build the graph now, drawing weights from this network's engine."""
        if self.skeleton is None:
            self.builder.last_error = "No topology descriptor"
            return False
        with rng.scoped_engine(self.engine):
            return self.builder.build(self.skeleton, data_input, standardize=self.standardize)

    def _ensure_built(self, data_input: DataInput, training: bool) -> bool:
        """
        Build on first use, otherwise check ``data_input`` fits the graph.

        A training run re-derives input scaling from its own dataset, or turns
        it off when ``standardize`` is False. Evaluation keeps the bounds the
        weights were trained with.
        """
        if self.skeleton is None or not self.builder.is_built():
            return self.build(data_input)
        if self.builder.input_feature_count != data_input.get_feature_count():
            self.builder.last_error = (
                f"Network expects {self.builder.input_feature_count} features, "
                f"dataset has {data_input.get_feature_count()}"
            )
            return False
        if training:
            if self.standardize:
                self.builder.standardize_weights(data_input)
            else:
                self.builder.set_bounds(None)
        return True

    def _layer_info(self, index: int) -> LayerInfo:
        """Settings for ``builder.layers[index]``."""
        return self.skeleton.get_layer(index + 1)

    def _reset_sequence(self) -> None:
        self.builder.reset_context_state()
        self._cell_state = [[0.0] * context.prev_size for context in self.builder.context_layers]
        self._next_cell_state = [list(state) for state in self._cell_state]

    def _advance_timestep(self) -> None:
        self.builder.update_context_from_hidden_activations()
        if self.net_type == TYPE_LSTM:
            self._cell_state = [list(state) for state in self._next_cell_state]

    def _map(self, fn: Callable[[int], Any], count: int) -> None:
        if self.executor is not None:
            list(self.executor.map(fn, range(count)))
        else:
            for i in range(count):
                fn(i)

    # ------------------------------------------------------------- forward
    @staticmethod
    def _layer_outputs(layer: Layer) -> List[float]:
        return [
            node.get_activation_scalar() if layer.possible_path(i) else 0.0
            for i, node in enumerate(layer.children)
        ]

    def _forward(self, training: bool) -> List[float]:
        """Evaluate every layer in order and return the output activations."""
        builder = self.builder
        prev_layer = builder.input_layer
        for node in prev_layer.children:
            node.clear_err_der()
        prev_values = self._layer_outputs(prev_layer)
        prev_p = self.skeleton.input_layer.p_dropout

        self._inputs = []
        self._input_scales = []
        self._gate_cache = [[] for _ in builder.layers]
        if self.net_type == TYPE_LSTM:
            self._next_cell_state = [list(state) for state in self._cell_state]

        for index, layer in enumerate(builder.layers):
            scale = 1.0
            if training and 0.0 < prev_p < 1.0:
                scale = 1.0 / (1.0 - prev_p)
                prev_values = [value * scale for value in prev_values]
            self._inputs.append(prev_values)
            self._input_scales.append(scale)

            info = self._layer_info(index)
            hidden = layer.type == Layer.HIDDEN_TYPE
            if hidden and is_gated(self.net_type):
                self._gate_cache[index] = [None] * layer.size()
                self._map(lambda j: self._forward_gated_node(index, layer, j, prev_values, info), layer.size())
            else:
                context_index = index if hidden and is_recurrent(self.net_type) else None
                self._map(
                    lambda j: self._forward_dense_node(layer, j, prev_values, info, context_index),
                    layer.size(),
                )

            prev_values = self._layer_outputs(layer)
            prev_p = info.p_dropout
        return prev_values

    def _forward_dense_node(
        self,
        layer: Layer,
        j: int,
        inputs: Sequence[float],
        info: LayerInfo,
        context_index: Optional[int],
    ) -> None:
        node = layer.children[j]
        node.clear_activation()
        node.clear_err_der()
        if not layer.possible_path(j):
            node.set_weight(0.0)
            return

        fan_in = len(inputs)
        for p, value in enumerate(inputs):
            node.set_activation(p, node.get_edge_weight(p) * value)
        node.set_activation(fan_in, node.get_edge_weight(fan_in))
        net = node.get_activation()
        if context_index is not None:
            net += self.builder.get_context_value(context_index, j)

        node.set_weight(net)
        node.set_activation_scalar(gmath.squash(net, info.activation_type, info.activation_param))

    def _forward_gated_node(
        self,
        index: int,
        layer: Layer,
        j: int,
        inputs: Sequence[float],
        info: LayerInfo,
    ) -> None:
        node = layer.children[j]
        node.clear_activation()
        node.clear_err_der()
        if not layer.possible_path(j):
            node.set_weight(0.0)
            return

        fan_in = len(inputs)
        stride = fan_in + 1
        weights = node.get_edge_weights()
        pre = []
        recurrent = []
        for gate in range(layer.gate_count):
            base = gate * stride
            total = weights[base + fan_in]
            for p, value in enumerate(inputs):
                contribution = weights[base + p] * value
                node.set_activation(base + p, contribution)
                total += contribution
            node.set_activation(base + fan_in, weights[base + fan_in])
            pre.append(total)
            recurrent.append(self.builder.get_context_value(index, j, gate))

        act, param = info.activation_type, info.activation_param
        h_prev = recurrent[0]
        if self.net_type == TYPE_GRU:
            z = gmath.sigmoid(pre[0] + recurrent[0])
            r = gmath.sigmoid(pre[1] + recurrent[1])
            # reset gate scales the recurrent term of the candidate
            n = gmath.squash(pre[2] + r * recurrent[2], act, param)
            h = (1.0 - z) * n + z * h_prev
            self._gate_cache[index][j] = (z, r, n, h_prev)
        else:
            i = gmath.sigmoid(pre[0] + recurrent[0])
            f = gmath.sigmoid(pre[1] + recurrent[1])
            g = gmath.squash(pre[2] + recurrent[2], act, param)
            o = gmath.sigmoid(pre[3] + recurrent[3])
            c_prev = self._cell_state[index][j]
            c = f * c_prev + i * g
            c_out = gmath.squash(c, act, param)
            h = o * c_out
            self._next_cell_state[index][j] = c
            self._gate_cache[index][j] = (i, f, g, o, c_prev, c_out)

        node.set_weight(h)
        node.set_activation_scalar(h)

    # ------------------------------------------------------------ backward
    def _backward(self, expected: Sequence[float], lr_multiplier: float) -> None:
        """Backpropagate from the output layer and queue deltas on every edge."""
        builder = self.builder
        output = builder.layers[-1]
        for j, node in enumerate(output.children):
            if j < len(expected) and output.possible_path(j):
                y = node.get_activation_scalar()
                node.adjust_err_der(gmath.cost_err_der(expected[j], y, self.skeleton.output_type))

        for index in range(len(builder.layers) - 1, -1, -1):
            layer = builder.layers[index]
            prev_layer = builder.input_layer if index == 0 else builder.layers[index - 1]
            propagate = index > 0
            info = self._layer_info(index)
            if layer.type == Layer.HIDDEN_TYPE and is_gated(self.net_type):
                self._backward_gated_layer(index, layer, prev_layer, propagate, info, lr_multiplier)
            else:
                self._backward_dense_layer(index, layer, prev_layer, propagate, info, lr_multiplier)

    def _queue_block(
        self,
        node: Node,
        base: int,
        delta: float,
        inputs: Sequence[float],
        prev_layer: Layer,
        propagate: bool,
        scale: float,
        info: LayerInfo,
        learning_rate: float,
    ) -> None:
        """Queue deltas for one ``[inputs..., bias]`` block and push error upstream."""
        fan_in = len(inputs)
        for p, value in enumerate(inputs):
            if propagate and prev_layer.possible_path(p):
                prev_layer.children[p].adjust_err_der(delta * node.get_edge_weight(base + p) * scale)
            node.get_delta(
                base + p, value, delta, learning_rate,
                info.momentum_factor, info.weight_decay1, info.weight_decay2,
            )
        node.get_delta(base + fan_in, 1.0, delta, learning_rate, info.momentum_factor)

    def _backward_dense_layer(
        self,
        index: int,
        layer: Layer,
        prev_layer: Layer,
        propagate: bool,
        info: LayerInfo,
        lr_multiplier: float,
    ) -> None:
        limit = self.config.per_element_grad_clip
        inputs = self._inputs[index]
        scale = self._input_scales[index]
        learning_rate = info.learning_rate * lr_multiplier
        for j, node in enumerate(layer.children):
            if not layer.possible_path(j):
                continue
            y = node.get_activation_scalar()
            delta = gmath.clip(
                node.get_err_der() * gmath.activation_err_der(y, info.activation_type, info.activation_param),
                limit,
            )
            self._queue_block(node, 0, delta, inputs, prev_layer, propagate, scale, info, learning_rate)

    def _backward_gated_layer(
        self,
        index: int,
        layer: Layer,
        prev_layer: Layer,
        propagate: bool,
        info: LayerInfo,
        lr_multiplier: float,
    ) -> None:
        limit = self.config.per_element_grad_clip
        inputs = self._inputs[index]
        scale = self._input_scales[index]
        stride = len(inputs) + 1
        learning_rate = info.learning_rate * lr_multiplier
        act, param = info.activation_type, info.activation_param

        for j, node in enumerate(layer.children):
            cache = self._gate_cache[index][j]
            if cache is None or not layer.possible_path(j):
                continue
            dh = node.get_err_der()
            if self.net_type == TYPE_GRU:
                z, r, n, h_prev = cache
                d_candidate = gmath.clip(dh * (1.0 - z) * gmath.activation_err_der(n, act, param), limit)
                d_update = gmath.clip(dh * (h_prev - n) * z * (1.0 - z), limit)
                d_reset = gmath.clip(d_candidate * h_prev * r * (1.0 - r), limit)
                deltas = (d_update, d_reset, d_candidate)
            else:
                i, f, g, o, c_prev, c_out = cache
                dc = dh * o * gmath.activation_err_der(c_out, act, param)
                deltas = (
                    gmath.clip(dc * g * i * (1.0 - i), limit),
                    gmath.clip(dc * c_prev * f * (1.0 - f), limit),
                    gmath.clip(dc * i * gmath.activation_err_der(g, act, param), limit),
                    gmath.clip(dh * c_out * o * (1.0 - o), limit),
                )
            for gate, delta in enumerate(deltas):
                self._queue_block(
                    node, gate * stride, delta, inputs, prev_layer, propagate, scale, info, learning_rate
                )

    def _apply_deltas(self, count: int) -> None:
        for layer in self.builder.layers:
            for node in layer.children:
                node.apply_deltas(count, Node.DELTA_MEAN)

    # ------------------------------------------------------------- dropout
    def _scramble_dropout(self) -> None:
        """Draw a fresh dropout mask for the input and hidden layers."""
        builder = self.builder
        infos = self.skeleton.all_layers()
        # output layer (last) is never dropped
        for layer_index in range(len(builder.layers)):
            probability = infos[layer_index].p_dropout
            layer = builder.get_layer(layer_index)
            if probability <= 0.0 or layer is None:
                continue
            mask = [rng.unit_float() for _ in range(layer.size())]
            builder.scramble_dropout(layer_index, probability, mask)

    # -------------------------------------------------------------- scoring
    def _score(self, outputs: Sequence[float], expected: Sequence[float]):
        error = sum(
            gmath.output_node_cost(t, y, self.skeleton.output_type)
            for y, t in zip(outputs, expected)
        )
        if not expected:
            return error, False
        if self.skeleton.output_type == gmath.CLASSIFICATION:
            correct = metrics.class_index(outputs) == metrics.class_index(expected)
        else:
            correct = all(abs(y - t) <= REGRESSION_TOLERANCE for y, t in zip(outputs, expected))
        return error, correct

    # ------------------------------------------------------------- running
    def _run_split(self, data_input: DataInput, split: int, training: bool, lr_multiplier: float = 1.0):
        """One pass over a split."""
        builder = self.builder
        count = data_input.get_size(split)
        recurrent = is_recurrent(self.net_type)
        if recurrent:
            self._reset_sequence()
            order = list(range(count))
        elif training:
            order = [int(i) for i in rng.permutation(count)]
        else:
            order = list(range(count))

        batch_size = self.config.minibatch_size_override or self.skeleton.batch_size
        if batch_size <= 0:
            batch_size = max(1, count)

        total_error = 0.0
        correct = 0
        pending = 0
        seen_outputs: List[List[float]] = []
        seen_targets: List[List[float]] = []
        for row in order:
            if self._stop_requested:
                break
            if training:
                builder.clear_dropout()
                self._scramble_dropout()
            # recurrent sequences start at row 0 and step through the column counter
            if recurrent:
                builder.get_input_layer(0, row, split)
                expected = builder.get_expected(0, row, split)
            else:
                builder.get_input_layer(row, 0, split)
                expected = builder.get_expected(row, 0, split)

            outputs = self._forward(training)
            error, ok = self._score(outputs, expected)
            total_error += error
            correct += int(ok)
            if expected:
                seen_outputs.append(list(outputs))
                seen_targets.append(expected)

            if training:
                self._backward(expected, lr_multiplier)
                pending += 1
                if pending >= batch_size:
                    self._apply_deltas(pending)
                    pending = 0
            if recurrent:
                self._advance_timestep()

        if training and pending:
            self._apply_deltas(pending)
        builder.clear_dropout()
        return SplitPass(total_error, correct, len(seen_outputs), seen_outputs, seen_targets)

    def train(
        self,
        data_input: DataInput,
        terminator: Optional[Terminator] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None,
    ) -> Dict[str, Any]:
        """
        Train until the terminator fires or :meth:`stop` is called.

        Args:
            data_input: Dataset; accuracy is measured on its test split when
                it has one, otherwise on the training split
            terminator: Stop conditions (defaults to a single epoch)
            callback: Called after every epoch with a progress dict
            yield_func: Called after every epoch so cooperative schedulers
                can run other work

        Returns:
            dict: Final status (``status``, ``epochs``, ``accuracy``, ``error``)
        """
        if terminator is None or not terminator.is_set():
            if terminator is not None:
                logger.warning("Terminator has no stop condition; running a single epoch")
            terminator = Terminator(epoch=1)

        if not self._ensure_built(data_input, training=True):
            logger.error(f"Cannot train '{self.get_name()}': {self.builder.last_error}")
            return {'status': 'failed', 'error': self.builder.last_error}

        self.running = True
        self._stop_requested = False
        start = time.time()
        run_epochs = 0
        self.builder.attach_data_input(data_input)
        try:
            with rng.scoped_engine(self.engine):
                while not self._stop_requested:
                    multiplier = self.config.lr_schedule.multiplier(self.epochs)
                    train_pass = self._run_split(data_input, TRAIN, True, multiplier)
                    self.epochs += 1
                    run_epochs += 1

                    split = TEST if data_input.get_test_size() > 0 else TRAIN
                    scored = self._run_split(data_input, split, False)
                    self.accuracy = scored.correct / scored.total if scored.total else 0.0
                    self.total_error = scored.error / scored.total if scored.total else 0.0
                    self.metrics = metrics.split_metrics(self.skeleton.output_type, scored.outputs, scored.targets)
                    self.learning_curve.append(self.total_error)

                    elapsed = time.time() - start
                    logger.debug(
                        f"Epoch {self.epochs}: train_error={train_pass.error:.6f} "
                        f"accuracy={self.accuracy:.4f}"
                    )
                    if callback is not None:
                        callback({
                            'epoch': run_epochs,
                            'total_epochs': terminator.epoch,
                            'accuracy': self.accuracy,
                            'error': self.total_error,
                            'elapsed_time': elapsed,
                            'correct': scored.correct,
                            'total': scored.total,
                            'metrics': dict(self.metrics),
                        })
                    if yield_func is not None:
                        yield_func()
                    if terminator.triggered(int(elapsed * 1000), run_epochs, self.accuracy):
                        break
        finally:
            self.builder.detach_data_input()
            self.running = False

        logger.info(
            f"Trained '{self.get_name()}' for {run_epochs} epoch(s): "
            f"accuracy={self.accuracy:.4f} error={self.total_error:.6f}"
        )
        return {
            'status': 'stopped' if self._stop_requested else 'completed',
            'epochs': run_epochs,
            'accuracy': self.accuracy,
            'error': self.total_error,
            'metrics': dict(self.metrics),
        }

    def test(self, data_input: DataInput) -> Dict[str, Any]:
        """Evaluate on the test split (the training split if there is none)."""
        if not self._ensure_built(data_input, training=False):
            logger.error(f"Cannot test '{self.get_name()}': {self.builder.last_error}")
            return {'status': 'failed', 'error': self.builder.last_error}

        split = TEST if data_input.get_test_size() > 0 else TRAIN
        self._stop_requested = False
        self.builder.attach_data_input(data_input)
        try:
            scored = self._run_split(data_input, split, False)
        finally:
            self.builder.detach_data_input()
        total = scored.total
        return {
            'status': 'completed',
            'accuracy': scored.correct / total if total else 0.0,
            'error': scored.error / total if total else 0.0,
            'correct': scored.correct,
            'total': total,
            'metrics': metrics.split_metrics(self.skeleton.output_type, scored.outputs, scored.targets),
        }

    def predict(self, features: Sequence[float]) -> List[float]:
        """
        Evaluate one feature vector.

        Recurrent networks read and then advance their current context, so
        consecutive calls continue the same sequence.
        """
        if not self.builder.is_built():
            raise RuntimeError("Network must be built (trained or loaded) before predict()")
        if is_recurrent(self.net_type) and len(self._cell_state) != len(self.builder.context_layers):
            self._reset_sequence()
        self.builder.set_input_values(features)
        outputs = self._forward(training=False)
        if is_recurrent(self.net_type):
            self._advance_timestep()
        return outputs

    def predict_sequence(self, rows: Sequence[Sequence[float]]) -> List[List[float]]:
        """Evaluate a whole sequence from a freshly reset context."""
        if not self.builder.is_built():
            raise RuntimeError("Network must be built (trained or loaded) before predict_sequence()")
        self._reset_sequence()
        return [self.predict(row) for row in rows]

    def reset_state(self) -> None:
        """Start a new sequence for recurrent networks."""
        self._reset_sequence()

    # --------------------------------------------------------- persistence
    def save(self, path: str) -> bool:
        return self.builder.save_state_to_file(path)

    def load(self, skeleton: NNInfo, path: str) -> bool:
        """Restore weights saved with :meth:`save` for the given skeleton."""
        if not self.builder.load_state_from_file(skeleton, path):
            return False
        self.skeleton = skeleton
        self.standardize = self.builder.standardize
        self._reset_sequence()
        return True

    def load_bytes(self, skeleton: NNInfo, data: bytes) -> bool:
        if not self.builder.load_state_from_bytes(skeleton, data):
            return False
        self.skeleton = skeleton
        self.standardize = self.builder.standardize
        self._reset_sequence()
        return True

    def clean(self) -> None:
        self.builder.clean()
        self.learning_curve = []
        self.epochs = 0
        self.accuracy = 0.0
        self.metrics = {}

    def __repr__(self) -> str:
        return f"NNetwork(name={self.get_name()!r}, type={self.net_type}, sizes={self.sizes})"
