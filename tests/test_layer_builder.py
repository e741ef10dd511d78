"""
test_layer_builder.py
~~~~~~~~~~~~~~~~~~~~~

Tests for building topologies, input-layer reuse, standardization,
recurrent context state and weight persistence.
"""

import os
import sys
import threading

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralgraph import gmath
from neuralgraph import rng
from neuralgraph.data_input import NumberInput, TEST, TRAIN
from neuralgraph.layer import Layer
from neuralgraph.layer_builder import (
    LayerBuilder,
    TYPE_DFF,
    TYPE_GRU,
    TYPE_LSTM,
    TYPE_RNN,
    legacy_state_path,
)
from neuralgraph.network import NNetwork
from neuralgraph.node import Node
from neuralgraph.topology import LayerInfo, NNInfo


@pytest.fixture(autouse=True)
def seeded():
    """Make weight draws repeatable."""
    rng.seed(77)
    yield
    rng.seed(rng.DEFAULT_SEED)


@pytest.fixture
def dataset():
    """Four training rows and two test rows with two features and one target."""
    return NumberInput(
        [[0.0, 1.0], [2.0, 3.0], [4.0, 5.0], [6.0, 7.0]],
        [[0.0], [1.0], [0.0], [1.0]],
        [[10.0, 11.0], [12.0, 13.0]],
        [[1.0], [0.0]],
    )


@pytest.fixture
def skeleton():
    """A 2-3-1 topology."""
    return NNInfo.from_sizes("small", [2, 3, 1])


@pytest.fixture
def built(skeleton, dataset):
    """A built and attached feed-forward builder."""
    builder = LayerBuilder(TYPE_DFF)
    assert builder.build(skeleton, dataset)
    builder.attach_data_input(dataset)
    return builder


def _all_weights(builder):
    return [
        [node.get_edge_weights() for node in layer.children]
        for layer in builder.layers + builder.context_layers
    ]


@pytest.mark.unit
class TestBuild:
    """Building layers from a descriptor."""

    def test_dff_layers(self, built):
        """A DFF build has hidden + output layers and no context."""
        assert built.get_layers_size() == 2
        assert built.get_input_layers_size() == 1
        assert built.context_layers == []
        assert [layer.size() for layer in built.layers] == [3, 1]
        assert built.layers[0].children[0].num_edges() == 3
        assert built.layers[1].children[0].num_edges() == 4

    @pytest.mark.parametrize("net_type,gates", [(TYPE_RNN, 1), (TYPE_GRU, 3), (TYPE_LSTM, 4)])
    def test_recurrent_contexts(self, skeleton, dataset, net_type, gates):
        """Recurrent builds get one context layer per hidden layer sized by the gate count."""
        builder = LayerBuilder(net_type)
        assert builder.build(skeleton, dataset)
        assert len(builder.context_layers) == 1
        context = builder.get_context_node(0)
        assert context.num_edges() == gates * 3
        assert builder.layers[0].children[0].num_edges() == gates * (2 + 1)
        # output layer stays dense
        assert builder.layers[1].children[0].num_edges() == 3 + 1

    def test_no_skeleton(self, dataset):
        """Building without a descriptor fails with a message."""
        builder = LayerBuilder()
        assert builder.build(None, dataset) is False
        assert builder.last_error

    def test_zero_sized_layer(self, dataset):
        """A zero-sized layer is rejected."""
        info = NNInfo("bad", LayerInfo(2), [LayerInfo(0)], LayerInfo(1))
        builder = LayerBuilder()
        assert builder.build(info, dataset) is False
        assert "0 nodes" in builder.last_error

    def test_feature_mismatch(self, dataset):
        """The input layer must match the dataset's feature count."""
        builder = LayerBuilder()
        assert builder.build(NNInfo.from_sizes("bad", [3, 2, 1]), dataset) is False
        assert "features" in builder.last_error

    def test_expected_mismatch(self, dataset):
        """The output layer must match the dataset's target columns."""
        builder = LayerBuilder()
        assert builder.build(NNInfo.from_sizes("bad", [2, 2, 2]), dataset) is False
        assert "target" in builder.last_error

    def test_gate_count_mismatch(self, skeleton, dataset):
        """A descriptor gate count inconsistent with the type is rejected."""
        skeleton.gate_count = 4
        builder = LayerBuilder(TYPE_GRU)
        assert builder.build(skeleton, dataset) is False
        assert builder.is_built() is False

    def test_unknown_type(self, skeleton, dataset):
        """An unsupported type flag is rejected."""
        builder = LayerBuilder()
        assert builder.build(skeleton, dataset, net_type=9) is False

    def test_failed_build_keeps_previous_topology(self, built, dataset):
        """A failed rebuild leaves the existing layers in place."""
        before = _all_weights(built)
        assert built.build(NNInfo.from_sizes("bad", [5, 1]), dataset) is False
        assert _all_weights(built) == before

    def test_build_without_dataset(self, skeleton):
        """A descriptor alone is enough to build."""
        builder = LayerBuilder(TYPE_LSTM)
        assert builder.build(skeleton, None)
        assert builder.input_feature_count == 2


    @pytest.mark.parametrize("net_type", [TYPE_DFF, TYPE_GRU])
    def test_bias_init_from_descriptor(self, dataset, net_type):
        """A layer's bias_init is written to every bias edge of every gate."""
        info = NNInfo.from_sizes("biased", [2, 3, 1], bias_init=0.25)
        builder = LayerBuilder(net_type)
        assert builder.build(info, dataset)

        for layer in builder.layers:
            for node in layer.children:
                for gate in range(layer.gate_count):
                    assert node.get_edge_weight(layer.bias_edge_index(gate)) == 0.25


@pytest.mark.unit
class TestInputLayer:
    """Reusable input layer."""

    def test_reuse_keeps_node_count(self, built):
        """Loading rows never changes the input layer's node count or identity."""
        first = built.get_input_layer(0, 0, TRAIN)
        count = first.size()
        for row in range(1, 10):
            layer = built.get_input_layer(row % 4, 0, TRAIN)
            assert layer is first
            assert layer.size() == count

    def test_row_values(self, built):
        """Input node weights and activations hold the row's features."""
        layer = built.get_input_layer(1, 0, TRAIN)
        assert [n.get_weight() for n in layer.children] == [2.0, 3.0]
        assert [n.get_activation_scalar() for n in layer.children] == [2.0, 3.0]

        layer = built.get_input_layer(0, 0, TEST)
        assert [n.get_weight() for n in layer.children] == [10.0, 11.0]

    def test_column_counter_offsets_row(self, built):
        """The column counter is a timestep offset added to the row index."""
        layer = built.get_input_layer(1, 2, TRAIN)
        assert [n.get_weight() for n in layer.children] == [6.0, 7.0]

    def test_default_split_equals_train(self, built):
        """The deprecated split-less call reads the training split."""
        explicit = [n.get_weight() for n in built.get_input_layer(2, 0, TRAIN).children]
        with pytest.warns(DeprecationWarning):
            default = [n.get_weight() for n in built.get_input_layer(2).children]
        assert default == explicit

    def test_missing_row_zeroes_inputs(self, built):
        """A row past the end leaves every input at zero."""
        layer = built.get_input_layer(50, 0, TRAIN)
        assert [n.get_weight() for n in layer.children] == [0.0, 0.0]

    def test_detached_zeroes_inputs(self, built):
        """Without an attached dataset the inputs are zero."""
        built.detach_data_input()
        layer = built.get_input_layer(1, 0, TRAIN)
        assert layer is not None
        assert [n.get_weight() for n in layer.children] == [0.0, 0.0]

    def test_rebuild_resizes_in_place(self, built):
        """rebuild_input_layers resizes the same layer object."""
        layer = built.input_layer
        built.rebuild_input_layers(5)
        assert built.input_layer is layer
        assert layer.size() == 5

    def test_concurrent_readers_see_whole_rows(self, built):
        """Rows loaded from several threads are never interleaved."""
        rows = {tuple(float(v) for v in built.data_input.get_train_row(i)) for i in range(4)}
        seen = []

        def worker(offset):
            for step in range(200):
                built.get_input_layer((offset + step) % 4, 0, TRAIN)
                with built._input_lock:
                    seen.append(tuple(n.get_weight() for n in built.input_layer.children))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(seen) == 800
        assert set(seen) <= rows


@pytest.mark.unit
class TestStandardization:
    """Min-max scaling of inputs."""

    def test_bounds_from_training_split(self, skeleton, dataset):
        """Bounds come from the training rows only."""
        builder = LayerBuilder()
        assert builder.build(skeleton, dataset, standardize=True)
        assert builder.x_min == 0.0
        assert builder.x_max == 7.0
        assert builder.x_range == 7.0

    def test_inputs_are_scaled(self, skeleton, dataset):
        """Loaded inputs are standardized when enabled."""
        builder = LayerBuilder()
        builder.build(skeleton, dataset, standardize=True)
        builder.attach_data_input(dataset)
        layer = builder.get_input_layer(3, 0, TRAIN)
        assert [n.get_weight() for n in layer.children] == pytest.approx([6.0 / 7.0, 1.0])

    @pytest.mark.parametrize("value", [-3.0, 0.0, 2.5, 7.0, 100.0])
    def test_invertible(self, skeleton, dataset, value):
        """unstandardize undoes standardize_value."""
        builder = LayerBuilder()
        builder.build(skeleton, dataset, standardize=True)
        assert builder.unstandardize(builder.standardize_value(value)) == pytest.approx(value)

    def test_constant_data_uses_unit_range(self, skeleton):
        """A zero range is treated as one."""
        data = NumberInput([[3.0, 3.0], [3.0, 3.0]], [[0.0], [1.0]])
        builder = LayerBuilder()
        builder.build(skeleton, data, standardize=True)
        assert builder.x_range == 1.0
        assert builder.standardize_value(3.0) == 0.0


@pytest.mark.unit
class TestDropoutScramble:
    """Caller-driven dropout masks."""

    def test_layer_index_zero_is_input(self, built):
        """Index 0 addresses the input layer; 1.. address hidden/output layers."""
        built.scramble_dropout(0, 0.5, [0.1, 0.9])
        built.scramble_dropout(1, 0.5, [0.9, 0.2, 0.9])
        assert built.input_layer.dropout_flags == [True, False]
        assert built.layers[0].dropout_flags == [False, True, False]

        built.clear_dropout()
        assert built.input_layer.dropout_flags == [False, False]
        assert built.layers[0].dropout_flags == [False, False, False]

    def test_unknown_layer_is_ignored(self, built):
        """An index past the last layer does nothing."""
        built.scramble_dropout(9, 0.5, [0.0])


@pytest.mark.integration
class TestContext:
    """Recurrent context state across timesteps."""

    @pytest.mark.parametrize("net_type", [TYPE_RNN, TYPE_GRU, TYPE_LSTM])
    def test_context_holds_activations_of_current_step(self, net_type):
        """After step t the context equals the hidden activations of step t."""
        rows = [[0.1, -0.4], [0.9, 0.3], [-0.7, 0.5], [0.2, 0.8], [-0.3, -0.9]]
        data = NumberInput(rows, [[0.0]] * len(rows))
        info = NNInfo.from_sizes("seq", [2, 3, 1], init_type='random')
        net = NNetwork(info, net_type=net_type, seed=5)
        assert net.builder.build(info, data)
        builder = net.builder
        gates = builder.gate_count

        net.reset_state()
        previous = [0.0, 0.0, 0.0]
        for t, row in enumerate(rows):
            assert [builder.get_context_value(0, j) for j in range(3)] == previous
            net.predict(row)
            hidden = [n.get_activation_scalar() for n in builder.layers[0].children]
            context = builder.get_context_node(0).get_edge_weights()
            for gate in range(gates):
                assert context[gate * 3:(gate + 1) * 3] == hidden
            for j in range(3):
                assert builder.get_time_state(0, j, t) == hidden[j]
            previous = hidden

        assert builder.num_timesteps() == len(rows)

    def test_reset_context_state(self):
        """reset_context_state writes the value into every context edge."""
        info = NNInfo.from_sizes("seq", [2, 3, 1])
        builder = LayerBuilder(TYPE_GRU)
        builder.build(info, None)
        builder.reset_context_state(0.25)
        assert builder.get_context_node(0).get_edge_weights() == [0.25] * 9
        assert builder.num_timesteps() == 0

    @pytest.mark.parametrize("net_type", [TYPE_GRU, TYPE_LSTM])
    def test_empty_init_gives_zero_activations(self, net_type):
        """A gated network with all-zero weights produces all-zero activations."""
        hidden = LayerInfo(3, init_type=Node.INIT_EMPTY, activation_type=gmath.TANH)
        info = NNInfo(
            "zeros",
            LayerInfo(2, init_type=Node.INIT_EMPTY),
            [hidden],
            LayerInfo(1, init_type=Node.INIT_EMPTY, activation_type=gmath.TANH),
        )
        net = NNetwork(info, net_type=net_type)
        assert net.builder.build(info, None)
        assert net.builder.layers[0].gate_count == net.builder.gate_count

        output = net.predict([0.8, -1.7])
        assert output == [0.0]
        activations = net.node_activations()
        assert activations[1] == [0.0, 0.0, 0.0]
        assert activations[2] == [0.0]


@pytest.mark.integration
class TestPersistence:
    """Weight files."""

    @pytest.mark.parametrize("net_type", [TYPE_DFF, TYPE_RNN, TYPE_GRU, TYPE_LSTM])
    def test_round_trip_is_exact(self, tmp_path, skeleton, dataset, net_type):
        """Saved weights load back bit for bit into a fresh empty topology."""
        rng.seed(314)
        source = LayerBuilder(net_type)
        assert source.build(skeleton, dataset)
        if source.context_layers:
            source.reset_context_state(0.125)
        path = str(tmp_path / "state" / "weights.bin")
        assert source.save_state_to_file(path)

        target = LayerBuilder(net_type)
        assert target.load_state_from_file(skeleton, path)
        assert _all_weights(target) == _all_weights(source)

    def test_four_layer_skeleton_against_three_layer_file(self, tmp_path, skeleton, dataset):
        """A shape mismatch fails and leaves the built topology untouched."""
        path = str(tmp_path / "three.bin")
        source = LayerBuilder()
        source.build(skeleton, dataset)
        source.save_state_to_file(path)

        four = NNInfo.from_sizes("four", [2, 3, 3, 1])
        target = LayerBuilder()
        assert target.build(four, None)
        before = _all_weights(target)

        assert target.load_state_from_file(four, path) is False
        assert "does not match" in target.last_error
        assert _all_weights(target) == before
        assert target.get_layers_size() == 3

    def test_truncated_file(self, tmp_path, built, skeleton):
        """A truncated file is rejected without touching the builder."""
        path = tmp_path / "cut.bin"
        built.save_state_to_file(str(path))
        data = path.read_bytes()
        path.write_bytes(data[:-3])

        before = _all_weights(built)
        assert built.load_state_from_file(skeleton, str(path)) is False
        assert _all_weights(built) == before

    def test_missing_file(self, tmp_path, skeleton):
        """Loading a missing file fails with a message."""
        builder = LayerBuilder()
        assert builder.load_state_from_file(skeleton, str(tmp_path / "nope.bin")) is False
        assert "Cannot read" in builder.last_error

    def test_type_mismatch(self, tmp_path, skeleton, dataset):
        """A GRU file does not load into an LSTM builder."""
        path = str(tmp_path / "gru.bin")
        source = LayerBuilder(TYPE_GRU)
        source.build(skeleton, dataset)
        source.save_state_to_file(path)
        assert LayerBuilder(TYPE_LSTM).load_state_from_file(skeleton, path) is False

    def test_save_before_build(self, tmp_path):
        """Nothing is written for an unbuilt builder."""
        path = tmp_path / "empty.bin"
        assert LayerBuilder().save_state_to_file(str(path)) is False
        assert not path.exists()

    def test_legacy_named_state(self, tmp_path, monkeypatch, built, skeleton):
        """Named states live under the configurable state directory."""
        monkeypatch.setenv('NEURALGRAPH_STATE_DIR', str(tmp_path / "nn-state"))
        assert legacy_state_path("xor") == str(tmp_path / "nn-state" / "xor")

        assert built.save_state("xor")
        assert (tmp_path / "nn-state" / "xor").exists()

        restored = LayerBuilder()
        assert restored.load_state(skeleton, "xor")
        assert _all_weights(restored) == _all_weights(built)

    def test_legacy_state_rejects_empty_name(self, built, skeleton):
        """An empty state name is rejected."""
        assert built.save_state("") is False
        assert built.load_state(skeleton, "") is False

    def test_legacy_and_explicit_files_are_identical(self, tmp_path, monkeypatch, built):
        """Both naming conventions write the same bytes."""
        monkeypatch.setenv('NEURALGRAPH_STATE_DIR', str(tmp_path / "nn-state"))
        explicit = tmp_path / "explicit.bin"

        assert built.save_state("same")
        assert built.save_state_to_file(str(explicit))

        with open(legacy_state_path("same"), 'rb') as legacy:
            assert legacy.read() == explicit.read_bytes()

    def test_scaling_is_saved_with_weights(self, tmp_path, skeleton, dataset):
        """Input bounds come back with the weights they were trained against."""
        source = LayerBuilder()
        assert source.build(skeleton, dataset, standardize=True)
        path = str(tmp_path / "scaled.bin")
        assert source.save_state_to_file(path)

        target = LayerBuilder()
        assert target.load_state_from_file(skeleton, path)
        assert target.standardize is True
        assert (target.x_min, target.x_max, target.x_range) == (0.0, 7.0, 7.0)

    def test_unscaled_file_clears_old_bounds(self, tmp_path, skeleton, dataset):
        """Loading weights saved without scaling turns scaling off."""
        path = str(tmp_path / "plain.bin")
        plain = LayerBuilder()
        plain.build(skeleton, dataset)
        assert plain.save_state_to_file(path)

        target = LayerBuilder()
        target.build(skeleton, dataset, standardize=True)
        assert target.load_state_from_file(skeleton, path)
        assert target.standardize is False
        assert target.standardize_value(5.0) == 5.0

    def test_snapshot_matches_layers(self, built):
        """The snapshot mirrors the built layer shapes."""
        snapshot = built.snapshot()
        assert [record.shape for record in snapshot.layers] == [
            (3, Layer.HIDDEN_TYPE, 3),
            (1, Layer.OUTPUT_TYPE, 4),
        ]
        assert np.array_equal(
            snapshot.layers[0].weights[0],
            np.array(built.layers[0].children[0].get_edge_weights()),
        )


@pytest.mark.unit
def test_clean_releases_everything(built):
    """clean() returns the builder to its empty state."""
    built.clean()
    assert built.is_built() is False
    assert built.input_layer is None
    assert built.data_input is None
    assert built.get_input_layer(0, 0, TRAIN) is None
