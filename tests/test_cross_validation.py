"""
test_cross_validation.py
~~~~~~~~~~~~~~~~~~~~~~~~

Tests for k-fold and walk-forward evaluation.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralgraph import gmath
from neuralgraph.cross_validation import cross_validate
from neuralgraph.data_input import NumberInput
from neuralgraph.network import NNetwork
from neuralgraph.topology import NNInfo
from neuralgraph.training_config import Terminator


@pytest.fixture
def rows():
    """Twelve rows, eight train and four test; label is the first feature."""
    features = [[float(i % 2), float(i % 3) / 2.0] for i in range(12)]
    labels = [[float(i % 2)] for i in range(12)]
    return NumberInput(features[:8], labels[:8], features[8:], labels[8:])


def _classifier():
    info = NNInfo.from_sizes("fold", [2, 3, 1], learning_rate=0.5)
    info.output_layer.activation_type = gmath.SIGMOID
    info.output_type = gmath.CLASSIFICATION
    return NNetwork(info, seed=5)


@pytest.mark.integration
class TestCrossValidate:
    """Fold bookkeeping and scores."""

    def test_k_fold_covers_every_row(self, rows):
        """Train and test rows are pooled and every fold is scored."""
        result = cross_validate(_classifier, rows, k=3, seed=1, terminator=Terminator(epoch=2))

        assert result['folds'] == 3
        assert result['total_rows'] == 12
        assert len(result['fold_accuracy']) == 3
        assert all(0.0 <= a <= 1.0 for a in result['fold_accuracy'])
        assert result['mean_accuracy'] == pytest.approx(sum(result['fold_accuracy']) / 3)
        assert all('mcc' in m for m in result['fold_metrics'])

    def test_each_fold_gets_a_fresh_network(self, rows):
        built = []

        def factory():
            net = _classifier()
            built.append(net)
            return net

        cross_validate(factory, rows, k=4, terminator=Terminator(epoch=1))
        assert len(built) == 4
        assert len({id(net) for net in built}) == 4

    def test_walk_forward(self, rows):
        """Walk-forward folds train only on earlier rows."""
        train_sizes = []

        def factory():
            net = _classifier()
            original = net.train

            def train(data, terminator=None, **kwargs):
                train_sizes.append(data.get_train_size())
                return original(data, terminator, **kwargs)

            net.train = train
            return net

        result = cross_validate(factory, rows, k=3, time_series=True, terminator=Terminator(epoch=1))

        assert result['folds'] == 3
        assert train_sizes == [3, 6, 9]

    def test_same_seed_same_scores(self, rows):
        first = cross_validate(_classifier, rows, k=3, seed=4, terminator=Terminator(epoch=2))
        second = cross_validate(_classifier, rows, k=3, seed=4, terminator=Terminator(epoch=2))
        assert first['fold_accuracy'] == second['fold_accuracy']

    @pytest.mark.parametrize("k", [0, 1])
    def test_needs_two_folds(self, rows, k):
        with pytest.raises(ValueError):
            cross_validate(_classifier, rows, k=k)

    def test_failed_fold_raises(self):
        """A dataset the network cannot take fails loudly."""
        wide = NumberInput([[0.0, 0.0, 0.0]] * 6, [[0.0]] * 6)
        with pytest.raises(ValueError, match="Fold 0"):
            cross_validate(_classifier, wide, k=2, terminator=Terminator(epoch=1))
