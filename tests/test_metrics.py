"""
test_metrics.py
~~~~~~~~~~~~~~~

Unit tests for the per-split classification and regression figures.
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from neuralgraph import gmath, metrics


@pytest.mark.unit
class TestClassIndex:
    """Output vector to class."""

    @pytest.mark.parametrize("values, expected", [
        ([0.7], 1),
        ([0.5], 1),
        ([0.49], 0),
        ([0.1, 0.8, 0.3], 1),
        ([0.9, 0.2], 0),
    ])
    def test_class_index(self, values, expected):
        assert metrics.class_index(values) == expected


@pytest.mark.unit
class TestClassification:
    """Confusion-matrix figures."""

    def test_binary_counts(self):
        """Two true positives, one false positive, one true negative, one false negative."""
        targets = [[1.0], [1.0], [0.0], [0.0], [1.0]]
        outputs = [[0.9], [0.8], [0.7], [0.2], [0.1]]

        scores = metrics.classification_metrics(outputs, targets)

        # class 1: precision 2/3, recall 2/3, specificity 1/2
        # class 0: precision 1/2, recall 1/2, specificity 2/3
        assert scores['precision'] == pytest.approx((2 / 3 + 1 / 2) / 2)
        assert scores['recall'] == pytest.approx((2 / 3 + 1 / 2) / 2)
        assert scores['specificity'] == pytest.approx((1 / 2 + 2 / 3) / 2)
        assert scores['f1'] == pytest.approx((2 / 3 + 1 / 2) / 2)
        assert scores['mcc'] == pytest.approx((2 * 1 - 1 * 1) / math.sqrt(3 * 3 * 2 * 2))

    def test_one_hot_perfect(self):
        targets = [[1, 0, 0], [0, 1, 0], [0, 0, 1]]
        outputs = [[0.8, 0.1, 0.1], [0.2, 0.7, 0.1], [0.0, 0.3, 0.6]]

        scores = metrics.classification_metrics(outputs, targets)
        assert scores == pytest.approx(
            {'precision': 1.0, 'recall': 1.0, 'specificity': 1.0, 'f1': 1.0, 'mcc': 1.0}
        )

    def test_all_wrong(self):
        """Inverted predictions give a correlation of -1."""
        scores = metrics.classification_metrics([[0.9], [0.1]], [[0.0], [1.0]])
        assert scores['mcc'] == pytest.approx(-1.0)
        assert scores['precision'] == 0.0

    def test_empty_pass(self):
        assert metrics.classification_metrics([], []) == dict.fromkeys(
            ('precision', 'recall', 'specificity', 'f1', 'mcc'), 0.0
        )


@pytest.mark.unit
class TestRegression:
    """Error figures."""

    def test_mae_and_rmse(self):
        scores = metrics.regression_metrics([[1.0], [2.0], [5.0]], [[1.0], [3.0], [3.0]])
        assert scores['mae'] == pytest.approx(1.0)
        assert scores['rmse'] == pytest.approx(math.sqrt(5 / 3))

    def test_dispatch(self):
        assert set(metrics.split_metrics(gmath.REGRESSION, [[0.0]], [[1.0]])) == {'mae', 'rmse'}
        assert 'mcc' in metrics.split_metrics(gmath.CLASSIFICATION, [[0.0]], [[1.0]])
