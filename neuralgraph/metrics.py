"""
metrics.py
~~~~~~~~~~

Per-split quality figures reported after every epoch and by ``test()``.

Classification outputs are reduced to a class index (argmax, or a 0.5
threshold for a single output) and scored with macro-averaged precision,
recall, specificity and F1 plus the multiclass Matthews correlation.
Regression outputs get mean absolute and root mean squared error.
"""

import logging
from typing import Dict, List, Sequence

import numpy as np
from sklearn.metrics import (
    confusion_matrix,
    f1_score,
    matthews_corrcoef,
    mean_absolute_error,
    mean_squared_error,
    precision_score,
    recall_score,
)

from . import gmath

logger = logging.getLogger(__name__)

SINGLE_OUTPUT_THRESHOLD = 0.5


def class_index(values: Sequence[float]) -> int:
    if len(values) == 1:
        return int(values[0] >= SINGLE_OUTPUT_THRESHOLD)
    return int(np.argmax(values))


def classification_metrics(outputs: List[Sequence[float]], targets: List[Sequence[float]]) -> Dict[str, float]:
    """
    Confusion-matrix metrics over one pass.

    Args:
        outputs: Network output vectors, one per row
        targets: Expected vectors, one per row

    Returns:
        dict: ``precision``, ``recall``, ``specificity``, ``f1`` and ``mcc``;
        all zero when there are no rows
    """
    if not outputs:
        return dict.fromkeys(('precision', 'recall', 'specificity', 'f1', 'mcc'), 0.0)

    labels = list(range(max(2, len(targets[0]))))
    actual = [class_index(t) for t in targets]
    predicted = [class_index(y) for y in outputs]

    matrix = confusion_matrix(actual, predicted, labels=labels)
    true_pos = np.diag(matrix)
    false_pos = matrix.sum(axis=0) - true_pos
    true_neg = matrix.sum() - matrix.sum(axis=1) - false_pos
    negatives = true_neg + false_pos
    specificity = np.divide(true_neg, negatives, out=np.zeros(len(labels)), where=negatives > 0)

    return {
        'precision': float(precision_score(actual, predicted, labels=labels, average='macro', zero_division=0)),
        'recall': float(recall_score(actual, predicted, labels=labels, average='macro', zero_division=0)),
        'specificity': float(specificity.mean()),
        'f1': float(f1_score(actual, predicted, labels=labels, average='macro', zero_division=0)),
        'mcc': float(matthews_corrcoef(actual, predicted)),
    }


def regression_metrics(outputs: List[Sequence[float]], targets: List[Sequence[float]]) -> Dict[str, float]:
    if not outputs:
        return {'mae': 0.0, 'rmse': 0.0}
    y_true = np.asarray(targets, dtype=np.float64)
    y_pred = np.asarray(outputs, dtype=np.float64)
    return {
        'mae': float(mean_absolute_error(y_true, y_pred)),
        'rmse': float(np.sqrt(mean_squared_error(y_true, y_pred))),
    }


def split_metrics(output_type: int, outputs, targets) -> Dict[str, float]:
    if output_type == gmath.CLASSIFICATION:
        return classification_metrics(outputs, targets)
    return regression_metrics(outputs, targets)
