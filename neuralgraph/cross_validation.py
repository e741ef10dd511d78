"""
cross_validation.py
~~~~~~~~~~~~~~~~~~~

K-fold and walk-forward evaluation of a network recipe.

Train and test rows of the dataset are pooled and re-split per fold. Every
fold trains a freshly built network, so folds never share weights.
"""

import logging
from typing import Any, Callable, Dict, Optional

import numpy as np
from sklearn.model_selection import KFold, TimeSeriesSplit

from .data_input import DataInput, NumberInput, TEST, TRAIN
from .network import NNetwork
from .training_config import Terminator

logger = logging.getLogger(__name__)


def _pooled_rows(data_input: DataInput):
    features, targets = [], []
    for split in (TRAIN, TEST):
        for index in range(data_input.get_size(split)):
            features.append(data_input.get_row(split, index))
            targets.append(data_input.get_expected_row(split, index))
    return np.asarray(features, dtype=np.float64), np.asarray(targets, dtype=np.float64)


def cross_validate(
    build_network: Callable[[], NNetwork],
    data_input: DataInput,
    k: int = 5,
    shuffle: bool = True,
    time_series: bool = False,
    seed: Optional[int] = None,
    terminator: Optional[Terminator] = None,
) -> Dict[str, Any]:
    """
    Score a network recipe on ``k`` train/test splits.

    Args:
        build_network: Returns a new, untrained network for each fold
        data_input: Rows to split; its own train/test division is ignored
        k: Number of folds, at least 2
        shuffle: Shuffle rows before k-fold splitting (ignored for time series)
        time_series: Walk-forward splits: each fold tests on a contiguous
            block and trains on every row before it, in order
        seed: Shuffle seed
        terminator: Stop conditions for every fold's training run

    Returns:
        dict: ``folds``, ``total_rows``, ``fold_accuracy``, ``fold_metrics``
        and ``mean_accuracy``

    Raises:
        ValueError: If ``k`` is below 2, there are too few rows for ``k``
            folds, or a fold fails to train
    """
    if k < 2:
        raise ValueError(f"Cross-validation needs at least 2 folds, got {k}")

    features, targets = _pooled_rows(data_input)
    if time_series:
        splitter = TimeSeriesSplit(n_splits=k)
    else:
        splitter = KFold(n_splits=k, shuffle=shuffle, random_state=seed if shuffle else None)

    fold_accuracy = []
    fold_metrics = []
    for fold, (train_rows, test_rows) in enumerate(splitter.split(features)):
        fold_data = NumberInput(
            features[train_rows], targets[train_rows],
            features[test_rows], targets[test_rows]
        )
        result = build_network().train(fold_data, terminator)
        if result['status'] == 'failed':
            raise ValueError(f"Fold {fold} failed to train: {result['error']}")
        fold_accuracy.append(result['accuracy'])
        fold_metrics.append(result['metrics'])
        logger.debug(
            f"Fold {fold}: train={len(train_rows)} test={len(test_rows)} "
            f"accuracy={result['accuracy']:.4f}"
        )

    mean_accuracy = float(np.mean(fold_accuracy))
    logger.info(
        f"{'Walk-forward' if time_series else 'K-fold'} validation over {len(fold_accuracy)} "
        f"fold(s): mean accuracy {mean_accuracy:.4f}"
    )
    return {
        'folds': len(fold_accuracy),
        'total_rows': len(features),
        'fold_accuracy': fold_accuracy,
        'fold_metrics': fold_metrics,
        'mean_accuracy': mean_accuracy,
    }
