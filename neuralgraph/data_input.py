"""
data_input.py
~~~~~~~~~~~~~

Tabular dataset interface consumed by the engine, plus an in-memory
implementation backed by numpy arrays.

The engine only ever reads from a dataset. Rows are addressed by split
(``TRAIN`` or ``TEST``) and index; each row has a feature vector and an
expected (target) vector.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

TRAIN = 0
TEST = 1


class DataInput(ABC):
    """Read-only row source with separate train and test splits."""

    CSV = 0

    @abstractmethod
    def get_train_row(self, index: int) -> Optional[np.ndarray]:
        ...

    @abstractmethod
    def get_train_expected_row(self, index: int) -> Optional[np.ndarray]:
        ...

    @abstractmethod
    def get_test_row(self, index: int) -> Optional[np.ndarray]:
        ...

    @abstractmethod
    def get_test_expected_row(self, index: int) -> Optional[np.ndarray]:
        ...

    @abstractmethod
    def get_train_size(self) -> int:
        ...

    @abstractmethod
    def get_test_size(self) -> int:
        ...

    @abstractmethod
    def get_feature_count(self) -> int:
        ...

    @abstractmethod
    def get_expected_count(self) -> int:
        ...

    def get_type(self) -> int:
        return DataInput.CSV

    def get_row(self, split: int, index: int) -> Optional[np.ndarray]:
        if split == TEST:
            return self.get_test_row(index)
        return self.get_train_row(index)

    def get_expected_row(self, split: int, index: int) -> Optional[np.ndarray]:
        if split == TEST:
            return self.get_test_expected_row(index)
        return self.get_train_expected_row(index)

    def get_size(self, split: int) -> int:
        if split == TEST:
            return self.get_test_size()
        return self.get_train_size()


def _as_matrix(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=np.float64)
    if array.ndim == 1:
        array = array.reshape(-1, 1)
    if array.ndim != 2:
        raise ValueError(f"{name} must be a 2-D table, got shape {array.shape}")
    return array


class NumberInput(DataInput):
    """
    Numeric dataset held in memory.

    Args:
        train_features: ``(rows, features)`` training inputs
        train_expected: ``(rows, outputs)`` training targets
        test_features: Optional test inputs (same feature count)
        test_expected: Optional test targets

    Raises:
        ValueError: If the row or column counts are inconsistent
    """

    def __init__(self, train_features, train_expected, test_features=None, test_expected=None):
        self.train_features = _as_matrix(train_features, 'train_features')
        self.train_expected = _as_matrix(train_expected, 'train_expected')
        if len(self.train_features) != len(self.train_expected):
            raise ValueError(
                f"train_features has {len(self.train_features)} rows but "
                f"train_expected has {len(self.train_expected)}"
            )

        if test_features is None:
            self.test_features = np.empty((0, self.train_features.shape[1]))
            self.test_expected = np.empty((0, self.train_expected.shape[1]))
        else:
            self.test_features = _as_matrix(test_features, 'test_features')
            self.test_expected = _as_matrix(test_expected, 'test_expected')
            if len(self.test_features) != len(self.test_expected):
                raise ValueError("test_features and test_expected row counts differ")
            if len(self.test_features) and self.test_features.shape[1] != self.train_features.shape[1]:
                raise ValueError("test_features and train_features column counts differ")

    @classmethod
    def from_csv(
        cls,
        path: str,
        expected_columns: int = 1,
        test_fraction: float = 0.0,
        delimiter: str = ',',
        skip_header: bool = False,
    ) -> 'NumberInput':
        """
        Load a numeric CSV whose last ``expected_columns`` columns are targets.

        The final ``test_fraction`` of the rows becomes the test split.
        """
        table = np.loadtxt(path, delimiter=delimiter, skiprows=1 if skip_header else 0, ndmin=2)
        if expected_columns < 1 or expected_columns >= table.shape[1]:
            raise ValueError(
                f"expected_columns must be between 1 and {table.shape[1] - 1}"
            )
        features = table[:, :-expected_columns]
        expected = table[:, -expected_columns:]
        split_at = len(table) - int(round(len(table) * test_fraction))
        logger.info(f"Loaded {len(table)} rows from {path} ({len(table) - split_at} for test)")
        return cls(features[:split_at], expected[:split_at], features[split_at:], expected[split_at:])

    @classmethod
    def from_npz(cls, path: str) -> 'NumberInput':
        """Load the layout written by ``scripts/convert_csv_to_npz.py``."""
        with np.load(path) as data:
            test_features = data['test_features'] if 'test_features' in data else None
            test_expected = data['test_expected'] if 'test_expected' in data else None
            return cls(data['train_features'], data['train_expected'], test_features, test_expected)

    @staticmethod
    def _row(table: np.ndarray, index: int) -> Optional[np.ndarray]:
        if 0 <= index < len(table):
            return table[index]
        return None

    def get_train_row(self, index: int) -> Optional[np.ndarray]:
        return self._row(self.train_features, index)

    def get_train_expected_row(self, index: int) -> Optional[np.ndarray]:
        return self._row(self.train_expected, index)

    def get_test_row(self, index: int) -> Optional[np.ndarray]:
        return self._row(self.test_features, index)

    def get_test_expected_row(self, index: int) -> Optional[np.ndarray]:
        return self._row(self.test_expected, index)

    def get_train_size(self) -> int:
        return len(self.train_features)

    def get_test_size(self) -> int:
        return len(self.test_features)

    def get_feature_count(self) -> int:
        return self.train_features.shape[1]

    def get_expected_count(self) -> int:
        return self.train_expected.shape[1]

    def __repr__(self) -> str:
        return (
            f"NumberInput(train={self.get_train_size()}, test={self.get_test_size()}, "
            f"features={self.get_feature_count()})"
        )
