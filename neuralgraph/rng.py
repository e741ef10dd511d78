"""
rng.py
~~~~~~

Seedable random source used for weight initialization, dropout masks and
row shuffling.

Each thread has its own default engine, so concurrent training runs in
different threads do not interfere. A training run can install its own
engine for the duration of the run with :func:`scoped_engine`, which makes
the random stream per-network as long as a network is driven by one thread
at a time. An :class:`Engine` is not internally synchronized.
"""

import threading
from contextlib import contextmanager
from typing import Generator, Optional

import numpy as np

DEFAULT_SEED = 5489

_local = threading.local()


class Engine:
    """A seeded ``numpy.random.Generator`` that remembers its seed."""

    def __init__(self, seed: int = DEFAULT_SEED):
        self.seed = int(seed)
        self.generator = np.random.default_rng(self.seed)

    def reseed(self, seed: int) -> None:
        self.seed = int(seed)
        self.generator = np.random.default_rng(self.seed)


def default_engine() -> Engine:
    """Return this thread's default engine, creating it on first use."""
    engine = getattr(_local, 'default', None)
    if engine is None:
        engine = Engine()
        _local.default = engine
    return engine


def current_engine() -> Engine:
    """Return the engine installed by :func:`scoped_engine`, else the default."""
    engine = getattr(_local, 'current', None)
    return engine if engine is not None else default_engine()


@contextmanager
def scoped_engine(engine: Optional[Engine]) -> Generator[Engine, None, None]:
    """
    Install ``engine`` as the current engine of this thread.

    The previously installed engine is restored on exit. Passing ``None``
    leaves the current engine in place.

    Yields:
        Engine: The engine in effect inside the block
    """
    previous = getattr(_local, 'current', None)
    if engine is not None:
        _local.current = engine
    try:
        yield current_engine()
    finally:
        _local.current = previous


def seed(value: int) -> None:
    """Reseed this thread's default engine."""
    default_engine().reseed(value)


def current_seed() -> int:
    return current_engine().seed


def uniform(low: float, high: float) -> float:
    """Uniform draw in ``[low, high)``; returns ``low`` for an empty range."""
    if high <= low:
        return float(low)
    return float(current_engine().generator.uniform(low, high))


def normal(mean: float = 0.0, std: float = 1.0) -> float:
    if std <= 0.0:
        return float(mean)
    return float(current_engine().generator.normal(mean, std))


def unit_float() -> float:
    """Uniform draw in ``[0, 1)``."""
    return float(current_engine().generator.random())


def uniform_int(low: int, high: int) -> int:
    """Uniform integer in ``[low, high]`` (inclusive)."""
    if high <= low:
        return int(low)
    return int(current_engine().generator.integers(low, high + 1))


def permutation(count: int) -> np.ndarray:
    return current_engine().generator.permutation(count)
