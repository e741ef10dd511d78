"""
errors.py
~~~~~~~~~

Exception types for the recoverable failures of the graph engine.

Build and load failures are raised internally and reported to callers as a
``False`` return value plus a human-readable ``last_error`` message on the
builder. Per-element accessor errors are never raised; they are absorbed by
the accessors themselves.
"""


class NeuralGraphError(Exception):
    """Base class for engine errors."""


class BuildError(NeuralGraphError):
    """Descriptor/dataset shape mismatch or unsupported topology."""


class LoadError(NeuralGraphError):
    """Weight file missing, truncated, or not matching the skeleton."""
