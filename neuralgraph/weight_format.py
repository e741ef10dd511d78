"""
weight_format.py
~~~~~~~~~~~~~~~~

Binary layout of a saved weight set.

Every save/load path (explicit file path, legacy named state, registry blob)
goes through :func:`dumps` and :func:`loads`. Integers are little-endian
int32 and weights little-endian float64, so Python floats round-trip
exactly::

    header      net_type, gate_count, layer_count, context_count
    per layer   node_count, layer_type, edges_per_node
    payload     per layer, per node, per edge: weight
    scaling     standardize flag (int32), x_min, x_max (float64)

Weight layers come first, then context layers. The scaling trailer is always
written; with the flag at 0 its bounds are ignored. The file carries no schema
version; a load is only accepted when its shape matches the skeleton the
caller supplies.
"""

from typing import List, Optional, Tuple

import numpy as np

from .errors import LoadError

_INT = np.dtype('<i4')
_FLOAT = np.dtype('<f8')
_HEADER_FIELDS = 4
_LAYER_FIELDS = 3
_SCALING_SIZE = _INT.itemsize + 2 * _FLOAT.itemsize


class LayerRecord:
    """Shape and weights of one saved layer."""

    def __init__(self, layer_type: int, weights: np.ndarray):
        self.layer_type = int(layer_type)
        self.weights = np.asarray(weights, dtype=np.float64)
        if self.weights.ndim != 2:
            raise ValueError("Layer weights must be a (nodes, edges) matrix")

    @property
    def shape(self) -> Tuple[int, int, int]:
        nodes, edges = self.weights.shape
        return nodes, self.layer_type, edges

    def __repr__(self) -> str:
        return f"LayerRecord(shape={self.shape})"


class WeightSnapshot:
    """
    In-memory form of a weight file.

    ``scaling`` holds the min-max input bounds ``(x_min, x_max)`` the weights
    were trained against, or None when inputs are fed unscaled.
    """

    def __init__(
        self,
        net_type: int,
        gate_count: int,
        layers: List[LayerRecord],
        contexts: List[LayerRecord],
        scaling: Optional[Tuple[float, float]] = None,
    ):
        self.net_type = int(net_type)
        self.gate_count = int(gate_count)
        self.layers = list(layers)
        self.contexts = list(contexts)
        self.scaling = None if scaling is None else (float(scaling[0]), float(scaling[1]))

    def shape(self) -> Tuple:
        """Everything that must match between a file and a skeleton."""
        return (
            self.net_type,
            self.gate_count,
            tuple(record.shape for record in self.layers),
            tuple(record.shape for record in self.contexts),
        )


def dumps(snapshot: WeightSnapshot) -> bytes:
    """Serialize a snapshot to the binary layout."""
    records = snapshot.layers + snapshot.contexts
    header = [snapshot.net_type, snapshot.gate_count, len(snapshot.layers), len(snapshot.contexts)]
    for record in records:
        header.extend(record.shape)
    parts = [np.asarray(header, dtype=_INT).tobytes()]
    for record in records:
        parts.append(np.ascontiguousarray(record.weights, dtype=_FLOAT).tobytes())
    enabled = snapshot.scaling is not None
    bounds = snapshot.scaling if enabled else (0.0, 0.0)
    parts.append(np.asarray([int(enabled)], dtype=_INT).tobytes())
    parts.append(np.asarray(bounds, dtype=_FLOAT).tobytes())
    return b''.join(parts)


def _read_ints(data: bytes, offset: int, count: int) -> Tuple[np.ndarray, int]:
    if count == 0:
        return np.empty(0, dtype=_INT), offset
    size = count * _INT.itemsize
    if offset + size > len(data):
        raise LoadError("Weight file is truncated (header)")
    return np.frombuffer(data, dtype=_INT, count=count, offset=offset), offset + size


def loads(data: bytes) -> WeightSnapshot:
    """
    Parse the binary layout.

    Raises:
        LoadError: If the data is truncated, has trailing bytes, or declares
            a negative size
    """
    head, offset = _read_ints(data, 0, _HEADER_FIELDS)
    net_type, gate_count, layer_count, context_count = (int(v) for v in head)
    if layer_count < 0 or context_count < 0:
        raise LoadError("Weight file declares a negative layer count")

    shapes, offset = _read_ints(data, offset, (layer_count + context_count) * _LAYER_FIELDS)
    shapes = shapes.reshape(-1, _LAYER_FIELDS)

    records = []
    for node_count, layer_type, edge_count in shapes:
        node_count, edge_count = int(node_count), int(edge_count)
        if node_count < 0 or edge_count < 0:
            raise LoadError("Weight file declares a negative layer shape")
        size = node_count * edge_count * _FLOAT.itemsize
        if offset + size > len(data):
            raise LoadError("Weight file is truncated (weights)")
        if size == 0:
            weights = np.empty(0, dtype=_FLOAT)
        else:
            weights = np.frombuffer(data, dtype=_FLOAT, count=node_count * edge_count, offset=offset)
        records.append(LayerRecord(int(layer_type), weights.reshape(node_count, edge_count).copy()))
        offset += size

    if offset + _SCALING_SIZE > len(data):
        raise LoadError("Weight file is truncated (scaling)")
    enabled = int(np.frombuffer(data, dtype=_INT, count=1, offset=offset)[0])
    x_min, x_max = (float(v) for v in np.frombuffer(data, dtype=_FLOAT, count=2, offset=offset + _INT.itemsize))
    offset += _SCALING_SIZE

    if offset != len(data):
        raise LoadError(f"Weight file has {len(data) - offset} unexpected trailing bytes")

    scaling = (x_min, x_max) if enabled else None
    return WeightSnapshot(net_type, gate_count, records[:layer_count], records[layer_count:], scaling)


def write_file(path: str, snapshot: WeightSnapshot) -> None:
    with open(path, 'wb') as handle:
        handle.write(dumps(snapshot))


def read_file(path: str) -> WeightSnapshot:
    """
    Read and parse a weight file.

    Raises:
        LoadError: If the file is missing, unreadable, or malformed
    """
    try:
        with open(path, 'rb') as handle:
            data = handle.read()
    except OSError as e:
        raise LoadError(f"Cannot read weight file '{path}': {e}") from e
    return loads(data)
