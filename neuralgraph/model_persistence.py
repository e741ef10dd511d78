"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite registry of named networks.

Each row keeps the topology descriptor as JSON (queryable without loading
the network) and the learned weights as a BLOB in the same binary layout the
file-based save uses, so a registry entry can be exported to a weight file
byte for byte.
"""

import sqlite3
import json
import os
import logging
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, Type, TypeVar
from contextlib import contextmanager

import numpy as np

from . import weight_format
from .errors import LoadError
from .layer_builder import NET_TYPES
from .network import NNetwork
from .topology import NNInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NET_TYPE_NAMES = {value: name for name, value in NET_TYPES.items()}


_SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS networks (
        network_id TEXT PRIMARY KEY,
        architecture TEXT NOT NULL,
        net_type INTEGER NOT NULL DEFAULT 0,
        weights BLOB NOT NULL,
        trained INTEGER NOT NULL DEFAULT 0,
        accuracy REAL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_trained ON networks(trained)',
    'CREATE INDEX IF NOT EXISTS idx_created_at ON networks(created_at DESC)',
)

_METADATA_COLUMNS = 'network_id, architecture, net_type, trained, accuracy, created_at, updated_at'


class ArrayAwareEncoder(json.JSONEncoder):
    """Serializes numpy arrays as lists and numpy scalars as Python numbers."""

    def default(self, o: Any) -> Any:
        if isinstance(o, np.ndarray):
            return o.tolist()
        if isinstance(o, np.generic):
            return o.item()
        return json.JSONEncoder.default(self, o)


class ModelDatabase:
    """
    One SQLite file of saved networks.

    A row holds the topology descriptor (JSON), the network type flag, the
    weights blob, and the training status with its accuracy.
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with self._get_connection() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a connection for one unit of work.

        The work is committed when the block exits normally and rolled back
        when it raises; the connection is closed either way.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_network_to_db(
        self,
        network: NNetwork,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Insert ``network`` or overwrite the entry already stored under ``network_id``.

        An overwrite keeps the entry's creation time and bumps ``updated_at``.

        Args:
            network: A network whose layers are built
            network_id: Registry key
            trained: Training flag stored with the entry
            accuracy: Fraction in [0, 1], or None when unknown

        Returns:
            bool: True once the row is written

        Raises:
            ValueError: For an accuracy outside [0, 1] or an unbuilt network
        """
        if accuracy is not None and (accuracy < 0.0 or accuracy > 1.0):
            raise ValueError(f"accuracy {accuracy} is outside [0.0, 1.0]")
        if network.skeleton is None or not network.builder.is_built():
            raise ValueError("Only a built network can be saved")

        values = (
            json.dumps(network.skeleton.to_dict(), cls=ArrayAwareEncoder),
            network.net_type,
            weight_format.dumps(network.builder.snapshot()),
            int(bool(trained)),
            accuracy,
            network_id,
        )
        with self._get_connection() as conn:
            updated = conn.execute(
                '''
                UPDATE networks
                SET architecture = ?, net_type = ?, weights = ?, trained = ?,
                    accuracy = ?, updated_at = CURRENT_TIMESTAMP
                WHERE network_id = ?
                ''',
                values
            ).rowcount
            if not updated:
                conn.execute(
                    '''
                    INSERT INTO networks
                    (architecture, net_type, weights, trained, accuracy, network_id)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ''',
                    values
                )

        logger.info(
            f"Stored '{network_id}' ({'replaced' if updated else 'new'}): sizes={network.sizes} "
            f"type={network.net_type} trained={trained} accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[NNetwork]:
        """
        Rebuild the network stored under ``network_id``, or None if there is none.

        Raises:
            LoadError: If the stored weights do not fit the stored descriptor
        """
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT architecture, net_type, weights FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No stored network named '{network_id}'")
            return None

        skeleton = NNInfo.from_dict(json.loads(row['architecture']))
        network = NNetwork(skeleton, net_type=row['net_type'])
        if not network.load_bytes(skeleton, bytes(row['weights'])):
            raise LoadError(network.builder.last_error)
        logger.info(f"Restored '{network_id}' with sizes {network.sizes}")
        return network

    @staticmethod
    def _describe(row: sqlite3.Row) -> Dict[str, Any]:
        topology = json.loads(row['architecture'])
        return {
            'network_id': row['network_id'],
            'architecture': NNInfo.from_dict(topology).sizes(),
            'topology': topology,
            'net_type': _NET_TYPE_NAMES.get(row['net_type'], row['net_type']),
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        Describe every entry, newest first.

        Each description carries ``weights_shape``: per stored layer, its
        node count and its edge count per node.
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                f'SELECT {_METADATA_COLUMNS}, weights FROM networks '
                'ORDER BY created_at DESC, rowid DESC'
            ).fetchall()

        entries = []
        for row in rows:
            entry = self._describe(row)
            layers = weight_format.loads(bytes(row['weights'])).layers
            entry['weights_shape'] = [[layer.shape[0], layer.shape[2]] for layer in layers]
            entries.append(entry)
        logger.debug(f"Registry holds {len(entries)} network(s)")
        return entries

    def delete_network_from_db(self, network_id: str) -> bool:
        """Remove one entry. False when ``network_id`` was not stored."""
        with self._get_connection() as conn:
            removed = conn.execute(
                'DELETE FROM networks WHERE network_id = ?', (network_id,)
            ).rowcount > 0

        if removed:
            logger.info(f"Removed '{network_id}' from the registry")
        else:
            logger.warning(f"Nothing to remove for '{network_id}'")
        return removed

    def get_network_metadata_from_db(self, network_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No metadata stored for '{network_id}'")
            return None
        return self._describe(row)

    def delete_old_networks_from_db(self, days: float) -> int:
        """Remove entries whose creation time is more than ``days`` days back."""
        with self._get_connection() as conn:
            removed = conn.execute(
                "DELETE FROM networks WHERE julianday('now') - julianday(created_at) > ?",
                (days,)
            ).rowcount
        logger.info(f"Pruned {removed} network(s) created over {days} day(s) ago")
        return removed




_shared_db: Optional[ModelDatabase] = None

DEFAULT_MODEL_DIR = 'models'


def _registry(model_dir: str) -> ModelDatabase:
    # the default directory shares one instance; others open their own file
    global _shared_db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))
    if _shared_db is None:
        _shared_db = ModelDatabase()
    return _shared_db


def _usable_id(network_id: Any) -> bool:
    if isinstance(network_id, str) and network_id:
        return True
    logger.error(f"Rejected network id {network_id!r}")
    return False


def _guarded(
    action: str,
    call: Callable[[], T],
    fallback: T,
    handled: Tuple[Type[Exception], ...] = ()
) -> T:
    """
    Run one registry call, turning storage and decode failures into ``fallback``.

    Args:
        action: Short description used in the log line
        call: The registry operation
        fallback: Value returned when the call fails
        handled: Extra exception types that count as an expected failure

    Returns:
        The call's result, or ``fallback``
    """
    try:
        return call()
    except sqlite3.Error as e:
        logger.error(f"Registry failed while {action}: {e}")
    except handled as e:
        logger.error(f"Could not finish {action}: {e}")
    except Exception as e:
        logger.exception(f"Unexpected failure while {action}: {e}")
    return fallback


def save_network(
    network: NNetwork,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Store ``network`` under ``network_id``, replacing any earlier entry.

    Returns False instead of raising when the id, the accuracy or the
    network itself is unusable.

    Example:
        >>> net = NNetwork(NNInfo.from_sizes("xor", [2, 4, 1]))
        >>> net.build()
        True
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not _usable_id(network_id):
        return False
    return _guarded(
        f"saving '{network_id}'",
        lambda: _registry(model_dir).save_network_to_db(network, network_id, trained, accuracy),
        False,
        (ValueError,)
    )


def load_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> Optional[NNetwork]:
    """Rebuilt network for ``network_id``; None when absent or unreadable."""
    if not _usable_id(network_id):
        return None
    return _guarded(
        f"loading '{network_id}'",
        lambda: _registry(model_dir).load_network_from_db(network_id),
        None,
        (LoadError, KeyError, ValueError)
    )


def list_saved_networks(model_dir: str = DEFAULT_MODEL_DIR) -> List[Dict[str, Any]]:
    """
    Metadata of every stored network, newest first.

    Example:
        >>> for entry in list_saved_networks():
        ...     print(entry['network_id'], entry['architecture'])
    """
    return _guarded(
        "listing networks",
        lambda: _registry(model_dir).list_networks_from_db(),
        [],
        (json.JSONDecodeError, LoadError)
    )


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    if not _usable_id(network_id):
        return False
    return _guarded(
        f"deleting '{network_id}'",
        lambda: _registry(model_dir).delete_network_from_db(network_id),
        False
    )


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """Descriptor, type and training status of one entry, weights excluded."""
    if not _usable_id(network_id):
        return None
    return _guarded(
        f"reading metadata of '{network_id}'",
        lambda: _registry(model_dir).get_network_metadata_from_db(network_id),
        None,
        (json.JSONDecodeError,)
    )


def delete_old_networks(days: float = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Drop entries created more than ``days`` days ago.

    Returns:
        int: How many entries were removed, or -1 when the registry failed

    Raises:
        ValueError: For a negative ``days``
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")
    return _guarded(
        "pruning old networks",
        lambda: _registry(model_dir).delete_old_networks_from_db(days),
        -1
    )
