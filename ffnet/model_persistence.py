"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite store for networks.

A network is pickled whole (layers, weights and optimizer state) into a
BLOB; its layer widths, layer descriptions, optimizer settings and
training summary are kept beside it as columns so they can be listed
without unpickling anything.

The module-level functions never raise on storage problems: they log
and return ``False``/``None``/``[]``/``-1``. :class:`ModelDatabase`
itself lets errors propagate.
"""

import json
import logging
import os
import pickle
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'
DB_FILENAME = 'networks.db'

_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS networks (
        network_id   TEXT PRIMARY KEY,
        architecture TEXT NOT NULL,
        layers       TEXT NOT NULL,
        optimizer    TEXT NOT NULL,
        network_data BLOB NOT NULL,
        trained      INTEGER NOT NULL DEFAULT 0,
        accuracy     REAL,
        iterations   INTEGER NOT NULL DEFAULT 0,
        final_loss   REAL,
        created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_networks_created ON networks(created_at DESC);
'''

_SUMMARY = ('network_id, architecture, layers, optimizer, trained, accuracy, '
            'iterations, final_loss, created_at, updated_at')

_UPSERT = '''
    INSERT INTO networks (network_id, architecture, layers, optimizer, network_data,
                          trained, accuracy, iterations, final_loss)
    VALUES (:network_id, :architecture, :layers, :optimizer, :network_data,
            :trained, :accuracy, :iterations, :final_loss)
    ON CONFLICT(network_id) DO UPDATE SET
        architecture = excluded.architecture,
        layers       = excluded.layers,
        optimizer    = excluded.optimizer,
        network_data = excluded.network_data,
        trained      = excluded.trained,
        accuracy     = excluded.accuracy,
        iterations   = excluded.iterations,
        final_loss   = excluded.final_loss,
        updated_at   = CURRENT_TIMESTAMP
'''


class NetworkEncoder(json.JSONEncoder):
    """Adds numpy arrays and scalars to what ``json`` can encode."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def _to_json(value) -> str:
    return json.dumps(value, cls=NetworkEncoder)


def _describe_optimizer(network) -> Dict[str, Any]:
    # Network.optimizer is either an OptimizerConfig or a prototype Optimizer
    return getattr(network.optimizer, 'config', network.optimizer).to_dict()


class ModelDatabase:
    """Table of pickled networks plus their summary columns."""

    def __init__(self, db_path: str = os.path.join(DEFAULT_MODEL_DIR, DB_FILENAME)):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection; commit if the block succeeds, else roll back."""
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

    @staticmethod
    def _summary(row: sqlite3.Row) -> Dict[str, Any]:
        summary = dict(row)
        summary['architecture'] = json.loads(summary['architecture'])
        summary['layers'] = json.loads(summary['layers'])
        summary['optimizer'] = json.loads(summary['optimizer'])
        summary['trained'] = bool(summary['trained'])
        # weight matrices carry the bias as an extra input row
        summary['weights_shape'] = [
            [layer['in_features'] + 1, layer['out_features']]
            for layer in summary['layers'] if layer['type'] == 'Linear'
        ]
        return summary

    def save_network_to_db(
        self,
        network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Insert a network or overwrite the row with the same id.

        Overwriting refreshes ``updated_at`` and leaves ``created_at`` alone.

        Raises:
            ValueError: If ``accuracy`` is given and outside [0, 1]
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(f"accuracy must lie in [0, 1], got {accuracy}")

        record = {
            'network_id': network_id,
            'architecture': _to_json(network.sizes),
            'layers': _to_json(network.architecture()),
            'optimizer': _to_json(_describe_optimizer(network)),
            'network_data': pickle.dumps(network),
            'trained': int(bool(trained)),
            'accuracy': accuracy,
            'iterations': len(network.loss),
            'final_loss': float(network.loss[-1]) if network.loss else None,
        }
        with self._get_connection() as conn:
            conn.execute(_UPSERT, record)

        logger.info(
            f"Stored '{network_id}': sizes={network.sizes}, "
            f"iterations={record['iterations']}, trained={trained}, accuracy={accuracy}"
        )
        return True

    def load_network_from_db(self, network_id: str):
        """The unpickled network, or None if no row has this id."""
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?', (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No stored network '{network_id}'")
            return None
        logger.debug(f"Unpickling '{network_id}'")
        return pickle.loads(row['network_data'])

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Summaries of every stored network, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f'SELECT {_SUMMARY} FROM networks ORDER BY created_at DESC'
            ).fetchall()
        return [self._summary(row) for row in rows]

    def delete_network_from_db(self, network_id: str) -> bool:
        with self._get_connection() as conn:
            removed = conn.execute(
                'DELETE FROM networks WHERE network_id = ?', (network_id,)
            ).rowcount > 0

        if removed:
            logger.info(f"Removed stored network '{network_id}'")
        else:
            logger.warning(f"Nothing to delete for '{network_id}'")
        return removed

    def get_network_metadata_from_db(self, network_id: str) -> Optional[Dict[str, Any]]:
        """Summary of one network without unpickling it."""
        with self._get_connection() as conn:
            row = conn.execute(
                f'SELECT {_SUMMARY} FROM networks WHERE network_id = ?', (network_id,)
            ).fetchone()
        return None if row is None else self._summary(row)

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete rows created more than ``days`` days ago.

        Returns:
            int: Number of rows deleted

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            removed = conn.execute(
                "DELETE FROM networks WHERE julianday('now') - julianday(created_at) > ?",
                (days,)
            ).rowcount

        logger.info(f"Age cleanup removed {removed} network(s) (> {days} day(s))")
        return removed


_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """Reuse one instance for the default directory; open others on demand."""
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(os.path.join(model_dir, DB_FILENAME))
    if _db is None:
        _db = ModelDatabase()
    return _db


_STORAGE_ERRORS = (sqlite3.Error, json.JSONDecodeError)
_PICKLE_ERRORS = (pickle.PickleError, AttributeError, EOFError)


def _attempt(action: str, call: Callable[[], Any], fallback: Any, *errors):
    """Run ``call``; log and return ``fallback`` if it raises one of ``errors``."""
    try:
        return call()
    except errors as e:
        logger.error(f"{action} failed: {type(e).__name__}: {e}")
        return fallback


def _usable_id(network_id) -> bool:
    if isinstance(network_id, str) and network_id:
        return True
    logger.error(f"network_id must be a non-empty string, got {network_id!r}")
    return False


def save_network(
    network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network to the SQLite database.

    Args:
        network: Network to save
        network_id: Unique identifier; saving again replaces the row
        model_dir: Directory holding ``networks.db``
        trained: Whether the network has been trained
        accuracy: Test accuracy (0.0 to 1.0)

    Returns:
        bool: True if the row was written

    Example:
        >>> save_network(net, "mnist_adam", accuracy=0.97)
        True
    """
    if not _usable_id(network_id):
        return False
    return _attempt(
        f"Saving '{network_id}'",
        lambda: _get_db(model_dir).save_network_to_db(network, network_id, trained, accuracy),
        False,
        ValueError, *_PICKLE_ERRORS, *_STORAGE_ERRORS
    )


def load_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR):
    """
    Load a network from the SQLite database.

    Returns:
        The network, with no data source attached, or None
    """
    if not _usable_id(network_id):
        return None
    return _attempt(
        f"Loading '{network_id}'",
        lambda: _get_db(model_dir).load_network_from_db(network_id),
        None,
        *_PICKLE_ERRORS, *_STORAGE_ERRORS
    )


def list_saved_networks(model_dir: str = DEFAULT_MODEL_DIR) -> List[Dict[str, Any]]:
    return _attempt(
        "Listing networks",
        lambda: _get_db(model_dir).list_networks_from_db(),
        [],
        *_STORAGE_ERRORS
    )


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    if not _usable_id(network_id):
        return False
    return _attempt(
        f"Deleting '{network_id}'",
        lambda: _get_db(model_dir).delete_network_from_db(network_id),
        False,
        *_STORAGE_ERRORS
    )


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """Stored summary of one network, or None."""
    if not _usable_id(network_id):
        return None
    return _attempt(
        f"Reading metadata of '{network_id}'",
        lambda: _get_db(model_dir).get_network_metadata_from_db(network_id),
        None,
        *_STORAGE_ERRORS
    )


def delete_old_networks(days: float = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Delete networks created more than ``days`` days ago.

    Returns:
        int: Number deleted, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    return _attempt(
        "Age cleanup",
        lambda: _get_db(model_dir).delete_old_networks_from_db(days),
        -1,
        sqlite3.Error
    )
