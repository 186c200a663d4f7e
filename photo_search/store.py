"""Embedding store backed by SQLite: item id -> float32 vector."""

import logging
import sqlite3
import threading
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS embedding (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL UNIQUE,
    dim INTEGER NOT NULL,
    vector BLOB NOT NULL
);
"""


def _to_blob(vector) -> tuple[int, bytes]:
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1:
        raise ValueError(f"Embedding must be one-dimensional, got shape {arr.shape}")
    return arr.size, arr.tobytes()


def _from_blob(dim: int, blob: bytes) -> np.ndarray:
    arr = np.frombuffer(blob, dtype=np.float32)
    if arr.size != dim:
        raise ValueError(f"Stored vector has {arr.size} values, expected {dim}")
    return arr.copy()


class EmbeddingStore:
    """Durable key/vector map. One connection, serialised by a lock.

    Each put is a single upsert statement, so concurrent readers see either
    the old vector or the new one, never a partial write.
    """

    def __init__(self, db_path: Path | str):
        self._db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def contains(self, item_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM embedding WHERE item_id = ?", (item_id,)
            ).fetchone()
        return row is not None

    def put(self, item_id: str, vector) -> None:
        """Insert or replace the vector for item_id, keeping its position."""
        dim, blob = _to_blob(vector)
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO embedding (item_id, dim, vector) VALUES (?, ?, ?)
                   ON CONFLICT(item_id) DO UPDATE SET dim = excluded.dim, vector = excluded.vector""",
                (item_id, dim, blob),
            )

    def get(self, item_id: str) -> np.ndarray | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT dim, vector FROM embedding WHERE item_id = ?", (item_id,)
            ).fetchone()
        return _from_blob(*row) if row else None

    def get_all(self) -> list[tuple[str, np.ndarray]]:
        """Snapshot of every stored embedding, in insertion order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT item_id, dim, vector FROM embedding ORDER BY seq"
            ).fetchall()

        results = []
        for item_id, dim, blob in rows:
            try:
                results.append((item_id, _from_blob(dim, blob)))
            except ValueError:
                logger.warning("Skipping corrupt embedding for %s", item_id, exc_info=True)
        return results

    def ids(self) -> set[str]:
        with self._lock:
            rows = self._conn.execute("SELECT item_id FROM embedding").fetchall()
        return {r[0] for r in rows}

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM embedding").fetchone()[0]

    def delete_by_id(self, item_id: str) -> bool:
        """Remove the vector for item_id. Returns False if it was not stored."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM embedding WHERE item_id = ?", (item_id,))
        return cursor.rowcount > 0

    def clear(self) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM embedding")
        logger.info("Cleared %d embeddings", cursor.rowcount)
        return cursor.rowcount
