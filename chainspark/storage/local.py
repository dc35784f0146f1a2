"""
Local Store Adapter

Durable client-side key/value storage. Pure CRUD, no business logic.
Values are JSON-serialisable and are copied on the way in and out.
"""

from __future__ import annotations
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List

from ..contracts.base import Timestamp
from ..domain.serialization import dumps, loads


class LocalStore:
    """Abstract local key/value store (synchronous)."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class InMemoryLocalStore(LocalStore):
    """
    Process-local store. Values round-trip through JSON so nothing that
    could not be persisted by the durable store slips through.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return loads(raw) if raw is not None else default

    def set(self, key: str, value: Any) -> None:
        raw = dumps(value)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SQLiteLocalStore(LocalStore):
    """
    Durable across process restarts. One `kv` table, JSON values.
    A fresh connection per call keeps the store usable from any thread.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
            ''')

    @contextmanager
    def _get_conn(self):
        """Get database connection."""
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str, default: Any = None) -> Any:
        with self._get_conn() as conn:
            row = conn.execute('SELECT value FROM kv WHERE key = ?', (key,)).fetchone()
        return loads(row['value']) if row else default

    def set(self, key: str, value: Any) -> None:
        with self._get_conn() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)',
                (key, dumps(value), Timestamp.now().to_iso())
            )

    def delete(self, key: str) -> None:
        with self._get_conn() as conn:
            conn.execute('DELETE FROM kv WHERE key = ?', (key,))

    def keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + '%',)
            ).fetchall()
        return [row['key'] for row in rows]
