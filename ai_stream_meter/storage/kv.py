"""
Key-value stores backing stream state.

Synchronous get/set/delete over string keys with string values, plus key
enumeration. Callers serialize to JSON before writing.
"""

from typing import Dict, List, Optional, Protocol

from .db import DEFAULT_DB_PATH, get_connection


class KeyValueStore(Protocol):
    """Port for durable client-local storage."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class InMemoryKeyValueStore:
    """Process-local store, used in tests and for ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class SQLiteKeyValueStore:
    """Key-value store persisted in the ``kv_store`` table.

    The table is created by ``initialize_schema``.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value)
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            return [row[0] for row in conn.execute("SELECT key FROM kv_store ORDER BY key")]
        finally:
            conn.close()
