"""
Key-value persistence substrate for local client state.

Values are opaque strings stored under namespaced keys. Two backends are
provided:
- SqliteKeyValueStore: durable file-backed store (":memory:" for tests)
- MemoryKeyValueStore: plain dictionary, no durability
"""

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from .errors import LocalPersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Namespaced get/set/remove interface over string values."""

    def __init__(self, namespace: str = "fieldsync"):
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key. Removing a missing key is not an error."""

    def close(self) -> None:
        """Release any resources held by the backend."""


class MemoryKeyValueStore(KeyValueStore):
    """In-memory backend, mostly useful for tests."""

    def __init__(self, namespace: str = "fieldsync"):
        super().__init__(namespace)
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        self._data[self._key(key)] = value

    async def remove(self, key: str) -> None:
        self._data.pop(self._key(key), None)


class SqliteKeyValueStore(KeyValueStore):
    """
    SQLite-based key-value store.

    This class provides:
    - Persistent storage of client state across restarts
    - Thread-safe operations (blocking calls run off the event loop)
    - A shared connection for in-memory databases
    """

    DEFAULT_DB_PATH = "fieldsync.db"

    def __init__(self, db_path: Optional[str] = None, namespace: str = "fieldsync"):
        """
        Initialize the key-value store.

        Args:
            db_path: Path to the SQLite database file. If None, uses default.
                     Use ":memory:" for in-memory database (useful for testing).
            namespace: Prefix applied to every key
        """
        super().__init__(namespace)
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.Lock()
        self._is_memory = self.db_path == ":memory:"
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the SQLite database schema."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.commit()
            finally:
                self._release(conn)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        # For in-memory databases, reuse the same connection
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
            return self._shared_conn

        return sqlite3.connect(self.db_path)

    def _release(self, conn: sqlite3.Connection) -> None:
        if not self._is_memory:
            conn.close()

    def _get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?",
                    (self._key(key),)
                ).fetchone()
                return row[0] if row else None
            finally:
                self._release(conn)

    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (self._key(key), value, datetime.now(timezone.utc).isoformat())
                )
                conn.commit()
            finally:
                self._release(conn)

    def _remove_sync(self, key: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM kv_store WHERE key = ?", (self._key(key),))
                conn.commit()
            finally:
                self._release(conn)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except sqlite3.Error as e:
            raise LocalPersistenceError(f"Failed to read {key!r}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except sqlite3.Error as e:
            raise LocalPersistenceError(f"Failed to write {key!r}: {e}") from e

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove_sync, key)
        except sqlite3.Error as e:
            raise LocalPersistenceError(f"Failed to remove {key!r}: {e}") from e

    def close(self) -> None:
        """Close the store and any open connections."""
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
        logger.debug(f"Key-value store closed: {self.db_path}")
