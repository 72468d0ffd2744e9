"""SQLite key/value store with WAL mode for concurrent reads."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

UPSERT_SQL = """
INSERT INTO kv (key, value) VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value;
"""

SELECT_SQL = "SELECT value FROM kv WHERE key = ?"

DELETE_SQL = "DELETE FROM kv WHERE key = ?"


class KeyValueStore:
    """Persists string values under string keys in SQLite."""

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(CREATE_TABLE_SQL)
        self._conn.commit()
        logger.info("Key/value store initialized: %s", self._db_path)

    def get(self, key: str) -> str | None:
        """Return the value stored under key, or None."""
        row = self._conn.execute(SELECT_SQL, (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        self._conn.execute(UPSERT_SQL, (key, value))
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute(DELETE_SQL, (key,))
        self._conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
