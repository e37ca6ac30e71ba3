# src/vestledger/database/storage_manager.py
from __future__ import annotations

"""
Persistent key-value storage for vesting state snapshots, backed by SQLite.

The CLI keeps the engine, the custody token and the role assignments under
separate keys. Values are serialized to JSON.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENGINE_KEY = "vesting_engine"
TOKEN_KEY = "custody_token"
ROLES_KEY = "capabilities"


class StorageManager:
    """
    Manages a persistent key-value store backed by a SQLite database.

    Each ``set`` commits in its own transaction; ``set_many`` writes several
    keys in one transaction so a snapshot of engine, token and roles is
    never half-written.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: The SQLite database file. Its directory is created if needed.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._create_table()
        except sqlite3.Error as e:
            logger.error("Database connection failed: %s", e, extra={"event": "storage.open_failed"})
            raise

    def _create_table(self):
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS key_value_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def set(self, key: str, value: Any):
        """Save or update a value."""
        self.set_many({key: value})

    def set_many(self, values: dict[str, Any]):
        """Save several values in one transaction."""
        rows = [(key, json.dumps(value)) for key, value in values.items()]
        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO key_value_store (key, value)
                    VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    rows,
                )
        except sqlite3.Error as e:
            logger.error("Failed to store keys %s: %s", list(values), e, extra={"event": "storage.write_failed"})
            raise

    def get(self, key: str, default: Any | None = None) -> Any:
        """Retrieve a value, or ``default`` when the key is absent."""
        cursor = self._conn.execute("SELECT value FROM key_value_store WHERE key = ?", (key,))
        row = cursor.fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def has(self, key: str) -> bool:
        cursor = self._conn.execute("SELECT 1 FROM key_value_store WHERE key = ?", (key,))
        return cursor.fetchone() is not None

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
