"""Local durable entity store.

This module provides:
- EntityStore: Protocol used by the write-through gateway
- SQLiteEntityStore: SQLite-backed implementation keyed by (type, id)

Payloads are stored as JSON and handed back as plain dicts; the store
does not interpret them.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from offlinesync.core.errors import PersistenceError
from offlinesync.core.types import EntityType

logger = logging.getLogger(__name__)


class EntityStore(Protocol):
    """Protocol for the local entity store."""

    def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Get an entity, or None if absent."""
        ...

    def put(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Insert or replace an entity and return what was stored."""
        ...

    def delete(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Remove an entity and return its last value, if any."""
        ...


class SQLiteEntityStore:
    """SQLite-based local entity store."""

    def __init__(self, db_path: Path) -> None:
        """Open (or create) the store.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        try:
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (entity_type, entity_id)
                )
            """)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open entity store {self._db_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Get an entity by id.

        Returns:
            The stored payload, or None if absent.
        """
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT payload FROM entities WHERE entity_type = ? AND entity_id = ?",
                    (EntityType(entity_type).value, entity_id),
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot read {entity_type}:{entity_id}: {e}") from e
        if row is None:
            return None
        return dict(json.loads(row["payload"]))

    def put(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Insert or replace an entity.

        Returns:
            A copy of the stored payload.
        """
        stored = dict(payload)
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO entities (entity_type, entity_id, payload, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (EntityType(entity_type).value, entity_id, json.dumps(stored), time.time()),
                )
            except (sqlite3.Error, TypeError, ValueError) as e:
                raise PersistenceError(f"Cannot write {entity_type}:{entity_id}: {e}") from e
        logger.debug("Stored %s:%s locally", entity_type, entity_id)
        return stored

    def delete(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Delete an entity.

        Returns:
            The removed payload, or None if it did not exist.
        """
        with self._lock:
            existing = self.get(entity_type, entity_id)
            if existing is None:
                return None
            try:
                self._conn.execute(
                    "DELETE FROM entities WHERE entity_type = ? AND entity_id = ?",
                    (EntityType(entity_type).value, entity_id),
                )
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot delete {entity_type}:{entity_id}: {e}") from e
        logger.debug("Deleted %s:%s locally", entity_type, entity_id)
        return existing

    def list(self, entity_type: EntityType) -> list[dict[str, Any]]:
        """List all entities of a type."""
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT payload FROM entities WHERE entity_type = ? ORDER BY entity_id",
                    (EntityType(entity_type).value,),
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot list {entity_type}: {e}") from e
        return [dict(json.loads(row["payload"])) for row in rows]
