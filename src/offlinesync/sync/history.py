"""Conflict history.

This module provides:
- ConflictHistory: SQLite-backed audit log of ConflictRecord
- ConflictStats: Aggregate counts for status display

Every detected conflict is recorded, whether it was resolved automatically
or deferred. The resolution columns of a record are written once; later
attempts to resolve the same record are ignored. Records are never deleted.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from offlinesync.core.types import ConflictType, EntityType, ResolutionStrategy
from offlinesync.sync.types import ConflictRecord, PersistenceError

logger = logging.getLogger(__name__)

AUTO_RESOLVER = "auto"


@dataclass
class ConflictStats:
    """Conflict counts."""

    total: int = 0
    auto_resolved: int = 0
    manual_resolved: int = 0
    pending: int = 0
    last_conflict_at: float | None = None


def _dumps(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> dict[str, Any] | None:
    return json.loads(value) if value is not None else None


class ConflictHistory:
    """SQLite-based conflict audit log."""

    def __init__(self, db_path: Path | str) -> None:
        """Open (or create) the history.

        Args:
            db_path: Path to SQLite database file. May be the file of the
                operation store.
        """
        self._lock = threading.RLock()
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS conflict_history (
                    id TEXT PRIMARY KEY,
                    operation_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    conflict_type TEXT NOT NULL,
                    local_version TEXT,
                    remote_version TEXT,
                    description TEXT NOT NULL,
                    detected_at REAL NOT NULL,
                    remote_updated_at REAL,
                    remote_revision INTEGER,
                    resolution_strategy TEXT,
                    resolved_payload TEXT,
                    resolved_at REAL,
                    resolved_by TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_conflicts_operation
                    ON conflict_history(operation_id);
                CREATE INDEX IF NOT EXISTS idx_conflicts_resolved
                    ON conflict_history(resolved_at);
            """)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open conflict history {db_path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as e:
                raise PersistenceError(f"Conflict history failed: {e}") from e

    @staticmethod
    def _from_row(row: sqlite3.Row) -> ConflictRecord:
        strategy = row["resolution_strategy"]
        return ConflictRecord(
            id=row["id"],
            operation_id=row["operation_id"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            conflict_type=ConflictType(row["conflict_type"]),
            local_version=_loads(row["local_version"]),
            remote_version=_loads(row["remote_version"]),
            description=row["description"],
            detected_at=row["detected_at"],
            remote_updated_at=row["remote_updated_at"],
            remote_revision=row["remote_revision"],
            resolution_strategy=ResolutionStrategy(strategy) if strategy else None,
            resolved_payload=_loads(row["resolved_payload"]),
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    # === Writes ===

    def add(self, record: ConflictRecord) -> None:
        """Record a conflict (resolved or not)."""
        self._execute(
            """
            INSERT INTO conflict_history (
                id, operation_id, entity_type, entity_id, conflict_type,
                local_version, remote_version, description, detected_at,
                remote_updated_at, remote_revision, resolution_strategy,
                resolved_payload, resolved_at, resolved_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.operation_id,
                record.entity_type.value,
                record.entity_id,
                record.conflict_type.value,
                _dumps(record.local_version),
                _dumps(record.remote_version),
                record.description,
                record.detected_at,
                record.remote_updated_at,
                record.remote_revision,
                record.resolution_strategy.value if record.resolution_strategy else None,
                _dumps(record.resolved_payload),
                record.resolved_at,
                record.resolved_by,
            ),
        )
        logger.debug(
            "Recorded %s conflict %s for operation %s",
            record.conflict_type.name,
            record.id,
            record.operation_id,
        )

    def mark_resolved(
        self,
        record_id: str,
        strategy: ResolutionStrategy,
        resolved_payload: dict[str, Any] | None,
        resolved_by: str,
        resolved_at: float,
    ) -> bool:
        """Write the resolution of a deferred conflict.

        Returns:
            True if written, False if the record was already resolved
            (resolutions are never overwritten) or does not exist.
        """
        cursor = self._execute(
            """
            UPDATE conflict_history
            SET resolution_strategy = ?, resolved_payload = ?, resolved_at = ?, resolved_by = ?
            WHERE id = ? AND resolved_at IS NULL
            """,
            (
                ResolutionStrategy(strategy).value,
                _dumps(resolved_payload),
                resolved_at,
                resolved_by,
                record_id,
            ),
        )
        if cursor.rowcount == 0:
            logger.warning("Conflict %s already resolved or unknown", record_id)
            return False
        return True

    # === Queries ===

    def get(self, record_id: str) -> ConflictRecord | None:
        """Get a record by id."""
        row = self._execute(
            "SELECT * FROM conflict_history WHERE id = ?", (record_id,)
        ).fetchone()
        return self._from_row(row) if row else None

    def list(self, limit: int | None = None) -> list[ConflictRecord]:
        """List records, most recent first."""
        sql = "SELECT * FROM conflict_history ORDER BY detected_at DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [self._from_row(row) for row in self._execute(sql, params).fetchall()]

    def get_for_operation(self, operation_id: str) -> list[ConflictRecord]:
        """List the records of one operation, oldest first."""
        rows = self._execute(
            "SELECT * FROM conflict_history WHERE operation_id = ? ORDER BY detected_at",
            (operation_id,),
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def pending(self) -> list[ConflictRecord]:
        """List unresolved records, oldest first."""
        rows = self._execute(
            "SELECT * FROM conflict_history WHERE resolved_at IS NULL ORDER BY detected_at"
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def stats(self) -> ConflictStats:
        """Aggregate counts over the whole history."""
        row = self._execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN resolved_by = ? THEN 1 ELSE 0 END) AS auto_resolved,
                SUM(CASE WHEN resolved_at IS NOT NULL AND resolved_by != ? THEN 1 ELSE 0 END)
                    AS manual_resolved,
                SUM(CASE WHEN resolved_at IS NULL THEN 1 ELSE 0 END) AS pending,
                MAX(detected_at) AS last_conflict_at
            FROM conflict_history
            """,
            (AUTO_RESOLVER, AUTO_RESOLVER),
        ).fetchone()
        return ConflictStats(
            total=row["total"],
            auto_resolved=row["auto_resolved"] or 0,
            manual_resolved=row["manual_resolved"] or 0,
            pending=row["pending"] or 0,
            last_conflict_at=row["last_conflict_at"],
        )
