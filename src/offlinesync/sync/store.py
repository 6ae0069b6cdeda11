"""Durable operation store.

This module provides:
- OperationStore: SQLite-backed queue of SyncOperation records

The store is the only component that mutates operations. Every status
change goes through update_status(), schedule_retry(), reset_for_retry()
or the promotion/recovery helpers, and is validated against the state
machine in domain/transitions.py.

Ordering:
    dequeue_next() returns the PENDING operation with the highest priority.
    Ties are broken by created_at, then by insertion order (seq), so equal
    priorities drain FIFO.

Persistence (SQLite):
    WAL mode, autocommit, one connection guarded by an RLock. Read-modify-
    write sequences run inside BEGIN IMMEDIATE so a second process sharing
    the file cannot dequeue the same operation. Any sqlite3.Error is raised
    as PersistenceError: a lost operation would break at-least-once
    delivery, so storage failures are never swallowed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from offlinesync.core.types import EntityType, OperationKind, OperationStatus
from offlinesync.sync.domain.transitions import (
    MANUAL_TRANSITIONS,
    RECOVERY_TRANSITIONS,
    InvalidTransitionError,
    check_transition,
)
from offlinesync.sync.types import (
    OperationFilter,
    OperationNotFoundError,
    PersistenceError,
    QueueStats,
    SyncError,
    SyncOperation,
)

logger = logging.getLogger(__name__)

# Statuses that a user may clear from the queue
REMOVABLE_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CONFLICT}
)

_ORDER_BY = "ORDER BY priority DESC, created_at ASC, seq ASC"


class OperationStore:
    """SQLite-based store of sync operations.

    Attributes:
        db_path: Path of the SQLite file (":memory:" is accepted)
    """

    def __init__(
        self,
        db_path: Path | str,
        clock: Callable[[], float] = time.time,
        recover: bool = True,
    ) -> None:
        """Open (or create) the store.

        Args:
            db_path: Path to SQLite database file.
            clock: Source of Unix timestamps (injectable for tests).
            recover: Move operations left IN_PROGRESS by a crash back to
                PENDING on open.

        Raises:
            PersistenceError: If the database cannot be opened.
        """
        self.db_path = db_path
        self._clock = clock
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
            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open operation store {db_path}: {e}") from e

        if recover:
            recovered = self.recover_in_progress()
            if recovered:
                logger.warning("Recovered %d interrupted operations", recovered)

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_operations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                priority INTEGER NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                last_attempt_at REAL,
                next_attempt_at REAL,
                base_version INTEGER,
                error_message TEXT,
                conflict_detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_ops_status ON sync_operations(status);
            CREATE INDEX IF NOT EXISTS idx_ops_entity_type ON sync_operations(entity_type);
            CREATE INDEX IF NOT EXISTS idx_ops_entity_id ON sync_operations(entity_id);
            CREATE INDEX IF NOT EXISTS idx_ops_dequeue
                ON sync_operations(status, priority DESC, created_at, seq);
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Internals ===

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically, mapping storage errors."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot start transaction: {e}") from e
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise PersistenceError(f"Operation store write failed: {e}") from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot commit transaction: {e}") from e

    def _fetch(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Operation store read failed: {e}") from e

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            kind=OperationKind(row["kind"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"]),
            status=OperationStatus(row["status"]),
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_attempt_at=row["last_attempt_at"],
            next_attempt_at=row["next_attempt_at"],
            base_version=row["base_version"],
            error_message=row["error_message"],
            conflict_detail=(
                json.loads(row["conflict_detail"]) if row["conflict_detail"] else None
            ),
        )

    def _load(self, conn: sqlite3.Connection, operation_id: str) -> SyncOperation:
        row = conn.execute(
            "SELECT * FROM sync_operations WHERE id = ?", (operation_id,)
        ).fetchone()
        if row is None:
            raise OperationNotFoundError(operation_id)
        return self._from_row(row)

    @staticmethod
    def _save(conn: sqlite3.Connection, op: SyncOperation) -> None:
        conn.execute(
            """
            UPDATE sync_operations SET
                kind = ?, payload = ?, status = ?, retry_count = ?,
                updated_at = ?, last_attempt_at = ?, next_attempt_at = ?,
                base_version = ?, error_message = ?, conflict_detail = ?
            WHERE id = ?
            """,
            (
                op.kind.value,
                json.dumps(op.payload),
                op.status.value,
                op.retry_count,
                op.updated_at,
                op.last_attempt_at,
                op.next_attempt_at,
                op.base_version,
                op.error_message,
                json.dumps(op.conflict_detail) if op.conflict_detail else None,
                op.id,
            ),
        )

    # === Queue operations ===

    def enqueue(self, op: SyncOperation) -> str:
        """Persist a new operation.

        An operation whose id is already stored is left untouched.

        Args:
            op: Operation to persist.

        Returns:
            The operation id.
        """
        try:
            payload = json.dumps(op.payload)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Payload of {op.id} is not serializable: {e}") from e

        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM sync_operations WHERE id = ?", (op.id,)
            ).fetchone()
            if existing is not None:
                logger.debug("Operation %s already queued, ignoring", op.id)
                return op.id
            conn.execute(
                """
                INSERT INTO sync_operations (
                    id, kind, entity_type, entity_id, payload, status, priority,
                    retry_count, max_retries, created_at, updated_at,
                    last_attempt_at, next_attempt_at, base_version,
                    error_message, conflict_detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.id,
                    op.kind.value,
                    op.entity_type.value,
                    op.entity_id,
                    payload,
                    op.status.value,
                    op.priority,
                    op.retry_count,
                    op.max_retries,
                    op.created_at,
                    op.updated_at,
                    op.last_attempt_at,
                    op.next_attempt_at,
                    op.base_version,
                    op.error_message,
                    json.dumps(op.conflict_detail) if op.conflict_detail else None,
                ),
            )
        logger.debug("Enqueued %r", op)
        return op.id

    def dequeue_next(self) -> SyncOperation | None:
        """Claim the next PENDING operation.

        The operation is moved to IN_PROGRESS in the same transaction, so
        it is never handed out twice.

        Returns:
            The claimed operation, or None if nothing is pending.
        """
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM sync_operations WHERE status = ? {_ORDER_BY} LIMIT 1",
                (OperationStatus.PENDING.value,),
            ).fetchone()
            if row is None:
                return None
            op = self._from_row(row)
            now = self._clock()
            op.status = OperationStatus.IN_PROGRESS
            op.last_attempt_at = now
            op.updated_at = now
            self._save(conn, op)
        logger.debug("Dequeued %r", op)
        return op

    def update_status(
        self,
        operation_id: str,
        status: OperationStatus,
        error: str | None = None,
        conflict: dict[str, Any] | None = None,
        retry_delay: float = 0.0,
        retryable: bool = True,
    ) -> bool:
        """Move an operation to a new status.

        FAILED and CONFLICT count as an attempt (retry_count + 1), except a
        FAILED that follows a CONFLICT of the same attempt. A FAILED
        operation with retries left, and ``retryable`` set, goes straight to
        RETRY_SCHEDULED, due ``retry_delay`` seconds from now. Otherwise it
        stays FAILED and is never retried automatically; an explicit
        RETRY_SCHEDULED with no retries left is rejected.

        Args:
            operation_id: Operation to update.
            status: Target status.
            error: Error message (FAILED).
            conflict: Serialized conflict record (CONFLICT).
            retry_delay: Backoff in seconds before the retry is due.
            retryable: False for permanent failures.

        Returns:
            True if the operation changed, False if it was already
            COMPLETED (completion is idempotent).

        Raises:
            OperationNotFoundError: If no such operation exists.
            InvalidTransitionError: If the state machine forbids the change.
        """
        with self._transaction() as conn:
            op = self._load(conn, operation_id)
            if op.status == OperationStatus.COMPLETED:
                logger.debug("Operation %s already completed, ignoring %s", op.id, status.name)
                return False

            check_transition(op.status, status)
            now = self._clock()
            op.updated_at = now

            if status == OperationStatus.IN_PROGRESS:
                op.last_attempt_at = now
            elif status == OperationStatus.COMPLETED:
                op.error_message = None
                op.next_attempt_at = None
            elif status == OperationStatus.FAILED:
                # The CONFLICT that preceded this failure already counted the attempt
                if op.status != OperationStatus.CONFLICT:
                    op.retry_count += 1
                op.error_message = error
                if retryable and not op.retries_exhausted:
                    status = OperationStatus.RETRY_SCHEDULED
                    op.next_attempt_at = now + retry_delay
                else:
                    op.next_attempt_at = None
            elif status == OperationStatus.CONFLICT:
                op.retry_count += 1
                op.conflict_detail = conflict
            elif status == OperationStatus.RETRY_SCHEDULED:
                if op.retries_exhausted:
                    raise InvalidTransitionError(op.status, status)
                op.next_attempt_at = now + retry_delay
            elif status == OperationStatus.PENDING:
                op.next_attempt_at = None

            op.status = status
            self._save(conn, op)

        if status == OperationStatus.RETRY_SCHEDULED:
            logger.warning(
                "Operation %s failed (attempt %d/%d), retry in %.1fs: %s",
                op.id,
                op.retry_count,
                op.max_retries,
                retry_delay,
                error,
            )
        elif status == OperationStatus.FAILED:
            logger.warning("Operation %s failed permanently: %s", op.id, error)
        else:
            logger.debug("Operation %s -> %s", op.id, status.name)
        return True

    def schedule_retry(
        self,
        operation_id: str,
        payload: dict[str, Any] | None = None,
        kind: OperationKind | None = None,
        base_version: int | None = None,
        delay: float = 0.0,
    ) -> bool:
        """Re-queue a FAILED or CONFLICT operation, optionally rewritten.

        Used by the conflict resolver to push a resolved payload.

        Returns:
            True if the operation is RETRY_SCHEDULED, False if its retries
            are exhausted and it became terminal FAILED instead.
        """
        with self._transaction() as conn:
            op = self._load(conn, operation_id)
            now = self._clock()
            op.updated_at = now
            if payload is not None:
                op.payload = dict(payload)
            if kind is not None:
                op.kind = OperationKind(kind)
            if base_version is not None:
                op.base_version = base_version

            if op.retries_exhausted:
                if op.status != OperationStatus.FAILED:
                    check_transition(op.status, OperationStatus.FAILED)
                op.status = OperationStatus.FAILED
                op.error_message = op.error_message or "Retries exhausted"
                op.next_attempt_at = None
                self._save(conn, op)
                scheduled = False
            else:
                check_transition(op.status, OperationStatus.RETRY_SCHEDULED)
                op.status = OperationStatus.RETRY_SCHEDULED
                op.next_attempt_at = now + delay
                self._save(conn, op)
                scheduled = True

        if scheduled:
            logger.debug("Operation %s re-queued as %s", op.id, op.kind.name)
        else:
            logger.warning("Operation %s not re-queued: retries exhausted", op.id)
        return scheduled

    def rebase(self, entity_type: EntityType, entity_id: str, version: int) -> int:
        """Point waiting operations of an entity at a newly confirmed version.

        Called after the remote acknowledged a write, so later operations on
        the same entity carry the version the server now holds. IN_PROGRESS,
        CONFLICT and COMPLETED operations keep their base.

        Returns:
            Number of operations rebased.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_operations
                SET base_version = ?, updated_at = ?
                WHERE entity_type = ? AND entity_id = ? AND status IN (?, ?, ?)
                    AND (base_version IS NULL OR base_version != ?)
                """,
                (
                    version,
                    self._clock(),
                    EntityType(entity_type).value,
                    entity_id,
                    OperationStatus.PENDING.value,
                    OperationStatus.RETRY_SCHEDULED.value,
                    OperationStatus.FAILED.value,
                    version,
                ),
            )
            rebased = cursor.rowcount
        if rebased:
            logger.debug(
                "Rebased %d operations on %s:%s to version %d",
                rebased,
                entity_type,
                entity_id,
                version,
            )
        return rebased

    def promote_due_retries(self, now: float | None = None) -> int:
        """Move RETRY_SCHEDULED operations whose delay elapsed back to PENDING.

        Returns:
            Number of operations promoted.
        """
        now = self._clock() if now is None else now
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_operations
                SET status = ?, updated_at = ?, next_attempt_at = NULL
                WHERE status = ? AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                """,
                (
                    OperationStatus.PENDING.value,
                    now,
                    OperationStatus.RETRY_SCHEDULED.value,
                    now,
                ),
            )
            promoted = cursor.rowcount
        if promoted:
            logger.debug("Promoted %d operations due for retry", promoted)
        return promoted

    def recover_in_progress(self) -> int:
        """Return operations stuck IN_PROGRESS (after a crash) to PENDING.

        Returns:
            Number of operations recovered.
        """
        check_transition(
            OperationStatus.IN_PROGRESS, OperationStatus.PENDING, RECOVERY_TRANSITIONS
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_operations SET status = ?, updated_at = ? WHERE status = ?",
                (
                    OperationStatus.PENDING.value,
                    self._clock(),
                    OperationStatus.IN_PROGRESS.value,
                ),
            )
            return cursor.rowcount

    def reset_for_retry(
        self,
        operation_id: str,
        payload: dict[str, Any] | None = None,
        kind: OperationKind | None = None,
        base_version: int | None = None,
    ) -> SyncOperation:
        """Manually retry a FAILED or CONFLICT operation.

        The retry counter starts over and the operation is PENDING again.

        Raises:
            OperationNotFoundError: If no such operation exists.
            InvalidTransitionError: If the operation is not FAILED or CONFLICT.
        """
        with self._transaction() as conn:
            op = self._load(conn, operation_id)
            check_transition(op.status, OperationStatus.PENDING, MANUAL_TRANSITIONS)
            if payload is not None:
                op.payload = dict(payload)
            if kind is not None:
                op.kind = OperationKind(kind)
            if base_version is not None:
                op.base_version = base_version
            op.status = OperationStatus.PENDING
            op.retry_count = 0
            op.error_message = None
            op.conflict_detail = None
            op.next_attempt_at = None
            op.updated_at = self._clock()
            self._save(conn, op)
        logger.info("Operation %s reset for retry", op.id)
        return op

    # === Queries ===

    def get(self, operation_id: str) -> SyncOperation | None:
        """Get an operation by id, or None."""
        rows = self._fetch("SELECT * FROM sync_operations WHERE id = ?", (operation_id,))
        return self._from_row(rows[0]) if rows else None

    def query(
        self, criteria: OperationFilter | None = None, limit: int | None = None
    ) -> list[SyncOperation]:
        """List operations matching a filter, in dequeue order.

        Args:
            criteria: Filter on status, entity type and entity id.
            limit: Maximum number of operations returned.
        """
        criteria = criteria or OperationFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if criteria.status is not None:
            clauses.append("status = ?")
            params.append(OperationStatus(criteria.status).value)
        if criteria.entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(EntityType(criteria.entity_type).value)
        if criteria.entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(criteria.entity_id)

        sql = "SELECT * FROM sync_operations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" {_ORDER_BY}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._from_row(row) for row in self._fetch(sql, params)]

    def stats(self) -> QueueStats:
        """Count operations by status."""
        rows = self._fetch(
            "SELECT status, COUNT(*) AS n FROM sync_operations GROUP BY status"
        )
        stats = QueueStats()
        for row in rows:
            setattr(stats, OperationStatus(row["status"]).value, row["n"])
            stats.total += row["n"]
        return stats

    # === Cleanup ===

    def remove(self, operation_id: str) -> None:
        """Clear a COMPLETED, FAILED or CONFLICT operation.

        Raises:
            OperationNotFoundError: If no such operation exists.
            SyncError: If the operation is still queued or in flight.
        """
        with self._transaction() as conn:
            op = self._load(conn, operation_id)
            if op.status not in REMOVABLE_STATUSES:
                raise SyncError(
                    f"Cannot clear operation {operation_id} in status {op.status.name}"
                )
            conn.execute("DELETE FROM sync_operations WHERE id = ?", (operation_id,))
        logger.info("Cleared operation %s (%s)", operation_id, op.status.name)

    def remove_completed(self, older_than: float | None = None) -> int:
        """Garbage-collect COMPLETED operations.

        Args:
            older_than: Only remove operations completed at least this many
                seconds ago. None removes all of them.

        Returns:
            Number of operations removed.
        """
        cutoff = self._clock() - older_than if older_than is not None else None
        with self._transaction() as conn:
            if cutoff is None:
                cursor = conn.execute(
                    "DELETE FROM sync_operations WHERE status = ?",
                    (OperationStatus.COMPLETED.value,),
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM sync_operations WHERE status = ? AND updated_at <= ?",
                    (OperationStatus.COMPLETED.value, cutoff),
                )
            removed = cursor.rowcount
        if removed:
            logger.info("Removed %d completed operations", removed)
        return removed

    def clear(self) -> int:
        """Delete every operation. Returns the number deleted."""
        with self._transaction() as conn:
            return conn.execute("DELETE FROM sync_operations").rowcount

    # === Export / import ===

    def export(self) -> list[dict[str, Any]]:
        """Dump all operations as plain dicts, in dequeue order."""
        return [op.to_dict() for op in self.query()]

    def import_operations(self, data: Iterable[dict[str, Any]]) -> int:
        """Load operations produced by export().

        Operations whose id already exists are skipped. Operations that
        were IN_PROGRESS are imported as PENDING.

        Returns:
            Number of operations imported.
        """
        imported = 0
        for item in data:
            op = SyncOperation.from_dict(item)
            if op.status == OperationStatus.IN_PROGRESS:
                op.status = OperationStatus.PENDING
            if self.get(op.id) is not None:
                continue
            self.enqueue(op)
            imported += 1
        logger.info("Imported %d operations", imported)
        return imported
