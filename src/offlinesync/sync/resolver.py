"""Conflict resolver.

This module provides:
- ConflictResolver: classifies a remote-reported conflict, picks a winner
  and applies the verdict to the operation store and the local store

Flow for a conflict reported during a drain:

    handle(op, error)
      ├─ detect()   versions agree?        ─► COMPLETED (ALREADY_SYNCED)
      ├─ CONFLICT   (record attached to the operation)
      ├─ resolve()  strategy
      │    ├─ remote wins                  ─► local store := remote, COMPLETED
      │    ├─ local or merged wins         ─► local store := winner, re-queued
      │    └─ MANUAL                       ─► stays CONFLICT until resolve_manually()
      └─ history    every record is kept

Re-queued operations are rewritten to match the remote state they now sit
on: a CREATE that met an existing record goes out as an UPDATE, an UPDATE
whose remote record is gone goes out as a CREATE, and a winning deletion
goes out as a DELETE. The remote revision becomes the expected version.

The resolver never reads entity data directly; it goes through the
gateway's read path.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from offlinesync.core.types import (
    ConflictType,
    EngineEvent,
    OperationKind,
    OperationStatus,
    ResolutionStrategy,
)
from offlinesync.sync.domain.comparators import ComparatorRegistry, parse_timestamp
from offlinesync.sync.domain.conflicts import classify, pick_winner
from offlinesync.sync.history import AUTO_RESOLVER
from offlinesync.sync.types import (
    ConflictRecord,
    OperationNotFoundError,
    Resolution,
    ResolutionOutcome,
    SyncError,
    SyncOperation,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinesync.remote.api import RemoteConflictError
    from offlinesync.sync.events import EventBus
    from offlinesync.sync.gateway import WriteThroughGateway
    from offlinesync.sync.history import ConflictHistory
    from offlinesync.sync.store import OperationStore

logger = logging.getLogger(__name__)


class ConflictResolver:
    """Detects, resolves and records conflicts."""

    def __init__(
        self,
        operations: OperationStore,
        gateway: WriteThroughGateway,
        history: ConflictHistory,
        events: EventBus,
        strategy: ResolutionStrategy = ResolutionStrategy.LAST_WRITE_WINS,
        window: float = 1.0,
        comparators: ComparatorRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the resolver.

        Args:
            operations: Operation store.
            gateway: Read path and local-only writes.
            history: Conflict audit log.
            events: Event bus for CONFLICT_DETECTED/CONFLICT_RESOLVED.
            strategy: Default strategy.
            window: Seconds within which two updates are concurrent.
            comparators: Per-entity comparators.
            clock: Source of Unix timestamps.
        """
        self._operations = operations
        self._gateway = gateway
        self._history = history
        self._events = events
        self._strategy = ResolutionStrategy(strategy)
        self._window = window
        self._comparators = comparators or ComparatorRegistry()
        self._clock = clock

    @property
    def strategy(self) -> ResolutionStrategy:
        """Default strategy."""
        return self._strategy

    def configure(self, strategy: ResolutionStrategy, window: float) -> None:
        """Change the default strategy and the concurrency window."""
        self._strategy = ResolutionStrategy(strategy)
        self._window = window

    # === Drain path ===

    def handle(self, op: SyncOperation, conflict: RemoteConflictError) -> Resolution:
        """Process a conflict reported for an IN_PROGRESS operation.

        Returns:
            The applied resolution.
        """
        record = self.detect(op, conflict)
        if record is None:
            self._gateway.acknowledge(op.entity_type, op.entity_id, conflict.remote_version)
            self._operations.update_status(op.id, OperationStatus.COMPLETED)
            logger.info("Operation %s already in sync with remote", op.id)
            return Resolution(ResolutionOutcome.ALREADY_SYNCED, message="Versions agree")

        self._operations.update_status(
            op.id, OperationStatus.CONFLICT, conflict=record.to_dict()
        )
        self._events.emit(EngineEvent.CONFLICT_DETECTED, {"conflict": record.to_dict()})
        logger.warning(
            "%s conflict on %s:%s (operation %s): %s",
            record.conflict_type.name,
            op.entity_type.value,
            op.entity_id,
            op.id,
            record.description,
        )

        resolution = self.resolve(op, record)
        self.apply(op, resolution)
        return resolution

    def detect(
        self, op: SyncOperation, conflict: RemoteConflictError
    ) -> ConflictRecord | None:
        """Classify a remote-reported conflict.

        Returns:
            A ConflictRecord, or None if local and remote actually agree.
        """
        comparator = self._comparators.get(op.entity_type)

        if op.kind == OperationKind.DELETE:
            local = None
        else:
            local = self._gateway.read(op.entity_type, op.entity_id)
            if local is None:
                local = op.payload
        remote = conflict.remote_payload

        local_ts = self._local_timestamp(op, local)
        remote_ts = parse_timestamp(conflict.remote_updated_at)
        if remote_ts is None:
            remote_ts = comparator.timestamp_of(remote)

        classification = classify(
            op.kind,
            local,
            remote,
            conflict.deleted,
            local_ts,
            remote_ts,
            self._window,
            comparator,
        )
        if classification is None:
            return None

        return ConflictRecord(
            operation_id=op.id,
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            conflict_type=classification.conflict_type,
            local_version=local,
            remote_version=remote,
            description=classification.description,
            detected_at=self._clock(),
            remote_updated_at=remote_ts,
            remote_revision=conflict.remote_version,
        )

    def resolve(
        self,
        op: SyncOperation,
        record: ConflictRecord,
        strategy: ResolutionStrategy | None = None,
    ) -> Resolution:
        """Pick a winner and record the decision in the history.

        Args:
            op: Operation that hit the conflict.
            record: Detected conflict (completed in place).
            strategy: Overrides the default strategy.
        """
        strategy = ResolutionStrategy(strategy or self._strategy)

        if strategy == ResolutionStrategy.MANUAL:
            self._history.add(record)
            return Resolution(
                ResolutionOutcome.DEFERRED,
                record=record,
                message="Manual resolution required",
            )

        now = self._clock()
        winner = self._winner(op, record, strategy, now)
        record.resolution_strategy = strategy
        record.resolved_payload = winner
        record.resolved_at = now
        record.resolved_by = AUTO_RESOLVER
        self._history.add(record)
        return self._verdict(record, winner)

    def apply(self, op: SyncOperation, resolution: Resolution) -> None:
        """Apply a verdict to the operation and the local store."""
        record = resolution.record
        if resolution.outcome == ResolutionOutcome.DEFERRED:
            logger.warning("Conflict on operation %s deferred for manual resolution", op.id)
            return
        if record is None:
            return

        if resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE:
            self._gateway.apply_remote(op.entity_type, op.entity_id, resolution.payload)
            self._gateway.acknowledge(op.entity_type, op.entity_id, record.remote_revision)
            self._operations.update_status(op.id, OperationStatus.COMPLETED)
        elif resolution.outcome == ResolutionOutcome.REQUEUE:
            self._gateway.apply_remote(op.entity_type, op.entity_id, resolution.payload)
            scheduled = self._operations.schedule_retry(
                op.id,
                payload=self._requeue_payload(op, resolution),
                kind=resolution.kind,
                base_version=resolution.base_version,
            )
            if not scheduled:
                resolution.message = "Resolved but retries exhausted"

        logger.info(
            "Conflict on operation %s resolved with %s: %s",
            op.id,
            record.resolution_strategy.name if record.resolution_strategy else "-",
            resolution.outcome.name,
        )
        self._events.emit(
            EngineEvent.CONFLICT_RESOLVED,
            {"conflict": record.to_dict(), "outcome": resolution.outcome.name},
        )

    # === Manual path ===

    def resolve_manually(
        self,
        operation_id: str,
        strategy: ResolutionStrategy | None = None,
        payload: dict[str, Any] | None = None,
        resolved_by: str = "user",
    ) -> Resolution:
        """Resolve a deferred conflict.

        Either ``strategy`` (any automatic strategy) or an explicit
        ``payload`` chosen by the user must be given.

        Raises:
            OperationNotFoundError: If no such operation exists.
            SyncError: If the operation is not waiting on a conflict.
            ValueError: If neither strategy nor payload is given.
        """
        op = self._operations.get(operation_id)
        if op is None:
            raise OperationNotFoundError(operation_id)
        if op.status != OperationStatus.CONFLICT:
            raise SyncError(f"Operation {operation_id} is {op.status.name}, not CONFLICT")

        record = self._pending_record(op)
        now = self._clock()
        if payload is not None:
            strategy = ResolutionStrategy.MANUAL
            winner: dict[str, Any] | None = dict(payload)
        elif strategy is not None and ResolutionStrategy(strategy) != ResolutionStrategy.MANUAL:
            strategy = ResolutionStrategy(strategy)
            winner = self._winner(op, record, strategy, now)
        else:
            raise ValueError("A strategy other than MANUAL or a payload is required")

        self._history.mark_resolved(record.id, strategy, winner, resolved_by, now)
        record.resolution_strategy = strategy
        record.resolved_payload = winner
        record.resolved_at = now
        record.resolved_by = resolved_by

        resolution = self._verdict(record, winner)
        self._gateway.apply_remote(op.entity_type, op.entity_id, winner)
        if resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE:
            self._gateway.acknowledge(op.entity_type, op.entity_id, record.remote_revision)
            self._operations.update_status(op.id, OperationStatus.COMPLETED)
        else:
            self._operations.reset_for_retry(
                op.id,
                payload=self._requeue_payload(op, resolution),
                kind=resolution.kind,
                base_version=resolution.base_version,
            )

        logger.info(
            "Conflict on operation %s resolved by %s with %s",
            op.id,
            resolved_by,
            strategy.name,
        )
        self._events.emit(
            EngineEvent.CONFLICT_RESOLVED,
            {"conflict": record.to_dict(), "outcome": resolution.outcome.name},
        )
        return resolution

    # === Internals ===

    def _local_timestamp(
        self, op: SyncOperation, local: dict[str, Any] | None
    ) -> float:
        ts = self._comparators.get(op.entity_type).timestamp_of(local)
        return ts if ts is not None else op.created_at

    def _winner(
        self,
        op: SyncOperation,
        record: ConflictRecord,
        strategy: ResolutionStrategy,
        now: float,
    ) -> dict[str, Any] | None:
        local = record.local_version
        remote = record.remote_version
        # Remote never had the record: nothing to compare against
        if (
            strategy == ResolutionStrategy.LAST_WRITE_WINS
            and record.conflict_type == ConflictType.CREATE_CONFLICT
            and remote is None
        ):
            return local
        return pick_winner(
            strategy,
            local,
            remote,
            self._local_timestamp(op, local),
            record.remote_updated_at,
            self._comparators.get(op.entity_type),
            now,
        )

    @staticmethod
    def _verdict(record: ConflictRecord, winner: dict[str, Any] | None) -> Resolution:
        if winner == record.remote_version:
            return Resolution(
                ResolutionOutcome.ACCEPT_REMOTE,
                record=record,
                payload=winner,
                message="Remote version kept",
            )
        if winner is None:
            kind = OperationKind.DELETE
        elif record.remote_version is None:
            kind = OperationKind.CREATE
        else:
            kind = OperationKind.UPDATE
        return Resolution(
            ResolutionOutcome.REQUEUE,
            record=record,
            payload=winner,
            message=f"Resolved version pushed as {kind.name}",
            kind=kind,
            base_version=record.remote_revision,
        )

    @staticmethod
    def _requeue_payload(op: SyncOperation, resolution: Resolution) -> dict[str, Any]:
        if resolution.payload is not None:
            return resolution.payload
        return {"id": op.entity_id}

    def _pending_record(self, op: SyncOperation) -> ConflictRecord:
        for record in reversed(self._history.get_for_operation(op.id)):
            if not record.is_resolved:
                return record
        raise SyncError(f"No unresolved conflict recorded for operation {op.id}")
