"""Sync coordinator: executes drain cycles.

This module provides:
- SyncCoordinator: pulls PENDING operations in batches and pushes them to
  the remote API, recording the outcome of each one

Drain cycle:
    1. Unreachable network          ─► OFFLINE, nothing touched
    2. Another drain active         ─► BUSY (non-blocking guard)
    3. Due RETRY_SCHEDULED          ─► PENDING
    4. Batches of batch_size operations, processed one at a time:
         success                    ─► COMPLETED
         RemoteConflictError        ─► ConflictResolver
         PermanentRemoteError       ─► FAILED (terminal)
         anything else              ─► FAILED, RETRY_SCHEDULED with backoff
    5. Fixed pause between batches
    6. Metrics updated, SYNC_COMPLETED emitted

An exception raised by one operation never aborts the drain. A
PersistenceError does: it is reported through SYNC_FAILED and re-raised.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import TYPE_CHECKING

from offlinesync.core.types import EngineEvent, OperationKind, OperationStatus
from offlinesync.remote.api import PermanentRemoteError, RemoteConflictError
from offlinesync.sync.retry import compute_backoff, is_network_error
from offlinesync.sync.types import (
    DrainOutcome,
    DrainResult,
    OperationFilter,
    PersistenceError,
    ResolutionOutcome,
    SyncMetrics,
    SyncOperation,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinesync.core.config import SyncConfig
    from offlinesync.reachability import Reachability
    from offlinesync.remote.api import RemoteAPI, RemoteResult
    from offlinesync.sync.events import EventBus
    from offlinesync.sync.gateway import WriteThroughGateway
    from offlinesync.sync.resolver import ConflictResolver
    from offlinesync.sync.store import OperationStore

logger = logging.getLogger(__name__)

# Weight of the previous average in the sync time EMA
EMA_DECAY = 0.7


class SyncCoordinator:
    """Runs drain cycles, one at a time.

    Usage:
        coordinator = SyncCoordinator(store, remote, gateway, resolver,
                                      reachability, events, config)
        result = coordinator.drain()
        if result.outcome == DrainOutcome.BUSY:
            ...
    """

    def __init__(
        self,
        operations: OperationStore,
        remote: RemoteAPI,
        gateway: WriteThroughGateway,
        resolver: ConflictResolver,
        reachability: Reachability,
        events: EventBus,
        config: SyncConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the coordinator.

        Args:
            operations: Operation store.
            remote: Remote API collaborator.
            gateway: Used to record remote versions locally.
            resolver: Handles remote-reported conflicts.
            reachability: Network signal checked before each drain.
            events: Event bus.
            config: Batch size, delays and retry settings.
            sleep: Pause function (injectable for tests).
            clock: Source of Unix timestamps.
        """
        self._operations = operations
        self._remote = remote
        self._gateway = gateway
        self._resolver = resolver
        self._reachability = reachability
        self._events = events
        self._config = config
        self._sleep = sleep
        self._clock = clock

        # Held for the whole drain; never waited on
        self._active = threading.Lock()

        self._metrics = SyncMetrics()
        self._metrics_lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        """Check if a drain is running."""
        return self._active.locked()

    @property
    def metrics(self) -> SyncMetrics:
        """Snapshot of the cumulative metrics."""
        with self._metrics_lock:
            return replace(self._metrics)

    def update_config(self, config: SyncConfig) -> None:
        """Use a new configuration from the next batch on."""
        self._config = config

    def drain(self) -> DrainResult:
        """Run one drain cycle.

        Returns:
            The drain result. OFFLINE and BUSY results did not touch the
            queue.

        Raises:
            PersistenceError: If the operation store failed.
        """
        if not self._reachability.is_reachable():
            logger.debug("Network unreachable, drain skipped")
            return DrainResult(DrainOutcome.OFFLINE)

        if not self._active.acquire(blocking=False):
            logger.debug("Drain already in progress")
            return DrainResult(DrainOutcome.BUSY, error="Sync already in progress")

        try:
            return self._drain()
        finally:
            self._active.release()

    # === Internals ===

    def _drain(self) -> DrainResult:
        started = self._clock()
        result = DrainResult(DrainOutcome.COMPLETED, started_at=started)
        self._events.emit(EngineEvent.SYNC_STARTED, {"started_at": started})

        try:
            self._operations.promote_due_retries(started)
            while True:
                taken = self._run_batch(result)
                if taken < self._config.batch_size or not self._has_pending():
                    break
                if not self._reachability.is_reachable():
                    logger.info("Network lost, drain stopped after %d batches", result.batches)
                    break
                self._sleep(self._config.inter_batch_delay)
        except Exception as e:
            result.outcome = DrainOutcome.FAILED
            result.error = str(e)
            self._finish(result)
            logger.error("Drain aborted: %s", e)
            self._events.emit(EngineEvent.SYNC_FAILED, {"result": result.to_dict()})
            raise

        self._finish(result)
        if result.processed:
            logger.info(
                "Drain finished: %d processed, %d ok, %d failed, %d conflicts in %.0fms",
                result.processed,
                result.successful,
                result.failed,
                result.conflicts,
                result.duration_ms,
            )
        self._events.emit(EngineEvent.SYNC_COMPLETED, {"result": result.to_dict()})
        return result

    def _run_batch(self, result: DrainResult) -> int:
        """Process up to batch_size operations. Returns how many were taken."""
        taken = 0
        while taken < self._config.batch_size:
            op = self._operations.dequeue_next()
            if op is None:
                break
            if taken == 0:
                result.batches += 1
            taken += 1
            self._emit_updated(op.id)
            self._process(op, result)
        return taken

    def _has_pending(self) -> bool:
        return bool(
            self._operations.query(OperationFilter(status=OperationStatus.PENDING), limit=1)
        )

    def _process(self, op: SyncOperation, result: DrainResult) -> None:
        """Push one IN_PROGRESS operation and record the outcome."""
        result.processed += 1
        try:
            remote_result = self._call_remote(op)
        except RemoteConflictError as e:
            self._on_conflict(op, e, result)
        except PersistenceError:
            raise
        except PermanentRemoteError as e:
            self._on_failure(op, e, result, retryable=False)
        except Exception as e:
            self._on_failure(op, e, result)
        else:
            if op.kind != OperationKind.DELETE:
                self._gateway.acknowledge(op.entity_type, op.entity_id, remote_result.version)
            if self._operations.update_status(op.id, OperationStatus.COMPLETED):
                result.successful += 1
            self._emit_updated(op.id)

    def _call_remote(self, op: SyncOperation) -> RemoteResult:
        if op.kind == OperationKind.CREATE:
            return self._remote.create(op.entity_type, op.entity_id, op.payload)
        if op.kind == OperationKind.UPDATE:
            return self._remote.update(
                op.entity_type, op.entity_id, op.payload, expected_version=op.base_version
            )
        return self._remote.delete(op.entity_type, op.entity_id, expected_version=op.base_version)

    def _on_conflict(
        self, op: SyncOperation, error: RemoteConflictError, result: DrainResult
    ) -> None:
        try:
            resolution = self._resolver.handle(op, error)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Conflict handling failed for operation %s", op.id)
            self._on_failure(op, e, result)
            return

        if resolution.outcome == ResolutionOutcome.ALREADY_SYNCED:
            result.successful += 1
        else:
            result.conflicts += 1
            if resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE:
                result.successful += 1
        self._emit_updated(op.id)

    def _on_failure(
        self,
        op: SyncOperation,
        error: Exception,
        result: DrainResult,
        retryable: bool = True,
    ) -> None:
        if is_network_error(error):
            result.network_errors += 1
        result.failed += 1

        current = self._operations.get(op.id) or op
        if current.status not in (OperationStatus.IN_PROGRESS, OperationStatus.CONFLICT):
            # Verdict already applied before the error
            logger.warning("Operation %s failed after resolution: %s", op.id, error)
            return
        # A CONFLICT already counted this attempt
        attempt = current.retry_count
        if current.status == OperationStatus.IN_PROGRESS:
            attempt += 1
        delay = compute_backoff(
            attempt,
            initial_backoff=self._config.retry_delay_ms / 1000,
            max_backoff=self._config.max_retry_delay_ms / 1000,
            backoff_multiplier=self._config.backoff_multiplier,
        )
        self._operations.update_status(
            op.id,
            OperationStatus.FAILED,
            error=str(error) or type(error).__name__,
            retry_delay=delay,
            retryable=retryable,
        )
        self._emit_updated(op.id)

    def _emit_updated(self, operation_id: str) -> None:
        op = self._operations.get(operation_id)
        if op is not None:
            self._events.emit(EngineEvent.OPERATION_UPDATED, {"operation": op.to_dict()})

    def _finish(self, result: DrainResult) -> None:
        """Stamp the result and fold it into the cumulative metrics."""
        result.finished_at = self._clock()
        started = result.started_at if result.started_at is not None else result.finished_at
        result.duration_ms = (result.finished_at - started) * 1000

        with self._metrics_lock:
            m = self._metrics
            m.total_operations += result.processed
            m.successful_operations += result.successful
            m.failed_operations += result.failed
            m.conflict_count += result.conflicts
            m.network_errors += result.network_errors
            if m.last_sync_at is None:
                m.average_sync_time_ms = result.duration_ms
            else:
                m.average_sync_time_ms = (
                    EMA_DECAY * m.average_sync_time_ms + (1 - EMA_DECAY) * result.duration_ms
                )
            m.last_sync_at = result.finished_at
