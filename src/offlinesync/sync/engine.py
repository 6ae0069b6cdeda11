"""Sync engine facade.

This module provides:
- SyncEngine: composition root wiring the gateway, the operation store,
  the coordinator, the scheduler and the conflict resolver around the
  injected collaborators (remote API, local entity store, reachability)
- EngineStatus: snapshot returned by get_status()

Usage:
    remote = HTTPRemoteClient(server_config)
    reachability = HealthCheckReachability(remote.health_check)
    engine = SyncEngine.open(db_path, remote, reachability)
    engine.start()

    engine.create(EntityType.CLIENT, {"name": "ACME"})  # returns at once

    engine.stop()
    engine.close()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from offlinesync.core.config import SyncConfig
from offlinesync.core.types import (
    EngineEvent,
    EntityType,
    OperationKind,
    ResolutionStrategy,
    SyncState,
)
from offlinesync.local.store import SQLiteEntityStore
from offlinesync.sync.coordinator import SyncCoordinator
from offlinesync.sync.events import EventBus
from offlinesync.sync.gateway import WriteThroughGateway
from offlinesync.sync.history import ConflictHistory, ConflictStats
from offlinesync.sync.resolver import ConflictResolver
from offlinesync.sync.scheduler import SECONDS_PER_DAY, SyncScheduler
from offlinesync.sync.store import OperationStore
from offlinesync.sync.types import (
    DEFAULT_PRIORITY,
    ConflictRecord,
    DrainResult,
    OperationFilter,
    QueueStats,
    Resolution,
    SyncMetrics,
    SyncOperation,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from offlinesync.local.store import EntityStore
    from offlinesync.reachability import Reachability
    from offlinesync.remote.api import RemoteAPI
    from offlinesync.sync.domain.comparators import ComparatorRegistry

logger = logging.getLogger(__name__)


@dataclass
class EngineStatus:
    """Snapshot of the engine for status display."""

    running: bool
    reachable: bool
    state: SyncState
    metrics: SyncMetrics
    queue: QueueStats
    conflicts: ConflictStats = field(default_factory=ConflictStats)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "running": self.running,
            "reachable": self.reachable,
            "state": self.state.value,
            "metrics": self.metrics.to_dict(),
            "queue": vars(self.queue).copy(),
            "conflicts": vars(self.conflicts).copy(),
            "last_error": self.last_error,
        }


class SyncEngine:
    """Offline-first sync engine."""

    def __init__(
        self,
        remote: RemoteAPI,
        entities: EntityStore,
        reachability: Reachability,
        operations: OperationStore,
        history: ConflictHistory,
        config: SyncConfig | None = None,
        comparators: ComparatorRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Wire the engine.

        Args:
            remote: Remote API collaborator.
            entities: Local entity store collaborator.
            reachability: Network reachability collaborator.
            operations: Durable operation store.
            history: Conflict history.
            config: Engine configuration (defaults if None).
            comparators: Per-entity conflict comparators.
            sleep: Pause between batches (injectable for tests).
            clock: Source of Unix timestamps.
        """
        self._config = config or SyncConfig()
        self._reachability = reachability
        self._operations = operations
        self._history = history
        self._closables: list[Any] = []
        self._last_error: str | None = None

        self._events = EventBus()
        self._gateway = WriteThroughGateway(
            entities, operations, self._events, self._config, clock=clock
        )
        self._resolver = ConflictResolver(
            operations,
            self._gateway,
            history,
            self._events,
            strategy=self._config.conflict_strategy,
            window=self._config.conflict_window_ms / 1000,
            comparators=comparators,
            clock=clock,
        )
        self._coordinator = SyncCoordinator(
            operations,
            remote,
            self._gateway,
            self._resolver,
            reachability,
            self._events,
            self._config,
            sleep=sleep,
            clock=clock,
        )
        self._scheduler = SyncScheduler(
            self._coordinator, operations, reachability, self._config
        )

        reachability.subscribe(self._on_reachability_changed)
        self._events.subscribe(EngineEvent.SYNC_FAILED, self._on_sync_failed)
        self._events.subscribe(EngineEvent.SYNC_COMPLETED, self._on_sync_completed)

    @classmethod
    def open(
        cls,
        db_path: Path | str,
        remote: RemoteAPI,
        reachability: Reachability,
        config: SyncConfig | None = None,
        comparators: ComparatorRegistry | None = None,
    ) -> SyncEngine:
        """Build an engine whose stores all live in one SQLite file."""
        operations = OperationStore(db_path)
        history = ConflictHistory(db_path)
        entities = SQLiteEntityStore(Path(db_path))
        engine = cls(
            remote,
            entities,
            reachability,
            operations,
            history,
            config=config,
            comparators=comparators,
        )
        engine._closables.extend([entities, history, operations])
        return engine

    # === Collaborators ===

    @property
    def config(self) -> SyncConfig:
        """Current configuration."""
        return self._config

    @property
    def events(self) -> EventBus:
        """Event bus."""
        return self._events

    @property
    def operations(self) -> OperationStore:
        """Operation store."""
        return self._operations

    @property
    def gateway(self) -> WriteThroughGateway:
        """Mutation entry point."""
        return self._gateway

    @property
    def coordinator(self) -> SyncCoordinator:
        """Drain executor."""
        return self._coordinator

    @property
    def scheduler(self) -> SyncScheduler:
        """Drain scheduler."""
        return self._scheduler

    # === Mutations ===

    def apply(
        self,
        kind: OperationKind,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any] | None:
        """Apply a mutation locally and queue it. See WriteThroughGateway.apply."""
        return self._gateway.apply(kind, entity_type, entity_id, payload, priority)

    def create(
        self,
        entity_type: EntityType,
        payload: dict[str, Any],
        entity_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any]:
        """Create an entity."""
        return self._gateway.create(entity_type, payload, entity_id, priority)

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any]:
        """Replace an entity."""
        return self._gateway.update(entity_type, entity_id, payload, priority)

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any] | None:
        """Delete an entity."""
        return self._gateway.delete(entity_type, entity_id, priority)

    def read(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Read the local version of an entity."""
        return self._gateway.read(entity_type, entity_id)

    # === Lifecycle ===

    def start(self) -> None:
        """Start scheduled draining."""
        self._scheduler.start()

    def stop(self) -> None:
        """Stop scheduled draining. A drain in flight completes."""
        self._scheduler.stop()

    def manual_sync(self) -> DrainResult:
        """Drain now. BUSY if a drain is already running."""
        return self._scheduler.manual_sync()

    def close(self) -> None:
        """Stop the engine and close the stores it opened."""
        self.stop()
        self._reachability.unsubscribe(self._on_reachability_changed)
        for closable in self._closables:
            closable.close()
        self._closables.clear()

    # === Status ===

    def get_metrics(self) -> SyncMetrics:
        """Cumulative metrics, with the current number of queued operations."""
        metrics = self._coordinator.metrics
        stats = self._operations.stats()
        metrics.pending_operations = stats.pending + stats.retry_scheduled
        return metrics

    def get_status(self) -> EngineStatus:
        """Snapshot of the engine."""
        reachable = self._reachability.is_reachable()
        if not reachable:
            state = SyncState.OFFLINE
        elif self._coordinator.is_active:
            state = SyncState.SYNCING
        elif self._last_error is not None:
            state = SyncState.ERROR
        else:
            state = SyncState.IDLE
        return EngineStatus(
            running=self._scheduler.is_running,
            reachable=reachable,
            state=state,
            metrics=self.get_metrics(),
            queue=self._operations.stats(),
            conflicts=self._history.stats(),
            last_error=self._last_error,
        )

    def update_config(self, partial: dict[str, Any]) -> SyncConfig:
        """Change configuration at runtime.

        Raises:
            ConfigError: If a key is unknown or a value invalid. The
                previous configuration stays in effect.
        """
        config = self._config.merged(partial)
        self._config = config
        self._gateway.update_config(config)
        self._coordinator.update_config(config)
        self._resolver.configure(config.conflict_strategy, config.conflict_window_ms / 1000)
        self._scheduler.reschedule(config)
        logger.info("Configuration updated: %s", ", ".join(sorted(partial)))
        return config

    def subscribe(
        self,
        event: EngineEvent,
        callback: Callable[[dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Listen to an engine event. Returns the unsubscribe function."""
        return self._events.subscribe(event, callback)

    # === Operations ===

    def list_operations(self, criteria: OperationFilter | None = None) -> list[SyncOperation]:
        """List operations, in dequeue order."""
        return self._operations.query(criteria)

    def retry_operation(self, operation_id: str) -> SyncOperation:
        """Manually retry a FAILED or CONFLICT operation."""
        op = self._operations.reset_for_retry(operation_id)
        self._events.emit(EngineEvent.OPERATION_UPDATED, {"operation": op.to_dict()})
        return op

    def clear_operation(self, operation_id: str) -> None:
        """Remove a COMPLETED, FAILED or CONFLICT operation."""
        self._operations.remove(operation_id)

    def purge_completed(self, older_than_days: float | None = None) -> int:
        """Remove completed operations (all of them if no age is given)."""
        older_than = older_than_days * SECONDS_PER_DAY if older_than_days is not None else None
        return self._operations.remove_completed(older_than)

    def export_operations(self) -> list[dict[str, Any]]:
        """Dump the queue."""
        return self._operations.export()

    def import_operations(self, data: Iterable[dict[str, Any]]) -> int:
        """Load a dump produced by export_operations()."""
        return self._operations.import_operations(data)

    # === Conflicts ===

    def list_conflicts(self, pending_only: bool = False) -> list[ConflictRecord]:
        """Conflict history, or only the unresolved records."""
        if pending_only:
            return self._history.pending()
        return self._history.list()

    def resolve_conflict(
        self,
        operation_id: str,
        strategy: ResolutionStrategy | None = None,
        payload: dict[str, Any] | None = None,
        resolved_by: str = "user",
    ) -> Resolution:
        """Resolve a deferred conflict. See ConflictResolver.resolve_manually."""
        return self._resolver.resolve_manually(operation_id, strategy, payload, resolved_by)

    # === Listeners ===

    def _on_reachability_changed(self, reachable: bool) -> None:
        self._events.emit(EngineEvent.REACHABILITY_CHANGED, {"reachable": reachable})

    def _on_sync_failed(self, data: dict[str, Any]) -> None:
        self._last_error = data.get("result", {}).get("error")

    def _on_sync_completed(self, data: dict[str, Any]) -> None:
        self._last_error = None
