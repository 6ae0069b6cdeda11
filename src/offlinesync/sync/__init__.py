"""Offline-first sync engine.

Architecture:
    WriteThroughGateway → OperationStore ← SyncCoordinator ← SyncScheduler
                                                 │
                                          ConflictResolver → ConflictHistory

Components:
- **WriteThroughGateway**: Local write first, then exactly one queued operation
- **OperationStore**: Durable SQLite queue with priority/FIFO dequeue
- **SyncCoordinator**: Drain cycles in sequential batches, one drain at a time
- **SyncScheduler**: Periodic tick, debounced reconnection drain, daily purge
- **ConflictResolver**: Classification and strategies, audited in ConflictHistory
- **SyncEngine**: Composition root exposing the public surface
- **EventBus**: Synchronous engine notifications
"""

from offlinesync.sync.types import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    ConflictRecord,
    DrainOutcome,
    DrainResult,
    OperationFilter,
    OperationNotFoundError,
    PersistenceError,
    QueueStats,
    Resolution,
    ResolutionOutcome,
    SyncError,
    SyncMetrics,
    SyncOperation,
)
from offlinesync.sync.domain import (
    ComparatorRegistry,
    FieldComparator,
    InvalidTransitionError,
)
from offlinesync.sync.retry import compute_backoff, is_network_error
from offlinesync.sync.events import EventBus
from offlinesync.sync.store import OperationStore
from offlinesync.sync.history import ConflictHistory, ConflictStats
from offlinesync.sync.gateway import WriteThroughGateway
from offlinesync.sync.resolver import ConflictResolver
from offlinesync.sync.coordinator import SyncCoordinator
from offlinesync.sync.scheduler import SchedulerState, SyncScheduler
from offlinesync.sync.engine import EngineStatus, SyncEngine

__all__ = [
    # Types
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_PRIORITY",
    "ConflictRecord",
    "DrainOutcome",
    "DrainResult",
    "OperationFilter",
    "QueueStats",
    "Resolution",
    "ResolutionOutcome",
    "SyncMetrics",
    "SyncOperation",
    # Errors
    "InvalidTransitionError",
    "OperationNotFoundError",
    "PersistenceError",
    "SyncError",
    # Domain
    "ComparatorRegistry",
    "FieldComparator",
    # Retry
    "compute_backoff",
    "is_network_error",
    # Components
    "ConflictHistory",
    "ConflictResolver",
    "ConflictStats",
    "EngineStatus",
    "EventBus",
    "OperationStore",
    "SchedulerState",
    "SyncCoordinator",
    "SyncEngine",
    "SyncScheduler",
    "WriteThroughGateway",
]
