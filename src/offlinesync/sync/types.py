"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, PersistenceError, OperationNotFoundError: Exception classes
- SyncOperation: The unit of work held by the operation store
- ConflictRecord: Audit record of a detected divergence
- OperationFilter, QueueStats: Store query and statistics types
- SyncMetrics, DrainOutcome, DrainResult: Coordinator results
- ResolutionOutcome, Resolution: Conflict resolver verdicts
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from typing import Any

from offlinesync.core.errors import PersistenceError, SyncError  # noqa: F401
from offlinesync.core.types import (
    ConflictType,
    EntityType,
    OperationKind,
    OperationStatus,
    ResolutionStrategy,
)

DEFAULT_PRIORITY = 1
DEFAULT_MAX_RETRIES = 3


class OperationNotFoundError(SyncError):
    """No operation with the given id."""

    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(f"Operation not found: {operation_id}")


# =============================================================================
# Operations
# =============================================================================


@dataclass
class SyncOperation:
    """One queued intent to create/update/delete a remote entity.

    Attributes:
        id: Unique identifier generated at enqueue time
        kind: CREATE, UPDATE or DELETE
        entity_type: Domain entity affected
        entity_id: Local identifier of the entity
        payload: Snapshot of the entity at enqueue time (opaque)
        status: Current lifecycle status
        priority: Higher drains first
        retry_count: Failed or conflicting attempts so far
        max_retries: Attempts allowed before terminal FAILED
        created_at: Unix timestamp of enqueue
        updated_at: Unix timestamp of the last status change
        last_attempt_at: Unix timestamp of the last IN_PROGRESS transition
        next_attempt_at: When a RETRY_SCHEDULED operation becomes PENDING
        base_version: Remote version the payload was based on, if known
        error_message: Last error (FAILED only)
        conflict_detail: Serialized conflict (CONFLICT only)
    """

    id: str
    kind: OperationKind
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any]
    status: OperationStatus = OperationStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_attempt_at: float | None = None
    next_attempt_at: float | None = None
    base_version: int | None = None
    error_message: str | None = None
    conflict_detail: dict[str, Any] | None = None

    @classmethod
    def create(
        cls,
        kind: OperationKind,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_version: int | None = None,
        now: float | None = None,
    ) -> SyncOperation:
        """Create a new PENDING operation with a generated id."""
        timestamp = time.time() if now is None else now
        return cls(
            id=uuid.uuid4().hex,
            kind=OperationKind(kind),
            entity_type=EntityType(entity_type),
            entity_id=entity_id,
            payload=dict(payload),
            priority=priority,
            max_retries=max_retries,
            created_at=timestamp,
            updated_at=timestamp,
            base_version=base_version,
        )

    @property
    def retries_exhausted(self) -> bool:
        """Check if no automatic retry is left."""
        return self.retry_count >= self.max_retries

    @property
    def is_terminal(self) -> bool:
        """COMPLETED, or FAILED with no automatic retry left."""
        if self.status == OperationStatus.COMPLETED:
            return True
        return self.status == OperationStatus.FAILED and self.retries_exhausted

    def to_dict(self) -> dict[str, Any]:
        """Serialize for export and event payloads."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["entity_type"] = self.entity_type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncOperation:
        """Create from a dict produced by to_dict()."""
        return cls(
            id=data["id"],
            kind=OperationKind(data["kind"]),
            entity_type=EntityType(data["entity_type"]),
            entity_id=data["entity_id"],
            payload=data.get("payload") or {},
            status=OperationStatus(data.get("status", OperationStatus.PENDING)),
            priority=data.get("priority", DEFAULT_PRIORITY),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", DEFAULT_MAX_RETRIES),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            last_attempt_at=data.get("last_attempt_at"),
            next_attempt_at=data.get("next_attempt_at"),
            base_version=data.get("base_version"),
            error_message=data.get("error_message"),
            conflict_detail=data.get("conflict_detail"),
        )

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"SyncOperation({self.kind.name} {self.entity_type.name}:{self.entity_id}, "
            f"status={self.status.name}, priority={self.priority})"
        )


@dataclass
class OperationFilter:
    """Criteria for OperationStore.query(). None means "any"."""

    status: OperationStatus | None = None
    entity_type: EntityType | None = None
    entity_id: str | None = None


@dataclass
class QueueStats:
    """Operation counts by status."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    conflict: int = 0
    retry_scheduled: int = 0


# =============================================================================
# Conflicts
# =============================================================================


@dataclass
class ConflictRecord:
    """Divergence between the local and remote versions of an entity.

    Resolution fields stay None while the conflict is deferred and are
    written exactly once when it is resolved.

    Attributes:
        operation_id: The SyncOperation that hit the conflict
        entity_type: Entity affected
        entity_id: Entity affected
        conflict_type: Classification of the divergence
        local_version: Local payload (None if deleted locally)
        remote_version: Remote payload (None if missing remotely)
        description: Human-readable explanation
        detected_at: Unix timestamp of detection
        id: Unique identifier of the record
        resolution_strategy: Strategy applied
        resolved_payload: Winning payload (None when the winner is a deletion)
        resolved_at: Unix timestamp of the resolution
        resolved_by: "auto" or a human identifier
    """

    operation_id: str
    entity_type: EntityType
    entity_id: str
    conflict_type: ConflictType
    local_version: dict[str, Any] | None
    remote_version: dict[str, Any] | None
    description: str = ""
    detected_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    remote_updated_at: float | None = None
    remote_revision: int | None = None
    resolution_strategy: ResolutionStrategy | None = None
    resolved_payload: dict[str, Any] | None = None
    resolved_at: float | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        """Check if a resolution has been recorded."""
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for conflict_detail and exports."""
        data = asdict(self)
        data["entity_type"] = self.entity_type.value
        data["conflict_type"] = self.conflict_type.value
        data["resolution_strategy"] = (
            self.resolution_strategy.value if self.resolution_strategy else None
        )
        return data


class ResolutionOutcome(Enum):
    """Verdict of the conflict resolver."""

    ALREADY_SYNCED = auto()  # Versions agree, nothing to push
    ACCEPT_REMOTE = auto()  # Remote state wins, operation is done
    REQUEUE = auto()  # Push the resolved payload again
    DEFERRED = auto()  # Manual resolution required


@dataclass
class Resolution:
    """Result of resolving a conflict.

    For REQUEUE, ``kind`` and ``base_version`` describe the operation to
    push next: a local CREATE that collided with an existing record is
    pushed again as an UPDATE on top of the remote revision.
    """

    outcome: ResolutionOutcome
    record: ConflictRecord | None = None
    payload: dict[str, Any] | None = None
    message: str = ""
    kind: OperationKind | None = None
    base_version: int | None = None


# =============================================================================
# Coordinator results
# =============================================================================


class DrainOutcome(Enum):
    """How a drain request ended."""

    COMPLETED = auto()  # Drain ran (possibly with per-operation failures)
    OFFLINE = auto()  # Network unreachable, nothing touched
    BUSY = auto()  # Another drain is active
    FAILED = auto()  # Drain aborted by a fatal error


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""

    outcome: DrainOutcome
    processed: int = 0
    successful: int = 0
    failed: int = 0
    conflicts: int = 0
    network_errors: int = 0
    batches: int = 0
    duration_ms: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None

    @property
    def ran(self) -> bool:
        """Check if the drain actually executed."""
        return self.outcome in (DrainOutcome.COMPLETED, DrainOutcome.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for event payloads."""
        data = asdict(self)
        data["outcome"] = self.outcome.name
        return data


@dataclass
class SyncMetrics:
    """Cumulative metrics across drain cycles."""

    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    pending_operations: int = 0
    conflict_count: int = 0
    network_errors: int = 0
    average_sync_time_ms: float = 0.0
    last_sync_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for status output."""
        return asdict(self)
