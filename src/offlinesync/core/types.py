"""Shared types for offlinesync.

This module defines the enums used across the operation store, the
coordinator, the conflict resolver and the CLI. Values are strings so
they can be persisted verbatim in SQLite and printed as-is.
"""

from __future__ import annotations

from enum import Enum


class OperationKind(str, Enum):
    """Kind of mutation carried by a SyncOperation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntityType(str, Enum):
    """Business entities that can be synchronized."""

    QUOTE = "quote"
    CLIENT = "client"
    SITE = "site"
    SUPPLY_ITEM = "supply_item"


class OperationStatus(str, Enum):
    """Lifecycle status of a queued operation.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED | CONFLICT
    FAILED | CONFLICT -> RETRY_SCHEDULED -> PENDING
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"
    RETRY_SCHEDULED = "retry_scheduled"


class ConflictType(str, Enum):
    """How local and remote versions diverged."""

    CREATE_CONFLICT = "create_conflict"  # Remote missing, or create collided
    UPDATE_UPDATE = "update_update"  # Concurrent updates
    UPDATE_DELETE = "update_delete"  # Local updated, remote deleted
    DELETE_UPDATE = "delete_update"  # Local deleted, remote updated


class ResolutionStrategy(str, Enum):
    """Strategy applied to a detected conflict."""

    LAST_WRITE_WINS = "last_write_wins"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    MANUAL = "manual"


class SyncState(str, Enum):
    """Coarse engine state, for status display."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


class EngineEvent(str, Enum):
    """Events published on the engine's event bus."""

    OPERATION_QUEUED = "operation_queued"
    OPERATION_UPDATED = "operation_updated"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    REACHABILITY_CHANGED = "reachability_changed"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
