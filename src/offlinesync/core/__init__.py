"""Core module - Shared configuration and enums."""

from offlinesync.core.config import ConfigError, ServerConfig, SyncConfig
from offlinesync.core.errors import PersistenceError, SyncError
from offlinesync.core.types import (
    ConflictType,
    EngineEvent,
    EntityType,
    OperationKind,
    OperationStatus,
    ResolutionStrategy,
    SyncState,
)

__all__ = [
    # Config
    "ConfigError",
    "ServerConfig",
    "SyncConfig",
    # Errors
    "PersistenceError",
    "SyncError",
    # Types
    "ConflictType",
    "EngineEvent",
    "EntityType",
    "OperationKind",
    "OperationStatus",
    "ResolutionStrategy",
    "SyncState",
]
