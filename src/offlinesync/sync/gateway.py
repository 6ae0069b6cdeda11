"""Write-through gateway: the single mutation entry point.

Every entity change is written to the local entity store first and then
queued as exactly one SyncOperation. The caller gets the local result back
immediately; the remote is updated later by the coordinator.

    apply() ─► EntityStore.put/delete ─► OperationStore.enqueue ─► OPERATION_QUEUED

If the local write fails nothing is queued and the error propagates. If the
enqueue fails the local write is undone before the error propagates. When
sync is disabled the change stays local-only and no operation is created.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, cast

from offlinesync.core.types import EngineEvent, EntityType, OperationKind
from offlinesync.sync.types import DEFAULT_PRIORITY, SyncOperation

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinesync.core.config import SyncConfig
    from offlinesync.local.store import EntityStore
    from offlinesync.sync.events import EventBus
    from offlinesync.sync.store import OperationStore

logger = logging.getLogger(__name__)


class WriteThroughGateway:
    """Applies mutations locally and queues them for sync."""

    def __init__(
        self,
        entities: EntityStore,
        operations: OperationStore,
        events: EventBus,
        config: SyncConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entities = entities
        self._operations = operations
        self._events = events
        self._config = config
        self._clock = clock

    def update_config(self, config: SyncConfig) -> None:
        """Use a new configuration for subsequent mutations."""
        self._config = config

    def apply(
        self,
        kind: OperationKind,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any] | None:
        """Apply a mutation locally and queue it.

        Args:
            kind: CREATE, UPDATE or DELETE.
            entity_type: Entity collection.
            entity_id: Entity id.
            payload: New entity snapshot (ignored for DELETE).
            priority: Queue priority, higher drains first.

        Returns:
            The locally stored entity, or the removed snapshot for DELETE
            (None if there was nothing to delete).

        Raises:
            ValueError: If CREATE/UPDATE is called without a payload.
            PersistenceError: If the local write or the enqueue fails.
        """
        kind = OperationKind(kind)
        entity_type = EntityType(entity_type)

        if kind == OperationKind.DELETE:
            entity = self._entities.delete(entity_type, entity_id)
            previous = entity
            op_payload = entity if entity is not None else {"id": entity_id}
        else:
            if payload is None:
                raise ValueError(f"{kind.name} requires a payload")
            previous = self._entities.get(entity_type, entity_id)
            entity = self._entities.put(entity_type, entity_id, payload)
            op_payload = entity

        if not self._config.sync_enabled:
            logger.debug(
                "Sync disabled, %s %s:%s kept local", kind.name, entity_type.value, entity_id
            )
            return entity

        op = SyncOperation.create(
            kind,
            entity_type,
            entity_id,
            op_payload,
            priority=priority,
            max_retries=self._config.max_retries,
            base_version=self._base_version(op_payload),
            now=self._clock(),
        )
        try:
            self._operations.enqueue(op)
        except Exception:
            logger.error(
                "Could not queue %s %s:%s, undoing local write",
                kind.name,
                entity_type.value,
                entity_id,
            )
            self._restore(entity_type, entity_id, previous)
            raise
        logger.debug("Queued %r", op)
        self._events.emit(EngineEvent.OPERATION_QUEUED, {"operation": op.to_dict()})
        return entity

    def create(
        self,
        entity_type: EntityType,
        payload: dict[str, Any],
        entity_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any]:
        """Create an entity. The id is taken from the payload or generated."""
        entity_id = entity_id or str(payload.get("id") or uuid.uuid4().hex)
        entity = self.apply(
            OperationKind.CREATE,
            entity_type,
            entity_id,
            {**payload, "id": entity_id},
            priority,
        )
        return cast("dict[str, Any]", entity)

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any]:
        """Replace an entity."""
        entity = self.apply(OperationKind.UPDATE, entity_type, entity_id, payload, priority)
        return cast("dict[str, Any]", entity)

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        priority: int = DEFAULT_PRIORITY,
    ) -> dict[str, Any] | None:
        """Delete an entity."""
        return self.apply(OperationKind.DELETE, entity_type, entity_id, None, priority)

    # === Resolver access ===

    def read(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        """Current local version of an entity."""
        return self._entities.get(EntityType(entity_type), entity_id)

    def apply_remote(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any] | None,
    ) -> None:
        """Write resolved state locally without queuing anything.

        Args:
            payload: Winning version, or None if the winner is a deletion.
        """
        entity_type = EntityType(entity_type)
        if payload is None:
            self._entities.delete(entity_type, entity_id)
        else:
            self._entities.put(entity_type, entity_id, payload)
        logger.debug("Applied resolved state of %s:%s locally", entity_type.value, entity_id)

    def acknowledge(
        self, entity_type: EntityType, entity_id: str, version: int | None
    ) -> None:
        """Record the remote version of a synced entity.

        The local copy and every operation still waiting on the entity are
        moved to ``version``, so later mutations and queued ones carry it as
        their expected version.
        """
        if version is None:
            return
        entity_type = EntityType(entity_type)
        self._operations.rebase(entity_type, entity_id, version)
        current = self._entities.get(entity_type, entity_id)
        if current is None or current.get("version") == version:
            return
        self._entities.put(entity_type, entity_id, {**current, "version": version})

    def _restore(
        self, entity_type: EntityType, entity_id: str, previous: dict[str, Any] | None
    ) -> None:
        if previous is None:
            self._entities.delete(entity_type, entity_id)
        else:
            self._entities.put(entity_type, entity_id, previous)

    @staticmethod
    def _base_version(payload: dict[str, Any]) -> int | None:
        version = payload.get("version")
        if isinstance(version, int) and not isinstance(version, bool):
            return version
        return None
