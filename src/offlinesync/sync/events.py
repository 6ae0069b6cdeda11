"""Synchronous event bus for engine notifications.

Listeners are plain callables receiving one dict. They run in the thread
that emitted the event (the caller of apply(), or the drain thread), so
they should return quickly. A failing listener is logged and skipped; it
never breaks the engine.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from offlinesync.core.types import EngineEvent

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class EventBus:
    """Observer lists keyed by EngineEvent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[EngineEvent, list[Callable[[dict[str, Any]], None]]] = {}

    def subscribe(
        self,
        event: EngineEvent,
        callback: Callable[[dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a listener.

        Args:
            event: Event to listen to.
            callback: Function(data) called on every emission.

        Returns:
            A function that removes the listener.
        """
        event = EngineEvent(event)
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(event, callback)

        return unsubscribe

    def unsubscribe(
        self,
        event: EngineEvent,
        callback: Callable[[dict[str, Any]], None],
    ) -> None:
        """Remove a listener. Unknown listeners are ignored."""
        with self._lock:
            listeners = self._listeners.get(EngineEvent(event), [])
            if callback in listeners:
                listeners.remove(callback)

    def emit(self, event: EngineEvent, data: dict[str, Any] | None = None) -> None:
        """Call every listener of an event."""
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        payload = data or {}
        for callback in listeners:
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener for %s failed", event.value)

    def listener_count(self, event: EngineEvent) -> int:
        """Number of listeners of an event."""
        with self._lock:
            return len(self._listeners.get(EngineEvent(event), []))
