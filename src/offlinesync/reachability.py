"""Network reachability sources.

This module provides:
- Reachability: Protocol consumed by the scheduler and the coordinator
- ManualReachability: Flag set by the host application (or tests)
- HealthCheckReachability: Polls the remote health endpoint in a thread

Listeners are called with the new boolean value, only when it changes.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 10.0  # seconds


class Reachability(Protocol):
    """Protocol for a network reachability signal."""

    def is_reachable(self) -> bool:
        """Check if the remote can currently be reached."""
        ...

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        """Register a change listener."""
        ...

    def unsubscribe(self, callback: Callable[[bool], None]) -> None:
        """Remove a change listener."""
        ...


class _ListenerMixin:
    """Listener bookkeeping shared by the implementations."""

    def __init__(self, reachable: bool) -> None:
        self._reachable = reachable
        self._lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []

    def is_reachable(self) -> bool:
        return self._reachable

    def subscribe(self, callback: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[bool], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _update(self, reachable: bool) -> bool:
        """Store a new value and notify listeners if it changed.

        Returns:
            True if the value changed.
        """
        with self._lock:
            if reachable == self._reachable:
                return False
            self._reachable = reachable
            listeners = list(self._listeners)

        logger.info("Network %s", "reachable" if reachable else "unreachable")
        for callback in listeners:
            try:
                callback(reachable)
            except Exception:
                logger.exception("Reachability listener failed")
        return True


class ManualReachability(_ListenerMixin):
    """Reachability driven by explicit set_reachable() calls."""

    def __init__(self, reachable: bool = True) -> None:
        super().__init__(reachable)

    def set_reachable(self, reachable: bool) -> None:
        """Change the signal, notifying listeners on change."""
        self._update(reachable)


class HealthCheckReachability(_ListenerMixin):
    """Reachability derived from periodic health checks.

    Usage:
        client = HTTPRemoteClient(server_config)
        reachability = HealthCheckReachability(client.health_check)
        reachability.start()
        ...
        reachability.stop()
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        initial: bool = False,
    ) -> None:
        """Initialize the poller.

        Args:
            probe: Returns True when the remote answers (e.g. health_check).
            check_interval: Seconds between two probes.
            initial: Value reported before the first probe.
        """
        super().__init__(initial)
        self._probe = probe
        self._check_interval = check_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def check(self) -> bool:
        """Probe once and update the signal.

        Returns:
            The probed value.
        """
        try:
            reachable = bool(self._probe())
        except Exception as e:
            logger.debug("Health probe failed: %s", e)
            reachable = False
        self._update(reachable)
        return reachable

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("HealthCheckReachability already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="HealthCheckReachability",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Reachability polling every %.1fs", self._check_interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._check_interval)
