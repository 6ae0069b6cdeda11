"""Drain scheduling.

This module provides:
- SyncScheduler: decides when the coordinator drains the queue

Jobs (apscheduler BackgroundScheduler):
- sync_tick: every sync_interval_ms while auto_sync is on
- sync_debounce: one-shot drain after the network comes back; a new
  reachability event replaces the pending one
- completed_purge: daily at 3:00, removes completed operations older than
  completed_retention_days

State machine:
    STOPPED ─start()─► RUNNING ─stop()─► STOPPED

stop() never interrupts a drain in flight; it only prevents new ones.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from offlinesync.sync.types import DrainOutcome, DrainResult

if TYPE_CHECKING:
    from offlinesync.core.config import SyncConfig
    from offlinesync.reachability import Reachability
    from offlinesync.sync.coordinator import SyncCoordinator
    from offlinesync.sync.store import OperationStore

logger = logging.getLogger(__name__)

TICK_JOB_ID = "sync_tick"
DEBOUNCE_JOB_ID = "sync_debounce"
PURGE_JOB_ID = "completed_purge"

# Delay of the first drain after start(), when already online
STARTUP_SYNC_DELAY = 1.0  # seconds

SECONDS_PER_DAY = 86_400


class SchedulerState(Enum):
    """Scheduler lifecycle."""

    STOPPED = "stopped"
    RUNNING = "running"


class SyncScheduler:
    """Triggers drains on a timer, on reconnection and on demand."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        operations: OperationStore,
        reachability: Reachability,
        config: SyncConfig,
        purge_hour: int = 3,
        purge_minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            coordinator: Runs the drains.
            operations: Store purged by the daily job.
            reachability: Network signal.
            config: Interval, debounce and retention settings.
            purge_hour: Hour of the daily purge (0-23).
            purge_minute: Minute of the daily purge (0-59).
        """
        self._coordinator = coordinator
        self._operations = operations
        self._reachability = reachability
        self._config = config
        self._purge_hour = purge_hour
        self._purge_minute = purge_minute

        self._lock = threading.RLock()
        self._state = SchedulerState.STOPPED
        self._scheduler: BackgroundScheduler | None = None

    @property
    def state(self) -> SchedulerState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is RUNNING."""
        return self._state == SchedulerState.RUNNING

    def start(self) -> None:
        """Start ticking and listening for reachability changes."""
        with self._lock:
            if self._state == SchedulerState.RUNNING:
                logger.warning("Scheduler already running")
                return

            self._scheduler = BackgroundScheduler()
            if self._config.auto_sync:
                self._add_tick_job()
            self._scheduler.add_job(
                self._purge_job,
                trigger=CronTrigger(hour=self._purge_hour, minute=self._purge_minute),
                id=PURGE_JOB_ID,
                name="Daily completed operations purge",
                replace_existing=True,
            )
            self._scheduler.start()
            self._state = SchedulerState.RUNNING
            self._reachability.subscribe(self._on_reachability_changed)

            if self._reachability.is_reachable():
                self._schedule_debounced(STARTUP_SYNC_DELAY)

        logger.info(
            "Sync scheduler started (interval: %.1fs, auto sync: %s)",
            self._config.sync_interval,
            self._config.auto_sync,
        )

    def stop(self) -> None:
        """Stop scheduling. A drain in flight runs to completion."""
        with self._lock:
            if self._state == SchedulerState.STOPPED:
                return
            self._reachability.unsubscribe(self._on_reachability_changed)
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None
            self._state = SchedulerState.STOPPED
        logger.info("Sync scheduler stopped")

    def manual_sync(self) -> DrainResult:
        """Drain now, in the calling thread.

        Returns:
            The drain result, BUSY if a drain is already running.
        """
        result = self._coordinator.drain()
        if result.outcome == DrainOutcome.BUSY:
            logger.info("Manual sync refused: sync already in progress")
        return result

    def reschedule(self, config: SyncConfig) -> None:
        """Apply a new configuration to the running jobs."""
        with self._lock:
            self._config = config
            if self._scheduler is None:
                return
            if config.auto_sync:
                if self._scheduler.get_job(TICK_JOB_ID) is None:
                    self._add_tick_job()
                else:
                    self._scheduler.reschedule_job(
                        TICK_JOB_ID, trigger=IntervalTrigger(seconds=config.sync_interval)
                    )
            else:
                self._remove_job(TICK_JOB_ID)
        logger.debug("Sync interval set to %.1fs", config.sync_interval)

    def has_pending_debounce(self) -> bool:
        """Check if a reconnection drain is waiting to run."""
        with self._lock:
            return self._scheduler is not None and (
                self._scheduler.get_job(DEBOUNCE_JOB_ID) is not None
            )

    # === Jobs ===

    def _add_tick_job(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._config.sync_interval),
            id=TICK_JOB_ID,
            name="Periodic sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def _remove_job(self, job_id: str) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _tick(self) -> None:
        """Periodic drain, skipped while busy or offline."""
        if self._coordinator.is_active:
            logger.debug("Tick skipped: drain in progress")
            return
        if not self._reachability.is_reachable():
            logger.debug("Tick skipped: network unreachable")
            return
        self._run_drain("tick")

    def _debounced_drain(self) -> None:
        self._run_drain("reconnect")

    def _run_drain(self, trigger: str) -> None:
        try:
            result = self._coordinator.drain()
        except Exception:
            logger.exception("Scheduled drain (%s) failed", trigger)
            return
        logger.debug("Scheduled drain (%s): %s", trigger, result.outcome.name)

    def _on_reachability_changed(self, reachable: bool) -> None:
        if reachable:
            self._schedule_debounced(self._config.reachability_debounce)

    def _schedule_debounced(self, delay: float) -> None:
        with self._lock:
            if self._scheduler is None:
                return
            run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
            self._scheduler.add_job(
                self._debounced_drain,
                trigger=DateTrigger(run_date=run_date),
                id=DEBOUNCE_JOB_ID,
                name="Reconnection sync",
                replace_existing=True,
            )
        logger.debug("Drain scheduled in %.1fs", delay)

    def _purge_job(self) -> None:
        """Job function for the daily purge."""
        days = self._config.completed_retention_days
        try:
            removed = self._operations.remove_completed(older_than=days * SECONDS_PER_DAY)
        except Exception:
            logger.exception("Error during scheduled purge of completed operations")
            return
        if removed:
            logger.info("Purged %d completed operations older than %d days", removed, days)
        else:
            logger.debug("Purge: no completed operations older than %d days", days)
