"""Configuration classes for offlinesync.

This module defines:
- SyncConfig: tunables of the sync engine (intervals, retries, batching)
- ServerConfig: connection settings for the remote API
- ConfigError: raised when a configuration value is rejected
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from offlinesync.core.types import ResolutionStrategy

MAX_BATCH_SIZE = 500
MIN_SYNC_INTERVAL_MS = 1000


class ConfigError(ValueError):
    """Invalid configuration value."""


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration.

    All durations are in milliseconds.

    Attributes:
        sync_interval_ms: Period of the scheduler tick.
        max_retries: Attempts before an operation becomes terminal FAILED.
        retry_delay_ms: Initial delay before a failed operation is retried.
        max_retry_delay_ms: Upper bound of the exponential backoff.
        backoff_multiplier: Growth factor of the retry delay.
        batch_size: Operations pulled per batch during a drain.
        inter_batch_delay_ms: Pause between two batches of the same drain.
        reachability_debounce_ms: Delay before draining once the network is back.
        conflict_strategy: Default conflict resolution strategy.
        conflict_window_ms: Timestamps closer than this are concurrent updates.
        sync_enabled: When False, mutations stay local-only.
        auto_sync: When False, no periodic tick is scheduled.
        completed_retention_days: Age at which completed operations are purged.
    """

    sync_interval_ms: int = 30_000
    max_retries: int = 3
    retry_delay_ms: int = 5_000
    max_retry_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0
    batch_size: int = 10
    inter_batch_delay_ms: int = 1_000
    reachability_debounce_ms: int = 2_000
    conflict_strategy: ResolutionStrategy = ResolutionStrategy.LAST_WRITE_WINS
    conflict_window_ms: int = 1_000
    sync_enabled: bool = True
    auto_sync: bool = True
    completed_retention_days: int = 30

    def __post_init__(self) -> None:
        """Coerce the strategy from its string value and validate."""
        if not isinstance(self.conflict_strategy, ResolutionStrategy):
            try:
                strategy = ResolutionStrategy(self.conflict_strategy)
            except ValueError as e:
                raise ConfigError(
                    f"Unknown conflict strategy: {self.conflict_strategy!r}"
                ) from e
            object.__setattr__(self, "conflict_strategy", strategy)
        self.validate()

    def validate(self) -> None:
        """Check every field.

        Raises:
            ConfigError: If a value is out of range.
        """
        if self.sync_interval_ms < MIN_SYNC_INTERVAL_MS:
            raise ConfigError(f"sync_interval_ms must be >= {MIN_SYNC_INTERVAL_MS}")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be >= 1")
        if self.retry_delay_ms < 0:
            raise ConfigError("retry_delay_ms must be >= 0")
        if self.max_retry_delay_ms < self.retry_delay_ms:
            raise ConfigError("max_retry_delay_ms must be >= retry_delay_ms")
        if self.backoff_multiplier < 1.0:
            raise ConfigError("backoff_multiplier must be >= 1.0")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        if self.inter_batch_delay_ms < 0:
            raise ConfigError("inter_batch_delay_ms must be >= 0")
        if self.reachability_debounce_ms < 0:
            raise ConfigError("reachability_debounce_ms must be >= 0")
        if self.conflict_window_ms < 0:
            raise ConfigError("conflict_window_ms must be >= 0")
        if self.completed_retention_days < 0:
            raise ConfigError("completed_retention_days must be >= 0")

    def merged(self, partial: dict[str, Any]) -> SyncConfig:
        """Return a new config with ``partial`` applied.

        The receiver is never modified, so a rejected update leaves the
        previous configuration in place.

        Args:
            partial: Field names mapped to new values.

        Returns:
            A validated SyncConfig.

        Raises:
            ConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(self)}
        unknown = set(partial) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        try:
            return replace(self, **partial)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        data = asdict(self)
        data["conflict_strategy"] = self.conflict_strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a config from a dict, ignoring keys it does not know."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def sync_interval(self) -> float:
        """Tick period in seconds."""
        return self.sync_interval_ms / 1000

    @property
    def inter_batch_delay(self) -> float:
        """Inter-batch pause in seconds."""
        return self.inter_batch_delay_ms / 1000

    @property
    def reachability_debounce(self) -> float:
        """Debounce delay in seconds."""
        return self.reachability_debounce_ms / 1000


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote API.

    Attributes:
        server_url: Base URL of the server (e.g., "https://api.example.com").
        token: Bearer token sent with every request.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")
