"""Retry scheduling with exponential backoff.

This module provides:
- compute_backoff: Delay before the next attempt of a failed operation
- is_network_error: Whether an exception indicates a connectivity issue

Failed operations are not retried in-line: the coordinator moves them to
RETRY_SCHEDULED with a due time, and the next drain promotes them back to
PENDING once that time has passed.
"""

from __future__ import annotations

import httpx

from offlinesync.remote.api import TransientRemoteError

# Default retry configuration
DEFAULT_INITIAL_BACKOFF = 5.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)


def compute_backoff(
    retry_count: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before the next attempt.

    Args:
        retry_count: Attempts already failed (1 after the first failure).
        initial_backoff: Delay after the first failure, in seconds.
        max_backoff: Upper bound, in seconds.
        backoff_multiplier: Growth factor per failure.

    Returns:
        Delay in seconds.
    """
    if retry_count <= 0:
        return 0.0
    backoff = initial_backoff * backoff_multiplier ** (retry_count - 1)
    return min(backoff, max_backoff)


def is_network_error(error: BaseException) -> bool:
    """Check if an error means the remote could not be reached."""
    if isinstance(error, TransientRemoteError):
        return error.status_code is None
    return isinstance(error, NETWORK_EXCEPTIONS)
