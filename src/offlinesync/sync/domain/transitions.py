"""Operation status state machine.

States:
    PENDING -> IN_PROGRESS -> COMPLETED
                           -> FAILED   -> RETRY_SCHEDULED -> PENDING
                           -> CONFLICT -> RETRY_SCHEDULED -> PENDING
                                       -> COMPLETED (resolved in favour of remote)
                                       -> FAILED (requeue with retries exhausted)

All state transitions are validated. Manual actions (retry of a terminal
operation) and crash recovery have their own tables.
"""

from __future__ import annotations

from offlinesync.core.errors import SyncError
from offlinesync.core.types import OperationStatus

# Valid automatic transitions
VALID_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.PENDING: {OperationStatus.IN_PROGRESS},
    OperationStatus.IN_PROGRESS: {
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CONFLICT,
    },
    OperationStatus.FAILED: {OperationStatus.RETRY_SCHEDULED},
    OperationStatus.CONFLICT: {
        OperationStatus.RETRY_SCHEDULED,
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
    },
    OperationStatus.RETRY_SCHEDULED: {OperationStatus.PENDING},
    OperationStatus.COMPLETED: set(),  # Terminal, immutable
}

# Transitions only reachable through an explicit user action
MANUAL_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.FAILED: {OperationStatus.PENDING},
    OperationStatus.CONFLICT: {OperationStatus.PENDING},
}

# Operations left IN_PROGRESS by a crash go back to the queue
RECOVERY_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.IN_PROGRESS: {OperationStatus.PENDING},
}


class InvalidTransitionError(SyncError):
    """Raised when attempting invalid state transition."""

    def __init__(self, current: OperationStatus, target: OperationStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current.name} to {target.name}")


def can_transition(
    current: OperationStatus,
    target: OperationStatus,
    table: dict[OperationStatus, set[OperationStatus]] = VALID_TRANSITIONS,
) -> bool:
    """Check a transition against a table."""
    return target in table.get(current, set())


def check_transition(
    current: OperationStatus,
    target: OperationStatus,
    table: dict[OperationStatus, set[OperationStatus]] = VALID_TRANSITIONS,
) -> None:
    """Validate a transition.

    Raises:
        InvalidTransitionError: If the table does not allow it.
    """
    if not can_transition(current, target, table):
        raise InvalidTransitionError(current, target)
