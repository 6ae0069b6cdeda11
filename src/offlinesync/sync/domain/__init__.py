"""Domain modules for sync business rules.

This package centralizes business logic for the sync system:
- transitions: Operation status state machine
- comparators: Per-entity conflict-significant fields and timestamps
- conflicts: Conflict classification and resolution strategies

Architecture:
    domain/ contains pure business logic without storage or network access.
    Persistence stays in store.py/history.py, remote calls in coordinator.py.
"""

from offlinesync.sync.domain.comparators import (
    ComparatorRegistry,
    ConflictComparator,
    FieldComparator,
    parse_timestamp,
)
from offlinesync.sync.domain.conflicts import (
    Classification,
    classify,
    merge_payloads,
    pick_winner,
)
from offlinesync.sync.domain.transitions import (
    MANUAL_TRANSITIONS,
    RECOVERY_TRANSITIONS,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    can_transition,
    check_transition,
)

__all__ = [
    # comparators
    "ComparatorRegistry",
    "ConflictComparator",
    "FieldComparator",
    "parse_timestamp",
    # conflicts
    "Classification",
    "classify",
    "merge_payloads",
    "pick_winner",
    # transitions
    "MANUAL_TRANSITIONS",
    "RECOVERY_TRANSITIONS",
    "VALID_TRANSITIONS",
    "InvalidTransitionError",
    "can_transition",
    "check_transition",
]
