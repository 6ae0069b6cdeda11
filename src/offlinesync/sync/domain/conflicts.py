"""Conflict classification and resolution strategies.

Pure functions, no storage access:
- classify(): decide whether local and remote really diverged, and how
- pick_winner(): apply a resolution strategy to the two versions
- merge_payloads(): field-level union, remote wins on overlap

Classification:
    | Operation | Remote state         | Result                         |
    |-----------|----------------------|--------------------------------|
    | CREATE    | record exists        | CREATE_CONFLICT                |
    | UPDATE    | no record            | CREATE_CONFLICT                |
    | DELETE    | no record            | CREATE_CONFLICT                |
    | UPDATE    | tombstone            | UPDATE_DELETE                  |
    | DELETE    | record exists        | DELETE_UPDATE                  |
    | UPDATE    | record exists        | UPDATE_UPDATE if timestamps are|
    |           |                      | within the window or fields    |
    |           |                      | differ, otherwise no conflict  |
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from offlinesync.core.types import ConflictType, OperationKind, ResolutionStrategy
from offlinesync.sync.domain.comparators import ConflictComparator


@dataclass
class Classification:
    """Result of classify()."""

    conflict_type: ConflictType
    description: str
    differing_fields: list[str]


def classify(
    kind: OperationKind,
    local: dict[str, Any] | None,
    remote: dict[str, Any] | None,
    remote_deleted: bool,
    local_ts: float | None,
    remote_ts: float | None,
    window: float,
    comparator: ConflictComparator,
) -> Classification | None:
    """Classify a divergence reported by the remote.

    Args:
        kind: Kind of the local operation.
        local: Current local version (None when deleted locally).
        remote: Current remote version (None when missing or deleted).
        remote_deleted: True if the remote holds a tombstone.
        local_ts: Local modification time (seconds).
        remote_ts: Remote modification time (seconds).
        window: Timestamps closer than this (seconds) are concurrent.
        comparator: Field comparator of the entity type.

    Returns:
        The classification, or None if both sides agree.
    """
    if remote is None:
        if kind == OperationKind.UPDATE and remote_deleted:
            return Classification(
                ConflictType.UPDATE_DELETE,
                "Entity updated locally but deleted remotely",
                [],
            )
        return Classification(
            ConflictType.CREATE_CONFLICT,
            f"Remote has no record for local {kind.name}",
            [],
        )

    if kind == OperationKind.DELETE:
        return Classification(
            ConflictType.DELETE_UPDATE,
            "Entity deleted locally but updated remotely",
            [],
        )

    if kind == OperationKind.CREATE:
        return Classification(
            ConflictType.CREATE_CONFLICT,
            "Remote already has a record for local CREATE",
            comparator.differing_fields(local or {}, remote),
        )

    differing = comparator.differing_fields(local or {}, remote)
    if local_ts is not None and remote_ts is not None:
        delta = abs(local_ts - remote_ts)
        if delta < window:
            return Classification(
                ConflictType.UPDATE_UPDATE,
                f"Concurrent updates detected {delta * 1000:.0f}ms apart",
                differing,
            )

    if differing:
        return Classification(
            ConflictType.UPDATE_UPDATE,
            f"Fields differ between local and remote: {', '.join(differing)}",
            differing,
        )

    return None


def merge_payloads(
    local: dict[str, Any] | None,
    remote: dict[str, Any] | None,
    comparator: ConflictComparator,
    now: float,
) -> dict[str, Any] | None:
    """Union of both payloads, remote non-null values take precedence.

    Timestamp fields are refreshed to ``now``. If one side is missing the
    other is returned unchanged.
    """
    if local is None or remote is None:
        return local if local is not None else remote

    merged = dict(local)
    for key, value in remote.items():
        if value is not None:
            merged[key] = value
    return comparator.refresh(merged, now)


def pick_winner(
    strategy: ResolutionStrategy,
    local: dict[str, Any] | None,
    remote: dict[str, Any] | None,
    local_ts: float | None,
    remote_ts: float | None,
    comparator: ConflictComparator,
    now: float,
) -> dict[str, Any] | None:
    """Apply an automatic strategy.

    Returns:
        The winning payload. None means the winning state is "deleted".

    Raises:
        ValueError: For MANUAL, which has no automatic winner.
    """
    if strategy == ResolutionStrategy.LAST_WRITE_WINS:
        # Ties and unknown timestamps go to the remote authority
        if local_ts is not None and remote_ts is not None and local_ts > remote_ts:
            return local
        return remote
    if strategy == ResolutionStrategy.LOCAL_WINS:
        return local
    if strategy == ResolutionStrategy.REMOTE_WINS:
        return remote
    if strategy == ResolutionStrategy.MERGE:
        return merge_payloads(local, remote, comparator, now)
    raise ValueError(f"No automatic winner for strategy {strategy.name}")
