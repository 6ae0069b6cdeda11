"""Entity comparison for conflict detection.

Each entity type declares which payload fields are conflict-significant
and where its modification timestamp lives. The engine never inspects
payloads beyond what a comparator exposes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from offlinesync.core.types import EntityType

# Fields that change on every write and never indicate a real conflict
BOOKKEEPING_FIELDS = frozenset(
    {
        "id",
        "version",
        "created_at",
        "updated_at",
        "last_modified",
        "last_synced_at",
        "timestamp",
    }
)

TIMESTAMP_FIELDS = ("updated_at", "last_modified", "timestamp")
REFRESH_FIELDS = ("updated_at", "last_synced_at")

# Epoch values above this are milliseconds
_MILLIS_THRESHOLD = 1e11


def parse_timestamp(value: Any) -> float | None:
    """Convert a payload timestamp to a Unix timestamp in seconds.

    Accepts ISO 8601 strings, datetimes, and numbers in seconds or
    milliseconds. Naive datetimes are taken as UTC.

    Returns:
        Seconds since the epoch, or None if the value is not a timestamp.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return value / 1000 if value > _MILLIS_THRESHOLD else float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    return None


class ConflictComparator(Protocol):
    """Protocol for comparing local and remote payloads."""

    def differing_fields(
        self, local: dict[str, Any], remote: dict[str, Any]
    ) -> list[str]:
        """Return the conflict-significant fields whose values differ."""
        ...

    def timestamp_of(self, payload: dict[str, Any] | None) -> float | None:
        """Return the payload's modification time, if any."""
        ...

    def refresh(self, payload: dict[str, Any], now: float) -> dict[str, Any]:
        """Return a copy with timestamp fields set to ``now``."""
        ...


@dataclass(frozen=True)
class FieldComparator:
    """Compares payloads field by field.

    Attributes:
        significant_fields: Fields that matter for conflicts. None means
            every field except the bookkeeping ones.
        timestamp_fields: Candidate timestamp fields, first match wins.
        refresh_fields: Fields set to the current time after a merge.
    """

    significant_fields: tuple[str, ...] | None = None
    timestamp_fields: tuple[str, ...] = TIMESTAMP_FIELDS
    refresh_fields: tuple[str, ...] = REFRESH_FIELDS

    def differing_fields(
        self, local: dict[str, Any], remote: dict[str, Any]
    ) -> list[str]:
        """Return the significant fields whose values differ."""
        if self.significant_fields is not None:
            candidates: set[str] = set(self.significant_fields)
        else:
            candidates = (set(local) | set(remote)) - BOOKKEEPING_FIELDS
        return sorted(f for f in candidates if local.get(f) != remote.get(f))

    def timestamp_of(self, payload: dict[str, Any] | None) -> float | None:
        """Return the first parseable timestamp field."""
        if not payload:
            return None
        for name in self.timestamp_fields:
            ts = parse_timestamp(payload.get(name))
            if ts is not None:
                return ts
        return None

    def refresh(self, payload: dict[str, Any], now: float) -> dict[str, Any]:
        """Set refresh fields to ``now`` as ISO 8601 UTC strings."""
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
        refreshed = dict(payload)
        for name in self.refresh_fields:
            refreshed[name] = stamp
        return refreshed


DEFAULT_COMPARATOR = FieldComparator()


class ComparatorRegistry:
    """Maps entity types to their comparator."""

    def __init__(
        self,
        comparators: dict[EntityType, ConflictComparator] | None = None,
        default: ConflictComparator = DEFAULT_COMPARATOR,
    ) -> None:
        self._comparators: dict[EntityType, ConflictComparator] = dict(comparators or {})
        self._default = default

    def register(self, entity_type: EntityType, comparator: ConflictComparator) -> None:
        """Declare the comparator of an entity type."""
        self._comparators[entity_type] = comparator

    def get(self, entity_type: EntityType) -> ConflictComparator:
        """Get the comparator of an entity type (default if undeclared)."""
        return self._comparators.get(entity_type, self._default)

    def __contains__(self, entity_type: EntityType) -> bool:
        return entity_type in self._comparators
