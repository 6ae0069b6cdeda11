"""Tests for the conflict history."""

from __future__ import annotations

from pathlib import Path

from offlinesync.core.types import ConflictType, EntityType, ResolutionStrategy
from offlinesync.sync.history import AUTO_RESOLVER, ConflictHistory
from offlinesync.sync.types import ConflictRecord


def make_record(operation_id: str = "op1", detected_at: float = 100.0) -> ConflictRecord:
    return ConflictRecord(
        operation_id=operation_id,
        entity_type=EntityType.QUOTE,
        entity_id="q1",
        conflict_type=ConflictType.UPDATE_UPDATE,
        local_version={"id": "q1", "total": 10},
        remote_version={"id": "q1", "total": 12},
        description="Fields differ between local and remote: total",
        detected_at=detected_at,
        remote_revision=4,
    )


class TestConflictHistory:
    """Tests for ConflictHistory."""

    def test_add_and_get(self, history: ConflictHistory) -> None:
        """Records are stored with both versions."""
        record = make_record()
        history.add(record)

        stored = history.get(record.id)
        assert stored is not None
        assert stored.local_version == {"id": "q1", "total": 10}
        assert stored.remote_version == {"id": "q1", "total": 12}
        assert stored.remote_revision == 4
        assert not stored.is_resolved

    def test_list_newest_first(self, history: ConflictHistory) -> None:
        """list() returns the most recent record first."""
        old = make_record("op1", detected_at=100.0)
        new = make_record("op2", detected_at=200.0)
        history.add(old)
        history.add(new)

        assert [r.id for r in history.list()] == [new.id, old.id]
        assert [r.id for r in history.list(limit=1)] == [new.id]

    def test_mark_resolved_once(self, history: ConflictHistory) -> None:
        """A resolution is written once and never overwritten."""
        record = make_record()
        history.add(record)

        assert history.mark_resolved(
            record.id, ResolutionStrategy.MANUAL, {"id": "q1", "total": 11}, "alice", 300.0
        )
        assert not history.mark_resolved(
            record.id, ResolutionStrategy.REMOTE_WINS, None, "bob", 400.0
        )

        stored = history.get(record.id)
        assert stored is not None
        assert stored.resolution_strategy == ResolutionStrategy.MANUAL
        assert stored.resolved_payload == {"id": "q1", "total": 11}
        assert stored.resolved_by == "alice"
        assert stored.resolved_at == 300.0

    def test_pending_and_per_operation(self, history: ConflictHistory) -> None:
        """Unresolved records are listed separately."""
        resolved = make_record("op1", detected_at=100.0)
        resolved.resolution_strategy = ResolutionStrategy.REMOTE_WINS
        resolved.resolved_at = 101.0
        resolved.resolved_by = AUTO_RESOLVER
        pending = make_record("op1", detected_at=150.0)
        history.add(resolved)
        history.add(pending)

        assert [r.id for r in history.pending()] == [pending.id]
        assert [r.id for r in history.get_for_operation("op1")] == [resolved.id, pending.id]
        assert history.get_for_operation("other") == []

    def test_stats(self, history: ConflictHistory) -> None:
        """Counts split automatic and manual resolutions."""
        auto = make_record("op1", detected_at=100.0)
        auto.resolution_strategy = ResolutionStrategy.LAST_WRITE_WINS
        auto.resolved_at = 100.0
        auto.resolved_by = AUTO_RESOLVER
        manual = make_record("op2", detected_at=200.0)
        waiting = make_record("op3", detected_at=300.0)
        for record in (auto, manual, waiting):
            history.add(record)
        history.mark_resolved(manual.id, ResolutionStrategy.LOCAL_WINS, {}, "alice", 250.0)

        stats = history.stats()
        assert stats.total == 3
        assert stats.auto_resolved == 1
        assert stats.manual_resolved == 1
        assert stats.pending == 1
        assert stats.last_conflict_at == 300.0

    def test_empty_stats(self, history: ConflictHistory) -> None:
        """No conflicts recorded."""
        stats = history.stats()
        assert stats.total == 0
        assert stats.pending == 0
        assert stats.last_conflict_at is None

    def test_records_survive_reopen(self, tmp_path: Path) -> None:
        """The history is durable."""
        db_path = tmp_path / "history.db"
        first = ConflictHistory(db_path)
        record = make_record()
        first.add(record)
        first.close()

        reopened = ConflictHistory(db_path)
        try:
            assert reopened.get(record.id) is not None
        finally:
            reopened.close()
