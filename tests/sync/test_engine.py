"""Tests for the sync engine facade."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from offlinesync.core.config import ConfigError, SyncConfig
from offlinesync.core.types import (
    EngineEvent,
    EntityType,
    OperationStatus,
    ResolutionStrategy,
    SyncState,
)
from offlinesync.reachability import ManualReachability
from offlinesync.remote.api import PermanentRemoteError, RemoteConflictError
from offlinesync.sync.engine import SyncEngine
from offlinesync.sync.store import OperationStore
from offlinesync.sync.types import DrainOutcome, OperationFilter, ResolutionOutcome, SyncError

if TYPE_CHECKING:
    from conftest import DictEntityStore, FakeClock, FakeRemote

EngineFactory = Callable[..., SyncEngine]


class TestOfflineFirst:
    """End-to-end behaviour through the facade."""

    def test_writes_return_before_sync(
        self,
        make_engine: EngineFactory,
        remote: FakeRemote,
        reachability: ManualReachability,
    ) -> None:
        """Mutations succeed offline and are pushed once back online."""
        reachability.set_reachable(False)
        engine = make_engine()

        entity = engine.create(EntityType.QUOTE, {"total": 100}, entity_id="q1")
        assert entity == {"total": 100, "id": "q1"}
        assert engine.read(EntityType.QUOTE, "q1") == entity
        assert engine.manual_sync().outcome == DrainOutcome.OFFLINE
        assert engine.get_metrics().pending_operations == 1

        reachability.set_reachable(True)
        result = engine.manual_sync()

        assert result.outcome == DrainOutcome.COMPLETED
        assert remote.entities[(EntityType.QUOTE, "q1")]["total"] == 100
        assert engine.get_metrics().pending_operations == 0

    def test_full_lifecycle(self, make_engine: EngineFactory, remote: FakeRemote) -> None:
        """Create, update and delete reach the remote in order."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        engine.manual_sync()
        local = engine.read(EntityType.CLIENT, "c1")
        assert local is not None
        engine.update(EntityType.CLIENT, "c1", {**local, "name": "B"})
        engine.delete(EntityType.CLIENT, "c1")

        engine.manual_sync()

        assert [call[0] for call in remote.calls] == ["create", "update", "delete"]
        assert (EntityType.CLIENT, "c1") not in remote.entities
        assert engine.read(EntityType.CLIENT, "c1") is None

    def test_sync_disabled(
        self, make_engine: EngineFactory, operations: OperationStore
    ) -> None:
        """sync_enabled=False keeps everything local."""
        engine = make_engine(sync_enabled=False)
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        assert engine.read(EntityType.CLIENT, "c1") is not None
        assert operations.stats().total == 0

    def test_reachability_event(
        self, make_engine: EngineFactory, reachability: ManualReachability
    ) -> None:
        """Network changes are published."""
        engine = make_engine()
        received: list[dict[str, Any]] = []
        engine.subscribe(EngineEvent.REACHABILITY_CHANGED, received.append)

        reachability.set_reachable(False)
        reachability.set_reachable(False)
        reachability.set_reachable(True)

        assert received == [{"reachable": False}, {"reachable": True}]


class TestStatus:
    """Tests for get_status() and get_metrics()."""

    def test_idle(self, make_engine: EngineFactory) -> None:
        """Online with nothing running."""
        status = make_engine().get_status()
        assert status.state == SyncState.IDLE
        assert status.reachable
        assert not status.running
        assert status.last_error is None

    def test_offline(
        self, make_engine: EngineFactory, reachability: ManualReachability
    ) -> None:
        """Unreachable network."""
        engine = make_engine()
        reachability.set_reachable(False)
        assert engine.get_status().state == SyncState.OFFLINE

    def test_syncing(self, make_engine: EngineFactory, remote: FakeRemote) -> None:
        """State during a drain."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        seen: list[SyncState] = []
        remote.on_call = lambda *args: seen.append(engine.get_status().state)

        engine.manual_sync()
        assert seen == [SyncState.SYNCING]

    def test_error_until_next_successful_drain(
        self, make_engine: EngineFactory, entities: DictEntityStore
    ) -> None:
        """An aborted drain is reported until a drain completes."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        entities.fail_writes = True
        with pytest.raises(SyncError):
            engine.manual_sync()

        status = engine.get_status()
        assert status.state == SyncState.ERROR
        assert status.last_error == "disk full"

        entities.fail_writes = False
        engine.manual_sync()
        assert engine.get_status().state == SyncState.IDLE

    def test_to_dict(self, make_engine: EngineFactory) -> None:
        """The snapshot serializes to plain types."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")

        data = engine.get_status().to_dict()
        assert data["state"] == "idle"
        assert data["queue"]["pending"] == 1
        assert data["metrics"]["pending_operations"] == 1
        assert data["conflicts"]["total"] == 0


class TestConfiguration:
    """Tests for update_config()."""

    def test_update_applies_to_components(
        self, make_engine: EngineFactory, operations: OperationStore
    ) -> None:
        """New values are used by the gateway and the coordinator."""
        engine = make_engine()
        config = engine.update_config({"max_retries": 9, "batch_size": 1})

        assert config.max_retries == 9
        assert engine.config is config
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        engine.create(EntityType.CLIENT, {"name": "B"}, entity_id="c2")
        (first, _) = operations.query()
        assert first.max_retries == 9
        assert engine.manual_sync().batches == 2

    def test_invalid_update_keeps_previous_config(self, make_engine: EngineFactory) -> None:
        """A rejected update changes nothing."""
        engine = make_engine()
        before = engine.config

        with pytest.raises(ConfigError):
            engine.update_config({"batch_size": 0})
        with pytest.raises(ConfigError):
            engine.update_config({"no_such_key": 1})

        assert engine.config is before

    def test_strategy_change(
        self,
        make_engine: EngineFactory,
        remote: FakeRemote,
        operations: OperationStore,
        clock: FakeClock,
    ) -> None:
        """The resolver uses the new strategy."""
        engine = make_engine()
        engine.update_config({"conflict_strategy": "local_wins"})
        engine.update(
            EntityType.CLIENT, "c1", {"id": "c1", "name": "local", "updated_at": clock() - 60}
        )
        remote.fail_with(
            RemoteConflictError(
                "Version mismatch",
                remote_payload={"id": "c1", "name": "remote", "updated_at": clock()},
                remote_version=3,
            )
        )

        engine.manual_sync()

        (op,) = operations.query()
        assert op.status == OperationStatus.RETRY_SCHEDULED
        assert op.base_version == 3


class TestOperations:
    """Tests for queue management through the facade."""

    def test_retry_operation(
        self, make_engine: EngineFactory, remote: FakeRemote
    ) -> None:
        """A terminal failure can be retried by hand."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        remote.fail_with(PermanentRemoteError("Rejected", 400))
        engine.manual_sync()
        (op,) = engine.list_operations(OperationFilter(status=OperationStatus.FAILED))
        updates: list[dict[str, Any]] = []
        engine.subscribe(EngineEvent.OPERATION_UPDATED, updates.append)

        retried = engine.retry_operation(op.id)

        assert retried.status == OperationStatus.PENDING
        assert updates[0]["operation"]["status"] == "pending"
        engine.manual_sync()
        assert engine.list_operations()[0].status == OperationStatus.COMPLETED

    def test_clear_operation(self, make_engine: EngineFactory) -> None:
        """Finished operations can be cleared, queued ones cannot."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        (op,) = engine.list_operations()
        with pytest.raises(SyncError):
            engine.clear_operation(op.id)

        engine.manual_sync()
        engine.clear_operation(op.id)
        assert engine.list_operations() == []

    def test_purge_completed(self, make_engine: EngineFactory, clock: FakeClock) -> None:
        """Age-based and full purges."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        engine.manual_sync()
        clock.advance(2 * 86_400)
        engine.create(EntityType.CLIENT, {"name": "B"}, entity_id="c2")
        engine.manual_sync()

        assert engine.purge_completed(older_than_days=1) == 1
        assert engine.purge_completed() == 1

    def test_export_import(
        self,
        make_engine: EngineFactory,
        tmp_path: Path,
        remote: FakeRemote,
    ) -> None:
        """A queue dump moves to another database."""
        engine = make_engine()
        engine.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        dump = engine.export_operations()

        target = SyncEngine.open(tmp_path / "target.db", remote, ManualReachability(True))
        try:
            assert target.import_operations(dump) == 1
            assert target.list_operations()[0].entity_id == "c1"
        finally:
            target.close()


class TestConflicts:
    """Tests for conflict listing and manual resolution."""

    def test_manual_resolution(
        self,
        make_engine: EngineFactory,
        remote: FakeRemote,
        clock: FakeClock,
    ) -> None:
        """A deferred conflict is listed and resolved through the facade."""
        engine = make_engine(conflict_strategy=ResolutionStrategy.MANUAL)
        engine.update(EntityType.CLIENT, "c1", {"id": "c1", "name": "local"})
        remote.fail_with(
            RemoteConflictError(
                "Version mismatch",
                remote_payload={"id": "c1", "name": "remote"},
                remote_version=2,
                remote_updated_at=clock() - 60,
            )
        )
        result = engine.manual_sync()
        assert result.conflicts == 1

        (pending,) = engine.list_conflicts(pending_only=True)
        assert engine.get_status().conflicts.pending == 1

        resolution = engine.resolve_conflict(
            pending.operation_id, strategy=ResolutionStrategy.REMOTE_WINS, resolved_by="bob"
        )

        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        assert engine.list_conflicts(pending_only=True) == []
        (record,) = engine.list_conflicts()
        assert record.resolved_by == "bob"
        assert engine.read(EntityType.CLIENT, "c1") == {"id": "c1", "name": "remote", "version": 2}


class TestOpen:
    """Tests for SyncEngine.open()."""

    def test_state_survives_restart(self, tmp_path: Path, remote: FakeRemote) -> None:
        """Entities and queued operations are durable."""
        db_path = tmp_path / "engine.db"
        offline = ManualReachability(False)

        engine = SyncEngine.open(db_path, remote, offline, config=SyncConfig())
        engine.create(EntityType.SITE, {"name": "Depot"}, entity_id="s1")
        engine.close()

        reopened = SyncEngine.open(db_path, remote, offline, config=SyncConfig())
        try:
            assert reopened.read(EntityType.SITE, "s1") == {"name": "Depot", "id": "s1"}
            assert reopened.get_metrics().pending_operations == 1
        finally:
            reopened.close()
