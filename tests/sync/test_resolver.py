"""Tests for the conflict resolver."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from offlinesync.core.config import SyncConfig
from offlinesync.core.types import (
    ConflictType,
    EngineEvent,
    EntityType,
    OperationKind,
    OperationStatus,
    ResolutionStrategy,
)
from offlinesync.remote.api import RemoteConflictError
from offlinesync.sync.events import EventBus
from offlinesync.sync.gateway import WriteThroughGateway
from offlinesync.sync.history import AUTO_RESOLVER, ConflictHistory
from offlinesync.sync.resolver import ConflictResolver
from offlinesync.sync.store import OperationStore
from offlinesync.sync.types import (
    OperationFilter,
    OperationNotFoundError,
    ResolutionOutcome,
    SyncError,
    SyncOperation,
)

if TYPE_CHECKING:
    from conftest import DictEntityStore, FakeClock


@pytest.fixture
def events() -> EventBus:
    """Event bus."""
    return EventBus()


@pytest.fixture
def gateway(
    entities: DictEntityStore,
    operations: OperationStore,
    events: EventBus,
    clock: FakeClock,
) -> WriteThroughGateway:
    """Gateway sharing the stores and the clock."""
    return WriteThroughGateway(entities, operations, events, SyncConfig(), clock=clock)


@pytest.fixture
def make_resolver(
    operations: OperationStore,
    gateway: WriteThroughGateway,
    history: ConflictHistory,
    events: EventBus,
    clock: FakeClock,
) -> Callable[..., ConflictResolver]:
    """Factory building a resolver with a given strategy."""

    def _make(
        strategy: ResolutionStrategy = ResolutionStrategy.LAST_WRITE_WINS,
    ) -> ConflictResolver:
        return ConflictResolver(
            operations, gateway, history, events, strategy=strategy, window=1.0, clock=clock
        )

    return _make


@pytest.fixture
def in_flight(
    gateway: WriteThroughGateway, operations: OperationStore, clock: FakeClock
) -> Callable[..., SyncOperation]:
    """Mutate through the gateway and claim the resulting operation."""

    def _in_flight(
        kind: OperationKind, payload: dict[str, Any] | None = None
    ) -> SyncOperation:
        gateway.apply(kind, EntityType.CLIENT, "c1", payload)
        op = operations.dequeue_next()
        assert op is not None
        return op

    return _in_flight


def local_client(clock: FakeClock, name: str, age: float = 0.0) -> dict[str, Any]:
    return {"id": "c1", "name": name, "updated_at": clock() - age}


def remote_conflict(
    payload: dict[str, Any] | None, version: int | None = 5, deleted: bool = False
) -> RemoteConflictError:
    return RemoteConflictError(
        "Version mismatch",
        remote_payload=payload,
        remote_version=version,
        remote_updated_at=payload.get("updated_at") if payload else None,
        deleted=deleted,
    )


class TestAutomaticResolution:
    """Tests for conflicts resolved during a drain."""

    def test_last_write_wins_remote_newer(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
        history: ConflictHistory,
        clock: FakeClock,
    ) -> None:
        """An older local change loses: remote is written locally, op done."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "local", age=60))
        remote = {"id": "c1", "name": "remote", "updated_at": clock(), "version": 5}

        resolution = make_resolver().handle(op, remote_conflict(remote))

        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.COMPLETED
        assert entities.get(EntityType.CLIENT, "c1") == remote

        (record,) = history.list()
        assert record.conflict_type == ConflictType.UPDATE_UPDATE
        assert record.resolution_strategy == ResolutionStrategy.LAST_WRITE_WINS
        assert record.resolved_by == AUTO_RESOLVER
        assert record.resolved_payload == remote

    def test_last_write_wins_local_newer(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        clock: FakeClock,
    ) -> None:
        """A newer local change is pushed again on top of the remote revision."""
        local = local_client(clock, "local")
        op = in_flight(OperationKind.UPDATE, local)
        remote = {"id": "c1", "name": "remote", "updated_at": clock() - 60}

        resolution = make_resolver().handle(op, remote_conflict(remote, version=7))

        assert resolution.outcome == ResolutionOutcome.REQUEUE
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.RETRY_SCHEDULED
        assert stored.kind == OperationKind.UPDATE
        assert stored.base_version == 7
        assert stored.payload == local

    def test_local_wins(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
        clock: FakeClock,
    ) -> None:
        """LOCAL_WINS requeues even an older local change."""
        local = local_client(clock, "local", age=60)
        op = in_flight(OperationKind.UPDATE, local)
        remote = {"id": "c1", "name": "remote", "updated_at": clock()}

        resolution = make_resolver(ResolutionStrategy.LOCAL_WINS).handle(
            op, remote_conflict(remote)
        )

        assert resolution.outcome == ResolutionOutcome.REQUEUE
        assert entities.get(EntityType.CLIENT, "c1") == local
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.RETRY_SCHEDULED
        assert stored.retry_count == 1

    def test_remote_wins(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        entities: DictEntityStore,
        clock: FakeClock,
    ) -> None:
        """REMOTE_WINS accepts the remote even if older."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "local"))
        remote = {"id": "c1", "name": "remote", "updated_at": clock() - 60}

        resolution = make_resolver(ResolutionStrategy.REMOTE_WINS).handle(
            op, remote_conflict(remote)
        )

        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        assert entities.get(EntityType.CLIENT, "c1") == {**remote, "version": 5}

    def test_merge(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
        clock: FakeClock,
    ) -> None:
        """MERGE writes the union locally and pushes it."""
        local = {**local_client(clock, "local"), "phone": "0102"}
        op = in_flight(OperationKind.UPDATE, local)
        remote = {"id": "c1", "name": "remote", "city": "Lyon", "updated_at": clock() - 60}

        resolution = make_resolver(ResolutionStrategy.MERGE).handle(
            op, remote_conflict(remote)
        )

        assert resolution.outcome == ResolutionOutcome.REQUEUE
        merged = entities.get(EntityType.CLIENT, "c1")
        assert merged is not None
        assert merged["name"] == "remote"
        assert merged["city"] == "Lyon"
        assert merged["phone"] == "0102"
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.payload == merged

    def test_versions_agree(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        history: ConflictHistory,
        clock: FakeClock,
    ) -> None:
        """No real divergence: the operation completes without a record."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "same"))
        remote = {"id": "c1", "name": "same", "updated_at": clock() - 60, "version": 9}

        resolution = make_resolver().handle(op, remote_conflict(remote))

        assert resolution.outcome == ResolutionOutcome.ALREADY_SYNCED
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.COMPLETED
        assert history.list() == []

    def test_versions_agree_acknowledges_remote_version(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        gateway: WriteThroughGateway,
        operations: OperationStore,
        entities: DictEntityStore,
        clock: FakeClock,
    ) -> None:
        """Agreeing versions still move the entity and its queued edits to the remote version."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "same"))
        gateway.update(EntityType.CLIENT, "c1", local_client(clock, "same"))
        remote = {"id": "c1", "name": "same", "updated_at": clock() - 60}

        make_resolver().handle(op, remote_conflict(remote, version=6))

        local = entities.get(EntityType.CLIENT, "c1")
        assert local is not None
        assert local["version"] == 6
        (queued,) = operations.query(OperationFilter(status=OperationStatus.PENDING))
        assert queued.base_version == 6

    def test_create_collision_requeued_as_update(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        clock: FakeClock,
    ) -> None:
        """A winning local CREATE over an existing record goes out as UPDATE."""
        op = in_flight(OperationKind.CREATE, local_client(clock, "local"))
        remote = {"id": "c1", "name": "other", "updated_at": clock() - 60}

        resolution = make_resolver(ResolutionStrategy.LOCAL_WINS).handle(
            op, remote_conflict(remote, version=2)
        )

        assert resolution.record is not None
        assert resolution.record.conflict_type == ConflictType.CREATE_CONFLICT
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.kind == OperationKind.UPDATE
        assert stored.base_version == 2

    def test_update_of_missing_record_requeued_as_create(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        clock: FakeClock,
    ) -> None:
        """The remote never had the record: the local version recreates it."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "local"))

        resolution = make_resolver().handle(op, remote_conflict(None, version=None))

        assert resolution.outcome == ResolutionOutcome.REQUEUE
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.kind == OperationKind.CREATE

    def test_remote_deletion_wins(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
        history: ConflictHistory,
        clock: FakeClock,
    ) -> None:
        """REMOTE_WINS against a tombstone deletes the entity locally."""
        op = in_flight(OperationKind.UPDATE, local_client(clock, "local"))

        resolution = make_resolver(ResolutionStrategy.REMOTE_WINS).handle(
            op, remote_conflict(None, deleted=True)
        )

        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        assert entities.get(EntityType.CLIENT, "c1") is None
        (record,) = history.list()
        assert record.conflict_type == ConflictType.UPDATE_DELETE
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.COMPLETED

    def test_remote_update_restores_deleted_entity(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        entities: DictEntityStore,
        clock: FakeClock,
    ) -> None:
        """A newer remote update beats a local DELETE."""
        entities.put(EntityType.CLIENT, "c1", {"id": "c1", "name": "old"})
        op = in_flight(OperationKind.DELETE)
        clock.advance(30)
        remote = {"id": "c1", "name": "remote", "updated_at": clock()}

        resolution = make_resolver().handle(op, remote_conflict(remote))

        assert resolution.record is not None
        assert resolution.record.conflict_type == ConflictType.DELETE_UPDATE
        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        assert entities.get(EntityType.CLIENT, "c1") == {**remote, "version": 5}

    def test_events(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        events: EventBus,
        clock: FakeClock,
    ) -> None:
        """Detection and resolution are published."""
        detected: list[dict[str, Any]] = []
        resolved: list[dict[str, Any]] = []
        events.subscribe(EngineEvent.CONFLICT_DETECTED, detected.append)
        events.subscribe(EngineEvent.CONFLICT_RESOLVED, resolved.append)

        op = in_flight(OperationKind.UPDATE, local_client(clock, "local", age=60))
        remote = {"id": "c1", "name": "remote", "updated_at": clock()}
        make_resolver().handle(op, remote_conflict(remote))

        assert len(detected) == 1
        assert detected[0]["conflict"]["conflict_type"] == "update_update"
        assert len(resolved) == 1
        assert resolved[0]["outcome"] == "ACCEPT_REMOTE"


class TestManualResolution:
    """Tests for deferred conflicts."""

    @pytest.fixture
    def deferred(
        self,
        make_resolver: Callable[..., ConflictResolver],
        in_flight: Callable[..., SyncOperation],
        clock: FakeClock,
    ) -> tuple[ConflictResolver, SyncOperation]:
        """An operation left in CONFLICT by the MANUAL strategy."""
        resolver = make_resolver(ResolutionStrategy.MANUAL)
        op = in_flight(OperationKind.UPDATE, local_client(clock, "local"))
        remote = {"id": "c1", "name": "remote", "updated_at": clock() - 60}
        resolution = resolver.handle(op, remote_conflict(remote, version=8))
        assert resolution.outcome == ResolutionOutcome.DEFERRED
        return resolver, op

    def test_deferred_stays_in_conflict(
        self,
        deferred: tuple[ConflictResolver, SyncOperation],
        operations: OperationStore,
        history: ConflictHistory,
    ) -> None:
        """MANUAL leaves the operation CONFLICT with a pending record."""
        _, op = deferred
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.CONFLICT
        assert stored.conflict_detail is not None
        assert len(history.pending()) == 1

    def test_resolve_with_payload(
        self,
        deferred: tuple[ConflictResolver, SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
        history: ConflictHistory,
    ) -> None:
        """A chosen payload is written locally and pushed from scratch."""
        resolver, op = deferred
        chosen = {"id": "c1", "name": "chosen"}

        resolution = resolver.resolve_manually(op.id, payload=chosen, resolved_by="alice")

        assert resolution.outcome == ResolutionOutcome.REQUEUE
        assert entities.get(EntityType.CLIENT, "c1") == chosen
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.PENDING
        assert stored.retry_count == 0
        assert stored.payload == chosen
        assert stored.base_version == 8

        (record,) = history.list()
        assert record.resolved_by == "alice"
        assert record.resolution_strategy == ResolutionStrategy.MANUAL
        assert history.pending() == []

    def test_resolve_with_remote_wins(
        self,
        deferred: tuple[ConflictResolver, SyncOperation],
        operations: OperationStore,
        entities: DictEntityStore,
    ) -> None:
        """Accepting the remote completes the operation."""
        resolver, op = deferred

        resolution = resolver.resolve_manually(op.id, strategy=ResolutionStrategy.REMOTE_WINS)

        assert resolution.outcome == ResolutionOutcome.ACCEPT_REMOTE
        local = entities.get(EntityType.CLIENT, "c1")
        assert local is not None
        assert local["name"] == "remote"
        stored = operations.get(op.id)
        assert stored is not None
        assert stored.status == OperationStatus.COMPLETED

    def test_resolution_written_once(
        self, deferred: tuple[ConflictResolver, SyncOperation]
    ) -> None:
        """A resolved operation cannot be resolved again."""
        resolver, op = deferred
        resolver.resolve_manually(op.id, strategy=ResolutionStrategy.REMOTE_WINS)
        with pytest.raises(SyncError):
            resolver.resolve_manually(op.id, strategy=ResolutionStrategy.LOCAL_WINS)

    def test_strategy_or_payload_required(
        self, deferred: tuple[ConflictResolver, SyncOperation]
    ) -> None:
        """MANUAL without a payload is not a resolution."""
        resolver, op = deferred
        with pytest.raises(ValueError):
            resolver.resolve_manually(op.id)
        with pytest.raises(ValueError):
            resolver.resolve_manually(op.id, strategy=ResolutionStrategy.MANUAL)

    def test_unknown_operation(self, make_resolver: Callable[..., ConflictResolver]) -> None:
        """Missing operations are reported."""
        with pytest.raises(OperationNotFoundError):
            make_resolver().resolve_manually("missing", strategy=ResolutionStrategy.LOCAL_WINS)

    def test_operation_not_in_conflict(
        self,
        make_resolver: Callable[..., ConflictResolver],
        gateway: WriteThroughGateway,
        operations: OperationStore,
    ) -> None:
        """Only CONFLICT operations can be resolved."""
        gateway.create(EntityType.CLIENT, {"name": "A"}, entity_id="c1")
        (op,) = operations.query()
        with pytest.raises(SyncError):
            make_resolver().resolve_manually(op.id, strategy=ResolutionStrategy.LOCAL_WINS)
