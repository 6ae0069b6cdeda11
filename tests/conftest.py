"""Shared fixtures: in-memory collaborators and a controllable clock."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from offlinesync.core.config import SyncConfig
from offlinesync.core.errors import PersistenceError
from offlinesync.core.types import EntityType
from offlinesync.reachability import ManualReachability
from offlinesync.remote.api import RemoteConflictError, RemoteResult
from offlinesync.sync.engine import SyncEngine
from offlinesync.sync.history import ConflictHistory
from offlinesync.sync.store import OperationStore

START_TIME = 1_700_000_000.0


class FakeClock:
    """Clock advanced by hand."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """In-memory remote API.

    Records every call. Errors queued with fail_with() are raised by the
    next calls, in order. With enforce_versions set, updates and deletes
    whose expected version differs from the stored one are rejected like
    an If-Match mismatch.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, EntityType, str]] = []
        self.entities: dict[tuple[EntityType, str], dict[str, Any]] = {}
        self.versions: dict[tuple[EntityType, str], int] = {}
        self.expected_versions: list[int | None] = []
        self.reachable = True
        self.enforce_versions = False
        self.on_call: Callable[[str, EntityType, str], None] | None = None
        self._errors: list[Exception] = []

    def fail_with(self, *errors: Exception) -> None:
        self._errors.extend(errors)

    def _record(self, method: str, entity_type: EntityType, entity_id: str) -> None:
        self.calls.append((method, entity_type, entity_id))
        if self.on_call is not None:
            self.on_call(method, entity_type, entity_id)
        if self._errors:
            raise self._errors.pop(0)

    def create(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResult:
        self._record("create", entity_type, entity_id)
        return self._store(entity_type, entity_id, payload)

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        expected_version: int | None = None,
    ) -> RemoteResult:
        self.expected_versions.append(expected_version)
        self._record("update", entity_type, entity_id)
        self._check_version(entity_type, entity_id, expected_version)
        return self._store(entity_type, entity_id, payload)

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_version: int | None = None,
    ) -> RemoteResult:
        self.expected_versions.append(expected_version)
        self._record("delete", entity_type, entity_id)
        self._check_version(entity_type, entity_id, expected_version)
        self.entities.pop((entity_type, entity_id), None)
        return RemoteResult()

    def health_check(self) -> bool:
        return self.reachable

    def _check_version(
        self, entity_type: EntityType, entity_id: str, expected_version: int | None
    ) -> None:
        key = (entity_type, entity_id)
        current = self.versions.get(key, 0)
        if not self.enforce_versions or expected_version is None:
            return
        if expected_version != current:
            raise RemoteConflictError(
                "Version mismatch",
                remote_payload=self.entities.get(key),
                remote_version=current,
            )

    def _store(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResult:
        key = (entity_type, entity_id)
        version = self.versions.get(key, 0) + 1
        self.versions[key] = version
        entity = {**payload, "version": version}
        self.entities[key] = entity
        return RemoteResult(entity=entity, version=version)


class DictEntityStore:
    """In-memory local entity store."""

    def __init__(self) -> None:
        self.data: dict[tuple[EntityType, str], dict[str, Any]] = {}
        self.fail_writes = False

    def get(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        entity = self.data.get((entity_type, entity_id))
        return dict(entity) if entity is not None else None

    def put(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        if self.fail_writes:
            raise PersistenceError("disk full")
        self.data[(entity_type, entity_id)] = dict(payload)
        return dict(payload)

    def delete(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        if self.fail_writes:
            raise PersistenceError("disk full")
        return self.data.pop((entity_type, entity_id), None)


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock."""
    return FakeClock()


@pytest.fixture
def remote() -> FakeRemote:
    """In-memory remote."""
    return FakeRemote()


@pytest.fixture
def entities() -> DictEntityStore:
    """In-memory local store."""
    return DictEntityStore()


@pytest.fixture
def reachability() -> ManualReachability:
    """Online by default."""
    return ManualReachability(True)


@pytest.fixture
def operations(tmp_path: Path, clock: FakeClock) -> Iterator[OperationStore]:
    """Operation store in a temporary file."""
    store = OperationStore(tmp_path / "ops.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def history(tmp_path: Path) -> Iterator[ConflictHistory]:
    """Conflict history in a temporary file."""
    conflict_history = ConflictHistory(tmp_path / "ops.db")
    yield conflict_history
    conflict_history.close()


@pytest.fixture
def sleeps() -> list[float]:
    """Pauses requested by the coordinator."""
    return []


@pytest.fixture
def make_engine(
    remote: FakeRemote,
    entities: DictEntityStore,
    reachability: ManualReachability,
    operations: OperationStore,
    history: ConflictHistory,
    clock: FakeClock,
    sleeps: list[float],
) -> Iterator[Callable[..., SyncEngine]]:
    """Factory building an engine on the fake collaborators."""
    engines: list[SyncEngine] = []

    def _make(**overrides: Any) -> SyncEngine:
        config = SyncConfig(**{"inter_batch_delay_ms": 0, **overrides})
        engine = SyncEngine(
            remote,
            entities,
            reachability,
            operations,
            history,
            config=config,
            sleep=sleeps.append,
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.stop()
