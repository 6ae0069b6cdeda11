"""Engine construction for CLI commands."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import click

from offlinesync.cli.config import (
    get_db_path,
    get_server_config,
    get_sync_config,
    load_config,
)
from offlinesync.core.config import ConfigError
from offlinesync.core.errors import PersistenceError
from offlinesync.reachability import ManualReachability
from offlinesync.remote.api import HTTPRemoteClient, PermanentRemoteError, RemoteResult
from offlinesync.sync.engine import SyncEngine

if TYPE_CHECKING:
    from collections.abc import Iterator

    from offlinesync.core.types import EntityType

logger = logging.getLogger(__name__)


class UnconfiguredRemote:
    """Remote used when no server is configured. Every call is rejected."""

    def _reject(self) -> RemoteResult:
        raise PermanentRemoteError("No server configured")

    def create(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResult:
        return self._reject()

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        expected_version: int | None = None,
    ) -> RemoteResult:
        return self._reject()

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_version: int | None = None,
    ) -> RemoteResult:
        return self._reject()

    def health_check(self) -> bool:
        return False


@contextmanager
def open_engine(
    ctx: click.Context, connect: bool = False
) -> Iterator[SyncEngine]:
    """Open the engine on the configured database.

    Args:
        ctx: Click context holding the --db override.
        connect: Probe the server and report it as reachable if it answers.
            Otherwise the engine is offline and never contacts the server.

    Raises:
        click.ClickException: On invalid configuration or unreadable database.
    """
    config = load_config()
    db_override = (ctx.obj or {}).get("db")
    try:
        sync_config = get_sync_config(config)
    except ConfigError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    server_config = get_server_config(config)
    if connect and server_config is None:
        raise click.ClickException(
            "No server configured. Run 'offlinesync config set server_url URL' first."
        )

    client = HTTPRemoteClient(server_config) if server_config else None
    reachable = bool(connect and client is not None and client.health_check())
    reachability = ManualReachability(reachable)

    try:
        engine = SyncEngine.open(
            get_db_path(config, db_override),
            client or UnconfiguredRemote(),
            reachability,
            config=sync_config,
        )
    except PersistenceError as e:
        if client is not None:
            client.close()
        raise click.ClickException(str(e)) from e

    try:
        yield engine
    finally:
        engine.close()
        if client is not None:
            client.close()
