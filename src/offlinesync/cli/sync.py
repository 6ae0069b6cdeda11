"""Sync command for the offlinesync CLI.

Commands:
- sync: Run one drain against the configured server
"""

from __future__ import annotations

import sys

import click

from offlinesync.cli.engine import open_engine
from offlinesync.core.errors import SyncError
from offlinesync.sync.types import DrainOutcome


@click.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Push queued operations to the server.

    Runs a single drain cycle: every PENDING operation (and every retry
    that is due) is sent, in priority order.
    """
    with open_engine(ctx, connect=True) as engine:
        try:
            result = engine.manual_sync()
        except SyncError as e:
            raise click.ClickException(f"Sync failed: {e}") from e
        pending = engine.get_metrics().pending_operations

    if result.outcome == DrainOutcome.OFFLINE:
        click.echo("Error: Server unreachable, nothing synced.", err=True)
        sys.exit(1)
    if result.outcome == DrainOutcome.BUSY:
        click.echo("Error: Sync already in progress.", err=True)
        sys.exit(1)

    click.echo(
        f"Synced {result.processed} operations: {result.successful} ok, "
        f"{result.failed} failed, {result.conflicts} conflicts "
        f"({result.duration_ms:.0f}ms)."
    )
    if pending:
        click.echo(f"{pending} operations still waiting.")
