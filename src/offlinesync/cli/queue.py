"""Queue inspection commands for the offlinesync CLI.

Commands:
- status: Engine, queue and conflict summary
- queue: List operations
- retry: Manually retry a FAILED or CONFLICT operation
- clear: Remove a COMPLETED, FAILED or CONFLICT operation
- purge: Remove completed operations
- export: Dump the queue as JSON
- import: Load a JSON dump
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import click

from offlinesync.cli.engine import open_engine
from offlinesync.core.types import EntityType, OperationStatus
from offlinesync.sync.types import OperationFilter, SyncError, SyncOperation


def format_timestamp(ts: float | None) -> str:
    """Format a Unix timestamp for display."""
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_operation(op: SyncOperation) -> str:
    """One-line summary of an operation."""
    line = (
        f"{op.id}  {op.status.value:<15} {op.kind.value:<6} "
        f"{op.entity_type.value}:{op.entity_id}  p={op.priority} "
        f"retries={op.retry_count}/{op.max_retries}  created {format_timestamp(op.created_at)}"
    )
    if op.error_message:
        line += f"\n    error: {op.error_message}"
    return line


@click.command()
@click.option("--check", is_flag=True, help="Probe the server to report reachability.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, check: bool, as_json: bool) -> None:
    """Show queue, metrics and conflict summary."""
    with open_engine(ctx, connect=check) as engine:
        snapshot = engine.get_status()

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    stats = snapshot.queue
    click.echo(f"State:      {snapshot.state.value}")
    click.echo(f"Reachable:  {'yes' if snapshot.reachable else 'no'}")
    click.echo(
        f"Queue:      {stats.total} total, {stats.pending} pending, "
        f"{stats.retry_scheduled} retry scheduled, {stats.in_progress} in progress"
    )
    click.echo(
        f"            {stats.completed} completed, {stats.failed} failed, "
        f"{stats.conflict} in conflict"
    )
    conflicts = snapshot.conflicts
    click.echo(
        f"Conflicts:  {conflicts.total} total, {conflicts.pending} pending, "
        f"{conflicts.auto_resolved} auto, {conflicts.manual_resolved} manual"
    )


@click.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in OperationStatus]),
    help="Only operations with this status.",
)
@click.option(
    "--entity-type",
    type=click.Choice([t.value for t in EntityType]),
    help="Only operations on this entity type.",
)
@click.option("--entity-id", help="Only operations on this entity.")
@click.pass_context
def queue(
    ctx: click.Context,
    status_filter: str | None,
    entity_type: str | None,
    entity_id: str | None,
) -> None:
    """List queued operations in drain order."""
    criteria = OperationFilter(
        status=OperationStatus(status_filter) if status_filter else None,
        entity_type=EntityType(entity_type) if entity_type else None,
        entity_id=entity_id,
    )
    with open_engine(ctx) as engine:
        operations = engine.list_operations(criteria)

    if not operations:
        click.echo("No operations.")
        return
    for op in operations:
        click.echo(format_operation(op))


@click.command()
@click.argument("operation_id")
@click.pass_context
def retry(ctx: click.Context, operation_id: str) -> None:
    """Retry a FAILED or CONFLICT operation."""
    with open_engine(ctx) as engine:
        try:
            op = engine.retry_operation(operation_id)
        except SyncError as e:
            raise click.ClickException(str(e)) from e
    click.echo(f"Operation {op.id} queued for retry.")


@click.command()
@click.argument("operation_id")
@click.pass_context
def clear(ctx: click.Context, operation_id: str) -> None:
    """Remove a COMPLETED, FAILED or CONFLICT operation."""
    with open_engine(ctx) as engine:
        try:
            engine.clear_operation(operation_id)
        except SyncError as e:
            raise click.ClickException(str(e)) from e
    click.echo(f"Operation {operation_id} cleared.")


@click.command()
@click.option(
    "--older-than-days",
    type=float,
    default=None,
    help="Only remove operations completed at least this many days ago.",
)
@click.pass_context
def purge(ctx: click.Context, older_than_days: float | None) -> None:
    """Remove completed operations."""
    with open_engine(ctx) as engine:
        removed = engine.purge_completed(older_than_days)
    click.echo(f"Removed {removed} completed operations.")


@click.command("export")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def export_cmd(ctx: click.Context, output: Path) -> None:
    """Dump all operations to a JSON file."""
    with open_engine(ctx) as engine:
        data = engine.export_operations()
    output.write_text(json.dumps(data, indent=2))
    click.echo(f"Exported {len(data)} operations to {output}")


@click.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_cmd(ctx: click.Context, source: Path) -> None:
    """Load operations from a JSON dump."""
    try:
        data = json.loads(source.read_text())
    except ValueError as e:
        raise click.ClickException(f"Invalid JSON in {source}: {e}") from e
    if not isinstance(data, list):
        raise click.ClickException("Expected a JSON list of operations")

    with open_engine(ctx) as engine:
        try:
            imported = engine.import_operations(data)
        except (KeyError, ValueError) as e:
            raise click.ClickException(f"Invalid operation: {e}") from e
    click.echo(f"Imported {imported} operations.")
