"""Conflict commands for the offlinesync CLI.

Commands:
- conflicts: List the conflict history
- resolve: Resolve a deferred conflict
"""

from __future__ import annotations

import json

import click

from offlinesync.cli.engine import open_engine
from offlinesync.cli.queue import format_timestamp
from offlinesync.core.errors import SyncError
from offlinesync.core.types import ResolutionStrategy

AUTOMATIC_STRATEGIES = [
    s.value for s in ResolutionStrategy if s != ResolutionStrategy.MANUAL
]


@click.command()
@click.option("--pending", is_flag=True, help="Only unresolved conflicts.")
@click.pass_context
def conflicts(ctx: click.Context, pending: bool) -> None:
    """List recorded conflicts, most recent first."""
    with open_engine(ctx) as engine:
        records = engine.list_conflicts(pending_only=pending)

    if not records:
        click.echo("No conflicts.")
        return

    for record in records:
        if record.is_resolved:
            strategy = record.resolution_strategy.value if record.resolution_strategy else "-"
            resolution = f"resolved by {record.resolved_by} ({strategy})"
        else:
            resolution = "PENDING"
        click.echo(
            f"{record.operation_id}  {record.conflict_type.value:<15} "
            f"{record.entity_type.value}:{record.entity_id}  "
            f"{format_timestamp(record.detected_at)}  {resolution}"
        )
        click.echo(f"    {record.description}")


@click.command()
@click.argument("operation_id")
@click.option(
    "--strategy",
    type=click.Choice(AUTOMATIC_STRATEGIES),
    help="Strategy used to pick the winner.",
)
@click.option("--payload", help="Resolved entity as JSON, instead of a strategy.")
@click.option("--by", "resolved_by", default="cli", show_default=True, help="Who resolved it.")
@click.pass_context
def resolve(
    ctx: click.Context,
    operation_id: str,
    strategy: str | None,
    payload: str | None,
    resolved_by: str,
) -> None:
    """Resolve the pending conflict of an operation."""
    if (strategy is None) == (payload is None):
        raise click.UsageError("Give exactly one of --strategy or --payload.")

    resolved_payload = None
    if payload is not None:
        try:
            resolved_payload = json.loads(payload)
        except ValueError as e:
            raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--payload") from e
        if not isinstance(resolved_payload, dict):
            raise click.BadParameter("Expected a JSON object", param_hint="--payload")

    with open_engine(ctx) as engine:
        try:
            resolution = engine.resolve_conflict(
                operation_id,
                strategy=ResolutionStrategy(strategy) if strategy else None,
                payload=resolved_payload,
                resolved_by=resolved_by,
            )
        except SyncError as e:
            raise click.ClickException(str(e)) from e

    click.echo(f"Conflict resolved: {resolution.message}.")
