"""Command-line interface for offlinesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- status: Queue, metrics and conflict summary
- queue: List operations
- sync: Push queued operations to the server
- retry: Retry a FAILED or CONFLICT operation
- clear: Remove a finished operation
- purge: Remove completed operations
- export / import: Dump and load the queue
- conflicts: List the conflict history
- resolve: Resolve a deferred conflict
- config: Show or change configuration
"""

from __future__ import annotations

import logging

import click

from offlinesync import __version__
from offlinesync.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from offlinesync.cli.conflicts import conflicts, resolve
from offlinesync.cli.queue import clear, export_cmd, import_cmd, purge, queue, retry, status
from offlinesync.cli.settings import config_group
from offlinesync.cli.sync import sync


def _setup_logging(verbose: bool) -> None:
    """Send offlinesync logs to stderr."""
    package_logger = logging.getLogger("offlinesync")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(__version__)
@click.option(
    "--db",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite database (default: ~/.offlinesync/offlinesync.db).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, verbose: bool) -> None:
    """offlinesync - Offline-first entity sync engine."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    _setup_logging(verbose)


# Queue commands
cli.add_command(status)
cli.add_command(queue)
cli.add_command(retry)
cli.add_command(clear)
cli.add_command(purge)
cli.add_command(export_cmd)
cli.add_command(import_cmd)

# Sync commands
cli.add_command(sync)

# Conflict commands
cli.add_command(conflicts)
cli.add_command(resolve)

# Config commands
cli.add_command(config_group)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
