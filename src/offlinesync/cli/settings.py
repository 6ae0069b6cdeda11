"""Configuration commands for the offlinesync CLI.

Commands:
- config show: Print the effective configuration
- config set: Change one key
"""

from __future__ import annotations

import json

import click

from offlinesync.cli.config import (
    get_config_file,
    get_sync_config,
    load_config,
    save_config,
    set_value,
)
from offlinesync.core.config import ConfigError


@click.group("config")
def config_group() -> None:
    """Show or change configuration."""


@config_group.command("show")
def show() -> None:
    """Print the effective configuration."""
    config = load_config()
    try:
        sync_config = get_sync_config(config)
    except ConfigError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    effective = {
        "server_url": config.get("server_url"),
        "token": "***" if config.get("token") else None,
        "db_path": config.get("db_path"),
        "sync": sync_config.to_dict(),
    }
    click.echo(json.dumps(effective, indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def set_cmd(key: str, value: str) -> None:
    """Set KEY to VALUE (server_url, token, db_path or an engine setting)."""
    try:
        updated = set_value(load_config(), key, value)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    save_config(updated)
    click.echo(f"Saved {key} to {get_config_file()}")
