"""Configuration utilities for the offlinesync CLI.

The config file is ~/.offlinesync/config.json:

    {
      "server_url": "https://api.example.com",
      "token": "...",
      "db_path": "~/.offlinesync/offlinesync.db",
      "sync": {"batch_size": 20, "conflict_strategy": "merge"}
    }
"""

from __future__ import annotations

import json
from dataclasses import fields
from pathlib import Path
from typing import Any

from offlinesync.core.config import ConfigError, ServerConfig, SyncConfig

SERVER_KEYS = ("server_url", "token")


def get_config_dir() -> Path:
    """Get the configuration directory.

    Returns:
        Path to ~/.offlinesync.
    """
    return Path.home() / ".offlinesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_db_path(config: dict[str, Any], override: str | None = None) -> Path:
    """Get the database path.

    Returns:
        The --db override, the configured path, or ~/.offlinesync/offlinesync.db.
    """
    if override:
        return Path(override).expanduser()
    if config.get("db_path"):
        return Path(config["db_path"]).expanduser()
    return get_config_dir() / "offlinesync.db"


def get_sync_config(config: dict[str, Any]) -> SyncConfig:
    """Build the engine configuration from the config file.

    Raises:
        ConfigError: If a stored value is invalid.
    """
    return SyncConfig.from_dict(config.get("sync") or {})


def get_server_config(config: dict[str, Any]) -> ServerConfig | None:
    """Build the server configuration, or None if not configured."""
    if not config.get("server_url"):
        return None
    return ServerConfig(server_url=config["server_url"], token=config.get("token", ""))


def parse_value(raw: str) -> Any:
    """Parse a command-line value as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def set_value(config: dict[str, Any], key: str, raw: str) -> dict[str, Any]:
    """Return a copy of ``config`` with one key changed.

    Server keys are stored as strings; engine keys are validated.

    Raises:
        ConfigError: On unknown keys or invalid values.
    """
    updated = dict(config)
    if key in SERVER_KEYS or key == "db_path":
        updated[key] = raw
        return updated

    known = {f.name for f in fields(SyncConfig)}
    if key not in known:
        raise ConfigError(f"Unknown config key: {key}")
    current = get_sync_config(config)
    validated = current.merged({key: parse_value(raw)})
    sync_section = dict(config.get("sync") or {})
    sync_section[key] = validated.to_dict()[key]
    updated["sync"] = sync_section
    return updated
