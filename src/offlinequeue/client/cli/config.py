"""Configuration utilities for the offlinequeue CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from offlinequeue.core.config import QueueConfig, ServerConfig


def get_config_dir() -> Path:
    """Get the configuration directory for offlinequeue.

    Returns:
        Path to ~/.offlinequeue or equivalent.
    """
    return Path.home() / ".offlinequeue"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_queue_db_path() -> Path:
    """Get the path to the SQLite database holding the queue."""
    return get_config_dir() / "queue.db"


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


def load_queue_config() -> QueueConfig:
    """Queue settings from the config file, defaults for missing keys."""
    return QueueConfig.from_dict(load_config())


def load_server_config() -> ServerConfig | None:
    """Server settings from the config file.

    Returns:
        ServerConfig, or None if no server is configured.
    """
    config = load_config()
    if not config.get("server_url") or not config.get("auth_token"):
        return None
    return ServerConfig(
        server_url=config["server_url"],
        token=config["auth_token"],
        timeout=float(config.get("timeout", 30.0)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )
