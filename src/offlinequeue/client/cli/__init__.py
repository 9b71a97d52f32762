"""Command-line interface for offlinequeue.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Set the backend server and queue settings
- status: Show pending and failed counts
- list: List pending and failed actions
- enqueue: Queue a command for later replay
- retry: Move failed actions back to the queue
- clear: Drop pending actions
- clear-failed: Drop failed actions
- prune: Drop stale pending actions
- sync: Replay the queue against the server
"""

from __future__ import annotations

import logging
import sys

import click

from offlinequeue.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_queue_db_path,
    load_config,
    load_queue_config,
    load_server_config,
    save_config,
)
from offlinequeue.client.cli.configure import configure
from offlinequeue.client.cli.queue import (
    clear,
    clear_failed,
    enqueue,
    list_actions,
    prune,
    retry,
    status,
    sync,
)


def setup_logging(verbose: bool) -> None:
    """Send offlinequeue log records to stderr.

    Args:
        verbose: Show DEBUG records instead of warnings and errors only.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    package_logger = logging.getLogger("offlinequeue")
    for existing in package_logger.handlers[:]:
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@click.group()
@click.version_option(package_name="offlinequeue")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """offlinequeue - Queue write commands offline and replay them later."""
    setup_logging(verbose)


# Configuration
cli.add_command(configure)

# Inspection
cli.add_command(status)
cli.add_command(list_actions)

# Queue maintenance
cli.add_command(enqueue)
cli.add_command(retry)
cli.add_command(clear)
cli.add_command(clear_failed)
cli.add_command(prune)

# Replay
cli.add_command(sync)


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
    "get_queue_db_path",
    "load_config",
    "load_queue_config",
    "load_server_config",
    "save_config",
]
