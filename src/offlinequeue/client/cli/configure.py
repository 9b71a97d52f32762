"""Configure command for the offlinequeue CLI.

Commands:
- configure: Set the backend server and queue settings
"""

from __future__ import annotations

import sys

import click

from offlinequeue.client.cli import config as cli_config


@click.command()
@click.option("--server", default=None, help="Server URL (e.g., http://localhost:8000).")
@click.option("--token", default=None, help="Authentication token.")
@click.option(
    "--max-age",
    type=float,
    default=None,
    help="Seconds after which an undelivered action is dropped.",
)
@click.option(
    "--dispatch-timeout",
    type=float,
    default=None,
    help="Seconds before a replayed command counts as failed.",
)
@click.option(
    "--verify-ssl/--no-verify-ssl",
    default=None,
    help="Verify the server's TLS certificate.",
)
@click.option("--check", is_flag=True, help="Check that the server is reachable.")
def configure(
    server: str | None,
    token: str | None,
    max_age: float | None,
    dispatch_timeout: float | None,
    verify_ssl: bool | None,
    check: bool,
) -> None:
    """Set the backend server and queue settings.

    Only the given options are changed; the others keep their value.
    """
    from offlinequeue.core.config import QueueConfig

    config = cli_config.load_config()

    if server is not None:
        config["server_url"] = server.rstrip("/")
    if token is not None:
        config["auth_token"] = token
    if max_age is not None:
        config["max_age"] = max_age
    if dispatch_timeout is not None:
        config["dispatch_timeout"] = dispatch_timeout
    if verify_ssl is not None:
        config["verify_ssl"] = verify_ssl

    # Validate before writing anything
    try:
        QueueConfig.from_dict(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    cli_config.save_config(config)
    click.echo(f"Configuration saved to {cli_config.get_config_file()}")

    if not check:
        return

    server_config = cli_config.load_server_config()
    if server_config is None:
        click.echo("Error: Server URL and token are required for --check.", err=True)
        sys.exit(1)

    from offlinequeue.client.api import HTTPClient

    with HTTPClient(server_config) as client:
        healthy = client.health_check()
    if healthy:
        click.echo(f"Server {server_config.server_url} is reachable.")
    else:
        click.echo(f"Error: Server {server_config.server_url} is not reachable.", err=True)
        sys.exit(1)
