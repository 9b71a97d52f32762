"""Queue inspection and maintenance commands for the offlinequeue CLI.

Commands:
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

import json
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import click

from offlinequeue.client.cli import config as cli_config
from offlinequeue.client.queue.types import DispatchFailure, QueueError

if TYPE_CHECKING:
    from offlinequeue.client.service import OfflineActionQueue


class _UnconfiguredDispatcher:
    """Dispatcher used when no server is configured."""

    def dispatch(self, command: str, args: dict[str, Any]) -> Any:
        raise DispatchFailure(command, "No server configured")


@contextmanager
def open_queue(online: bool = False) -> Iterator[OfflineActionQueue]:
    """Open the local queue database as a service.

    Args:
        online: Start with the connection reported as CONNECTED.

    Yields:
        Started OfflineActionQueue (no background threads).
    """
    from offlinequeue.client.api import HTTPClient, HTTPDispatcher
    from offlinequeue.client.monitor import ConnectionMonitor
    from offlinequeue.client.queue.engine import DispatcherProtocol
    from offlinequeue.client.queue.persistence import SQLitePersistence
    from offlinequeue.client.service import OfflineActionQueue
    from offlinequeue.core.types import ConnectionStatus

    queue_config = cli_config.load_queue_config()
    server_config = cli_config.load_server_config()

    try:
        persistence = SQLitePersistence(
            cli_config.get_queue_db_path(), namespace=queue_config.namespace
        )
    except QueueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    client: HTTPClient | None = None
    dispatcher: DispatcherProtocol
    if server_config is not None:
        client = HTTPClient(server_config)
        dispatcher = HTTPDispatcher(client)
    else:
        dispatcher = _UnconfiguredDispatcher()

    monitor = ConnectionMonitor(
        ConnectionStatus.CONNECTED if online else ConnectionStatus.OFFLINE
    )
    service = OfflineActionQueue(
        persistence, dispatcher, monitor=monitor, config=queue_config
    )
    service.start(background=False)
    try:
        yield service
    finally:
        service.close()
        if client is not None:
            client.close()


def _parse_args(pairs: tuple[str, ...], json_args: str | None) -> dict[str, Any]:
    """Build command arguments from --json and --arg options."""
    args: dict[str, Any] = {}
    if json_args:
        try:
            loaded = json.loads(json_args)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"invalid JSON: {e}", param_hint="--json") from e
        if not isinstance(loaded, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--json")
        args.update(loaded)

    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--arg")
        try:
            args[key] = json.loads(raw)
        except json.JSONDecodeError:
            args[key] = raw
    return args


def _format_age(seconds: float) -> str:
    """Format an age like 45s, 12m or 3h."""
    seconds = max(0.0, seconds)
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.0f}m"
    return f"{seconds / 3600:.1f}h"


@click.command()
def status() -> None:
    """Show pending and failed action counts."""
    server_config = cli_config.load_server_config()

    with open_queue() as service:
        click.echo(f"Pending: {service.count()}")
        click.echo(f"Failed: {service.failed_count()}")
        summary = service.pending_summary()
        if summary:
            click.echo(summary)

    if server_config is None:
        click.echo("Server: not configured")
    else:
        click.echo(f"Server: {server_config.server_url}")


@click.command("list")
@click.option("--failed", "failed_only", is_flag=True, help="Only list failed actions.")
def list_actions(failed_only: bool) -> None:
    """List pending and failed actions, oldest first."""
    now = time.time()
    with open_queue() as service:
        if not failed_only:
            click.echo(f"Pending ({service.count()}):")
            for action in service.pending:
                click.echo(
                    f"  {action.id}  {action.command}  "
                    f"{_format_age(action.age(now))} ago  retries={action.retry_count}"
                )
        click.echo(f"Failed ({service.failed_count()}):")
        for failed in service.failed:
            click.echo(
                f"  {failed.id}  {failed.command}  retries={failed.retry_count}  "
                f"error: {failed.last_error}"
            )


@click.command()
@click.argument("command")
@click.option(
    "--arg",
    "-a",
    "pairs",
    multiple=True,
    help="Command argument as KEY=VALUE (VALUE parsed as JSON if possible).",
)
@click.option("--json", "json_args", default=None, help="Command arguments as a JSON object.")
def enqueue(command: str, pairs: tuple[str, ...], json_args: str | None) -> None:
    """Queue COMMAND for replay on the next sync.

    Only write commands that may be deferred are accepted.

    Examples:

        offlinequeue enqueue update_task -a taskId=t1 -a title=Draft

        offlinequeue enqueue create_task --json '{"title": "Draft"}'
    """
    args = _parse_args(pairs, json_args)

    with open_queue() as service:
        try:
            action_id = service.enqueue(command, args)
        except QueueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Queued {command} as {action_id}")
        click.echo(service.pending_summary())


@click.command()
@click.argument("action_id", required=False)
@click.option("--all", "retry_all", is_flag=True, help="Retry every failed action.")
def retry(action_id: str | None, retry_all: bool) -> None:
    """Move a failed action (or all of them) back to the queue."""
    if not action_id and not retry_all:
        raise click.UsageError("Give an ACTION_ID or --all.")

    with open_queue() as service:
        try:
            if retry_all:
                count = service.retry_all()
            else:
                count = 1 if service.retry(action_id or "") else 0
        except QueueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if not retry_all and count == 0:
        click.echo(f"Error: No failed action with id {action_id}", err=True)
        sys.exit(1)
    click.echo(f"Re-queued {count} failed action{'s' if count != 1 else ''}")


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def clear(yes: bool) -> None:
    """Drop every pending action. Failed actions are kept."""
    if not yes and not click.confirm("Drop all pending actions?"):
        sys.exit(0)

    with open_queue() as service:
        try:
            count = service.clear()
        except QueueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Cleared {count} pending action{'s' if count != 1 else ''}")


@click.command("clear-failed")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def clear_failed(yes: bool) -> None:
    """Drop every failed action. Pending actions are kept."""
    if not yes and not click.confirm("Drop all failed actions?"):
        sys.exit(0)

    with open_queue() as service:
        try:
            count = service.clear_failed()
        except QueueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Cleared {count} failed action{'s' if count != 1 else ''}")


@click.command()
@click.option(
    "--max-age",
    type=float,
    default=None,
    help="Age in seconds from which an action is stale (default: configured).",
)
def prune(max_age: float | None) -> None:
    """Drop pending actions older than the maximum age."""
    from offlinequeue.client.queue.pruner import Pruner

    with open_queue() as service:
        try:
            if max_age is None:
                removed = service.prune()
            else:
                removed = Pruner(service.store, max_age=max_age).sweep()
        except (QueueError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Pruned {len(removed)} stale action{'s' if len(removed) != 1 else ''}")


@click.command()
def sync() -> None:
    """Replay pending actions against the server, oldest first.

    Actions older than the maximum age are pruned instead of replayed.

    Exits with status 1 if any action failed.
    """
    from offlinequeue.client.api import HTTPClient

    server_config = cli_config.load_server_config()
    if server_config is None:
        click.echo("Error: No server configured. Run 'offlinequeue configure' first.", err=True)
        sys.exit(1)

    with HTTPClient(server_config) as client:
        reachable = client.health_check()
    if not reachable:
        click.echo(f"Error: Server {server_config.server_url} is not reachable.", err=True)
        sys.exit(1)

    with open_queue(online=True) as service:
        try:
            pruned = service.prune()
            if pruned:
                click.echo(
                    f"Pruned {len(pruned)} stale action{'s' if len(pruned) != 1 else ''}"
                )
            if service.count() == 0:
                click.echo("Nothing to sync.")
                return
            result = service.sync_now()
        except QueueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if result is None:
            click.echo("Error: A sync is already running.", err=True)
            sys.exit(1)

        click.echo(f"Replayed {len(result.succeeded)}, failed {len(result.failed)}")
        if result.held_back:
            click.echo(f"Held back {len(result.held_back)} dependent actions")
        if result.has_failures:
            click.echo(f"Last error: {service.last_error}", err=True)
            sys.exit(1)
