"""Tests for CLI commands - configure, status, list, enqueue, retry, clear, prune, sync."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from offlinequeue.client.cli import cli
from offlinequeue.client.queue.persistence import SQLitePersistence
from offlinequeue.client.queue.types import FailedAction, QueuedAction, QueueSnapshot


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path) -> Iterator[Path]:
    """Point the CLI at a temporary config directory."""
    config = tmp_path / ".offlinequeue"
    with patch("offlinequeue.client.cli.config.get_config_dir", return_value=config):
        yield config


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Drop the handler installed by the CLI group after each test."""
    yield
    package_logger = logging.getLogger("offlinequeue")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


def seed(
    config_dir: Path,
    queue: tuple[QueuedAction, ...] = (),
    failed: tuple[FailedAction, ...] = (),
) -> None:
    """Write a snapshot into the CLI's queue database."""
    persistence = SQLitePersistence(config_dir / "queue.db")
    persistence.save(QueueSnapshot(queue=queue, failed=failed))
    persistence.close()


def load(config_dir: Path) -> QueueSnapshot:
    """Read the snapshot from the CLI's queue database."""
    persistence = SQLitePersistence(config_dir / "queue.db")
    try:
        return persistence.load()
    finally:
        persistence.close()


def configure_server(runner: CliRunner) -> None:
    """Register the test server in the config file."""
    result = runner.invoke(cli, ["configure", "--server", "http://test/", "--token", "tok"])
    assert result.exit_code == 0


class TestConfigureCommand:
    """Tests for 'offlinequeue configure' command."""

    def test_saves_config(self, runner: CliRunner, config_dir: Path) -> None:
        """configure should write the server and queue settings."""
        result = runner.invoke(
            cli,
            ["configure", "--server", "http://test/", "--token", "tok", "--max-age", "600"],
        )

        assert result.exit_code == 0
        config = json.loads((config_dir / "config.json").read_text())
        assert config == {"server_url": "http://test", "auth_token": "tok", "max_age": 600.0}

    def test_keeps_unchanged_values(self, runner: CliRunner, config_dir: Path) -> None:
        """Options not given should keep their saved value."""
        configure_server(runner)
        runner.invoke(cli, ["configure", "--dispatch-timeout", "5"])

        config = json.loads((config_dir / "config.json").read_text())
        assert config["server_url"] == "http://test"
        assert config["dispatch_timeout"] == 5.0

    def test_rejects_invalid_max_age(self, runner: CliRunner, config_dir: Path) -> None:
        """A non-positive max age should be refused and not saved."""
        result = runner.invoke(cli, ["configure", "--max-age", "0"])

        assert result.exit_code == 1
        assert "max_age" in result.output
        assert not (config_dir / "config.json").exists()

    def test_check_reachable(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """--check should report a reachable server."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        result = runner.invoke(
            cli, ["configure", "--server", "http://test", "--token", "tok", "--check"]
        )

        assert result.exit_code == 0
        assert "is reachable" in result.output


class TestStatusAndList:
    """Tests for 'offlinequeue status' and 'offlinequeue list'."""

    def test_status_empty(self, runner: CliRunner, config_dir: Path) -> None:
        """status should show zero counts and no server."""
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Pending: 0" in result.output
        assert "Failed: 0" in result.output
        assert "Server: not configured" in result.output

    def test_status_with_actions(self, runner: CliRunner, config_dir: Path) -> None:
        """status should show the pending summary."""
        seed(
            config_dir,
            queue=(QueuedAction.create("create_task"), QueuedAction.create("update_task")),
            failed=(
                FailedAction(id="f1", command="delete_task", retry_count=1, last_error="boom"),
            ),
        )
        configure_server(runner)

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Pending: 2" in result.output
        assert "1 failed, 2 pending" in result.output
        assert "Server: http://test" in result.output

    def test_list(self, runner: CliRunner, config_dir: Path) -> None:
        """list should show pending and failed actions with their ids."""
        pending = QueuedAction.create("update_task", {"taskId": "t1"})
        seed(
            config_dir,
            queue=(pending,),
            failed=(
                FailedAction(id="f1", command="delete_task", retry_count=2, last_error="HTTP 409: Conflict"),
            ),
        )

        result = runner.invoke(cli, ["list"])

        assert result.exit_code == 0
        assert pending.id in result.output
        assert "update_task" in result.output
        assert "f1" in result.output
        assert "HTTP 409: Conflict" in result.output

    def test_list_failed_only(self, runner: CliRunner, config_dir: Path) -> None:
        """list --failed should hide pending actions."""
        pending = QueuedAction.create("update_task")
        seed(config_dir, queue=(pending,))

        result = runner.invoke(cli, ["list", "--failed"])

        assert result.exit_code == 0
        assert pending.id not in result.output
        assert "Failed (0)" in result.output


class TestEnqueueCommand:
    """Tests for 'offlinequeue enqueue' command."""

    def test_enqueue_with_args(self, runner: CliRunner, config_dir: Path) -> None:
        """enqueue should store the command with parsed arguments."""
        result = runner.invoke(
            cli,
            ["enqueue", "update_task", "-a", "taskId=t1", "-a", "priority=3", "-a", "done=true"],
        )

        assert result.exit_code == 0
        assert "Queued update_task" in result.output
        assert "1 action pending sync" in result.output
        snapshot = load(config_dir)
        assert snapshot.queue[0].args == {"taskId": "t1", "priority": 3, "done": True}

    def test_enqueue_json(self, runner: CliRunner, config_dir: Path) -> None:
        """--json should provide the arguments as an object."""
        result = runner.invoke(
            cli, ["enqueue", "create_task", "--json", '{"title": "Draft", "tags": ["a"]}']
        )

        assert result.exit_code == 0
        assert load(config_dir).queue[0].args == {"title": "Draft", "tags": ["a"]}

    def test_enqueue_rejects_read_command(self, runner: CliRunner, config_dir: Path) -> None:
        """Commands not on the allow-list should be refused."""
        result = runner.invoke(cli, ["enqueue", "get_tasks"])

        assert result.exit_code == 1
        assert "cannot be queued" in result.output
        assert load(config_dir).queue == ()

    def test_enqueue_bad_arg(self, runner: CliRunner, config_dir: Path) -> None:
        """Malformed --arg values should be a usage error."""
        result = runner.invoke(cli, ["enqueue", "update_task", "-a", "novalue"])

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_enqueue_rejects_non_finite_number(self, runner: CliRunner, config_dir: Path) -> None:
        """A NaN argument has no JSON form and should be refused."""
        result = runner.invoke(cli, ["enqueue", "update_task", "-a", "taskId=t1", "-a", "estimate=NaN"])

        assert result.exit_code == 1
        assert "non-finite" in result.output
        assert load(config_dir).queue == ()


class TestMaintenanceCommands:
    """Tests for retry, clear, clear-failed and prune."""

    def test_retry_one(self, runner: CliRunner, config_dir: Path) -> None:
        """retry ID should move the failed action back to the queue."""
        seed(config_dir, failed=(FailedAction(id="f1", command="update_task", retry_count=1),))

        result = runner.invoke(cli, ["retry", "f1"])

        assert result.exit_code == 0
        snapshot = load(config_dir)
        assert [a.id for a in snapshot.queue] == ["f1"]
        assert snapshot.queue[0].retry_count == 1
        assert snapshot.failed == ()

    def test_retry_missing(self, runner: CliRunner, config_dir: Path) -> None:
        """retry with an unknown id should fail."""
        result = runner.invoke(cli, ["retry", "missing"])

        assert result.exit_code == 1
        assert "No failed action" in result.output

    def test_retry_all(self, runner: CliRunner, config_dir: Path) -> None:
        """retry --all should re-queue every failed action."""
        seed(
            config_dir,
            failed=(
                FailedAction(id="f1", command="update_task"),
                FailedAction(id="f2", command="delete_task"),
            ),
        )

        result = runner.invoke(cli, ["retry", "--all"])

        assert result.exit_code == 0
        assert "Re-queued 2 failed actions" in result.output
        assert [a.id for a in load(config_dir).queue] == ["f1", "f2"]

    def test_retry_requires_target(self, runner: CliRunner, config_dir: Path) -> None:
        """retry without an id or --all should be a usage error."""
        result = runner.invoke(cli, ["retry"])
        assert result.exit_code == 2

    def test_clear_keeps_failed(self, runner: CliRunner, config_dir: Path) -> None:
        """clear --yes should only drop pending actions."""
        seed(
            config_dir,
            queue=(QueuedAction.create("create_task"),),
            failed=(FailedAction(id="f1", command="update_task"),),
        )

        result = runner.invoke(cli, ["clear", "--yes"])

        assert result.exit_code == 0
        assert "Cleared 1 pending action" in result.output
        snapshot = load(config_dir)
        assert snapshot.queue == ()
        assert len(snapshot.failed) == 1

    def test_clear_cancelled(self, runner: CliRunner, config_dir: Path) -> None:
        """Declining the confirmation should keep the queue."""
        seed(config_dir, queue=(QueuedAction.create("create_task"),))

        result = runner.invoke(cli, ["clear"], input="n\n")

        assert result.exit_code == 0
        assert len(load(config_dir).queue) == 1

    def test_clear_failed_keeps_queue(self, runner: CliRunner, config_dir: Path) -> None:
        """clear-failed --yes should only drop failed actions."""
        seed(
            config_dir,
            queue=(QueuedAction.create("create_task"),),
            failed=(FailedAction(id="f1", command="update_task"),),
        )

        result = runner.invoke(cli, ["clear-failed", "--yes"])

        assert result.exit_code == 0
        snapshot = load(config_dir)
        assert len(snapshot.queue) == 1
        assert snapshot.failed == ()

    def test_prune(self, runner: CliRunner, config_dir: Path) -> None:
        """prune should drop actions older than the configured max age."""
        old = QueuedAction.create("create_task", enqueued_at=time.time() - 7200)
        fresh = QueuedAction.create("update_task")
        seed(config_dir, queue=(old, fresh))

        result = runner.invoke(cli, ["prune"])

        assert result.exit_code == 0
        assert "Pruned 1 stale action" in result.output
        assert [a.id for a in load(config_dir).queue] == [fresh.id]

    def test_prune_custom_max_age(self, runner: CliRunner, config_dir: Path) -> None:
        """--max-age should override the configured max age."""
        recent = QueuedAction.create("create_task", enqueued_at=time.time() - 120)
        seed(config_dir, queue=(recent,))

        result = runner.invoke(cli, ["prune", "--max-age", "60"])

        assert result.exit_code == 0
        assert load(config_dir).queue == ()


class TestSyncCommand:
    """Tests for 'offlinequeue sync' command."""

    def test_requires_server(self, runner: CliRunner, config_dir: Path) -> None:
        """sync should fail when no server is configured."""
        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "No server configured" in result.output

    def test_server_unreachable(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """sync should fail without touching the queue when the server is down."""
        configure_server(runner)
        seed(config_dir, queue=(QueuedAction.create("create_task"),))
        httpx_mock.add_response(url="http://test/health", status_code=503)

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "not reachable" in result.output
        assert len(load(config_dir).queue) == 1

    def test_replays_in_order(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """sync should replay every action oldest first."""
        configure_server(runner)
        seed(
            config_dir,
            queue=(
                QueuedAction.create("create_task", {"title": "a"}),
                QueuedAction.create("update_task", {"taskId": "t1"}),
            ),
        )
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})
        httpx_mock.add_response(method="POST", url="http://test/api/invoke", json={"id": "t1"})
        httpx_mock.add_response(method="POST", url="http://test/api/invoke", json={"id": "t1"})

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert "Replayed 2, failed 0" in result.output
        assert load(config_dir).queue == ()
        invoked = [
            json.loads(request.content)["cmd"]
            for request in httpx_mock.get_requests(url="http://test/api/invoke")
        ]
        assert invoked == ["create_task", "update_task"]

    def test_prunes_stale_before_replay(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Actions past the maximum age should be pruned, not replayed."""
        configure_server(runner)
        seed(
            config_dir,
            queue=(
                QueuedAction.create("create_task", {"title": "old"}, enqueued_at=time.time() - 7200),
                QueuedAction.create("update_task", {"taskId": "t1"}),
            ),
        )
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})
        httpx_mock.add_response(method="POST", url="http://test/api/invoke", json={"id": "t1"})

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert "Pruned 1 stale action" in result.output
        assert "Replayed 1, failed 0" in result.output
        invoked = [
            json.loads(request.content)["cmd"]
            for request in httpx_mock.get_requests(url="http://test/api/invoke")
        ]
        assert invoked == ["update_task"]

    def test_failure_moves_to_failed(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A rejected action should end in the failed set with exit status 1."""
        configure_server(runner)
        seed(config_dir, queue=(QueuedAction.create("update_task", {"taskId": "t1"}),))
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})
        httpx_mock.add_response(
            method="POST",
            url="http://test/api/invoke",
            status_code=409,
            json={"detail": "Version mismatch"},
        )

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 1
        assert "Replayed 0, failed 1" in result.output
        snapshot = load(config_dir)
        assert snapshot.queue == ()
        assert snapshot.failed[0].retry_count == 1
        assert snapshot.failed[0].last_error == "HTTP 409: Version mismatch"

    def test_nothing_to_sync(self, runner: CliRunner, config_dir: Path, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """An empty queue should not call the command endpoint."""
        configure_server(runner)
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        result = runner.invoke(cli, ["sync"])

        assert result.exit_code == 0
        assert "Nothing to sync" in result.output
