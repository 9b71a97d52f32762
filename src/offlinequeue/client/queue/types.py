"""Shared types and dataclasses for the offline queue.

This module provides:
- QueueError, ClassificationRejected, DispatchFailure, PersistenceFailure:
  Exception classes
- QueuedAction, FailedAction: Queue entries
- QueueSnapshot: Immutable view of the queue and the failed set
- SyncCycleResult, SyncStats: Engine results and counters
- Type aliases for callbacks
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from offlinequeue.core.types import SyncStatus


class QueueError(Exception):
    """Base exception for offline queue errors."""


class ClassificationRejected(QueueError):
    """Command is not allowed to be queued while offline.

    The caller must fail the operation immediately instead of believing
    it was deferred.
    """

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(
            f"Command {command!r} cannot be queued while offline"
        )


class DispatchFailure(QueueError):
    """Replaying a command against the backend failed (error or timeout)."""

    def __init__(self, command: str, message: str) -> None:
        self.command = command
        super().__init__(message)


class PersistenceFailure(QueueError):
    """The durable snapshot could not be read or written."""


def new_action_id() -> str:
    """Generate an opaque unique action id."""
    return uuid.uuid4().hex


@dataclass(frozen=True)
class QueuedAction:
    """A write-intent command waiting to be replayed.

    Attributes:
        id: Opaque unique identifier.
        command: Backend command name.
        args: Command arguments.
        enqueued_at: Unix timestamp when the action entered the queue.
        retry_count: Number of failed replay attempts so far.
    """

    id: str
    command: str
    args: dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {self.retry_count}")

    @classmethod
    def create(
        cls,
        command: str,
        args: dict[str, Any] | None = None,
        enqueued_at: float | None = None,
    ) -> QueuedAction:
        """Create a new action with auto-generated id and timestamp.

        Args:
            command: Backend command name
            args: Command arguments
            enqueued_at: Timestamp override (defaults to now)

        Returns:
            A new QueuedAction instance
        """
        return cls(
            id=new_action_id(),
            command=command,
            args=dict(args or {}),
            enqueued_at=time.time() if enqueued_at is None else enqueued_at,
        )

    def age(self, now: float) -> float:
        """Seconds elapsed since the action was enqueued."""
        return now - self.enqueued_at

    def failed(self, error: str) -> FailedAction:
        """Record a failed attempt of this action."""
        return FailedAction(
            id=self.id,
            command=self.command,
            args=self.args,
            enqueued_at=self.enqueued_at,
            retry_count=self.retry_count + 1,
            last_error=error,
        )

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"QueuedAction({self.command}, id={self.id[:8]}, "
            f"retries={self.retry_count})"
        )


@dataclass(frozen=True)
class FailedAction(QueuedAction):
    """A queued action whose last replay failed.

    Attributes:
        last_error: Message of the most recent failure.
    """

    last_error: str = ""

    def requeued(self, enqueued_at: float) -> QueuedAction:
        """Convert back to a live action with a refreshed timestamp.

        The retry count is kept so repeated failures stay visible.
        """
        return QueuedAction(
            id=self.id,
            command=self.command,
            args=self.args,
            enqueued_at=enqueued_at,
            retry_count=self.retry_count,
        )

    def __repr__(self) -> str:
        return (
            f"FailedAction({self.command}, id={self.id[:8]}, "
            f"retries={self.retry_count}, error={self.last_error!r})"
        )


@dataclass(frozen=True)
class QueueSnapshot:
    """Immutable state of the queue at one point in time.

    Attributes:
        queue: Live actions, oldest first.
        failed: Failed actions, in the order they failed.
    """

    queue: tuple[QueuedAction, ...] = ()
    failed: tuple[FailedAction, ...] = ()

    def ids(self) -> set[str]:
        """All ids present in either sequence."""
        return {a.id for a in self.queue} | {a.id for a in self.failed}

    def find(self, action_id: str) -> QueuedAction | None:
        """Find a live action by id."""
        for action in self.queue:
            if action.id == action_id:
                return action
        return None

    def find_failed(self, action_id: str) -> FailedAction | None:
        """Find a failed action by id."""
        for action in self.failed:
            if action.id == action_id:
                return action
        return None

    def with_queue(self, queue: tuple[QueuedAction, ...]) -> QueueSnapshot:
        return replace(self, queue=queue)

    def with_failed(self, failed: tuple[FailedAction, ...]) -> QueueSnapshot:
        return replace(self, failed=failed)


@dataclass
class SyncCycleResult:
    """Result of one drain cycle."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    held_back: list[str] = field(default_factory=list)
    interrupted: bool = False
    status: SyncStatus = SyncStatus.IDLE

    @property
    def has_failures(self) -> bool:
        """Check if any action failed during the cycle."""
        return len(self.failed) > 0


@dataclass
class SyncStats:
    """Cumulative statistics for the sync engine."""

    cycles: int = 0
    cycles_coalesced: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    held_back: int = 0
    interrupted: int = 0


# Type aliases for observer callbacks
SnapshotListener = Callable[[QueueSnapshot], None]
StatusListener = Callable[[SyncStatus], None]
Unsubscribe = Callable[[], None]
