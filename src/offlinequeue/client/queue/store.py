"""Ordered, durable store of pending and failed actions.

This module provides:
- QueueStore: FIFO queue of QueuedAction plus a parallel failed set

Every mutation is a copy-on-write transition: a new immutable
QueueSnapshot is built under the lock, persisted, and only then
published. Readers therefore always see a complete snapshot, and a
failed write leaves the published state untouched.

    ACID properties:
    - Atomicity: One mutation = one persisted snapshot
    - Consistency: Published state always equals the last persisted one
    - Isolation: RLock serializes mutations
    - Durability: Delegated to the persistence adapter

Usage:
    store = QueueStore(SQLitePersistence(db_path))
    store.open()
    action_id = store.enqueue("update_task", {"taskId": "t1", "title": "x"})
    ...
    store.close()
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from offlinequeue.client.queue.types import (
    FailedAction,
    PersistenceFailure,
    QueuedAction,
    QueueSnapshot,
    SnapshotListener,
    Unsubscribe,
    new_action_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from offlinequeue.client.queue.persistence import SnapshotPersistence

logger = logging.getLogger(__name__)


class QueueStore:
    """Thread-safe FIFO queue of offline actions with a failed set.

    Missing ids are never an error: remove() and retry() are no-ops for
    unknown ids because callers may race with a running drain cycle.
    """

    def __init__(
        self,
        persistence: SnapshotPersistence,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            persistence: Storage adapter for the snapshot.
            clock: Time source (seconds), injectable for tests.
        """
        self._persistence = persistence
        self._clock = clock
        self._lock = threading.RLock()
        self._snapshot = QueueSnapshot()
        self._listeners: list[SnapshotListener] = []
        self._opened = False

    # === Lifecycle ===

    def open(self) -> QueueSnapshot:
        """Load the persisted snapshot.

        Returns:
            The loaded snapshot.

        Raises:
            PersistenceFailure: If the stored snapshot cannot be read.
        """
        with self._lock:
            self._snapshot = self._persistence.load()
            self._opened = True
            snapshot = self._snapshot
        logger.debug(
            "Queue store opened (pending=%d, failed=%d)",
            len(snapshot.queue),
            len(snapshot.failed),
        )
        self._notify(snapshot)
        return snapshot

    def close(self) -> None:
        """Release the persistence adapter and drop listeners."""
        with self._lock:
            self._listeners.clear()
            if self._opened:
                self._persistence.close()
                self._opened = False
        logger.debug("Queue store closed")

    # === Observers ===

    def add_listener(self, listener: SnapshotListener) -> Unsubscribe:
        """Register a callback invoked with every new snapshot.

        Args:
            listener: Function(snapshot) called after each successful
                mutation, outside the store lock.

        Returns:
            Function removing the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, snapshot: QueueSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Queue listener failed")

    def _commit(self, snapshot: QueueSnapshot) -> None:
        """Persist then publish a new snapshot. Caller holds the lock."""
        self._persistence.save(snapshot)
        self._snapshot = snapshot

    # === Read access ===

    @property
    def snapshot(self) -> QueueSnapshot:
        """Current immutable snapshot."""
        return self._snapshot

    @property
    def queue(self) -> tuple[QueuedAction, ...]:
        """Live actions, oldest first."""
        return self._snapshot.queue

    @property
    def failed(self) -> tuple[FailedAction, ...]:
        """Failed actions."""
        return self._snapshot.failed

    def count(self) -> int:
        """Number of live actions."""
        return len(self._snapshot.queue)

    def failed_count(self) -> int:
        """Number of failed actions."""
        return len(self._snapshot.failed)

    def get(self, action_id: str) -> QueuedAction | None:
        """Get a live or failed action by id."""
        snapshot = self._snapshot
        return snapshot.find(action_id) or snapshot.find_failed(action_id)

    # === Mutations ===

    def enqueue(self, command: str, args: dict[str, Any] | None = None) -> str:
        """Append a new action to the tail of the queue.

        The action is durable when this returns. The args are deep-copied,
        so later changes by the caller do not reach the queued action.

        Args:
            command: Backend command name
            args: Command arguments, JSON-serializable

        Returns:
            The id of the new action

        Raises:
            PersistenceFailure: If the args cannot be stored or the snapshot
                could not be written
        """
        try:
            args = copy.deepcopy(args) if args else {}
        except (TypeError, copy.Error) as e:
            raise PersistenceFailure(f"Cannot store args of {command}: {e}") from e

        with self._lock:
            current = self._snapshot
            existing = current.ids()
            action_id = new_action_id()
            while action_id in existing:
                action_id = new_action_id()
            action = QueuedAction(
                id=action_id,
                command=command,
                args=args,
                enqueued_at=self._clock(),
            )
            snapshot = current.with_queue(current.queue + (action,))
            self._commit(snapshot)

        logger.debug("Queued action: %r (queue size: %d)", action, len(snapshot.queue))
        self._notify(snapshot)
        return action_id

    def remove(self, action_id: str) -> QueuedAction | None:
        """Remove a live action, keeping the order of the others.

        Args:
            action_id: Id of the action to remove

        Returns:
            The removed action, or None if not found
        """
        with self._lock:
            current = self._snapshot
            action = current.find(action_id)
            if action is None:
                return None
            snapshot = current.with_queue(
                tuple(a for a in current.queue if a.id != action_id)
            )
            self._commit(snapshot)

        logger.debug("Removed action %s", action_id)
        self._notify(snapshot)
        return action

    def clear(self) -> int:
        """Remove all live actions. The failed set is left untouched.

        Returns:
            Number of actions removed
        """
        with self._lock:
            current = self._snapshot
            count = len(current.queue)
            if count == 0:
                return 0
            snapshot = current.with_queue(())
            self._commit(snapshot)

        logger.info("Cleared %d actions from queue", count)
        self._notify(snapshot)
        return count

    def clear_failed(self) -> int:
        """Remove all failed actions. The live queue is left untouched.

        Returns:
            Number of failed actions removed
        """
        with self._lock:
            current = self._snapshot
            count = len(current.failed)
            if count == 0:
                return 0
            snapshot = current.with_failed(())
            self._commit(snapshot)

        logger.info("Cleared %d failed actions", count)
        self._notify(snapshot)
        return count

    def mark_failed(self, action: QueuedAction, error: str) -> FailedAction | None:
        """Move an action from the live queue to the failed set.

        The failure is recorded even if the action already left the live
        queue (e.g. cleared while its dispatch was in flight), so that no
        outcome is lost. An id already in the failed set is left alone.

        Args:
            action: The action whose dispatch failed
            error: Failure message

        Returns:
            The recorded FailedAction, or None if already recorded
        """
        with self._lock:
            current = self._snapshot
            if current.find_failed(action.id) is not None:
                return None
            failed = action.failed(error)
            snapshot = QueueSnapshot(
                queue=tuple(a for a in current.queue if a.id != action.id),
                failed=current.failed + (failed,),
            )
            self._commit(snapshot)

        logger.debug("Marked action failed: %r", failed)
        self._notify(snapshot)
        return failed

    def retry(self, action_id: str) -> QueuedAction | None:
        """Move a failed action back to the tail of the live queue.

        The timestamp is refreshed so the action is not immediately
        eligible for pruning; the retry count is kept.

        Args:
            action_id: Id of the failed action

        Returns:
            The re-queued action, or None if not found
        """
        with self._lock:
            current = self._snapshot
            failed = current.find_failed(action_id)
            if failed is None:
                return None
            action = failed.requeued(self._clock())
            snapshot = QueueSnapshot(
                queue=current.queue + (action,),
                failed=tuple(a for a in current.failed if a.id != action_id),
            )
            self._commit(snapshot)

        logger.info("Retrying action %r", action)
        self._notify(snapshot)
        return action

    def retry_all(self) -> int:
        """Re-queue every failed action, in the order they failed.

        Returns:
            Number of actions re-queued
        """
        with self._lock:
            current = self._snapshot
            if not current.failed:
                return 0
            now = self._clock()
            requeued = tuple(f.requeued(now) for f in current.failed)
            snapshot = QueueSnapshot(queue=current.queue + requeued, failed=())
            self._commit(snapshot)

        logger.info("Retrying %d failed actions", len(requeued))
        self._notify(snapshot)
        return len(requeued)

    def remove_stale(self, cutoff: float) -> list[QueuedAction]:
        """Remove live actions enqueued at or before a cutoff time.

        Args:
            cutoff: Actions with enqueued_at <= cutoff are removed

        Returns:
            The removed actions, oldest first
        """
        with self._lock:
            current = self._snapshot
            stale = [a for a in current.queue if a.enqueued_at <= cutoff]
            if not stale:
                return []
            snapshot = current.with_queue(
                tuple(a for a in current.queue if a.enqueued_at > cutoff)
            )
            self._commit(snapshot)

        self._notify(snapshot)
        return stale

    def __len__(self) -> int:
        """Get number of live actions."""
        return self.count()

    def __iter__(self) -> Iterator[QueuedAction]:
        """Iterate over live actions oldest first (does not remove them)."""
        return iter(self._snapshot.queue)

    def __bool__(self) -> bool:
        """Check if the live queue has actions."""
        return bool(self._snapshot.queue)
