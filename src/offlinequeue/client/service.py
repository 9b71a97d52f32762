"""Offline action queue service.

This module provides:
- OfflineActionQueue: Wires store, sync engine, pruner and connection
  monitor together behind a single object
- SubmitResult: Outcome of a submitted command
- QueueState: Aggregate view passed to listeners

Architecture:
    caller ──submit──► OfflineActionQueue ──online──► Dispatcher
                              │
                              └─offline─► QueueStore ◄── Pruner
                                              │
                     ConnectionMonitor ──► SyncEngine ──► Dispatcher

Usage:
    service = OfflineActionQueue(
        SQLitePersistence(db_path),
        HTTPDispatcher(client),
        monitor=WebSocketMonitor(server_config),
    )
    service.start()
    service.submit("update_task", {"taskId": "t1", "title": "x"})
    print(service.pending_summary())
    service.close()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from offlinequeue.client.monitor import ConnectionMonitor
from offlinequeue.client.queue.classifier import CommandClassifier
from offlinequeue.client.queue.engine import SyncEngine
from offlinequeue.client.queue.pruner import Pruner
from offlinequeue.client.queue.store import QueueStore
from offlinequeue.client.queue.types import (
    ClassificationRejected,
    PersistenceFailure,
    QueuedAction,
    SyncCycleResult,
    Unsubscribe,
)
from offlinequeue.core.config import QueueConfig
from offlinequeue.core.types import ConnectionStatus, SyncStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinequeue.client.queue.engine import DispatcherProtocol, EntityKey
    from offlinequeue.client.queue.persistence import SnapshotPersistence
    from offlinequeue.client.queue.types import FailedAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of OfflineActionQueue.submit.

    Attributes:
        queued: True if the command was deferred to the offline queue.
        action_id: Id of the queued action (None if dispatched directly).
        result: Backend result of a direct dispatch (None if queued).
    """

    queued: bool
    action_id: str | None = None
    result: Any = None


@dataclass(frozen=True)
class QueueState:
    """Aggregate queue state for status banners and indicators."""

    pending: int
    failed: int
    status: SyncStatus
    last_error: str | None
    connection: ConnectionStatus


def format_pending_summary(pending: int, failed: int) -> str:
    """Human readable summary of pending and failed actions.

    Examples:
        >>> format_pending_summary(3, 0)
        '3 actions pending sync'
        >>> format_pending_summary(3, 2)
        '2 failed, 3 pending'
    """
    if failed > 0:
        return f"{failed} failed, {pending} pending"
    if pending > 0:
        return f"{pending} action{'s' if pending != 1 else ''} pending sync"
    return ""


class OfflineActionQueue:
    """Service object owning the offline queue and its collaborators.

    Nothing runs until start() is called. While connected and with nothing
    pending, submitted commands go straight to the dispatcher; otherwise
    queueable commands are stored and replayed in order by the engine.
    """

    def __init__(
        self,
        persistence: SnapshotPersistence,
        dispatcher: DispatcherProtocol,
        monitor: ConnectionMonitor | None = None,
        config: QueueConfig | None = None,
        classifier: CommandClassifier | None = None,
        clock: Callable[[], float] = time.time,
        entity_key: EntityKey | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            persistence: Storage adapter for the queue snapshot.
            dispatcher: Backend call used for direct and replayed commands.
            monitor: Connection monitor; a manual one starting OFFLINE is
                created if omitted.
            config: Queue settings (max age, intervals, timeout).
            classifier: Allow-list of commands that may be deferred.
            clock: Time source (seconds), injectable for tests.
            entity_key: Optional function enabling dependent hold-back.
        """
        self._config = config or QueueConfig()
        self._dispatcher = dispatcher
        self._classifier = classifier or CommandClassifier()
        self._monitor = monitor if monitor is not None else ConnectionMonitor()

        self._store = QueueStore(persistence, clock=clock)
        self._engine = SyncEngine(
            self._store,
            dispatcher,
            monitor=self._monitor,
            dispatch_timeout=self._config.dispatch_timeout,
            entity_key=entity_key,
        )
        self._pruner = Pruner(
            self._store,
            max_age=self._config.max_age,
            interval=self._config.prune_interval,
            clock=clock,
        )

        self._lock = threading.RLock()
        self._listeners: list[Callable[[QueueState], None]] = []
        self._unsubscribers: list[Unsubscribe] = []
        self._started = False
        self._degraded = False
        self._open_error: PersistenceFailure | None = None

    # === Collaborators ===

    @property
    def store(self) -> QueueStore:
        return self._store

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def pruner(self) -> Pruner:
        return self._pruner

    @property
    def monitor(self) -> ConnectionMonitor:
        return self._monitor

    @property
    def classifier(self) -> CommandClassifier:
        return self._classifier

    @property
    def degraded(self) -> bool:
        """True if the durable store could not be opened."""
        return self._degraded

    # === Lifecycle ===

    def start(self, background: bool = True) -> None:
        """Open the store and start background activity.

        A store that cannot be opened does not stop the service: it runs
        in degraded mode where offline submits fail immediately.

        Args:
            background: Sweep stale actions, then start the periodic
                pruner and an initial drain.
        """
        with self._lock:
            if self._started:
                logger.warning("Offline queue already started")
                return
            self._started = True

        try:
            self._store.open()
        except PersistenceFailure as e:
            self._degraded = True
            self._open_error = e
            logger.error(f"Offline queue unavailable, running degraded: {e}")

        self._unsubscribers = [
            self._store.add_listener(lambda _snapshot: self._notify()),
            self._engine.add_listener(lambda _status: self._notify()),
            self._monitor.add_listener(lambda _prev, _cur: self._notify()),
        ]

        if self._degraded:
            return

        if background:
            # Stale actions from a previous run must go before the first drain
            try:
                self._pruner.sweep()
            except PersistenceFailure as e:
                logger.error(f"Initial prune sweep failed: {e}")
            self._pruner.start()
            if self._monitor.is_online and self._store.count() > 0:
                self._engine.request_sync()

        logger.info(
            "Offline queue started (%d pending, %d failed)",
            self._store.count(),
            self._store.failed_count(),
        )

    def close(self, timeout: float = 5.0) -> None:
        """Stop background activity and release the store.

        Args:
            timeout: Maximum time to wait for each background thread.
        """
        with self._lock:
            if not self._started:
                return
            self._started = False
            unsubscribers, self._unsubscribers = self._unsubscribers, []
            self._listeners.clear()

        for unsubscribe in unsubscribers:
            unsubscribe()
        self._pruner.stop(timeout=timeout)
        self._engine.close(timeout=timeout)
        self._store.close()
        logger.info("Offline queue closed")

    def __enter__(self) -> OfflineActionQueue:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Submit gate ===

    def submit(self, command: str, args: dict[str, Any] | None = None) -> SubmitResult:
        """Execute a command now, or defer it until the backend is reachable.

        Args:
            command: Backend command name.
            args: Command arguments.

        Returns:
            SubmitResult describing what happened.

        Raises:
            ClassificationRejected: If offline and the command may not be
                deferred.
            PersistenceFailure: If the command had to be queued but the
                store is unavailable.
            DispatchFailure: If the direct dispatch failed.
        """
        args = dict(args or {})

        if self._monitor.is_online and not self._must_queue_behind_pending(command):
            result = self._dispatcher.dispatch(command, args)
            return SubmitResult(queued=False, result=result)

        action_id = self.enqueue(command, args)
        if self._monitor.is_online:
            # Pending actions ahead of this one; keep order by replaying
            self._engine.request_sync()
        return SubmitResult(queued=True, action_id=action_id)

    def _must_queue_behind_pending(self, command: str) -> bool:
        if self._degraded or not self._classifier.is_queueable(command):
            return False
        return self._store.count() > 0 or self._engine.is_syncing

    def enqueue(self, command: str, args: dict[str, Any] | None = None) -> str:
        """Queue a command for later replay.

        Returns:
            The id of the new action.

        Raises:
            ClassificationRejected: If the command may not be deferred.
            PersistenceFailure: If the store is unavailable or the write
                failed.
        """
        if not self._classifier.is_queueable(command):
            logger.info(f"Rejected offline command: {command}")
            raise ClassificationRejected(command)
        self._check_available()
        return self._store.enqueue(command, args)

    def _check_available(self) -> None:
        if self._degraded:
            raise PersistenceFailure(
                f"Offline queue unavailable: {self._open_error}"
            ) from self._open_error

    # === Read access ===

    def count(self) -> int:
        """Number of actions waiting to be replayed."""
        return self._store.count()

    def failed_count(self) -> int:
        """Number of actions whose replay failed."""
        return self._store.failed_count()

    @property
    def pending(self) -> tuple[QueuedAction, ...]:
        return self._store.queue

    @property
    def failed(self) -> tuple[FailedAction, ...]:
        return self._store.failed

    @property
    def status(self) -> SyncStatus:
        return self._engine.status

    @property
    def last_error(self) -> str | None:
        return self._engine.last_error

    @property
    def connection(self) -> ConnectionStatus:
        return self._monitor.status

    def state(self) -> QueueState:
        """Current aggregate state."""
        return QueueState(
            pending=self._store.count(),
            failed=self._store.failed_count(),
            status=self._engine.status,
            last_error=self._engine.last_error,
            connection=self._monitor.status,
        )

    def pending_summary(self) -> str:
        """Summary for status banners, empty when nothing is pending."""
        return format_pending_summary(self._store.count(), self._store.failed_count())

    # === Operator actions ===

    def retry(self, action_id: str) -> bool:
        """Move a failed action back to the queue.

        Returns:
            True if the action was found and re-queued.
        """
        self._check_available()
        action = self._store.retry(action_id)
        if action is not None and self._monitor.is_online:
            self._engine.request_sync()
        return action is not None

    def retry_all(self) -> int:
        """Move every failed action back to the queue."""
        self._check_available()
        count = self._store.retry_all()
        if count and self._monitor.is_online:
            self._engine.request_sync()
        return count

    def clear(self) -> int:
        """Drop every pending action. Failed actions are kept."""
        self._check_available()
        return self._store.clear()

    def clear_failed(self) -> int:
        """Drop every failed action. Pending actions are kept."""
        self._check_available()
        return self._store.clear_failed()

    def prune(self, now: float | None = None) -> list[QueuedAction]:
        """Remove stale pending actions now."""
        self._check_available()
        return self._pruner.sweep(now)

    def sync_now(self) -> SyncCycleResult | None:
        """Run a drain cycle in the calling thread.

        Returns:
            The cycle result, or None if a cycle was already running.
        """
        self._check_available()
        return self._engine.sync_now()

    # === Listeners ===

    def add_listener(self, listener: Callable[[QueueState], None]) -> Unsubscribe:
        """Register a callback invoked with the new state on every change.

        Changes cover queue contents, sync status and connection status.

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

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        state = self.state()
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")
