"""Sync engine replaying queued actions once the backend is reachable.

This module provides:
- DispatcherProtocol: Interface of the backend call used for replay
- SyncEngine: Drains the QueueStore in order and routes outcomes

Drain cycle:
    1. status = SYNCING
    2. Walk the live queue oldest first, one action at a time
    3. Dispatch and wait for the outcome (bounded by dispatch_timeout)
    4. Success: remove the action
    5. Failure or timeout: move it to the failed set, go on with the next
    6. status = IDLE if nothing failed during the cycle, else ERROR

Ordering:
    Actions are never dispatched concurrently, because a later action may
    depend on an earlier one (an update following a create). Continuing
    past a failure keeps unrelated writes flowing but is only best-effort
    for dependent ones. Passing an entity_key function makes the engine
    hold back, for the rest of the cycle, every later action that shares
    the entity key of an action that failed. Held actions stay queued
    untouched and are replayed by the next cycle.

Interruption:
    The monitor is consulted between dispatches. When it reports offline
    the cycle stops scheduling; the in-flight dispatch has already been
    awaited, so every action is either completed, failed, or untouched.

Coalescing:
    A trigger arriving while a cycle runs does not start a second one. It
    is remembered instead, and the running cycle walks the queue once more
    before settling its status, so an action enqueued at the very end of a
    cycle is never left behind.
"""

from __future__ import annotations

import concurrent.futures
import copy
import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from offlinequeue.client.queue.types import (
    DispatchFailure,
    PersistenceFailure,
    QueuedAction,
    StatusListener,
    SyncCycleResult,
    SyncStats,
    Unsubscribe,
)
from offlinequeue.core.config import DEFAULT_DISPATCH_TIMEOUT
from offlinequeue.core.types import ConnectionStatus, SyncStatus

if TYPE_CHECKING:
    from offlinequeue.client.monitor import ConnectionMonitor
    from offlinequeue.client.queue.store import QueueStore

logger = logging.getLogger(__name__)

# Returns the entity an action targets, or None if it is independent
EntityKey = Callable[[QueuedAction], str | None]


class _EngineClosed(Exception):
    """The dispatch pool was shut down while a cycle was running."""


class DispatcherProtocol(Protocol):
    """Protocol for the backend call used to replay an action.

    Returning means success; raising means failure. Transport details,
    authentication and transport-level retries belong to the dispatcher.
    """

    def dispatch(self, command: str, args: dict[str, Any]) -> Any:
        """Execute a command against the backend.

        Args:
            command: Backend command name
            args: Command arguments

        Returns:
            Backend result (ignored by the engine)
        """
        ...


def args_entity_key(*names: str) -> EntityKey:
    """Build an entity_key function reading the first present argument.

    Args:
        names: Argument names identifying the target entity, tried in order

    Returns:
        Function mapping an action to "<name>=<value>" or None
    """

    def entity_key(action: QueuedAction) -> str | None:
        for name in names:
            value = action.args.get(name)
            if value is not None:
                return f"{name}={value}"
        return None

    return entity_key


class SyncEngine:
    """Drains the offline queue when connectivity is restored.

    Only one drain cycle runs at a time; a trigger arriving while a cycle
    is running is coalesced into it.

    Usage:
        engine = SyncEngine(store, HTTPDispatcher(client), monitor=monitor)
        # Cycles start automatically on offline -> online transitions
        engine.sync_now()       # or explicitly, blocking
        engine.close()
    """

    def __init__(
        self,
        store: QueueStore,
        dispatcher: DispatcherProtocol,
        monitor: ConnectionMonitor | None = None,
        dispatch_timeout: float = DEFAULT_DISPATCH_TIMEOUT,
        entity_key: EntityKey | None = None,
        max_dispatch_threads: int = 4,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Queue to drain
            dispatcher: Backend call used for each action
            monitor: Optional connection monitor (triggers and interruption)
            dispatch_timeout: Seconds before a dispatch counts as failed
            entity_key: Optional function enabling dependent hold-back
            max_dispatch_threads: Threads available for dispatch calls
        """
        self._store = store
        self._dispatcher = dispatcher
        self._dispatch_timeout = dispatch_timeout
        self._entity_key = entity_key

        # State
        self._lock = threading.RLock()
        self._status = SyncStatus.IDLE
        self._last_error: str | None = None
        self._closed = False
        self._resync_requested = False

        # Dispatch calls run here so they can be bounded by a timeout
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_dispatch_threads,
            thread_name_prefix="dispatch",
        )

        # Background cycle thread
        self._thread: threading.Thread | None = None

        # Stats
        self._stats = SyncStats()

        # Callbacks
        self._listeners: list[StatusListener] = []

        # Monitor
        self._monitor: ConnectionMonitor | None = None
        self._unsubscribe_monitor: Unsubscribe | None = None
        if monitor is not None:
            self.attach(monitor)

    @property
    def status(self) -> SyncStatus:
        """Outcome of the most recent drain cycle."""
        return self._status

    @property
    def last_error(self) -> str | None:
        """Most recent failure message of the current or last cycle."""
        return self._last_error

    @property
    def stats(self) -> SyncStats:
        """Get engine statistics."""
        return self._stats

    @property
    def is_syncing(self) -> bool:
        return self._status is SyncStatus.SYNCING

    # === Wiring ===

    def attach(self, monitor: ConnectionMonitor) -> None:
        """Follow a connection monitor.

        Offline -> online transitions trigger a background cycle, and the
        monitor's is_online flag interrupts running cycles.
        """
        self.detach()
        self._monitor = monitor
        self._unsubscribe_monitor = monitor.add_listener(self._on_connection_change)
        logger.debug("Sync engine attached to %s", type(monitor).__name__)

    def detach(self) -> None:
        """Stop following the current monitor, if any."""
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
        self._unsubscribe_monitor = None
        self._monitor = None

    def add_listener(self, listener: StatusListener) -> Unsubscribe:
        """Register a callback invoked on every status change.

        Args:
            listener: Function(status)

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

    def _set_status(self, status: SyncStatus) -> None:
        with self._lock:
            self._status = status
        self._notify_status(status)

    def _notify_status(self, status: SyncStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")

    def _on_connection_change(
        self,
        previous: ConnectionStatus,
        current: ConnectionStatus,
    ) -> None:
        if current.is_online and not previous.is_online:
            logger.info("Connection restored, draining offline queue")
            self.request_sync()

    def _is_online(self) -> bool:
        return self._monitor is None or self._monitor.is_online

    # === Triggers ===

    def request_sync(self) -> bool:
        """Start a drain cycle in a background thread.

        Returns:
            True if a cycle was started, False if coalesced or closed
        """
        with self._lock:
            if self._closed:
                return False
            if self.is_syncing or self._thread is not None:
                self._coalesce()
                logger.debug("Sync already in progress, trigger coalesced")
                return False

            self._thread = threading.Thread(
                target=self._run_background,
                name="SyncEngine",
                daemon=True,
            )
            self._thread.start()
        return True

    def _coalesce(self) -> None:
        """Remember a trigger for the running cycle. Caller holds the lock."""
        self._resync_requested = True
        self._stats.cycles_coalesced += 1

    def _run_background(self) -> None:
        while True:
            try:
                self.sync_now()
            except PersistenceFailure as e:
                logger.error(f"Drain cycle aborted: {e}")
            except Exception:
                logger.exception("Unexpected error in drain cycle")

            # Clearing _thread under the lock hands later triggers to a new thread
            with self._lock:
                if not self._resync_requested or self._closed:
                    self._thread = None
                    return
                self._resync_requested = False

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the background cycle to finish.

        Returns:
            True if no background cycle is running anymore
        """
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def sync_now(self) -> SyncCycleResult | None:
        """Run one drain cycle in the calling thread.

        Returns:
            The cycle result, or None if a cycle was already running

        Raises:
            PersistenceFailure: If the queue could not be updated after a
                dispatch; the cycle stops and status becomes ERROR
        """
        with self._lock:
            if self._closed:
                logger.debug("Sync engine closed, ignoring sync request")
                return None
            if self.is_syncing:
                self._coalesce()
                logger.debug("Sync already in progress, request coalesced")
                return None
            self._stats.cycles += 1
            self._last_error = None
            self._resync_requested = False
            self._status = SyncStatus.SYNCING
        self._notify_status(SyncStatus.SYNCING)

        pending = self._store.count()
        logger.info("Drain cycle started (%d pending)", pending)

        result = SyncCycleResult()
        seen: set[str] = set()
        blocked: set[str] = set()
        try:
            while True:
                self._drain(result, seen, blocked)
                # Final status is published under the lock request_sync takes:
                # a trigger either re-runs this loop or finds the cycle over
                with self._lock:
                    again = (
                        self._resync_requested
                        and not self._closed
                        and not result.interrupted
                        and self._is_online()
                    )
                    self._resync_requested = False
                    if not again:
                        result.status = (
                            SyncStatus.ERROR if result.has_failures else SyncStatus.IDLE
                        )
                        self._status = result.status
                        break
                logger.debug("Sync requested during drain, walking the queue again")
        except PersistenceFailure as e:
            self._last_error = str(e)
            result.status = SyncStatus.ERROR
            self._set_status(SyncStatus.ERROR)
            logger.error(f"Queue persistence failed during drain: {e}")
            raise

        if result.interrupted:
            self._stats.interrupted += 1
        self._notify_status(result.status)

        logger.info(
            "Drain cycle finished: %d succeeded, %d failed, %d held back%s",
            len(result.succeeded),
            len(result.failed),
            len(result.held_back),
            " (interrupted)" if result.interrupted else "",
        )
        return result

    # === Drain ===

    def _next_action(self, seen: set[str]) -> QueuedAction | None:
        """Oldest live action not yet visited in this cycle."""
        for action in self._store.queue:
            if action.id not in seen:
                return action
        return None

    def _drain(self, result: SyncCycleResult, seen: set[str], blocked: set[str]) -> None:
        while True:
            action = self._next_action(seen)
            if action is None:
                break

            if self._closed or not self._is_online():
                result.interrupted = True
                logger.info(
                    "Connection lost, stopping drain (%d actions left queued)",
                    self._store.count(),
                )
                break

            seen.add(action.id)
            key = self._entity_key(action) if self._entity_key else None
            if key is not None and key in blocked:
                result.held_back.append(action.id)
                self._stats.held_back += 1
                logger.info(
                    "Holding back %r: earlier action on %s failed", action, key
                )
                continue

            self._stats.dispatched += 1
            try:
                self._dispatch(action)
            except _EngineClosed:
                self._stats.dispatched -= 1
                result.interrupted = True
                logger.info("Sync engine closed, stopping drain")
                break
            except Exception as e:
                message = str(e) or type(e).__name__
                self._store.mark_failed(action, message)
                result.failed.append(action.id)
                self._stats.failed += 1
                self._last_error = message
                if key is not None:
                    blocked.add(key)
                logger.warning("Action %r failed: %s", action, message)
                continue

            self._store.remove(action.id)
            result.succeeded.append(action.id)
            self._stats.succeeded += 1
            logger.debug("Action %r replayed", action)

    def _dispatch(self, action: QueuedAction) -> Any:
        """Run one dispatch bounded by the timeout.

        Raises:
            DispatchFailure: If the dispatch timed out
            _EngineClosed: If the dispatch pool was shut down by close()
            Exception: Whatever the dispatcher raised
        """
        try:
            future = self._executor.submit(
                self._dispatcher.dispatch, action.command, copy.deepcopy(action.args)
            )
        except RuntimeError:
            # submit() after shutdown
            raise _EngineClosed from None
        try:
            return future.result(timeout=self._dispatch_timeout)
        except concurrent.futures.CancelledError:
            raise _EngineClosed from None
        except concurrent.futures.TimeoutError:
            if future.cancel():
                # Never started: it will not reach the backend later
                detail = "no dispatch thread available"
            else:
                future.add_done_callback(_log_late_outcome(action))
                detail = "outcome ignored"
            raise DispatchFailure(
                action.command,
                f"Dispatch timed out after {self._dispatch_timeout:.1f}s ({detail})",
            ) from None

    # === Teardown ===

    def close(self, timeout: float = 5.0) -> None:
        """Stop following the monitor and wait for the running cycle.

        Args:
            timeout: Maximum time to wait for the background cycle
        """
        with self._lock:
            self._closed = True
        self.detach()
        self.wait(timeout=timeout)
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            self._listeners.clear()
        logger.debug("Sync engine closed")


def _log_late_outcome(action: QueuedAction) -> Callable[[concurrent.futures.Future[Any]], None]:
    def callback(future: concurrent.futures.Future[Any]) -> None:
        error = future.exception()
        logger.warning(
            "Timed out dispatch of %r completed late (%s); it stays in the failed set",
            action,
            f"error: {error}" if error else "success",
        )

    return callback
