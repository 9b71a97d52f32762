"""Age-based garbage collection of the live queue.

An action that could not be delivered within max_age is dropped: replaying
very old writes against state that has moved on is worse than losing them,
and it bounds the queue size. Every drop is logged at WARNING level and
counted so the loss stays visible to operators. The failed set is never
touched; failed actions leave only through retry or an explicit clear.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from offlinequeue.core.config import DEFAULT_MAX_AGE, DEFAULT_PRUNE_INTERVAL

if TYPE_CHECKING:
    from collections.abc import Callable

    from offlinequeue.client.queue.store import QueueStore
    from offlinequeue.client.queue.types import QueuedAction

logger = logging.getLogger(__name__)


@dataclass
class PrunerStats:
    """Statistics for the pruner."""

    sweeps: int = 0
    pruned_total: int = 0
    last_sweep_at: float | None = None


class Pruner:
    """Removes stale actions from a QueueStore.

    Usage:
        pruner = Pruner(store, max_age=3600)
        pruner.start()      # periodic sweeps in a background thread
        pruner.sweep()      # or on demand
        pruner.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        max_age: float = DEFAULT_MAX_AGE,
        interval: float = DEFAULT_PRUNE_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the pruner.

        Args:
            store: Queue to sweep
            max_age: Age in seconds from which an action is stale
            interval: Seconds between background sweeps
            clock: Time source (seconds), injectable for tests
        """
        if max_age <= 0:
            raise ValueError(f"max_age must be positive, got {max_age}")
        self._store = store
        self._max_age = max_age
        self._interval = interval
        self._clock = clock
        self._stats = PrunerStats()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def max_age(self) -> float:
        return self._max_age

    @property
    def stats(self) -> PrunerStats:
        """Get pruner statistics."""
        return self._stats

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: float | None = None) -> list[QueuedAction]:
        """Remove every live action with now - enqueued_at >= max_age.

        Sweeping twice in a row removes nothing the second time.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            The removed actions

        Raises:
            PersistenceFailure: If the pruned snapshot cannot be written
        """
        if now is None:
            now = self._clock()
        removed = self._store.remove_stale(now - self._max_age)

        self._stats.sweeps += 1
        self._stats.last_sweep_at = now
        self._stats.pruned_total += len(removed)

        for action in removed:
            logger.warning(
                "Pruned stale action %s (%s) after %.0fs without delivery",
                action.id,
                action.command,
                action.age(now),
            )
        if removed:
            logger.info(
                "Pruner removed %d stale actions (total pruned: %d)",
                len(removed),
                self._stats.pruned_total,
            )
        return removed

    def start(self) -> None:
        """Start periodic sweeps in a background thread."""
        if self.running:
            logger.warning("Pruner already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="QueuePruner",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Pruner started (max_age=%.0fs, interval=%.0fs)",
            self._max_age,
            self._interval,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Pruner stopped")

    def _run(self) -> None:
        """Sweep loop; exits when the stop event is set."""
        while not self._stop_event.wait(self._interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Prune sweep failed: {e}")
