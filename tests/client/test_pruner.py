"""Tests for the stale action pruner."""

from __future__ import annotations

import logging
import time

import pytest

from offlinequeue.client.queue.persistence import MemoryPersistence
from offlinequeue.client.queue.pruner import Pruner
from offlinequeue.client.queue.store import QueueStore
from tests.client.fakes import FakeClock

HOUR = 3600.0


class TestSweep:
    """Tests for Pruner.sweep."""

    def test_prunes_at_max_age(self, store: QueueStore, clock: FakeClock) -> None:
        """An action exactly one hour old should be pruned."""
        store.enqueue("update_task")
        pruner = Pruner(store, max_age=HOUR, clock=clock)

        clock.advance(60 * 60)
        removed = pruner.sweep()

        assert len(removed) == 1
        assert store.count() == 0

    def test_keeps_younger_actions(self, store: QueueStore, clock: FakeClock) -> None:
        """An action 59 minutes old should be kept."""
        store.enqueue("update_task")
        pruner = Pruner(store, max_age=HOUR, clock=clock)

        clock.advance(59 * 60)

        assert pruner.sweep() == []
        assert store.count() == 1

    def test_only_stale_removed(self, store: QueueStore, clock: FakeClock) -> None:
        """Younger actions should stay in order behind pruned ones."""
        store.enqueue("create_task")
        clock.advance(30 * 60)
        b = store.enqueue("update_task")
        c = store.enqueue("delete_task")
        clock.advance(45 * 60)

        Pruner(store, max_age=HOUR, clock=clock).sweep()

        assert [a.id for a in store.queue] == [b, c]

    def test_idempotent(self, store: QueueStore, clock: FakeClock) -> None:
        """A second sweep at the same time should remove nothing."""
        store.enqueue("update_task")
        pruner = Pruner(store, max_age=HOUR, clock=clock)
        clock.advance(2 * HOUR)

        assert len(pruner.sweep()) == 1
        assert pruner.sweep() == []
        assert pruner.stats.pruned_total == 1
        assert pruner.stats.sweeps == 2

    def test_failed_set_untouched(self, store: QueueStore, clock: FakeClock) -> None:
        """Failed actions should never be pruned."""
        action = store.get(store.enqueue("update_task"))
        assert action is not None
        store.mark_failed(action, "boom")
        clock.advance(10 * HOUR)

        Pruner(store, max_age=HOUR, clock=clock).sweep()

        assert store.failed_count() == 1

    def test_explicit_now(self, store: QueueStore, clock: FakeClock) -> None:
        """sweep(now) should use the given reference time."""
        store.enqueue("update_task")
        pruner = Pruner(store, max_age=HOUR, clock=clock)

        assert pruner.sweep(now=clock.now + HOUR) != []
        assert pruner.stats.last_sweep_at == clock.now + HOUR

    def test_logs_warning_per_action(
        self,
        store: QueueStore,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Each pruned action should produce a WARNING record."""
        first = store.enqueue("update_task")
        second = store.enqueue("delete_task")
        clock.advance(HOUR)

        with caplog.at_level(logging.WARNING, logger="offlinequeue"):
            Pruner(store, max_age=HOUR, clock=clock).sweep()

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 2
        assert first in warnings[0].getMessage()
        assert second in warnings[1].getMessage()

    def test_rejects_non_positive_max_age(self, store: QueueStore) -> None:
        """max_age must be positive."""
        with pytest.raises(ValueError):
            Pruner(store, max_age=0)


class TestBackgroundPruner:
    """Tests for the periodic pruning thread."""

    def test_start_and_stop(self, clock: FakeClock) -> None:
        """The background thread should sweep periodically until stopped."""
        store = QueueStore(MemoryPersistence(), clock=clock)
        store.open()
        store.enqueue("update_task")
        clock.advance(2 * HOUR)

        pruner = Pruner(store, max_age=HOUR, interval=0.01, clock=clock)
        pruner.start()
        try:
            deadline = time.monotonic() + 2.0
            while store.count() and time.monotonic() < deadline:
                time.sleep(0.01)
            assert pruner.running
        finally:
            pruner.stop()

        assert store.count() == 0
        assert pruner.stats.sweeps >= 1
        assert not pruner.running
