"""Shared fixtures for offline queue client tests."""

from __future__ import annotations

import pytest

from offlinequeue.client.queue.persistence import MemoryPersistence
from offlinequeue.client.queue.store import QueueStore
from tests.client.fakes import FakeClock, RecordingDispatcher


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


@pytest.fixture
def persistence() -> MemoryPersistence:
    """Create an in-memory persistence adapter."""
    return MemoryPersistence()


@pytest.fixture
def store(persistence: MemoryPersistence, clock: FakeClock) -> QueueStore:
    """Create an opened store on in-memory persistence."""
    queue_store = QueueStore(persistence, clock=clock)
    queue_store.open()
    return queue_store


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    """Create a recording dispatcher."""
    return RecordingDispatcher()
