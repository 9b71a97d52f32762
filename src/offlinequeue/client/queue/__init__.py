"""Offline action queue and its sync engine.

Architecture:
    CommandClassifier → QueueStore → SyncEngine → Dispatcher
                            ↑
                          Pruner

Components:
- **CommandClassifier**: Decides which commands may be deferred offline
- **QueueStore**: Durable FIFO queue plus failed set (copy-on-write snapshots)
- **SyncEngine**: Replays the queue in order once connectivity returns
- **Pruner**: Drops actions that stayed undelivered for too long
- **Persistence**: Memory, SQLite and JSON file adapters for the snapshot
"""

from offlinequeue.client.queue.classifier import (
    DEFAULT_QUEUEABLE_COMMANDS,
    CommandClassifier,
    is_queueable,
)
from offlinequeue.client.queue.engine import (
    DispatcherProtocol,
    EntityKey,
    SyncEngine,
    args_entity_key,
)
from offlinequeue.client.queue.persistence import (
    JSONFilePersistence,
    MemoryPersistence,
    SnapshotPersistence,
    SQLitePersistence,
    decode_snapshot,
    encode_snapshot,
)
from offlinequeue.client.queue.pruner import Pruner, PrunerStats
from offlinequeue.client.queue.store import QueueStore
from offlinequeue.client.queue.types import (
    ClassificationRejected,
    DispatchFailure,
    FailedAction,
    PersistenceFailure,
    QueuedAction,
    QueueError,
    QueueSnapshot,
    SyncCycleResult,
    SyncStats,
)

__all__ = [
    # Classifier
    "DEFAULT_QUEUEABLE_COMMANDS",
    "CommandClassifier",
    "is_queueable",
    # Engine
    "DispatcherProtocol",
    "EntityKey",
    "SyncEngine",
    "args_entity_key",
    # Persistence
    "JSONFilePersistence",
    "MemoryPersistence",
    "SnapshotPersistence",
    "SQLitePersistence",
    "decode_snapshot",
    "encode_snapshot",
    # Pruner
    "Pruner",
    "PrunerStats",
    # Store
    "QueueStore",
    # Types
    "ClassificationRejected",
    "DispatchFailure",
    "FailedAction",
    "PersistenceFailure",
    "QueuedAction",
    "QueueError",
    "QueueSnapshot",
    "SyncCycleResult",
    "SyncStats",
]
