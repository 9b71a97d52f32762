"""Core module - Shared configuration and types."""

from offlinequeue.core.config import (
    DEFAULT_DISPATCH_TIMEOUT,
    DEFAULT_MAX_AGE,
    DEFAULT_NAMESPACE,
    DEFAULT_PRUNE_INTERVAL,
    QueueConfig,
    ServerConfig,
)
from offlinequeue.core.types import ConnectionStatus, DisconnectReason, SyncStatus

__all__ = [
    # Config
    "DEFAULT_DISPATCH_TIMEOUT",
    "DEFAULT_MAX_AGE",
    "DEFAULT_NAMESPACE",
    "DEFAULT_PRUNE_INTERVAL",
    "QueueConfig",
    "ServerConfig",
    # Types
    "ConnectionStatus",
    "DisconnectReason",
    "SyncStatus",
]
