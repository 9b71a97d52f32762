"""Shared types for offlinequeue.

This module defines the enums used by the queue engine, the connection
monitor and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncStatus(str, Enum):
    """Aggregate outcome of the most recent drain cycle.

    Exactly one value holds at any instant. It describes the last cycle
    as a whole, never an individual action.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    """Connection state of the client towards its backend."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    OFFLINE = "offline"

    @property
    def is_online(self) -> bool:
        """Only an established connection counts as online."""
        return self is ConnectionStatus.CONNECTED


class DisconnectReason(str, Enum):
    """Why a monitor stopped trying to reconnect."""

    AUTH = "auth"
    TIMEOUT = "timeout"
    CLOSED = "closed"
