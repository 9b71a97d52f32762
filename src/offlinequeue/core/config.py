"""Shared configuration classes for offlinequeue.

This module defines the configuration used by the HTTP dispatcher, the
WebSocket connection monitor and the queue engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DEFAULT_NAMESPACE = "offline-queue"
DEFAULT_MAX_AGE = 60 * 60.0  # one hour
DEFAULT_PRUNE_INTERVAL = 60.0
DEFAULT_DISPATCH_TIMEOUT = 30.0


@dataclass
class ServerConfig:
    """Configuration for connecting to the backend.

    Used by both the HTTP client (HTTPClient) and the WebSocket client
    (WebSocketMonitor) to ensure consistent connection settings.

    Attributes:
        server_url: Base URL of the server (e.g., "https://api.example.com").
        token: Authentication token.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get WebSocket URL of the event stream.

        Returns:
            WebSocket URL with token as query parameter.
        """
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws/events?token={self.token}"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")


@dataclass
class QueueConfig:
    """Tuning of the offline queue.

    Attributes:
        max_age: Seconds after which a queued action is considered stale
            and removed by the pruner.
        prune_interval: Seconds between two background prune sweeps.
        dispatch_timeout: Upper bound in seconds for one dispatch call.
        namespace: Key under which the snapshot is persisted.
    """

    max_age: float = DEFAULT_MAX_AGE
    prune_interval: float = DEFAULT_PRUNE_INTERVAL
    dispatch_timeout: float = DEFAULT_DISPATCH_TIMEOUT
    namespace: str = DEFAULT_NAMESPACE

    def __post_init__(self) -> None:
        """Reject values that would make the queue unusable."""
        if self.max_age <= 0:
            raise ValueError(f"max_age must be positive, got {self.max_age}")
        if self.prune_interval <= 0:
            raise ValueError(f"prune_interval must be positive, got {self.prune_interval}")
        if self.dispatch_timeout <= 0:
            raise ValueError(f"dispatch_timeout must be positive, got {self.dispatch_timeout}")
        if not self.namespace:
            raise ValueError("namespace must not be empty")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueConfig:
        """Build from a loaded config file, ignoring unrelated keys."""
        kwargs: dict[str, Any] = {}
        for name in ("max_age", "prune_interval", "dispatch_timeout"):
            if data.get(name) is not None:
                kwargs[name] = float(data[name])
        if data.get("namespace"):
            kwargs["namespace"] = str(data["namespace"])
        return cls(**kwargs)
