"""OfflineQueue - durable offline action queue with ordered replay."""

__version__ = "0.1.0"
