"""Client side of OfflineQueue: queue engine, backend API, monitor and CLI."""
