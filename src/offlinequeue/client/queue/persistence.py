"""Durable storage of the queue snapshot.

This module provides:
- SnapshotPersistence: Protocol implemented by every storage adapter
- MemoryPersistence: In-process storage (tests, ephemeral clients)
- SQLitePersistence: Key-value row in a SQLite database
- JSONFilePersistence: Single JSON file replaced atomically
- encode_snapshot / decode_snapshot: Wire format helpers

Wire format:
    The whole snapshot is one record:

        {"queue": [...], "failedActions": [...]}

    with each action shaped as
    {"id", "command", "args", "enqueuedAt", "retryCount"} and failed actions
    carrying an extra "lastError". Unknown fields are ignored on read so an
    older client can load a record written by a newer one.

Replace-on-success:
    Every adapter writes the full snapshot in one step (a single SQLite
    statement, or write-temp-then-rename for files). A crash mid-write
    leaves the previous snapshot intact, never a partial one.
"""

from __future__ import annotations

import logging
import math
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticSerializationError

from offlinequeue.client.queue.types import (
    FailedAction,
    PersistenceFailure,
    QueuedAction,
    QueueSnapshot,
)
from offlinequeue.core.config import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)


# === Wire schemas ===


class ActionRecord(BaseModel):
    """Persisted form of a queued action."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    command: str
    args: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: float = Field(alias="enqueuedAt")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")


class FailedActionRecord(ActionRecord):
    """Persisted form of a failed action."""

    last_error: str = Field(default="", alias="lastError")


class SnapshotRecord(BaseModel):
    """Persisted form of the whole queue state."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    queue: list[ActionRecord] = Field(default_factory=list)
    failed_actions: list[FailedActionRecord] = Field(
        default_factory=list, alias="failedActions"
    )


def _reject_non_finite(value: Any, action_id: str) -> None:
    """Raise if args hold a float JSON cannot represent (nan, inf)."""
    if isinstance(value, float) and not math.isfinite(value):
        raise PersistenceFailure(
            f"Cannot persist action {action_id}: args contain non-finite number {value!r}"
        )
    if isinstance(value, dict):
        for item in value.values():
            _reject_non_finite(item, action_id)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _reject_non_finite(item, action_id)


def encode_snapshot(snapshot: QueueSnapshot) -> str:
    """Serialize a snapshot to its JSON wire format.

    Raises:
        PersistenceFailure: If some action's args cannot be represented in
            JSON, so the stored record always matches the snapshot.
    """
    for action in (*snapshot.queue, *snapshot.failed):
        _reject_non_finite(action.args, action.id)

    try:
        record = SnapshotRecord(
            queue=[
                ActionRecord(
                    id=a.id,
                    command=a.command,
                    args=a.args,
                    enqueued_at=a.enqueued_at,
                    retry_count=a.retry_count,
                )
                for a in snapshot.queue
            ],
            failed_actions=[
                FailedActionRecord(
                    id=a.id,
                    command=a.command,
                    args=a.args,
                    enqueued_at=a.enqueued_at,
                    retry_count=a.retry_count,
                    last_error=a.last_error,
                )
                for a in snapshot.failed
            ],
        )
        return record.model_dump_json(by_alias=True)
    except (ValidationError, PydanticSerializationError) as e:
        raise PersistenceFailure(f"Cannot serialize queue snapshot: {e}") from e


def decode_snapshot(raw: str | bytes) -> QueueSnapshot:
    """Parse a JSON record into a snapshot.

    Duplicate ids violate the uniqueness invariant; only the first
    occurrence is kept.

    Raises:
        PersistenceFailure: If the record is not valid JSON or does not
            match the schema.
    """
    try:
        record = SnapshotRecord.model_validate_json(raw)
    except ValidationError as e:
        raise PersistenceFailure(f"Corrupted queue snapshot: {e}") from e

    seen: set[str] = set()
    queue: list[QueuedAction] = []
    for r in record.queue:
        if r.id in seen:
            logger.warning("Dropping duplicate queued action %s", r.id)
            continue
        seen.add(r.id)
        queue.append(QueuedAction(
            id=r.id,
            command=r.command,
            args=r.args,
            enqueued_at=r.enqueued_at,
            retry_count=r.retry_count,
        ))

    failed: list[FailedAction] = []
    for r in record.failed_actions:
        if r.id in seen:
            logger.warning("Dropping duplicate failed action %s", r.id)
            continue
        seen.add(r.id)
        failed.append(FailedAction(
            id=r.id,
            command=r.command,
            args=r.args,
            enqueued_at=r.enqueued_at,
            retry_count=r.retry_count,
            last_error=r.last_error,
        ))

    return QueueSnapshot(queue=tuple(queue), failed=tuple(failed))


# === Adapters ===


class SnapshotPersistence(Protocol):
    """Storage port for the queue snapshot.

    Implementations must raise PersistenceFailure for any storage error
    and must never leave a partially written snapshot behind.
    """

    def load(self) -> QueueSnapshot:
        """Read the stored snapshot (empty if nothing stored yet)."""
        ...

    def save(self, snapshot: QueueSnapshot) -> None:
        """Replace the stored snapshot."""
        ...

    def close(self) -> None:
        """Release underlying resources."""
        ...


class MemoryPersistence:
    """Keeps the encoded snapshot in memory.

    The snapshot still goes through the wire format so the behaviour
    matches the durable adapters.
    """

    def __init__(self, initial: str | None = None) -> None:
        self._data = initial
        self._lock = threading.Lock()
        self.saves = 0

    @property
    def raw(self) -> str | None:
        """Last saved JSON record."""
        return self._data

    def load(self) -> QueueSnapshot:
        with self._lock:
            data = self._data
        if data is None:
            return QueueSnapshot()
        return decode_snapshot(data)

    def save(self, snapshot: QueueSnapshot) -> None:
        encoded = encode_snapshot(snapshot)
        with self._lock:
            self._data = encoded
            self.saves += 1

    def close(self) -> None:
        pass


class SQLitePersistence:
    """Stores the snapshot as one row of a key-value table.

    The row key is the namespace, so several queues may share one
    database file.
    """

    def __init__(self, db_path: Path, namespace: str = DEFAULT_NAMESPACE) -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file.
            namespace: Row key of the snapshot.

        Raises:
            PersistenceFailure: If the database cannot be opened.
        """
        self._db_path = Path(db_path)
        self._namespace = namespace
        self._lock = threading.RLock()

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            # Enable WAL mode so readers never see a torn write
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceFailure(
                f"Cannot open queue database {self._db_path}: {e}"
            ) from e
        logger.debug("Initialized queue persistence at %s", self._db_path)

    @property
    def namespace(self) -> str:
        return self._namespace

    def load(self) -> QueueSnapshot:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?",
                    (self._namespace,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read queue snapshot: {e}") from e

        if row is None:
            return QueueSnapshot()
        snapshot = decode_snapshot(row[0])
        if snapshot.queue or snapshot.failed:
            logger.info(
                "Loaded %d pending and %d failed actions from persistence",
                len(snapshot.queue),
                len(snapshot.failed),
            )
        return snapshot

    def save(self, snapshot: QueueSnapshot) -> None:
        encoded = encode_snapshot(snapshot)
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) "
                    "VALUES (?, ?, ?)",
                    (self._namespace, encoded, time.time()),
                )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot write queue snapshot: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


class JSONFilePersistence:
    """Stores the snapshot in a single JSON file.

    Writes go to a sibling temporary file which is fsynced and then
    renamed over the target, so the file always holds a complete record.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._tmp_path = self._path.with_name(self._path.name + ".tmp")
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> QueueSnapshot:
        try:
            with self._lock:
                if not self._path.exists():
                    return QueueSnapshot()
                data = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceFailure(f"Cannot read {self._path}: {e}") from e
        return decode_snapshot(data)

    def save(self, snapshot: QueueSnapshot) -> None:
        encoded = encode_snapshot(snapshot)
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._tmp_path, "w", encoding="utf-8") as f:
                    f.write(encoded)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(self._tmp_path, self._path)
        except OSError as e:
            raise PersistenceFailure(f"Cannot write {self._path}: {e}") from e

    def close(self) -> None:
        pass

