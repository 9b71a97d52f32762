"""Connection monitoring for the offline queue.

This module provides:
- ConnectionMonitor: Holds the connection status and notifies listeners
  of transitions (driven manually, e.g. by the host application)
- ReconnectConfig: Backoff settings for WebSocketMonitor
- WebSocketMonitor: Derives the status from a WebSocket connection to the
  backend event stream, reconnecting with exponential backoff and jitter

Architecture:
    Server ──ws──► WebSocketMonitor ──(previous, current)──► SyncEngine

Status semantics:
    Only CONNECTED counts as online. CONNECTING and RECONNECTING are
    transient. DISCONNECTED means the monitor stopped reconnecting:
    disconnect_reason tells whether the server closed normally, refused
    the token, or the reconnection window ran out. OFFLINE means the
    network itself is unreachable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from offlinequeue.core.types import ConnectionStatus, DisconnectReason

if TYPE_CHECKING:
    from collections.abc import Callable

    from websockets.asyncio.client import ClientConnection

    from offlinequeue.core.config import ServerConfig

logger = logging.getLogger(__name__)

# Close codes after which reconnecting is pointless
CLOSE_NORMAL = 1000
CLOSE_AUTH_FAILED = 4001


class ConnectionMonitor:
    """Thread-safe holder of the current connection status.

    Usage:
        monitor = ConnectionMonitor()
        monitor.add_listener(lambda prev, cur: print(prev, "->", cur))
        monitor.set_online(True)
    """

    def __init__(self, initial: ConnectionStatus = ConnectionStatus.OFFLINE) -> None:
        """Initialize the monitor.

        Args:
            initial: Status before any signal arrives.
        """
        self._status = initial
        self._lock = threading.RLock()
        self._listeners: list[Callable[[ConnectionStatus, ConnectionStatus], None]] = []

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._status

    @property
    def is_online(self) -> bool:
        """True only while connected."""
        return self._status.is_online

    def add_listener(
        self,
        listener: Callable[[ConnectionStatus, ConnectionStatus], None],
    ) -> Callable[[], None]:
        """Register a transition callback.

        Args:
            listener: Function(previous, current), called outside the lock.

        Returns:
            Function removing the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_status(self, status: ConnectionStatus) -> bool:
        """Update the status and notify listeners on change.

        Args:
            status: New status.

        Returns:
            True if the status changed.
        """
        with self._lock:
            previous = self._status
            if previous is status:
                return False
            self._status = status
            listeners = list(self._listeners)

        logger.info(f"Connection status: {previous.value} -> {status.value}")
        for listener in listeners:
            try:
                listener(previous, status)
            except Exception:
                logger.exception("Connection listener failed")
        return True

    def set_online(self, online: bool) -> bool:
        """Shortcut for boolean online/offline signals."""
        return self.set_status(
            ConnectionStatus.CONNECTED if online else ConnectionStatus.OFFLINE
        )


@dataclass
class ReconnectConfig:
    """Configuration for WebSocketMonitor.

    Attributes:
        min_delay: Delay before the first reconnection attempt.
        max_delay: Upper bound of the delay between attempts.
        backoff: Multiplier applied to the delay after each attempt.
        jitter: Relative random spread applied to each delay (0.3 = ±30%).
        max_duration: Seconds of failed reconnection before giving up.
        ping_interval: Seconds between keepalive pings.
        ping_timeout: Seconds without pong before the connection is stale.
    """

    min_delay: float = 1.0
    max_delay: float = 30.0
    backoff: float = 2.0
    jitter: float = 0.3
    max_duration: float = 300.0
    ping_interval: float = 30.0
    ping_timeout: float = 90.0


class WebSocketMonitor(ConnectionMonitor):
    """Connection monitor backed by the backend's WebSocket event stream.

    The connection being open is the online signal. Messages received on
    the stream are not interpreted here.

    Usage:
        monitor = WebSocketMonitor(server_config)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        config: ServerConfig,
        reconnect: ReconnectConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the monitor.

        Args:
            config: Server configuration with URL, token, and settings.
            reconnect: Backoff configuration.
            clock: Monotonic time source, injectable for tests.
        """
        super().__init__(ConnectionStatus.DISCONNECTED)
        self._config = config
        self._reconnect = reconnect or ReconnectConfig()
        self._clock = clock

        # Reconnection state
        self._attempts = 0
        self._reconnect_started_at: float | None = None
        self._last_error: str | None = None
        self._disconnect_reason: DisconnectReason | None = None

        # Connection state
        self._ws: ClientConnection | None = None
        self._should_run = False

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.ws_url

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def last_error(self) -> str | None:
        """Message of the last connection failure, None once connected."""
        return self._last_error

    @property
    def disconnect_reason(self) -> DisconnectReason | None:
        """Why the monitor stopped reconnecting, None while it keeps trying."""
        return self._disconnect_reason

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def remaining_reconnect_time(self) -> float | None:
        """Seconds left in the reconnection window, None if not reconnecting."""
        if self._reconnect_started_at is None:
            return None
        elapsed = self._clock() - self._reconnect_started_at
        return max(0.0, self._reconnect.max_duration - elapsed)

    def next_delay(self, attempt: int) -> float:
        """Delay before the given attempt (0-based), with jitter."""
        cfg = self._reconnect
        base = min(cfg.min_delay * (cfg.backoff ** min(attempt, 32)), cfg.max_delay)
        spread = base * cfg.jitter
        return max(0.0, base + random.uniform(-spread, spread))

    def start(self) -> None:
        """Start the monitor in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("WebSocketMonitor already running")
            return

        self._should_run = True
        self._attempts = 0
        self._reconnect_started_at = None
        self._last_error = None
        self._disconnect_reason = None
        self._thread = threading.Thread(
            target=self._run_loop,
            name="WebSocketMonitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("WebSocketMonitor started")

    def stop(self) -> None:
        """Stop the monitor and report DISCONNECTED."""
        self._should_run = False
        loop = self._loop

        # Loop may close concurrently once the connection loop exits
        with contextlib.suppress(RuntimeError, TimeoutError):
            # Signal stop event to interrupt any sleeps
            if loop and self._stop_event:
                asyncio.run_coroutine_threadsafe(self._signal_stop(), loop)

            # Close WebSocket connection
            if loop and self._ws:
                asyncio.run_coroutine_threadsafe(
                    self._close_connection(), loop
                ).result(timeout=2.0)

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        self.set_status(ConnectionStatus.DISCONNECTED)
        logger.info("WebSocketMonitor stopped")

    # === Status transitions ===

    def _on_connected(self) -> None:
        """Reset backoff state after a successful connection."""
        self._attempts = 0
        self._reconnect_started_at = None
        self._last_error = None
        self._disconnect_reason = None
        self.set_status(ConnectionStatus.CONNECTED)

    def _on_closed_for_good(self, close_code: int) -> None:
        """Stop reconnecting after a normal close or an auth rejection."""
        self._attempts = 0
        self._reconnect_started_at = None
        if close_code == CLOSE_AUTH_FAILED:
            logger.error("Server rejected the token, not reconnecting")
            self._last_error = "Authentication failed"
            self._disconnect_reason = DisconnectReason.AUTH
        else:
            logger.info("Server closed the connection normally, not reconnecting")
            self._last_error = None
            self._disconnect_reason = DisconnectReason.CLOSED
        self.set_status(ConnectionStatus.DISCONNECTED)

    def _on_connection_lost(self, error: BaseException | None) -> float | None:
        """Decide what to do after a failed or dropped connection.

        Args:
            error: The connection error, None for a clean close.

        Returns:
            Seconds to wait before the next attempt, or None to give up.
        """
        if error is not None:
            self._last_error = str(error) or type(error).__name__

        if isinstance(error, socket.gaierror):
            # Name resolution failing means no network at all; the window
            # only counts time during which the network was usable.
            self._reconnect_started_at = None
            self.set_status(ConnectionStatus.OFFLINE)
            return self._reconnect.max_delay

        now = self._clock()
        if self._reconnect_started_at is None:
            self._reconnect_started_at = now
        elif now - self._reconnect_started_at >= self._reconnect.max_duration:
            logger.warning(
                "Max reconnection duration exceeded (%.0fs), giving up",
                self._reconnect.max_duration,
            )
            self._reconnect_started_at = None
            self._last_error = (
                f"Connection timeout after {self._reconnect.max_duration:.0f}s"
            )
            self._disconnect_reason = DisconnectReason.TIMEOUT
            self.set_status(ConnectionStatus.DISCONNECTED)
            return None

        delay = self.next_delay(self._attempts)
        self._attempts += 1
        self.set_status(ConnectionStatus.RECONNECTING)
        logger.info(
            f"Reconnecting in {delay:.1f}s (attempt {self._attempts}, "
            f"{self.remaining_reconnect_time():.0f}s remaining)"
        )
        return delay

    # === Event loop ===

    async def _signal_stop(self) -> None:
        """Signal the stop event to interrupt sleeps."""
        if self._stop_event:
            self._stop_event.set()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._should_run:
            if self.status is not ConnectionStatus.RECONNECTING:
                self.set_status(ConnectionStatus.CONNECTING)

            error: BaseException | None = None
            close_code: int | None = None
            try:
                await self._connect()
                close_code = await self._listen_for_messages()
            except ConnectionClosed as e:
                error = e
                close_code = e.rcvd.code if e.rcvd is not None else None
                logger.debug("Connection closed: %s", e)
            except InvalidStatus as e:
                error = e
                if e.response.status_code in (401, 403):
                    # Handshake refused: same outcome as an auth close
                    close_code = CLOSE_AUTH_FAILED
                logger.debug("Handshake rejected: %s", e)
            except WebSocketException as e:
                error = e
                logger.debug("WebSocket error: %s", e)
            except OSError as e:
                # Network errors - log without traceback
                error = e
                logger.debug("Connection error: %s", e)
            finally:
                self._ws = None

            if not self._should_run:
                break

            if close_code is not None and close_code in (CLOSE_NORMAL, CLOSE_AUTH_FAILED):
                self._on_closed_for_good(close_code)
                break

            delay = self._on_connection_lost(error)
            if delay is None:
                break
            await self._sleep(delay)

    async def _sleep(self, delay: float) -> None:
        """Sleep, waking up early if stop() is called."""
        if self._stop_event is None:
            await asyncio.sleep(delay)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def _connect(self) -> None:
        """Establish WebSocket connection."""
        # Configure SSL if needed
        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.ws_url,
            ssl=ssl_context,
            open_timeout=self._config.timeout,
            ping_interval=self._reconnect.ping_interval,
            ping_timeout=self._reconnect.ping_timeout,
        )
        logger.info("WebSocketMonitor connected to server")
        self._on_connected()

    async def _listen_for_messages(self) -> int | None:
        """Consume the event stream until the connection closes.

        Returns:
            The close code sent by the server, None if unknown.
        """
        ws = self._ws
        if ws is None:
            return None
        async for message in ws:
            if not self._should_run:
                break
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            logger.debug("Event received: %s", message[:100])
        logger.info("Connection closed by server (code %s)", ws.close_code)
        return ws.close_code

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()
            self._ws = None
