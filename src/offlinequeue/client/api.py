"""HTTP client for the backend command API.

This module provides:
- HTTPClient: httpx-based client invoking backend commands
- HTTPDispatcher: Dispatcher used by the SyncEngine to replay actions

Commands are invoked with a single endpoint:

    POST /api/invoke  {"cmd": "<command>", "args": {...}}

and the JSON response body is the command result.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from offlinequeue.client.queue.types import DispatchFailure
from offlinequeue.core.config import ServerConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed."""


class ConflictError(APIError):
    """Version conflict detected."""


class NotFoundError(APIError):
    """Resource not found."""


def _error_detail(response: httpx.Response, default: str) -> str:
    """Extract the "detail" field of an error body, if any."""
    try:
        data = response.json()
    except ValueError:
        return response.text or default
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or default)
    return default


class HTTPClient:
    """HTTP client for the backend command API."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the client.

        Args:
            config: Server configuration with URL, token, and settings.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )

    @property
    def server_url(self) -> str:
        return self._config.server_url

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code == 404:
            raise NotFoundError(_error_detail(response, "Resource not found"), 404)
        if response.status_code == 409:
            raise ConflictError(_error_detail(response, "Conflict"), 409)
        if response.status_code >= 400:
            raise APIError(
                _error_detail(response, "Unknown error"), response.status_code
            )
        return response

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Commands ===

    def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Invoke a backend command.

        Args:
            command: Command name.
            args: Command arguments.

        Returns:
            Decoded JSON result, or None for an empty body.

        Raises:
            APIError: If the server rejected the command.
            httpx.RequestError: If the server could not be reached.
        """
        response = self._handle_response(
            self._client.post(
                "/api/invoke",
                json={"cmd": command, "args": args or {}},
            )
        )
        if not response.content:
            return None
        return response.json()


class HTTPDispatcher:
    """Replays queued actions through HTTPClient.invoke.

    Every failure, whether rejected by the server or not delivered at all,
    is raised as DispatchFailure with a readable message.
    """

    def __init__(self, client: HTTPClient) -> None:
        self._client = client

    def dispatch(self, command: str, args: dict[str, Any]) -> Any:
        """Execute a command against the backend.

        Raises:
            DispatchFailure: If the command did not succeed.
        """
        try:
            return self._client.invoke(command, args)
        except APIError as e:
            status = f"HTTP {e.status_code}: " if e.status_code else ""
            raise DispatchFailure(command, f"{status}{e}") from e
        except httpx.TimeoutException as e:
            raise DispatchFailure(command, f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise DispatchFailure(command, f"Network error: {e}") from e
