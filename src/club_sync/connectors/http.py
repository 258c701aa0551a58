"""
Shared async HTTP client for remote targets.

Maps transport failures and non-success responses onto the error taxonomy:
- not found (404 or a target-specific code) -> RemoteNotFound
- 429 / 5xx / connection errors -> TransientRemoteError
- timeouts -> SyncTimeoutError
- anything else -> RemoteApiError

Retrying is left to the caller's retry policy.
"""

from __future__ import annotations

from typing import Any

import httpx

from club_sync.config import TimeoutConfig
from club_sync.errors import (
    RemoteApiError,
    RemoteError,
    RemoteNotFound,
    SyncTimeoutError,
    TransientRemoteError,
)
from club_sync.utils.logger import get_logger


logger = get_logger(__name__)


class RestClient:
    """
    Base client for JSON REST targets.

    Subclasses set ``api_name`` and override ``is_not_found`` or
    ``error_code`` where the target reports errors its own way.

    Example:
        async with DirectoryClient(settings.directory) as client:
            person = await client.get("people", 42)
    """

    api_name = "Remote API"

    def __init__(
        self,
        base_url: str,
        auth: httpx.Auth | None = None,
        headers: dict[str, str] | None = None,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Base URL every request path is relative to
            auth: Optional httpx authentication
            headers: Extra request headers
            timeouts: Request/connect timeouts (defaults from TimeoutConfig)
            transport: Custom transport (used by tests)
        """
        self.base_url = base_url
        self.auth = auth
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.timeouts = timeouts or TimeoutConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self.auth,
                headers=self.headers,
                timeout=httpx.Timeout(
                    self.timeouts.request,
                    connect=self.timeouts.connect,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Make a request and return the decoded body."""
        response = await self.send(method, path, **kwargs)
        return self._decode(response)

    async def send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Make a request and return the successful response.

        Raises:
            RemoteNotFound, TransientRemoteError, SyncTimeoutError, RemoteApiError
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(f"{self.api_name} {method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"{self.api_name} connection error: {e}") from e

        logger.debug(f"{self.api_name} {method} {path} -> {response.status_code}")

        if response.is_success:
            return response

        raise self._map_error(method, path, response)

    def _decode(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _map_error(self, method: str, path: str, response: httpx.Response) -> RemoteError:
        details = self._decode(response)
        status = response.status_code
        code = self.error_code(details)
        message = f"{self.api_name} {method} {path} failed ({status})"
        detail_message = self.error_message(details)
        if detail_message:
            message += f": {detail_message}"

        if self.is_not_found(status, code, details):
            return RemoteNotFound(message, status=status, code=code, details=details)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            return TransientRemoteError(
                message,
                status=status,
                code=code,
                details=details,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            return TransientRemoteError(message, status=status, code=code, details=details)
        return RemoteApiError(message, status=status, code=code, details=details)

    def is_not_found(self, status: int, code: str | None, details: Any) -> bool:
        return status == 404

    def error_code(self, details: Any) -> str | None:
        if isinstance(details, dict) and details.get("code") is not None:
            return str(details["code"])
        return None

    def error_message(self, details: Any) -> str | None:
        if isinstance(details, dict):
            message = details.get("message")
            return str(message) if message else None
        if isinstance(details, str):
            return details[:200] or None
        return None
