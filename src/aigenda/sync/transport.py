"""Sync transport: the pull and push network operations.

The engine only depends on ``SyncTransport``; ``HttpSyncTransport`` talks
to the REST sync endpoint with ``httpx``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .errors import AuthenticationError, NetworkError, ProtocolError, ServerError, SyncTimeoutError
from .models import ChangeEntry


logger = logging.getLogger(__name__)


def serialize_changes(changes: Dict[str, List[ChangeEntry]]) -> Dict[str, List[Dict[str, Any]]]:
    """Render an unsynced mapping as the push request body."""
    return {
        entity_type: [entry.to_dict() for entry in entries]
        for entity_type, entries in changes.items()
    }


class SyncTransport(ABC):
    """Network side of a sync cycle."""

    @abstractmethod
    async def pull(self, since: int) -> Dict[str, Any]:
        """Fetch remote changes made after ``since``.

        Args:
            since: Epoch milliseconds of the last completed cycle, 0 if never

        Returns:
            Mapping of entity type to list of entities; quiescent types omitted

        Raises:
            NetworkError: If the request fails or times out
            AuthenticationError: If the token is missing or rejected
            ServerError: If the endpoint answers with an error status
        """
        pass

    @abstractmethod
    async def push(self, changes: Dict[str, List[ChangeEntry]]) -> Dict[str, Any]:
        """Send unsynced changes and return the decoded response body.

        Raises:
            NetworkError: If the request fails or times out
            AuthenticationError: If the token is missing or rejected
            ServerError: If the endpoint answers with an error status
        """
        pass

    def set_auth_token(self, auth_token: Optional[str]) -> None:
        pass

    async def aclose(self) -> None:
        pass


class HttpSyncTransport(SyncTransport):
    """REST transport for ``GET``/``POST {api_url}{sync_path}``."""

    def __init__(self, api_url: str, auth_token: Optional[str] = None,
                 sync_path: str = "/api/sync", timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        """Initialize the transport.

        Args:
            api_url: Base URL of the AIGENDA backend
            auth_token: Bearer token sent on both calls
            sync_path: Path of the sync endpoint
            timeout: Per-request timeout in seconds
            client: Optional preconfigured client, closed by ``aclose``
        """
        self.api_url = api_url.rstrip('/')
        self.sync_path = '/' + sync_path.lstrip('/')
        self.auth_token = auth_token
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = logging.getLogger(__name__)

    @property
    def url(self) -> str:
        return f"{self.api_url}{self.sync_path}"

    def set_auth_token(self, auth_token: Optional[str]) -> None:
        self.auth_token = auth_token

    def _headers(self) -> Dict[str, str]:
        if not self.auth_token:
            raise AuthenticationError("No auth token provided")
        return {
            "Authorization": f"Bearer {self.auth_token}",
            "Content-Type": "application/json",
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _make_request(self, method: str, params: Optional[Dict] = None,
                            body: Optional[Dict] = None) -> Dict[str, Any]:
        """Make an HTTP request to the sync endpoint.

        Raises:
            AuthenticationError: If authentication fails
            ServerError: If the endpoint answers with an error status
            SyncTimeoutError: If the request times out
            NetworkError: If the request fails
            ProtocolError: If the body is not a JSON object
        """
        headers = self._headers()
        try:
            if method == "GET":
                response = await self.client.get(self.url, headers=headers, params=params)
            elif method == "POST":
                response = await self.client.post(self.url, headers=headers, json=body)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
        except httpx.TimeoutException as e:
            raise SyncTimeoutError(f"Sync request timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Sync request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Sync endpoint rejected credentials ({response.status_code})")
        if response.status_code >= 400:
            raise ServerError(
                f"Sync endpoint error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Sync endpoint returned invalid JSON: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ProtocolError("Sync endpoint returned a non-object body")
        return data

    async def pull(self, since: int) -> Dict[str, Any]:
        data = await self._make_request("GET", params={"since": since})
        self.logger.debug(f"Pulled changes for {len(data)} entity types since {since}")
        return data

    async def push(self, changes: Dict[str, List[ChangeEntry]]) -> Dict[str, Any]:
        body = serialize_changes(changes)
        count = sum(len(entries) for entries in body.values())
        self.logger.debug(f"Pushing {count} changes across {len(body)} entity types")
        return await self._make_request("POST", body=body)
