"""
Batch Transport to the Remote Peer

HTTP client for the three remote calls the sync engine makes: shipping a
batch of queue items, fetching the remote copy of a conflicting task, and
probing the health endpoint. Every call carries an explicit timeout; a
timeout is handled exactly like any other network failure.
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .models import BatchSyncRequest, BatchSyncResponse, Task

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The remote peer could not be reached or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BatchTransport(Protocol):
    """Contract the sync orchestrator depends on."""

    def send_batch(self, request: BatchSyncRequest) -> BatchSyncResponse:
        ...

    def fetch_task(self, server_id: str) -> Task:
        ...

    def check_health(self) -> bool:
        ...


class HttpBatchTransport:
    """
    httpx-based BatchTransport.

    Endpoints (relative to base_url):
    - POST /batch
    - GET  /tasks/{server_id}
    - GET  /health
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 8.0,
        health_timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            base_url: Remote API root, e.g. http://host:3000/api
            timeout: Seconds allowed for batch and conflict-fetch calls
            health_timeout: Seconds allowed for the health probe
            client: Pre-built client (tests inject one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._owns_client = client is None
        self._client = client or httpx.Client()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def send_batch(self, request: BatchSyncRequest) -> BatchSyncResponse:
        """
        Ship one batch and return the per-item outcomes.

        Raises:
            TransportError: On timeout, network error, non-2xx status or malformed body
        """
        payload = request.model_dump(mode="json")
        response = self._request("POST", "batch", json=payload, timeout=self.timeout)
        try:
            return BatchSyncResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransportError(f"Malformed batch response: {e}", response.status_code)

    def fetch_task(self, server_id: str) -> Task:
        """
        Load the remote's current representation of a task.

        Raises:
            TransportError: On any failure, including a malformed task body
        """
        response = self._request("GET", f"tasks/{server_id}", timeout=self.timeout)
        try:
            return Task.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransportError(f"Malformed task response for {server_id}: {e}", response.status_code)

    def check_health(self) -> bool:
        """Single bounded probe; any 2xx within the timeout means reachable."""
        try:
            self._request("GET", "health", timeout=self.health_timeout)
            return True
        except TransportError as e:
            logger.debug(f"Health check failed: {e}")
            return False

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = self._url(path)
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out calling {method} {url}: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"Network error calling {method} {url}: {e}")

        if not response.is_success:
            raise TransportError(
                f"{method} {url} returned HTTP {response.status_code}",
                response.status_code,
            )
        return response

    def close(self):
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
