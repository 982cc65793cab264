"""Shared key/value stores visible across devices."""
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from flashdrill.exceptions import RemoteStoreError
from flashdrill.monitoring import remote_request_duration

logger = logging.getLogger(__name__)


class RemoteStore(ABC):
    """Asynchronous store holding raw JSON text per key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the raw value stored under a key, or None if absent."""

    @abstractmethod
    async def set(self, key: str, raw: str) -> None:
        """Store raw JSON text under a key."""

    async def close(self) -> None:
        """Release any held resources."""


class NullRemoteStore(RemoteStore):
    """Stand-in used when no shared store is configured; always offline."""

    async def get(self, key: str) -> Optional[str]:
        raise RemoteStoreError("No shared store configured")

    async def set(self, key: str, raw: str) -> None:
        raise RemoteStoreError("No shared store configured")


class HttpRemoteStore(RemoteStore):
    """HTTP client for a shared key/value service.

    ``GET /kv/{key}`` answers ``{"value": "<json>"}`` or 404 and
    ``PUT /kv/{key}`` accepts ``{"value": "<json>", "shared": true}``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, key: str, **kwargs) -> httpx.Response:
        started = time.perf_counter()
        try:
            return await self._client.request(method, f"/kv/{key}", **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} {key} failed: {e}") from e
        finally:
            remote_request_duration.labels(method=method).observe(time.perf_counter() - started)

    async def get(self, key: str) -> Optional[str]:
        response = await self._request("GET", key, params={"shared": "true"})
        if response.status_code == 404:
            return None
        if response.is_error:
            raise RemoteStoreError(f"GET {key} returned {response.status_code}")
        try:
            value = response.json().get("value")
        except (ValueError, AttributeError):
            logger.warning(f"Shared store returned an unreadable body for {key}")
            return None
        return value if isinstance(value, str) else None

    async def set(self, key: str, raw: str) -> None:
        response = await self._request("PUT", key, json={"value": raw, "shared": True})
        if response.is_error:
            raise RemoteStoreError(f"PUT {key} returned {response.status_code}")
