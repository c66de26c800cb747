"""
RemoteStore implementations.

- InMemoryRemoteCache: process-local stand-in for a shared cache, honoring
  per-key TTLs the way a backend store would
- HttpRemoteCache: shared backend cache reached over HTTP with httpx
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
import orjson

from tiercache.cache.base import RemoteStore
from tiercache.exceptions import StorageError
from tiercache.logging import get_logger

logger = get_logger(__name__)


class InMemoryRemoteCache(RemoteStore):
    """Dict-backed RemoteStore with store-level TTL expiry.

    Args:
        clock: Returns the current time in seconds (injectable for tests).
    """

    name = "memory-remote"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}

    async def get(self, key: str) -> Any | None:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class HttpRemoteCache(RemoteStore):
    """Backend cache API client.

    Endpoints, relative to ``base_url``:
        GET    /cache/{key}  -> 200 {"value": ...} | 404
        PUT    /cache/{key}  <- {"value": ..., "ttl": seconds | null}
        DELETE /cache/{key}  -> 2xx | 404
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend base URL.
            token: Optional bearer token.
            timeout: Request timeout in seconds.
            client: Pre-built client (tests inject one with a mock transport).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with proper headers."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this store created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _url(self, key: str) -> str:
        return f"{self.base_url}/cache/{quote(key, safe='')}"

    def _storage_error(self, operation: str, key: str, error: Exception) -> StorageError:
        return StorageError(
            f"Remote cache {operation} failed",
            context={"store": self.name, "key": key, "operation": operation, "error": str(error)},
        )

    async def get(self, key: str) -> Any | None:
        client = await self._get_client()
        try:
            response = await client.get(self._url(key))
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = orjson.loads(response.content)
        except (httpx.HTTPError, orjson.JSONDecodeError) as e:
            raise self._storage_error("get", key, e) from e

        if not isinstance(payload, dict):
            return None
        return payload.get("value")

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        client = await self._get_client()
        try:
            response = await client.put(
                self._url(key),
                content=orjson.dumps({"value": value, "ttl": ttl_seconds}),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except (httpx.HTTPError, TypeError) as e:
            raise self._storage_error("set", key, e) from e

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        try:
            response = await client.delete(self._url(key))
            if response.status_code != 404:
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise self._storage_error("delete", key, e) from e
