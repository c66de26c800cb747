"""
Base classes for caching.

Collaborator interfaces the engine depends on:
- LocalStore: durable per-device string key/value store
- RemoteStore: shared backend cache with typed values and optional TTL
- OriginFetcher: caller-supplied coroutine function producing a fresh value

Store implementations own their own I/O serialization and capacity/eviction
policy; the engine only ever issues a single get or a single put per tier
operation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")

OriginFetcher = Callable[[], Awaitable[T]]
"""Zero-argument coroutine function returning a fresh value for one key.

A fetcher signals rate limiting by raising RateLimitError with its
retry-after. Any other exception with ``status_code == 429``, on itself or
on a ``response`` attribute (e.g. ``httpx.HTTPStatusError``), is treated the
same way, using the response's Retry-After header when present. PermanentError
marks a non-retryable failure; everything else is a transient failure.
"""

FetcherFactory = Callable[[str], OriginFetcher[T]]
"""Builds the origin fetcher for a given cache key (used by batches)."""


class LocalStore(ABC):
    """Abstract interface for the durable per-device store.

    Values are opaque strings; the engine serializes entries itself.
    """

    name: str = "local"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get a raw value, or None on miss."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a raw value."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key (no error if absent)."""
        ...

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None


class RemoteStore(ABC):
    """Abstract interface for the shared backend cache."""

    name: str = "remote"

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get a value, or None on miss."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Set a value, optionally letting the store expire it after ``ttl_seconds``."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key (no error if absent)."""
        ...

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None
