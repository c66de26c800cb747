"""
Core types for the caching engine.

This module defines the data structures shared by every tier:
- CacheEntry: a cached value with its capture time and TTL
- RateLimitRecord: last known good value plus a learned backoff window
- KeyOutcome / BatchResult: per-key results of a batch resolution
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from uuid6 import uuid7

T = TypeVar("T")


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "batch")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ResolutionSource(str, Enum):
    """Where a resolved value came from."""

    LOCAL = "local"
    REMOTE = "remote"
    BACKOFF = "backoff"  # Soft hit: origin deliberately not contacted
    ORIGIN = "origin"
    STALE = "stale"  # Degraded-mode fallback after an origin failure


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with capture timestamp and optional TTL.

    Both ``timestamp`` and ``ttl`` are in milliseconds. An entry without a
    TTL never expires by time.
    """

    data: T
    timestamp: int
    ttl: int | None = None

    def is_expired(self, now: int) -> bool:
        """Check whether the entry is older than its TTL at ``now`` (ms)."""
        if self.ttl is None:
            return False
        return now - self.timestamp > self.ttl

    def with_ttl(self, ttl: int | None) -> CacheEntry[T]:
        """Return a copy with a different TTL and the same capture time."""
        return CacheEntry(data=self.data, timestamp=self.timestamp, ttl=ttl)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted shape."""
        return {"data": self.data, "timestamp": self.timestamp, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CacheEntry[Any]:
        """Build an entry from its persisted shape.

        Raises:
            ValueError: If the payload is not a cache entry.
        """
        if "data" not in payload or "timestamp" not in payload:
            raise ValueError("Cache entry payload requires 'data' and 'timestamp'")
        ttl = payload.get("ttl")
        return cls(
            data=payload["data"],
            timestamp=int(payload["timestamp"]),
            ttl=int(ttl) if ttl is not None else None,
        )


@dataclass(frozen=True)
class RateLimitRecord(Generic[T]):
    """Last known good value and the backoff window learned from a 429."""

    last_good_value: T
    observed_at: int  # ms
    retry_after_seconds: int

    @property
    def retry_at(self) -> int:
        """Epoch ms at which origin may be contacted again."""
        return self.observed_at + self.retry_after_seconds * 1000

    def is_active(self, now: int) -> bool:
        """Check whether the backoff window is still open at ``now`` (ms)."""
        return now < self.retry_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted shape (same record shape as a cache entry)."""
        return {
            "data": self.last_good_value,
            "timestamp": self.observed_at,
            "retryAfter": self.retry_after_seconds,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RateLimitRecord[Any]:
        """Build a record from its persisted shape.

        Raises:
            ValueError: If the payload carries no ``retryAfter``.
        """
        if "retryAfter" not in payload or "timestamp" not in payload:
            raise ValueError("Rate-limit payload requires 'retryAfter' and 'timestamp'")
        return cls(
            last_good_value=payload.get("data"),
            observed_at=int(payload["timestamp"]),
            retry_after_seconds=int(payload["retryAfter"]),
        )


@dataclass(frozen=True)
class KeyOutcome(Generic[T]):
    """Outcome of resolving one key: a value or a per-key error."""

    key: str
    value: T | None = None
    source: ResolutionSource | None = None
    error: str | None = None
    exception: BaseException | None = None

    @property
    def ok(self) -> bool:
        """True when the key resolved to a value."""
        return self.error is None

    @classmethod
    def success(cls, key: str, value: T, source: ResolutionSource) -> KeyOutcome[T]:
        return cls(key=key, value=value, source=source)

    @classmethod
    def failure(cls, key: str, exc: BaseException) -> KeyOutcome[T]:
        return cls(key=key, error=f"{type(exc).__name__}: {exc}", exception=exc)


class BatchResult(Mapping[str, KeyOutcome[T]], Generic[T]):
    """Read-only mapping of key to outcome for a batch resolution.

    A batch never fails as a unit; callers inspect each key's outcome.
    """

    def __init__(self, outcomes: Mapping[str, KeyOutcome[T]]) -> None:
        self._outcomes = dict(outcomes)

    def __getitem__(self, key: str) -> KeyOutcome[T]:
        return self._outcomes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._outcomes)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __repr__(self) -> str:
        return f"BatchResult(ok={len(self.values_only())}, failed={len(self.errors())})"

    def values_only(self) -> dict[str, T]:
        """Resolved values for the keys that succeeded."""
        return {k: o.value for k, o in self._outcomes.items() if o.ok}  # type: ignore[misc]

    def errors(self) -> dict[str, str]:
        """Structured error strings for the keys that failed."""
        return {k: o.error for k, o in self._outcomes.items() if o.error is not None}

    @property
    def all_ok(self) -> bool:
        """True when every key resolved."""
        return all(o.ok for o in self._outcomes.values())
