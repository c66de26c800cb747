"""
Per-key rate-limit backoff ledger.

When origin answers with a rate-limit signal, the ledger records the last
known good value and the retry-after window. The record is persisted through
the LocalStore next to the cache entry of the same key, so the backoff
survives process restarts. Keys ending in ``BACKOFF_SUFFIX`` are reserved for
those records and rejected as cache keys.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import orjson

from tiercache.cache.base import LocalStore
from tiercache.exceptions import ConfigurationError
from tiercache.logging import get_logger
from tiercache.types import RateLimitRecord, now_ms

logger = get_logger(__name__)

BACKOFF_SUFFIX = "::backoff"
DEFAULT_RETRY_AFTER_SECONDS = 900


def ledger_key(key: str) -> str:
    """Store key under which the backoff record for ``key`` lives."""
    return f"{key}{BACKOFF_SUFFIX}"


def check_key(key: str) -> str:
    """Return ``key`` unchanged if it may be used as a cache key.

    Raises:
        ConfigurationError: If ``key`` would collide with a backoff record.
    """
    if key.endswith(BACKOFF_SUFFIX):
        raise ConfigurationError(
            f"Cache keys may not end with {BACKOFF_SUFFIX!r}", context={"key": key}
        )
    return key


def parse_retry_after(value: str | None, default: int) -> int:
    """Parse a Retry-After header given in seconds, falling back to ``default``."""
    if not value:
        return default
    try:
        seconds = int(value.strip())
    except ValueError:
        return default
    return seconds if seconds > 0 else default


class RateLimitLedger:
    """Tracks learned backoff windows per cache key.

    Read and record failures never propagate: an unreadable ledger behaves
    as if no backoff were recorded, and a failed write is logged and dropped.
    """

    def __init__(
        self,
        store: LocalStore,
        clock: Callable[[], int] = now_ms,
        default_retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
    ) -> None:
        """Initialize the ledger.

        Args:
            store: LocalStore the records are persisted in.
            clock: Returns the current time in epoch milliseconds.
            default_retry_after: Window used when a rate-limit signal does not
                say how long to wait.
        """
        self.store = store
        self._clock = clock
        self.default_retry_after = default_retry_after

    async def get_record(self, key: str) -> RateLimitRecord[Any] | None:
        """Load the backoff record for ``key``, active or not."""
        try:
            raw = await self.store.get(ledger_key(key))
        except Exception as e:
            logger.warning("Backoff ledger read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return RateLimitRecord.from_dict(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning("Discarding unreadable backoff record", key=key, error=str(e))
            return None

    async def record_backoff(
        self,
        key: str,
        last_good_value: Any,
        retry_after_seconds: int,
    ) -> RateLimitRecord[Any]:
        """Open a backoff window for ``key`` starting now.

        Args:
            key: Cache key that was rate limited.
            last_good_value: Value to serve while backed off.
            retry_after_seconds: Length of the window.

        Returns:
            The recorded RateLimitRecord.
        """
        record = RateLimitRecord(
            last_good_value=last_good_value,
            observed_at=self._clock(),
            retry_after_seconds=max(0, int(retry_after_seconds)),
        )
        try:
            await self.store.set(ledger_key(key), orjson.dumps(record.to_dict()).decode())
        except Exception as e:
            logger.warning("Backoff ledger write failed", key=key, error=str(e))
            return record

        logger.info(
            "Backing off origin",
            key=key,
            retry_after_seconds=record.retry_after_seconds,
        )
        return record

    async def is_backed_off(self, key: str) -> bool:
        """True while the backoff window for ``key`` is open."""
        record = await self.get_record(key)
        return record is not None and record.is_active(self._clock())

    async def active_record(self, key: str) -> RateLimitRecord[Any] | None:
        """The record for ``key`` if its window is still open."""
        record = await self.get_record(key)
        if record is not None and record.is_active(self._clock()):
            return record
        return None

    async def peek(self, key: str) -> Any | None:
        """Last good value recorded for ``key``, or None."""
        record = await self.get_record(key)
        return record.last_good_value if record else None

    async def clear(self, key: str) -> None:
        """Drop any backoff for ``key``.

        Unlike reads and records, a failed clear propagates: callers that
        invalidate a key must know the backoff may still be in place.
        """
        await self.store.remove(ledger_key(key))
