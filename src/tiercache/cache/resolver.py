"""
Read-through resolution across the Local, Remote and Origin tiers.

For one key, tiers are consulted strictly in order:

1. Local entry, if fresh per its own TTL
2. Remote entry, if fresh per its own TTL (backfilled into Local)
3. Active rate-limit backoff: serve the last good value, origin untouched
4. Origin fetch, written through to both tiers

When origin fails, the newest stale entry from any enabled tier is served
instead. Only when nothing at all is cached does the failure propagate.

Concurrent resolutions of the same key that reach the origin step share a
single in-flight task, so origin sees at most one outstanding call per key.
Invalidating or preloading a key detaches its task: the result still reaches
the callers already waiting on it, but is never written back to the caches.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import orjson

from tiercache.cache.base import LocalStore, OriginFetcher, RemoteStore
from tiercache.cache.ledger import RateLimitLedger, parse_retry_after
from tiercache.config import CacheOptions
from tiercache.exceptions import (
    OriginError,
    PermanentError,
    RateLimitError,
    ResolutionError,
)
from tiercache.logging import get_logger, log_context
from tiercache.types import CacheEntry, ResolutionSource, now_ms

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Resolution(Generic[T]):
    """A resolved value and the tier that supplied it."""

    value: T
    source: ResolutionSource


class TierResolver:
    """Resolves single keys through the cache tiers.

    Args:
        local: Durable per-device store (also persists the backoff ledger).
        remote: Shared backend cache, or None when there is none.
        ledger: Rate-limit backoff ledger.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore | None,
        ledger: RateLimitLedger,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.local = local
        self.remote = remote
        self.ledger = ledger
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[Resolution[Any]]] = {}
        self._pending: set[asyncio.Task[Resolution[Any]]] = set()

    # ------------------------------------------------------------------
    # Tier access. Store failures degrade to a miss or a dropped write.
    # ------------------------------------------------------------------

    async def _read_local(self, key: str) -> CacheEntry[Any] | None:
        try:
            raw = await self.local.get(key)
        except Exception as e:
            logger.warning("Local cache read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to parse local cache entry", key=key, error=str(e))
            return None

    async def _write_local(self, key: str, entry: CacheEntry[Any]) -> None:
        try:
            await self.local.set(key, orjson.dumps(entry.to_dict()).decode())
        except Exception as e:
            logger.warning("Local cache write failed", key=key, error=str(e))

    async def _read_remote(self, key: str) -> CacheEntry[Any] | None:
        if self.remote is None:
            return None
        try:
            payload = await self.remote.get(key)
        except Exception as e:
            logger.warning("Remote cache read failed", key=key, error=str(e))
            return None
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            logger.warning("Ignoring malformed remote cache entry", key=key)
            return None
        try:
            return CacheEntry.from_dict(payload)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to parse remote cache entry", key=key, error=str(e))
            return None

    async def _write_remote(
        self, key: str, entry: CacheEntry[Any], ttl_seconds: int | None
    ) -> None:
        if self.remote is None:
            return
        try:
            await self.remote.set(key, entry.to_dict(), ttl_seconds)
        except Exception as e:
            logger.warning("Remote cache write failed", key=key, error=str(e))

    async def latest_entry(self, key: str, options: CacheOptions) -> CacheEntry[Any] | None:
        """Newest entry for ``key`` across enabled tiers, regardless of expiry."""
        candidates: list[CacheEntry[Any]] = []
        if options.enable_local_cache:
            local_entry = await self._read_local(key)
            if local_entry is not None:
                candidates.append(local_entry)
        if options.enable_remote_cache:
            remote_entry = await self._read_remote(key)
            if remote_entry is not None:
                candidates.append(remote_entry)
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.timestamp)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def lookup(
        self,
        key: str,
        options: CacheOptions,
        force_refresh: bool = False,
    ) -> Resolution[Any] | None:
        """Resolve ``key`` from the cache tiers only (steps 1 to 3).

        Args:
            key: Cache key.
            options: Effective options.
            force_refresh: Skip the freshness checks; an active backoff is
                still honored.

        Returns:
            The cached resolution, or None when origin must be contacted.
        """
        now = self._clock()

        if options.enable_local_cache and not force_refresh:
            entry = await self._read_local(key)
            if entry is not None:
                if not entry.is_expired(now):
                    logger.debug("Local cache hit", key=key)
                    return Resolution(entry.data, ResolutionSource.LOCAL)
                logger.debug("Local cache expired", key=key)

        if self.remote is not None and options.enable_remote_cache and not force_refresh:
            entry = await self._read_remote(key)
            if entry is not None:
                if not entry.is_expired(now):
                    logger.debug("Remote cache hit", key=key)
                    if options.enable_local_cache:
                        await self._write_local(key, entry.with_ttl(options.local_ttl_ms))
                    return Resolution(entry.data, ResolutionSource.REMOTE)
                logger.debug("Remote cache expired", key=key)

        record = await self.ledger.active_record(key)
        if record is not None:
            logger.info(
                "Serving last good value during backoff",
                key=key,
                retry_in_ms=record.retry_at - now,
            )
            return Resolution(record.last_good_value, ResolutionSource.BACKOFF)

        return None

    async def resolve(
        self,
        key: str,
        fetch: OriginFetcher[T],
        options: CacheOptions,
        force_refresh: bool = False,
    ) -> Resolution[T]:
        """Resolve ``key`` through every tier, falling back to stale data.

        Raises:
            OriginError: Origin failed and no cached value exists at any tier
                (a RateLimitError carries its retry-after).
            ResolutionError: An unclassified failure exhausted every fallback.
        """
        with log_context(cache_key=key):
            hit = await self.lookup(key, options, force_refresh=force_refresh)
            if hit is not None:
                return hit
            return await self.fetch_origin(key, fetch, options)

    async def fetch_origin(
        self,
        key: str,
        fetch: OriginFetcher[T],
        options: CacheOptions,
    ) -> Resolution[T]:
        """Run the origin step for ``key``, joining an in-flight call if any.

        Late joiners share the first caller's fetcher and options. The shared
        task is shielded, so it completes and updates the caches even when
        every caller stops waiting.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._origin_step(key, fetch, options))
            self._inflight[key] = task
            self._pending.add(task)
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.debug("Joining in-flight origin call", key=key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Resolution[Any]]) -> None:
        self._pending.discard(task)
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as retrieved even if every awaiting caller went away
        if not task.cancelled():
            task.exception()

    def detach(self, key: str) -> None:
        """Stop new callers from joining the in-flight call for ``key``.

        The detached call still completes and answers its own callers, but
        writes nothing back; the next resolve starts its own.
        """
        if self._inflight.pop(key, None) is not None:
            logger.debug("Detached in-flight origin call", key=key)

    def _is_current(self, key: str) -> bool:
        """True when the running origin step still owns ``key``."""
        return self._inflight.get(key) is asyncio.current_task()

    @property
    def inflight_keys(self) -> list[str]:
        """Keys with an origin call currently outstanding."""
        return list(self._inflight)

    async def drain(self) -> None:
        """Wait for every in-flight origin call, detached ones included, to settle."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def store_fresh(self, key: str, value: Any, options: CacheOptions) -> None:
        """Write ``value`` as a fresh entry into every enabled tier."""
        now = self._clock()
        if options.enable_local_cache:
            await self._write_local(key, CacheEntry(value, now, options.local_ttl_ms))
        if options.enable_remote_cache:
            await self._write_remote(
                key,
                CacheEntry(value, now, options.remote_ttl_ms),
                options.remote_ttl_seconds,
            )

    # ------------------------------------------------------------------
    # Origin step and failure handling
    # ------------------------------------------------------------------

    async def _origin_step(
        self,
        key: str,
        fetch: OriginFetcher[T],
        options: CacheOptions,
    ) -> Resolution[T]:
        with log_context(cache_key=key, tier="origin"):
            logger.debug("Fetching fresh data", key=key)
            try:
                value = await fetch()
            except RateLimitError as e:
                return await self._on_rate_limited(key, e, options)
            except PermanentError as e:
                if not options.mask_permanent_errors:
                    logger.warning("Permanent origin error", key=key, error=str(e))
                    raise
                return await self._stale_fallback(key, e, options)
            except Exception as e:
                limited = self._as_rate_limit(e)
                if limited is not None:
                    return await self._on_rate_limited(key, limited, options)
                return await self._stale_fallback(key, e, options)

            if not self._is_current(key):
                logger.debug("Dropping write-back from detached origin call", key=key)
                return Resolution(value, ResolutionSource.ORIGIN)
            await self.store_fresh(key, value, options)
            try:
                await self.ledger.clear(key)
            except Exception as e:
                logger.warning("Failed to clear backoff after fresh fetch", key=key, error=str(e))
            return Resolution(value, ResolutionSource.ORIGIN)

    async def _known_good_value(
        self, key: str, options: CacheOptions
    ) -> tuple[bool, Any]:
        entry = await self.latest_entry(key, options)
        if entry is not None:
            return True, entry.data
        record = await self.ledger.get_record(key)
        if record is not None:
            return True, record.last_good_value
        return False, None

    async def _on_rate_limited(
        self, key: str, error: RateLimitError, options: CacheOptions
    ) -> Resolution[Any]:
        found, value = await self._known_good_value(key, options)
        if not found:
            logger.warning(
                "Rate limited with no cached value",
                key=key,
                retry_after_seconds=error.retry_after_seconds,
            )
            raise error
        if self._is_current(key):
            await self.ledger.record_backoff(key, value, error.retry_after_seconds)
        return Resolution(value, ResolutionSource.STALE)

    def _as_rate_limit(self, error: Exception) -> RateLimitError | None:
        """Recognize a 429 raised by a fetcher as something other than RateLimitError.

        Covers exceptions carrying ``status_code == 429`` themselves or on a
        ``response`` attribute, such as ``httpx.HTTPStatusError``.
        """
        response = getattr(error, "response", None)
        status = getattr(error, "status_code", None)
        if status is None:
            status = getattr(response, "status_code", None)
        if status != 429:
            return None
        headers = getattr(response, "headers", None) or {}
        retry_after = parse_retry_after(
            headers.get("retry-after") or headers.get("Retry-After"),
            self.ledger.default_retry_after,
        )
        limited = RateLimitError(
            f"Rate limited by origin. Try again in {retry_after} seconds.",
            retry_after_seconds=retry_after,
            context={"error": f"{type(error).__name__}: {error}"},
        )
        limited.__cause__ = error
        return limited

    async def _stale_fallback(
        self, key: str, error: Exception, options: CacheOptions
    ) -> Resolution[Any]:
        found, value = await self._known_good_value(key, options)
        if found:
            logger.warning("Returning stale data due to fetch error", key=key, error=str(error))
            return Resolution(value, ResolutionSource.STALE)

        logger.error("Origin failed with no fallback", key=key, error=str(error))
        if isinstance(error, OriginError):
            raise error
        raise ResolutionError(
            f"Could not resolve {key}",
            context={"key": key, "error": f"{type(error).__name__}: {error}"},
        ) from error
