"""
CacheEngine: the public entry point of the caching engine.

One engine is constructed at process start (or per test) and passed to
whoever needs cached data. It owns the stores, the backoff ledger, the
resolver and the batch coordinator, and has an explicit lifecycle:

    engine = CacheEngine.from_settings(get_settings())
    await engine.init()
    try:
        usage = await engine.resolve(key, fetch_usage)
    finally:
        await engine.close()

or, equivalently, ``async with CacheEngine(...) as engine: ...``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any, TypeVar

from tiercache.cache.base import FetcherFactory, LocalStore, OriginFetcher, RemoteStore
from tiercache.cache.batch import BatchCoordinator
from tiercache.cache.kv_cache import InMemoryKVCache, SQLiteKVCache
from tiercache.cache.ledger import DEFAULT_RETRY_AFTER_SECONDS, RateLimitLedger, check_key
from tiercache.cache.remote import HttpRemoteCache
from tiercache.cache.resolver import Resolution, TierResolver
from tiercache.config import CacheOptions, Settings
from tiercache.logging import get_logger, log_context
from tiercache.types import BatchResult, now_ms

logger = get_logger(__name__)

T = TypeVar("T")

OptionsArg = CacheOptions | Mapping[str, Any] | None


class CacheEngine:
    """Multi-tier read-through cache.

    Args:
        local_store: Durable per-device store. Defaults to an in-memory store.
        remote_store: Shared backend cache, or None for local-only caching.
        options: Engine-wide default options; per-call options layer on top.
        max_concurrency: Bound on concurrent origin calls within a batch.
        clock: Returns the current time in epoch milliseconds.
        default_retry_after: Backoff window for rate-limit signals that do not
            carry a Retry-After.
    """

    def __init__(
        self,
        local_store: LocalStore | None = None,
        remote_store: RemoteStore | None = None,
        options: CacheOptions | None = None,
        max_concurrency: int | None = None,
        clock: Callable[[], int] = now_ms,
        default_retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
    ) -> None:
        self.local_store = local_store if local_store is not None else InMemoryKVCache()
        self.remote_store = remote_store
        self.options = options or CacheOptions()
        self.ledger = RateLimitLedger(
            self.local_store, clock=clock, default_retry_after=default_retry_after
        )
        self.resolver = TierResolver(self.local_store, remote_store, self.ledger, clock=clock)
        self.batch = BatchCoordinator(self.resolver, max_concurrency=max_concurrency, clock=clock)
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheEngine:
        """Build an engine with a SQLite local store and, when configured,
        the HTTP backend cache."""
        remote: RemoteStore | None = None
        if settings.REMOTE_CACHE_URL:
            remote = HttpRemoteCache(settings.REMOTE_CACHE_URL, token=settings.REMOTE_CACHE_TOKEN)
        return cls(
            local_store=SQLiteKVCache(settings.local_db_path),
            remote_store=remote,
            options=settings.default_options(),
            max_concurrency=settings.MAX_CONCURRENT_FETCHES,
            default_retry_after=settings.DEFAULT_RETRY_AFTER_SECONDS,
        )

    async def init(self) -> None:
        """Initialize stores that need it (e.g. open the SQLite database)."""
        init = getattr(self.local_store, "init", None)
        if init is not None:
            await init()
        self._closed = False
        logger.info(
            "Cache engine ready",
            local=self.local_store.name,
            remote=self.remote_store.name if self.remote_store else None,
        )

    async def flush(self) -> None:
        """Wait for every in-flight origin call and its cache writes."""
        await self.resolver.drain()

    async def close(self) -> None:
        """Flush outstanding work and close the stores."""
        if self._closed:
            return
        await self.flush()
        await self.local_store.close()
        if self.remote_store is not None:
            await self.remote_store.close()
        self._closed = True
        logger.info("Cache engine closed")

    async def __aenter__(self) -> CacheEngine:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def effective_options(self, options: OptionsArg = None) -> CacheOptions:
        """Engine defaults with per-call ``options`` layered on top.

        Raises:
            ConfigurationError: If ``options`` names an unknown option.
        """
        return self.options.merged(options)

    async def resolve(
        self,
        key: str,
        fetcher: OriginFetcher[T],
        options: OptionsArg = None,
        force_refresh: bool = False,
    ) -> T:
        """Resolve ``key`` through Local, Remote and Origin.

        Args:
            key: Cache key (see ``build_key``).
            fetcher: Produces a fresh value when origin must be contacted.
            options: Per-call overrides.
            force_refresh: Ignore fresh cached entries. An active rate-limit
                backoff is still honored; only ``invalidate`` ends it early.

        Returns:
            The resolved value.

        Raises:
            OriginError: Origin failed and no cached value exists.
            ResolutionError: Every fallback was exhausted.
            ConfigurationError: Unknown options were given, or ``key`` ends
                with the reserved backoff suffix.
        """
        resolution = await self.resolve_with_source(key, fetcher, options, force_refresh)
        return resolution.value

    async def resolve_with_source(
        self,
        key: str,
        fetcher: OriginFetcher[T],
        options: OptionsArg = None,
        force_refresh: bool = False,
    ) -> Resolution[T]:
        """Like ``resolve`` but also reports which tier supplied the value."""
        check_key(key)
        effective = self.effective_options(options)
        return await self.resolver.resolve(key, fetcher, effective, force_refresh=force_refresh)

    async def resolve_batch(
        self,
        keys: Iterable[str],
        fetcher_factory: FetcherFactory[T],
        options: OptionsArg = None,
        force_refresh: bool = False,
    ) -> BatchResult[T]:
        """Resolve independent keys concurrently with per-key isolation.

        Never raises for a key's failure; inspect each outcome instead.

        Raises:
            ConfigurationError: Unknown options were given.
        """
        effective = self.effective_options(options)
        return await self.batch.resolve_batch(
            keys, fetcher_factory, effective, force_refresh=force_refresh
        )

    async def invalidate(self, key: str) -> None:
        """Remove ``key`` from both tiers and clear its backoff.

        The next resolve of ``key`` contacts origin.

        Raises:
            StorageError: A store failed, so stale data or backoff may remain.
            ConfigurationError: ``key`` ends with the reserved backoff suffix.
        """
        check_key(key)
        with log_context(cache_key=key):
            self.resolver.detach(key)
            await self.local_store.remove(key)
            if self.remote_store is not None:
                await self.remote_store.delete(key)
            await self.ledger.clear(key)
            logger.info("Invalidated cache", key=key)

    async def invalidate_many(self, keys: Iterable[str]) -> None:
        """Invalidate each key in ``keys``."""
        for key in dict.fromkeys(keys):
            await self.invalidate(key)

    async def preload(self, key: str, value: T, options: OptionsArg = None) -> None:
        """Write ``value`` as fresh into both tiers without contacting origin.

        Used to keep reads consistent with a mutation just performed locally.
        An origin call already in flight for ``key`` is detached, so its
        older result cannot overwrite ``value``.
        """
        check_key(key)
        effective = self.effective_options(options)
        with log_context(cache_key=key):
            self.resolver.detach(key)
            await self.resolver.store_fresh(key, value, effective)
            logger.debug("Preloaded cache", key=key)
