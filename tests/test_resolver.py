"""
Tests for read-through resolution across the cache tiers.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import orjson
import pytest

from tiercache.cache.engine import CacheEngine
from tiercache.cache.kv_cache import InMemoryKVCache
from tiercache.cache.ledger import ledger_key
from tiercache.cache.remote import InMemoryRemoteCache
from tiercache.exceptions import (
    PermanentError,
    RateLimitError,
    ResolutionError,
    StorageError,
    TransientOriginError,
)
from tiercache.types import ResolutionSource
from conftest import CountingFetcher, FakeClock

KEY = "sim_usage:iccid=8985200012345678901"
LOCAL_ONLY = {"enable_remote_cache": False}


class BrokenLocalStore(InMemoryKVCache):
    async def get(self, key: str) -> str | None:
        raise StorageError("disk unavailable", context={"key": key})

    async def set(self, key: str, value: str) -> None:
        raise StorageError("disk unavailable", context={"key": key})


class BrokenRemoteStore(InMemoryRemoteCache):
    async def get(self, key: str):
        raise StorageError("backend unavailable", context={"key": key})

    async def set(self, key: str, value, ttl_seconds: int | None = None) -> None:
        raise StorageError("backend unavailable", context={"key": key})


class TestCacheHits:
    """Test tier ordering and freshness."""

    @pytest.mark.asyncio
    async def test_second_resolve_is_local_hit(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher({"remaining": 512})

        first = await engine.resolve_with_source(KEY, fetch)
        second = await engine.resolve_with_source(KEY, fetch)

        assert fetch.calls == 1
        assert first.source == ResolutionSource.ORIGIN
        assert second.source == ResolutionSource.LOCAL
        assert first.value == second.value == {"remaining": 512}

    @pytest.mark.asyncio
    async def test_remote_hit_backfills_local(
        self,
        engine: CacheEngine,
        local_store: InMemoryKVCache,
        clock: FakeClock,
    ) -> None:
        fetch = CountingFetcher("v1")
        await engine.resolve(KEY, fetch)
        await local_store.remove(KEY)

        resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.source == ResolutionSource.REMOTE
        assert resolution.value == "v1"
        assert fetch.calls == 1
        raw = await local_store.get(KEY)
        assert raw is not None
        entry = orjson.loads(raw)
        assert entry["ttl"] == 300_000
        assert entry["timestamp"] == clock.now

    @pytest.mark.asyncio
    async def test_expired_local_falls_through_to_remote(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", "v2")
        await engine.resolve(KEY, fetch)

        clock.advance(301)
        resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.source == ResolutionSource.REMOTE
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_both_expired_contacts_origin(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", "v2")
        await engine.resolve(KEY, fetch)

        clock.advance(1801)
        resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.source == ResolutionSource.ORIGIN
        assert resolution.value == "v2"
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_disabled_local_tier_is_bypassed(
        self, engine: CacheEngine, local_store: InMemoryKVCache
    ) -> None:
        fetch = CountingFetcher("v1")
        await engine.resolve(KEY, fetch, {"enable_local_cache": False})

        assert await local_store.get(KEY) is None
        resolution = await engine.resolve_with_source(KEY, fetch, {"enable_local_cache": False})
        assert resolution.source == ResolutionSource.REMOTE

    @pytest.mark.asyncio
    async def test_force_refresh_skips_fresh_entries(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher("v1", "v2")
        await engine.resolve(KEY, fetch)

        value = await engine.resolve(KEY, fetch, force_refresh=True)

        assert value == "v2"
        assert fetch.calls == 2
        assert await engine.resolve(KEY, fetch) == "v2"

    @pytest.mark.asyncio
    async def test_usage_scenario(self, engine: CacheEngine) -> None:
        """Back-to-back resolves of a usage key hit origin once."""
        fetch = CountingFetcher({"remaining": 700, "total": 1024, "status": "ACTIVE"})
        options = {"local_ttl": timedelta(milliseconds=900_000)}

        first = await engine.resolve(KEY, fetch, options)
        second = await engine.resolve(KEY, fetch, options)

        assert fetch.calls == 1
        assert first == second


class TestEvergreenEntries:
    """Test entries without a TTL."""

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self, engine: CacheEngine, clock: FakeClock) -> None:
        fetch = CountingFetcher("reference", "newer")
        options = {"local_ttl": None, "remote_ttl": None}

        await engine.resolve(KEY, fetch, options)
        clock.advance(365 * 24 * 3600)
        resolution = await engine.resolve_with_source(KEY, fetch, options)

        assert resolution.source == ResolutionSource.LOCAL
        assert resolution.value == "reference"
        assert fetch.calls == 1


class TestOriginFailures:
    """Test stale fallback and error propagation."""

    @pytest.mark.asyncio
    async def test_transient_error_serves_stale(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", TransientOriginError("partner down"))
        await engine.resolve(KEY, fetch)

        clock.advance(2000)
        resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.source == ResolutionSource.STALE
        assert resolution.value == "v1"
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_no_fallback_propagates_origin_error(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher(TransientOriginError("partner down", status_code=503))

        with pytest.raises(TransientOriginError) as exc_info:
            await engine.resolve(KEY, fetch)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_unclassified_error_wrapped(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher(RuntimeError("boom"))

        with pytest.raises(ResolutionError) as exc_info:
            await engine.resolve(KEY, fetch)
        assert exc_info.value.context["key"] == KEY
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher(TransientOriginError("down"), "v1")

        with pytest.raises(TransientOriginError):
            await engine.resolve(KEY, fetch)
        assert await engine.resolve(KEY, fetch) == "v1"
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_permanent_error_propagates(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", PermanentError("SIM deleted", status_code=404))
        await engine.resolve(KEY, fetch)

        clock.advance(2000)
        with pytest.raises(PermanentError):
            await engine.resolve(KEY, fetch)

    @pytest.mark.asyncio
    async def test_permanent_error_masked_when_requested(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", PermanentError("SIM deleted", status_code=404))
        await engine.resolve(KEY, fetch)

        clock.advance(2000)
        resolution = await engine.resolve_with_source(
            KEY, fetch, {"mask_permanent_errors": True}
        )

        assert resolution.source == ResolutionSource.STALE
        assert resolution.value == "v1"


class TestRateLimitBackoff:
    """Test the learned per-key backoff window."""

    @pytest.mark.asyncio
    async def test_backoff_window(self, engine: CacheEngine, clock: FakeClock) -> None:
        fetch = CountingFetcher("v1", RateLimitError("slow down", retry_after_seconds=900), "v2")
        await engine.resolve(KEY, fetch, LOCAL_ONLY)

        # Local entry expired: origin answers 429 at T
        clock.advance(400)
        limited = await engine.resolve_with_source(KEY, fetch, LOCAL_ONLY)
        assert limited.value == "v1"
        assert limited.source == ResolutionSource.STALE
        assert fetch.calls == 2

        # T + 600s: origin is not contacted
        clock.advance(600)
        backed_off = await engine.resolve_with_source(KEY, fetch, LOCAL_ONLY)
        assert backed_off.value == "v1"
        assert backed_off.source == ResolutionSource.BACKOFF
        assert fetch.calls == 2

        # T + 901s: origin is contacted again
        clock.advance(301)
        fresh = await engine.resolve_with_source(KEY, fetch, LOCAL_ONLY)
        assert fresh.value == "v2"
        assert fresh.source == ResolutionSource.ORIGIN
        assert fetch.calls == 3
        assert not await engine.ledger.is_backed_off(KEY)

    @pytest.mark.asyncio
    async def test_backoff_beyond_remote_ttl(self, engine: CacheEngine, clock: FakeClock) -> None:
        fetch = CountingFetcher("v1", RateLimitError("slow down", retry_after_seconds=900), "v2")
        await engine.resolve(KEY, fetch)

        clock.advance(1801)
        assert await engine.resolve(KEY, fetch) == "v1"

        clock.advance(600)
        assert await engine.resolve(KEY, fetch) == "v1"
        assert fetch.calls == 2

        clock.advance(301)
        assert await engine.resolve(KEY, fetch) == "v2"
        assert fetch.calls == 3

    @pytest.mark.asyncio
    async def test_force_refresh_honors_backoff(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        fetch = CountingFetcher("v1", RateLimitError("slow down", retry_after_seconds=900), "v2")
        await engine.resolve(KEY, fetch, LOCAL_ONLY)
        await engine.resolve(KEY, fetch, LOCAL_ONLY, force_refresh=True)

        resolution = await engine.resolve_with_source(KEY, fetch, LOCAL_ONLY, force_refresh=True)

        assert resolution.source == ResolutionSource.BACKOFF
        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_rate_limit_without_value_propagates(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher(RateLimitError("slow down", retry_after_seconds=120))

        with pytest.raises(RateLimitError) as exc_info:
            await engine.resolve(KEY, fetch)

        assert exc_info.value.retry_after_seconds == 120
        assert await engine.ledger.get_record(KEY) is None

    @pytest.mark.asyncio
    async def test_backoff_uses_ledger_value_when_entries_gone(
        self, engine: CacheEngine, local_store: InMemoryKVCache
    ) -> None:
        await engine.ledger.record_backoff(KEY, "remembered", 900)
        fetch = CountingFetcher("v1")

        resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.value == "remembered"
        assert resolution.source == ResolutionSource.BACKOFF
        assert fetch.calls == 0
        assert await local_store.get(ledger_key(KEY)) is not None

    @pytest.mark.asyncio
    async def test_http_status_429_opens_backoff(
        self, engine: CacheEngine, clock: FakeClock
    ) -> None:
        request = httpx.Request("GET", "https://partners.test/v2/sims/89/usage")
        response = httpx.Response(429, headers={"Retry-After": "120"}, request=request)
        error = httpx.HTTPStatusError("Too Many Requests", request=request, response=response)
        fetch = CountingFetcher("v1", error, "v2")
        await engine.resolve(KEY, fetch)

        clock.advance(1801)
        limited = await engine.resolve_with_source(KEY, fetch)
        assert limited.source == ResolutionSource.STALE
        assert limited.value == "v1"

        record = await engine.ledger.active_record(KEY)
        assert record is not None
        assert record.retry_after_seconds == 120

        clock.advance(119)
        assert (await engine.resolve_with_source(KEY, fetch)).source == ResolutionSource.BACKOFF
        clock.advance(2)
        assert await engine.resolve(KEY, fetch) == "v2"
        assert fetch.calls == 3

    @pytest.mark.asyncio
    async def test_status_code_429_uses_default_window(
        self, local_store: InMemoryKVCache, clock: FakeClock
    ) -> None:
        class QuotaExceeded(Exception):
            status_code = 429

        engine = CacheEngine(local_store, clock=clock, default_retry_after=60)
        fetch = CountingFetcher("v1", QuotaExceeded("quota exceeded"))
        await engine.resolve(KEY, fetch)
        clock.advance(301)

        assert await engine.resolve(KEY, fetch) == "v1"
        record = await engine.ledger.active_record(KEY)
        assert record is not None
        assert record.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_status_code_429_without_value_raises_rate_limit(
        self, engine: CacheEngine
    ) -> None:
        class QuotaExceeded(Exception):
            status_code = 429

        with pytest.raises(RateLimitError) as exc_info:
            await engine.resolve(KEY, CountingFetcher(QuotaExceeded("quota exceeded")))

        assert exc_info.value.retry_after_seconds == 900
        assert isinstance(exc_info.value.__cause__, QuotaExceeded)


class TestStoreFailures:
    """Test that store failures degrade to the next tier."""

    @pytest.mark.asyncio
    async def test_broken_local_store(self, clock: FakeClock) -> None:
        remote = InMemoryRemoteCache(clock=clock.seconds)
        async with CacheEngine(BrokenLocalStore(), remote, clock=clock) as engine:
            fetch = CountingFetcher("v1")
            first = await engine.resolve_with_source(KEY, fetch)
            second = await engine.resolve_with_source(KEY, fetch)

        assert first.source == ResolutionSource.ORIGIN
        assert second.source == ResolutionSource.REMOTE
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_broken_remote_store(self, clock: FakeClock) -> None:
        remote = BrokenRemoteStore(clock=clock.seconds)
        async with CacheEngine(InMemoryKVCache(), remote, clock=clock) as engine:
            fetch = CountingFetcher("v1")
            assert await engine.resolve(KEY, fetch) == "v1"
            resolution = await engine.resolve_with_source(KEY, fetch)

        assert resolution.source == ResolutionSource.LOCAL

    @pytest.mark.asyncio
    async def test_corrupt_local_entry_is_a_miss(
        self, engine: CacheEngine, local_store: InMemoryKVCache
    ) -> None:
        await local_store.set(KEY, "{not json")
        fetch = CountingFetcher("v1")

        resolution = await engine.resolve_with_source(KEY, fetch, LOCAL_ONLY)

        assert resolution.source == ResolutionSource.ORIGIN
        assert fetch.calls == 1


class TestCoalescing:
    """Test that concurrent resolves share one origin call."""

    @pytest.mark.asyncio
    async def test_concurrent_resolves_coalesce(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher({"remaining": 1}, delay=0.01)

        results = await asyncio.gather(*[engine.resolve(KEY, fetch) for _ in range(5)])

        assert fetch.calls == 1
        assert all(r == {"remaining": 1} for r in results)
        assert engine.resolver.inflight_keys == []

    @pytest.mark.asyncio
    async def test_concurrent_failures_shared(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher(TransientOriginError("down"), delay=0.01)

        results = await asyncio.gather(
            *[engine.resolve(KEY, fetch) for _ in range(3)],
            return_exceptions=True,
        )

        assert fetch.calls == 1
        assert all(isinstance(r, TransientOriginError) for r in results)

    @pytest.mark.asyncio
    async def test_different_keys_not_coalesced(self, engine: CacheEngine) -> None:
        fetch = CountingFetcher("v", delay=0.01)

        await asyncio.gather(engine.resolve("a", fetch), engine.resolve("b", fetch))

        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_fetch(
        self, engine: CacheEngine, local_store: InMemoryKVCache
    ) -> None:
        fetch = CountingFetcher("v1", delay=0.05)

        task = asyncio.ensure_future(engine.resolve(KEY, fetch, LOCAL_ONLY))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await engine.flush()
        assert await local_store.get(KEY) is not None
        assert fetch.calls == 1
