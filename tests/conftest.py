"""
Pytest configuration and fixtures for tiercache tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Generator
from unittest.mock import patch

import pytest

from tiercache.cache.engine import CacheEngine
from tiercache.cache.kv_cache import InMemoryKVCache
from tiercache.cache.remote import InMemoryRemoteCache
from tiercache.config import CacheOptions, Settings, clear_settings_cache

# 2024-01-01T00:00:00Z
T0_MS = 1_704_067_200_000


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, start_ms: int = T0_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def seconds(self) -> float:
        """Current time in seconds, for stores that expire by seconds."""
        return self.now / 1000

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class CountingFetcher:
    """Origin fetcher that records calls and returns or raises in sequence.

    Each call consumes the next item of ``results``; the last item repeats.
    Exceptions in ``results`` are raised instead of returned.
    """

    def __init__(self, *results: Any, delay: float = 0.0) -> None:
        self.results = list(results) or [None]
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> Any:
        index = min(self.calls, len(self.results) - 1)
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results[index]
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "CACHE_DIR": ".test_cache",
        "LOCAL_TTL_SECONDS": "300",
        "REMOTE_TTL_SECONDS": "1800",
        "REMOTE_CACHE_URL": "",
        "REMOTE_CACHE_TOKEN": "",
        "PARTNER_API_URL": "https://partners.test",
        "PARTNER_API_TOKEN": "partner-test-token-1234567890",
        "ENVIRONMENT": "dev",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the cache directory.
    """
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from tiercache.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store() -> InMemoryKVCache:
    return InMemoryKVCache()


@pytest.fixture
def remote_store(clock: FakeClock) -> InMemoryRemoteCache:
    return InMemoryRemoteCache(clock=clock.seconds)


@pytest.fixture
def options() -> CacheOptions:
    """Default options: local 5 minutes, remote 30 minutes."""
    return CacheOptions()


@pytest.fixture
async def engine(
    local_store: InMemoryKVCache,
    remote_store: InMemoryRemoteCache,
    clock: FakeClock,
) -> CacheEngine:
    """Create an initialized in-memory engine driven by the fake clock."""
    cache_engine = CacheEngine(local_store, remote_store, clock=clock)
    await cache_engine.init()
    yield cache_engine
    await cache_engine.close()
