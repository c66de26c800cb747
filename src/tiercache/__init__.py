"""
tiercache: multi-tier read-through caching for externally sourced records.

    from tiercache import CacheEngine, build_key

    async with CacheEngine(local_store, remote_store) as engine:
        usage = await engine.resolve(build_key("sim_usage", {"iccid": iccid}), fetch)
"""

from tiercache.cache.engine import CacheEngine
from tiercache.cache.keys import build_key, build_query_key
from tiercache.config import CacheOptions
from tiercache.types import BatchResult, CacheEntry, KeyOutcome, ResolutionSource

__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "CacheEngine",
    "CacheEntry",
    "CacheOptions",
    "KeyOutcome",
    "ResolutionSource",
    "build_key",
    "build_query_key",
]
