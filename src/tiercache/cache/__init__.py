"""
Cache package: tiers, resolution and batching.

- keys.py: canonical cache keys
- base.py: LocalStore / RemoteStore interfaces
- kv_cache.py: in-memory and SQLite LocalStores
- remote.py: in-memory and HTTP RemoteStores
- ledger.py: rate-limit backoff ledger
- resolver.py: single-key read-through across tiers
- batch.py: concurrent batch resolution with per-key isolation
- engine.py: CacheEngine facade
"""
