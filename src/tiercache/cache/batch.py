"""
Batch resolution with per-key failure isolation.

Keys are first classified against the cache tiers without contacting origin.
Keys that still need origin are fetched concurrently, each settling into its
own outcome: one failing key can never fail its siblings or the batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from tiercache.cache.base import FetcherFactory
from tiercache.cache.ledger import check_key
from tiercache.cache.resolver import Resolution, TierResolver
from tiercache.config import CacheOptions
from tiercache.exceptions import ConfigurationError
from tiercache.logging import get_logger, log_context
from tiercache.types import BatchResult, KeyOutcome, generate_id, now_ms

logger = get_logger(__name__)


class BatchCoordinator:
    """Resolves many independent keys at once.

    Args:
        resolver: Resolver providing tier lookups and the coalesced origin step.
        max_concurrency: Bound on concurrent origin calls. None is unbounded.
    """

    def __init__(
        self,
        resolver: TierResolver,
        max_concurrency: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.resolver = resolver
        self.max_concurrency = max_concurrency
        self._clock = clock

    async def resolve_batch(
        self,
        keys: Iterable[str],
        fetcher_factory: FetcherFactory[Any],
        options: CacheOptions,
        force_refresh: bool = False,
    ) -> BatchResult[Any]:
        """Resolve every key, isolating failures per key.

        Args:
            keys: Cache keys to resolve. Duplicates are resolved once.
            fetcher_factory: Builds the origin fetcher for a key.
            options: Effective options.
            force_refresh: Skip freshness checks (backoff still honored).

        Returns:
            BatchResult with one outcome per distinct key, in request order.
        """
        unique_keys = list(dict.fromkeys(keys))
        batch_id = generate_id("batch")
        started = self._clock()

        with log_context(batch_id=batch_id):
            outcomes: dict[str, KeyOutcome[Any]] = {}
            valid_keys: list[str] = []
            for key in unique_keys:
                try:
                    valid_keys.append(check_key(key))
                except ConfigurationError as e:
                    outcomes[key] = KeyOutcome.failure(key, e)

            # Classify every key against the cache tiers first
            lookups = await asyncio.gather(
                *[
                    self.resolver.lookup(key, options, force_refresh=force_refresh)
                    for key in valid_keys
                ],
                return_exceptions=True,
            )

            to_fetch: list[str] = []
            for key, hit in zip(valid_keys, lookups):
                if isinstance(hit, BaseException):
                    # Lookups degrade on store errors; anything else still
                    # deserves an origin attempt
                    logger.warning("Cache lookup failed", key=key, error=str(hit))
                    to_fetch.append(key)
                elif hit is None:
                    to_fetch.append(key)
                else:
                    outcomes[key] = KeyOutcome.success(key, hit.value, hit.source)

            logger.debug(
                "Batch classified",
                total=len(unique_keys),
                cached=len(valid_keys) - len(to_fetch),
                to_fetch=len(to_fetch),
            )

            if to_fetch:
                fetched = await self._fetch_all(to_fetch, fetcher_factory, options)
                for key, settled in zip(to_fetch, fetched):
                    if isinstance(settled, BaseException):
                        logger.warning("Batch key failed", key=key, error=str(settled))
                        outcomes[key] = KeyOutcome.failure(key, settled)
                    else:
                        outcomes[key] = KeyOutcome.success(key, settled.value, settled.source)

            result = BatchResult({key: outcomes[key] for key in unique_keys})
            logger.info(
                "Batch resolved",
                total=len(result),
                failed=len(result.errors()),
                fetched=len(to_fetch),
                elapsed_ms=self._clock() - started,
            )
            return result

    async def _fetch_all(
        self,
        keys: list[str],
        fetcher_factory: FetcherFactory[Any],
        options: CacheOptions,
    ) -> list[Resolution[Any] | BaseException]:
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def fetch_one(key: str) -> Resolution[Any]:
            with log_context(cache_key=key):
                fetch = fetcher_factory(key)
                if semaphore is None:
                    return await self.resolver.fetch_origin(key, fetch, options)
                async with semaphore:
                    return await self.resolver.fetch_origin(key, fetch, options)

        return await asyncio.gather(
            *[fetch_one(key) for key in keys],
            return_exceptions=True,
        )
