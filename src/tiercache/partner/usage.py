"""
Per-SIM usage counters served through the cache engine.

Usage is fetched for many SIMs at once. Each SIM is cached under its own key,
so a rate-limited or failing SIM only affects its own entry. Outside
production, realistic fake counters are generated without any I/O.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from tiercache.cache.engine import CacheEngine
from tiercache.cache.keys import build_key
from tiercache.partner.client import PartnerClient
from tiercache.types import BatchResult, KeyOutcome, utc_now

USAGE_NAMESPACE = "sim_usage"

FAKE_STATUSES = ["NOT_ACTIVE", "ACTIVE", "FINISHED", "UNKNOWN", "EXPIRED"]
FAKE_PACKAGE_SIZES_MB = [100, 250, 500, 1024, 2048, 5120, 10240]
FAKE_VOICE_MINUTES = [0, 30, 60, 100, 200, 500]
FAKE_TEXT_MESSAGES = [0, 50, 100, 200, 500]


@dataclass(frozen=True)
class SimUsage:
    """Usage counters of one SIM as reported by the partner API."""

    remaining: int | None = None
    total: int | None = None
    expired_at: str | None = None
    is_unlimited: bool = False
    status: str | None = None
    remaining_voice: int | None = None
    remaining_text: int | None = None
    total_voice: int | None = None
    total_text: int | None = None
    is_fake: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimUsage:
        return cls(
            remaining=data.get("remaining"),
            total=data.get("total"),
            expired_at=data.get("expired_at"),
            is_unlimited=bool(data.get("is_unlimited", False)),
            status=data.get("status"),
            remaining_voice=data.get("remaining_voice"),
            remaining_text=data.get("remaining_text"),
            total_voice=data.get("total_voice"),
            total_text=data.get("total_text"),
            is_fake=bool(data.get("_fake", False)),
        )

    @property
    def used(self) -> int | None:
        if self.total is None or self.remaining is None:
            return None
        return max(0, self.total - self.remaining)


def usage_key(iccid: str) -> str:
    """Cache key of the usage counters for ``iccid``."""
    return build_key(USAGE_NAMESPACE, {"iccid": iccid})


def generate_fake_usage(
    iccids: Iterable[str], rng: random.Random | None = None
) -> dict[str, SimUsage]:
    """Generate plausible usage for each SIM, statuses spread evenly."""
    rng = rng or random.Random()
    expires = (utc_now() + timedelta(days=30)).isoformat()
    results: dict[str, SimUsage] = {}
    for index, iccid in enumerate(iccids):
        total = rng.choice(FAKE_PACKAGE_SIZES_MB)
        results[iccid] = SimUsage(
            remaining=max(0, int(total * rng.random())),
            total=total,
            expired_at=expires,
            is_unlimited=rng.random() > 0.8,
            status=FAKE_STATUSES[index % len(FAKE_STATUSES)],
            remaining_voice=rng.choice(FAKE_VOICE_MINUTES),
            remaining_text=rng.choice(FAKE_TEXT_MESSAGES),
            total_voice=rng.choice(FAKE_VOICE_MINUTES),
            total_text=rng.choice(FAKE_TEXT_MESSAGES),
            is_fake=True,
        )
    return results


class UsageService:
    """Resolves SIM usage counters through a CacheEngine.

    Args:
        engine: Cache engine to resolve through.
        client: Partner API client. Required unless ``use_fake_data``.
        ttl_seconds: Freshness window of usage counters on both tiers.
        use_fake_data: Generate counters instead of calling the partner API.
    """

    def __init__(
        self,
        engine: CacheEngine,
        client: PartnerClient | None = None,
        ttl_seconds: int = 900,
        use_fake_data: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        if client is None and not use_fake_data:
            raise ValueError("A PartnerClient is required unless fake data is used")
        self.engine = engine
        self.client = client
        self.use_fake_data = use_fake_data
        self._rng = rng
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self.options = {"local_ttl": ttl, "remote_ttl": ttl}

    def _require_client(self) -> PartnerClient:
        if self.client is None:
            raise RuntimeError("UsageService has no PartnerClient configured")
        return self.client

    async def get_usage_many(
        self, iccids: Iterable[str], force_refresh: bool = False
    ) -> BatchResult[SimUsage]:
        """Usage for each SIM, keyed by ICCID. Never raises for one SIM's failure."""
        iccids = list(dict.fromkeys(iccids))
        if not iccids:
            return BatchResult({})

        if self.use_fake_data:
            fake = generate_fake_usage(iccids, self._rng)
            return BatchResult(
                {iccid: KeyOutcome(key=iccid, value=usage) for iccid, usage in fake.items()}
            )

        client = self._require_client()
        by_key = {usage_key(iccid): iccid for iccid in iccids}
        batch = await self.engine.resolve_batch(
            list(by_key),
            lambda key: client.usage_fetcher(by_key[key]),
            self.options,
            force_refresh=force_refresh,
        )

        outcomes: dict[str, KeyOutcome[SimUsage]] = {}
        for key, outcome in batch.items():
            iccid = by_key[key]
            if outcome.ok:
                outcomes[iccid] = replace(
                    outcome, key=iccid, value=SimUsage.from_dict(outcome.value)
                )
            else:
                outcomes[iccid] = replace(outcome, key=iccid)
        return BatchResult(outcomes)

    async def get_usage(self, iccid: str, force_refresh: bool = False) -> SimUsage:
        """Usage for one SIM.

        Raises:
            OriginError: The partner API failed and nothing is cached.
        """
        if self.use_fake_data:
            return generate_fake_usage([iccid], self._rng)[iccid]
        data = await self.engine.resolve(
            usage_key(iccid),
            self._require_client().usage_fetcher(iccid),
            self.options,
            force_refresh=force_refresh,
        )
        return SimUsage.from_dict(data)

    async def clear(self, iccids: Iterable[str]) -> None:
        """Drop cached usage and backoff for each SIM."""
        await self.engine.invalidate_many(usage_key(iccid) for iccid in iccids)
