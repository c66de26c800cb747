"""
Partner API client, the origin for SIM usage counters and package inventory.

HTTP failures are translated into the engine's origin error taxonomy:
- 429 becomes RateLimitError carrying the Retry-After window
- 5xx and transport failures become TransientOriginError (retried)
- any other 4xx becomes PermanentError
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tiercache.cache.base import OriginFetcher
from tiercache.cache.ledger import DEFAULT_RETRY_AFTER_SECONDS, parse_retry_after
from tiercache.config import Settings
from tiercache.exceptions import (
    OriginError,
    PermanentError,
    RateLimitError,
    TransientOriginError,
)
from tiercache.logging import get_logger

logger = get_logger(__name__)


class PartnerClient:
    """Async client for the partner API.

    Args:
        base_url: Partner API base URL.
        token: Bearer token.
        default_retry_after: Backoff used when a 429 has no usable Retry-After.
        max_attempts: Attempts per request for transient failures.
        retry_wait_multiplier: Multiplier of the exponential wait between attempts.
        client: Pre-built httpx client (tests inject a mock transport).
    """

    source_name = "partner"

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        default_retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
        max_attempts: int = 3,
        retry_wait_multiplier: float = 1.0,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.default_retry_after = default_retry_after
        self.max_attempts = max_attempts
        self.retry_wait_multiplier = retry_wait_multiplier
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> PartnerClient:
        return cls(
            settings.PARTNER_API_URL,
            token=settings.PARTNER_API_TOKEN,
            default_retry_after=settings.DEFAULT_RETRY_AFTER_SECONDS,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with proper headers."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _error_for(self, response: httpx.Response, path: str) -> OriginError:
        status = response.status_code
        context = {"source": self.source_name, "path": path, "status_code": status}
        if status == 429:
            retry_after = parse_retry_after(
                response.headers.get("retry-after"), self.default_retry_after
            )
            return RateLimitError(
                f"Rate limited by partner API. Try again in {retry_after} seconds.",
                retry_after_seconds=retry_after,
                context=context,
            )
        if status >= 500:
            return TransientOriginError(
                "Partner API unavailable", context=context, status_code=status
            )
        return PermanentError("Partner API rejected request", context=context, status_code=status)

    async def _send(self, path: str, params: dict[str, Any] | None) -> Any:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}{path}", params=params)
        except httpx.TransportError as e:
            raise TransientOriginError(
                f"Failed to reach partner API: {e}",
                context={"source": self.source_name, "path": path},
            ) from e

        if response.is_error:
            raise self._error_for(response, path)

        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise TransientOriginError(
                "Partner API returned invalid JSON",
                context={"source": self.source_name, "path": path},
            ) from e

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` with retries on transient failures.

        Raises:
            RateLimitError: On 429 (never retried here; the cache backs off).
            TransientOriginError: When every attempt failed transiently.
            PermanentError: On other 4xx responses.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientOriginError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=10),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug(
                        "Retrying partner request",
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._send(path, params)

    async def get_usage(self, iccid: str) -> dict[str, Any]:
        """Fetch the usage counters of one SIM.

        Returns:
            The ``data`` object of the response (remaining, total, status, ...).
        """
        payload = await self._get(f"/v2/sims/{quote(iccid, safe='')}/usage")
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise TransientOriginError(
                "Partner usage response has no data",
                context={"source": self.source_name, "iccid": iccid},
            )
        logger.debug("Fetched SIM usage", iccid=iccid, status=data.get("status"))
        return data

    async def get_packages(self, country: str | None = None) -> list[dict[str, Any]]:
        """Fetch the package inventory, optionally for one country code."""
        params = {"filter[country]": country.upper()} if country else None
        payload = await self._get("/v2/packages", params)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise TransientOriginError(
                "Partner packages response has no data",
                context={"source": self.source_name, "country": country},
            )
        return data

    def usage_fetcher(self, iccid: str) -> OriginFetcher[dict[str, Any]]:
        """OriginFetcher producing fresh usage for ``iccid``."""

        async def fetch() -> dict[str, Any]:
            return await self.get_usage(iccid)

        return fetch

    def packages_fetcher(self, country: str | None = None) -> OriginFetcher[list[dict[str, Any]]]:
        """OriginFetcher producing the package inventory."""

        async def fetch() -> list[dict[str, Any]]:
            return await self.get_packages(country)

        return fetch
