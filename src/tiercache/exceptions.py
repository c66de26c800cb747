"""
Custom exception hierarchy for the caching engine.

All exceptions inherit from TierCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class TierCacheError(Exception):
    """Base exception for all caching engine errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(TierCacheError):
    """Raised when configuration or per-call options are invalid.

    Examples:
        - Unrecognized option names passed to resolve()
        - Negative TTL values
    """

    pass


class OriginError(TierCacheError):
    """Raised by an origin fetcher when fresh data cannot be produced.

    Context should include:
        - source: The origin being contacted
        - status_code: HTTP status code if applicable
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, context)
        self.status_code = status_code


class TransientOriginError(OriginError):
    """Network or 5xx-class failure. Stale data may be served instead."""

    pass


class RateLimitError(OriginError):
    """Origin refused the request with a rate-limit signal (429-class).

    The resolver enters a per-key backoff window of ``retry_after_seconds``
    and serves the last good value while it lasts.
    """

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        context: dict[str, Any] | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, context, status_code=status_code)
        self.retry_after_seconds = retry_after_seconds


class PermanentError(OriginError):
    """Non-retryable 4xx-class failure (e.g. resource deleted).

    Propagated immediately unless the caller opts into masking it with stale data.
    """

    pass


class StorageError(TierCacheError):
    """Raised when a local or remote store operation fails.

    Context should include:
        - store: The store that failed (e.g., "sqlite", "http")
        - key: The cache key involved
        - operation: get, set, remove or delete
    """

    pass


class ResolutionError(TierCacheError):
    """Raised when every tier and fallback for a key has been exhausted.

    Context should include:
        - key: The cache key that could not be resolved
        - error: The last underlying error
    """

    pass
