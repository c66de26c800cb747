"""
Configuration management using pydantic-settings.

Loads process-wide configuration from environment variables and .env files,
and defines CacheOptions, the explicit per-call options struct of the engine.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tiercache.exceptions import ConfigurationError


def _to_ms(ttl: timedelta | None) -> int | None:
    if ttl is None:
        return None
    return int(ttl.total_seconds() * 1000)


class CacheOptions(BaseModel):
    """Options recognized by resolve(), resolve_batch() and preload().

    Unknown option names are rejected. A TTL of ``None`` makes entries
    evergreen: they are never re-validated against origin by age alone.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    local_ttl: timedelta | None = Field(
        default=timedelta(minutes=5),
        description="Max age before a Local entry is considered stale",
    )
    remote_ttl: timedelta | None = Field(
        default=timedelta(minutes=30),
        description="Max age before a Remote entry is considered stale",
    )
    enable_local_cache: bool = Field(default=True, description="Use the Local tier")
    enable_remote_cache: bool = Field(default=True, description="Use the Remote tier")
    mask_permanent_errors: bool = Field(
        default=False,
        description="Serve stale data instead of propagating permanent origin errors",
    )

    @field_validator("local_ttl", "remote_ttl")
    @classmethod
    def validate_ttl(cls, v: timedelta | None) -> timedelta | None:
        """TTLs must not be negative."""
        if v is not None and v.total_seconds() < 0:
            raise ValueError("TTL must not be negative")
        return v

    @property
    def local_ttl_ms(self) -> int | None:
        return _to_ms(self.local_ttl)

    @property
    def remote_ttl_ms(self) -> int | None:
        return _to_ms(self.remote_ttl)

    @property
    def remote_ttl_seconds(self) -> int | None:
        """Remote TTL as whole seconds, for stores that expire entries themselves."""
        if self.remote_ttl is None:
            return None
        return max(1, int(self.remote_ttl.total_seconds()))

    def merged(self, overrides: CacheOptions | Mapping[str, Any] | None) -> CacheOptions:
        """Layer per-call overrides on top of these options.

        Args:
            overrides: A full CacheOptions (used as is), a mapping of option
                names to values, or None.

        Returns:
            The effective options.

        Raises:
            ConfigurationError: If a mapping names an unknown option or an
                invalid value.
        """
        if overrides is None:
            return self
        if isinstance(overrides, CacheOptions):
            return overrides
        try:
            return CacheOptions.model_validate({**self.model_dump(), **dict(overrides)})
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid cache options",
                context={"options": sorted(overrides), "error": str(e)},
            ) from e


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        CACHE_DIR: Directory for the local SQLite cache
        LOCAL_TTL_SECONDS / REMOTE_TTL_SECONDS: Default tier TTLs (0 = evergreen)
        ENABLE_LOCAL_CACHE / ENABLE_REMOTE_CACHE: Default tier switches
        MAX_CONCURRENT_FETCHES: Bound on origin fan-out in a batch (unset = unbounded)
        REMOTE_CACHE_URL / REMOTE_CACHE_TOKEN: Shared backend cache
        PARTNER_API_URL / PARTNER_API_TOKEN: Partner origin API
        DEFAULT_RETRY_AFTER_SECONDS: Backoff used when a 429 has no Retry-After
        USAGE_CACHE_TTL_SECONDS: TTL for per-device usage counters
        ENVIRONMENT: dev, staging or prod (non-prod serves fake usage data)
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Directories
    CACHE_DIR: Path = Field(default=Path(".cache"), description="Cache directory")

    # Tier defaults
    LOCAL_TTL_SECONDS: int = Field(default=300, ge=0, description="Local tier TTL")
    REMOTE_TTL_SECONDS: int = Field(default=1800, ge=0, description="Remote tier TTL")
    ENABLE_LOCAL_CACHE: bool = Field(default=True, description="Enable the Local tier")
    ENABLE_REMOTE_CACHE: bool = Field(default=True, description="Enable the Remote tier")
    MAX_CONCURRENT_FETCHES: int | None = Field(
        default=None, ge=1, description="Maximum concurrent origin calls per batch"
    )

    # Remote backend cache
    REMOTE_CACHE_URL: str | None = Field(default=None, description="Backend cache base URL")
    REMOTE_CACHE_TOKEN: str | None = Field(default=None, description="Backend cache token")

    # Partner origin
    PARTNER_API_URL: str = Field(
        default="https://partners-api.airalo.com",
        description="Partner API base URL",
    )
    PARTNER_API_TOKEN: str | None = Field(default=None, description="Partner API token")
    DEFAULT_RETRY_AFTER_SECONDS: int = Field(
        default=900, ge=1, description="Backoff when Retry-After is missing"
    )
    USAGE_CACHE_TTL_SECONDS: int = Field(
        default=900, ge=0, description="TTL for SIM usage counters"
    )

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev", description="Deployment environment"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(
        default=None, description="Write JSON-lines logs to this file as well"
    )

    @field_validator("REMOTE_CACHE_URL", "PARTNER_API_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        """Normalize base URLs so paths can be appended."""
        if v is None:
            return None
        v = v.strip()
        return v.rstrip("/") or None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    def default_options(self) -> CacheOptions:
        """Build the engine-wide default CacheOptions from these settings."""
        return CacheOptions(
            local_ttl=(
                timedelta(seconds=self.LOCAL_TTL_SECONDS) if self.LOCAL_TTL_SECONDS else None
            ),
            remote_ttl=(
                timedelta(seconds=self.REMOTE_TTL_SECONDS) if self.REMOTE_TTL_SECONDS else None
            ),
            enable_local_cache=self.ENABLE_LOCAL_CACHE,
            enable_remote_cache=self.ENABLE_REMOTE_CACHE,
        )

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist."""
        self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    @property
    def local_db_path(self) -> Path:
        return self.CACHE_DIR / "tiercache.db"

    def redacted_display(self) -> dict[str, str | int | bool | None]:
        """Return settings with tokens redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:4]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "CACHE_DIR": str(self.CACHE_DIR),
            "LOCAL_TTL_SECONDS": self.LOCAL_TTL_SECONDS,
            "REMOTE_TTL_SECONDS": self.REMOTE_TTL_SECONDS,
            "ENABLE_LOCAL_CACHE": self.ENABLE_LOCAL_CACHE,
            "ENABLE_REMOTE_CACHE": self.ENABLE_REMOTE_CACHE,
            "MAX_CONCURRENT_FETCHES": self.MAX_CONCURRENT_FETCHES,
            "REMOTE_CACHE_URL": self.REMOTE_CACHE_URL,
            "REMOTE_CACHE_TOKEN": redact(self.REMOTE_CACHE_TOKEN),
            "PARTNER_API_URL": self.PARTNER_API_URL,
            "PARTNER_API_TOKEN": redact(self.PARTNER_API_TOKEN),
            "DEFAULT_RETRY_AFTER_SECONDS": self.DEFAULT_RETRY_AFTER_SECONDS,
            "USAGE_CACHE_TTL_SECONDS": self.USAGE_CACHE_TTL_SECONDS,
            "ENVIRONMENT": self.ENVIRONMENT,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
