"""
Structured logging for the caching engine.

Provides:
- Context variables for batch_id, cache key and tier (using contextvars)
- JSONFormatter for machine-readable logs to file
- RichHandler for pretty console output
- ContextLogger wrapper that attaches context to all log calls
- setup_logging() that configures both file and console handlers
- Context manager log_context() for scoped context
- get_logger() factory
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.text import Text

# Context variables for structured logging
_batch_id_var: ContextVar[str | None] = ContextVar("batch_id", default=None)
_cache_key_var: ContextVar[str | None] = ContextVar("cache_key", default=None)
_tier_var: ContextVar[str | None] = ContextVar("tier", default=None)


def get_batch_id() -> str | None:
    """Get the current batch ID from context."""
    return _batch_id_var.get()


def get_cache_key() -> str | None:
    """Get the cache key being resolved from context."""
    return _cache_key_var.get()


def get_tier() -> str | None:
    """Get the current tier from context."""
    return _tier_var.get()


def _context_fields() -> dict[str, str]:
    fields: dict[str, str] = {}
    batch_id = get_batch_id()
    cache_key = get_cache_key()
    tier = get_tier()
    if batch_id:
        fields["batch_id"] = batch_id
    if cache_key:
        fields["cache_key"] = cache_key
    if tier:
        fields["tier"] = tier
    return fields


@contextmanager
def log_context(
    batch_id: str | None = None,
    cache_key: str | None = None,
    tier: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Args:
        batch_id: Batch ID to set in context.
        cache_key: Cache key to set in context.
        tier: Tier name to set in context.

    Yields:
        None. Context variables are set for the duration of the context.
    """
    old_batch_id = _batch_id_var.get()
    old_cache_key = _cache_key_var.get()
    old_tier = _tier_var.get()

    try:
        if batch_id is not None:
            _batch_id_var.set(batch_id)
        if cache_key is not None:
            _cache_key_var.set(cache_key)
        if tier is not None:
            _tier_var.set(tier)
        yield
    finally:
        _batch_id_var.set(old_batch_id)
        _cache_key_var.set(old_cache_key)
        _tier_var.set(old_tier)


class JSONFormatter(logging.Formatter):
    """JSON formatter for machine-readable log files.

    Produces JSON Lines format with structured context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_obj.update(_context_fields())

        # Add extra fields from the record
        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(log_obj, default=str).decode()


class ContextRichHandler(RichHandler):
    """Rich handler that includes context in console output."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        """Override to add context prefix."""
        level_text = super().get_level_text(record)

        parts: list[str] = []
        batch_id = get_batch_id()
        cache_key = get_cache_key()
        tier = get_tier()

        if batch_id:
            # Last 8 chars of the uuid7 are the random part
            parts.append(f"[dim]{batch_id[-8:]}[/dim]")
        if tier:
            parts.append(f"[cyan]{tier}[/cyan]")
        if cache_key:
            parts.append(f"[magenta]{escape(cache_key[:40])}[/magenta]")

        if parts:
            prefix = " ".join(parts)
            return Text.from_markup(f"{level_text} {prefix}")

        return level_text


class ContextLogger:
    """Logger wrapper that automatically attaches context to log calls.

    Keyword arguments other than the stdlib ones become structured fields:

        logger.info("Local cache hit", key=key, age_ms=age)
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        """Get the logger name."""
        return self._logger.name

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        """Internal logging method that adds context."""
        extra = kwargs.pop("extra", {})
        extra.update(_context_fields())

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel"):
                extra[key] = kwargs.pop(key)

        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the global rich console."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Set up logging with JSON file handler and rich console handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. If None, only console logging is enabled.
        console_output: Whether to enable console output.
    """
    global _setup_done

    root_logger = logging.getLogger("tiercache")
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)  # Log everything to file
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ["httpx", "httpcore", "aiosqlite", "asyncio"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger.

    Args:
        name: Logger name (usually __name__).

    Returns:
        ContextLogger wrapper around the standard logger.
    """
    if not _setup_done:
        setup_logging()

    if not name.startswith("tiercache"):
        name = f"tiercache.{name}"

    return ContextLogger(logging.getLogger(name))
