"""
CLI for the caching engine.

Commands:
    tiercache usage ICCID... - Show cached SIM usage counters
    tiercache packages - Show the partner package inventory
    tiercache invalidate KEY... - Drop cached entries and backoff
    tiercache key NAMESPACE K=V... - Print a canonical cache key
    tiercache config - Show current configuration
    tiercache version - Print version
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from tiercache import __version__
from tiercache.cache.engine import CacheEngine
from tiercache.cache.keys import build_key
from tiercache.config import Settings, clear_settings_cache, get_settings
from tiercache.logging import setup_logging
from tiercache.partner.client import PartnerClient
from tiercache.partner.usage import UsageService
from tiercache.types import BatchResult

app = typer.Typer(
    name="tiercache",
    help="Multi-tier cache for partner inventory and SIM usage counters",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _require_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'tiercache config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, log_file=settings.LOG_FILE)
    settings.ensure_directories()
    return settings


def _usage_table(result: BatchResult) -> Table:
    table = Table(title="SIM Usage", show_header=True)
    table.add_column("ICCID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("MB left / total", justify="right")
    table.add_column("Source", style="dim")
    table.add_column("Error", style="red")

    for iccid, outcome in result.items():
        if outcome.ok:
            usage = outcome.value
            amount = "unlimited" if usage.is_unlimited else f"{usage.remaining} / {usage.total}"
            source = outcome.source.value if outcome.source else "fake"
            table.add_row(iccid, usage.status or "-", amount, source, "")
        else:
            table.add_row(iccid, "-", "-", "-", outcome.error or "")
    return table


@app.command()
def usage(
    iccids: Annotated[list[str], typer.Argument(help="SIM ICCIDs")],
    fake: Annotated[
        Optional[bool],
        typer.Option("--fake/--live", help="Force fake or live data (default: by environment)"),
    ] = None,
    refresh: Annotated[
        bool,
        typer.Option("--refresh", "-r", help="Ignore fresh cache entries"),
    ] = False,
) -> None:
    """Show usage counters for one or more SIMs."""
    settings = _require_settings()
    use_fake = fake if fake is not None else not settings.is_production

    async def run() -> BatchResult:
        client = PartnerClient.from_settings(settings)
        try:
            async with CacheEngine.from_settings(settings) as engine:
                service = UsageService(
                    engine,
                    client,
                    ttl_seconds=settings.USAGE_CACHE_TTL_SECONDS,
                    use_fake_data=use_fake,
                )
                return await service.get_usage_many(iccids, force_refresh=refresh)
        finally:
            await client.close()

    result = asyncio.run(run())
    console.print(_usage_table(result))
    if not result.all_ok:
        raise typer.Exit(1)


@app.command()
def packages(
    country: Annotated[
        Optional[str],
        typer.Option("--country", "-c", help="ISO country code"),
    ] = None,
) -> None:
    """Show the partner package inventory."""
    settings = _require_settings()

    async def run() -> list[dict]:
        client = PartnerClient.from_settings(settings)
        try:
            async with CacheEngine.from_settings(settings) as engine:
                key = build_key("packages", {"country": country})
                return await engine.resolve(key, client.packages_fetcher(country))
        finally:
            await client.close()

    try:
        items = asyncio.run(run())
    except Exception as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Packages", show_header=True)
    table.add_column("Slug", style="cyan")
    table.add_column("Title")
    for item in items:
        table.add_row(str(item.get("slug", "-")), str(item.get("title", "-")))
    console.print(table)


@app.command()
def invalidate(
    keys: Annotated[list[str], typer.Argument(help="Cache keys to invalidate")],
) -> None:
    """Drop cached entries and any rate-limit backoff for the given keys."""
    settings = _require_settings()

    async def run() -> None:
        async with CacheEngine.from_settings(settings) as engine:
            await engine.invalidate_many(keys)

    asyncio.run(run())
    console.print(f"[green]Invalidated {len(set(keys))} key(s).[/green]")


@app.command()
def key(
    namespace: Annotated[str, typer.Argument(help="Key namespace")],
    params: Annotated[
        Optional[list[str]],
        typer.Argument(help="Parameters as NAME=VALUE"),
    ] = None,
) -> None:
    """Print the canonical cache key for a namespace and parameters."""
    parsed: dict[str, str] = {}
    for param in params or []:
        name, sep, value = param.partition("=")
        if not sep or not name:
            error_console.print(f"[red]Error:[/red] expected NAME=VALUE, got {param!r}")
            raise typer.Exit(2)
        parsed[name] = value
    console.print(build_key(namespace, parsed), markup=False)


@app.command()
def config() -> None:
    """Show current configuration with tokens redacted."""
    console.print()
    console.print("[bold]tiercache Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print("Check the TTL, URL and ENVIRONMENT variables or your .env file.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for name, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(name, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"tiercache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
