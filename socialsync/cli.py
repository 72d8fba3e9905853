"""Command-line interface for SocialSync.

This module provides a Typer-based CLI for operating the synchronization
pipeline.

Commands:
- init: Create the store-of-record schema
- run: Start the pipeline (refresh scan, polling jobs, propagation)
- refresh: Run a single token refresh scan
- reindex: Rebuild the search index from the store of record
- reencrypt: Re-encrypt stored tokens with the primary key
- status: Show connection states and entity counts

Adapters are loaded from ``platform=module:attribute`` specs; the attribute
may be an adapter instance, a class or a zero-argument factory.

Example:
    $ socialsync init
    $ socialsync run -a mastodon=myadapters.mastodon:MastodonAdapter
    $ socialsync reindex
    $ socialsync status
"""

import asyncio
import contextlib
import importlib
import signal
from typing import Any, Optional

import typer
from prometheus_client import start_http_server
from rich.console import Console
from rich.table import Table

from socialsync.config import settings
from socialsync.database import DatabaseManager
from socialsync.interfaces import SearchIndex
from socialsync.logging import logger, setup_logging
from socialsync.metrics import registry as metrics_registry
from socialsync.pipeline import SyncPipeline
from socialsync.registry import AdapterRegistry
from socialsync.search import InMemorySearchIndex, MeilisearchIndex
from socialsync.telemetry import initialize_telemetry, shutdown_telemetry
from socialsync.utils import format_iso
from socialsync.vault import TokenVault

# Initialize CLI app
app     = typer.Typer(
    name="socialsync",
    help="Social platform synchronization pipeline",
    add_completion=False,
)
console = Console()

ADAPTER_HELP = "Adapter spec platform=module:attribute (repeatable)"


# =============================================================================
# Helper Functions
# =============================================================================


def configure_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_logs=settings.log_json,
        colorize=not settings.log_json,
    )


def run_async(coro):
    """Run async coroutine in event loop."""
    return asyncio.run(coro)


def load_adapter(spec: str) -> tuple[str, Any]:
    """Load an adapter from a ``platform=module:attribute`` spec.

    Raises:
        typer.BadParameter: If the spec is malformed or cannot be imported
    """
    platform, sep, target = spec.partition("=")
    module_name, sep2, attribute = target.partition(":")
    if not sep or not sep2 or not platform or not module_name or not attribute:
        raise typer.BadParameter(f"Expected platform=module:attribute, got '{spec}'")

    try:
        obj = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"Cannot load adapter '{target}': {exc}") from exc

    if isinstance(obj, type) or (callable(obj) and not _looks_like_adapter(obj)):
        adapter = obj()
    else:
        adapter = obj
    return platform.strip(), adapter


def _looks_like_adapter(obj: Any) -> bool:
    return any(
        hasattr(obj, name)
        for name in ("fetch_feed", "fetch_notifications", "publish", "refresh")
    )


def build_registry(adapter_specs: Optional[list[str]]) -> AdapterRegistry:
    registry = AdapterRegistry()
    for spec in adapter_specs or []:
        platform, adapter = load_adapter(spec)
        registry.register(platform, adapter)
        console.print(
            f"🔌 Adapter [cyan]{platform}[/cyan]: "
            f"{', '.join(sorted(registry.capabilities(platform)))}"
        )
    return registry


def build_search_index() -> SearchIndex:
    """Meilisearch when SEARCH_URL is set, otherwise the in-memory index."""
    if settings.search_url:
        api_key = settings.search_api_key.get_secret_value() if settings.search_api_key else None
        return MeilisearchIndex(settings.search_url, api_key=api_key)
    logger.warning("⚠️ SEARCH_URL not set, using the in-memory search index")
    return InMemorySearchIndex()


def build_pipeline(
    adapter_specs: Optional[list[str]] = None,
    database_url: Optional[str] = None,
) -> SyncPipeline:
    return SyncPipeline(
        registry=build_registry(adapter_specs),
        db=DatabaseManager(database_url),
        search_index=build_search_index(),
    )


# =============================================================================
# CLI Commands
# =============================================================================


@app.command()
def init(
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        help="SQLAlchemy URL (defaults to DATABASE_URL)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Create the database schema.

    Examples:
        $ socialsync init
        $ socialsync init --database-url sqlite:///./sync.db
    """
    configure_logging(verbose)
    console.print("🏗️  [bold cyan]SocialSync Initialization[/bold cyan]\n")

    try:
        db = DatabaseManager(database_url)
        db.initialize()
        console.print(f"✅ Database ready at [yellow]{db.database_url}[/yellow]")

        console.print("\n📋 Configuration:")
        console.print(f"  • Environment: {settings.environment.value}")
        console.print(f"  • Refresh lead: {settings.refresh_lead_seconds:.0f}s")
        console.print(f"  • Poll interval: {settings.poll_interval_seconds:.0f}s")
        console.print(f"  • Worker pool: {settings.worker_pool_size}")
        console.print(f"  • Search index: {settings.search_url or 'in-memory'}")
        db.close()

        console.print("\n✅ [bold green]Initialization complete![/bold green]")
    except Exception as e:
        console.print(f"\n❌ [bold red]Initialization failed: {e}[/bold red]")
        raise typer.Exit(code=1)


@app.command()
def run(
    adapter: Optional[list[str]] = typer.Option(None, "--adapter", "-a", help=ADAPTER_HELP),
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy URL"),
    duration: Optional[float] = typer.Option(
        None,
        "--duration",
        help="Stop after this many seconds (runs until interrupted by default)",
    ),
    metrics_port: Optional[int] = typer.Option(
        None,
        "--metrics-port",
        help="Expose Prometheus metrics on this port",
    ),
    grace: Optional[float] = typer.Option(
        None,
        "--grace",
        help="Shutdown grace period in seconds",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the synchronization pipeline until interrupted.

    Examples:
        $ socialsync run -a mastodon=myadapters:MastodonAdapter
        $ socialsync run -a bluesky=myadapters:bluesky --metrics-port 9100
    """
    configure_logging(verbose)
    console.print("🚀 [bold cyan]SocialSync Pipeline[/bold cyan]\n")

    pipeline = build_pipeline(adapter, database_url)
    if len(pipeline.registry) == 0:
        console.print("⚠️  No adapters registered; connections will not be polled")

    if metrics_port:
        start_http_server(metrics_port, registry=metrics_registry)
        console.print(f"📊 Metrics on [yellow]:{metrics_port}/metrics[/yellow]")

    async def _run():
        initialize_telemetry()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)

        try:
            await pipeline.start()
            try:
                await asyncio.wait_for(stop.wait(), timeout=duration)
            except TimeoutError:
                pass
        finally:
            stats = await pipeline.stop(grace)
            pipeline.close()
            shutdown_telemetry()
        return stats

    try:
        stats = run_async(_run())
    except Exception as e:
        console.print(f"\n❌ [bold red]Pipeline failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(
        f"\n✅ [bold green]Stopped: {stats['completed']} job(s) completed, "
        f"{stats['cancelled']} cancelled[/bold green]"
    )


@app.command()
def refresh(
    adapter: Optional[list[str]] = typer.Option(None, "--adapter", "-a", help=ADAPTER_HELP),
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run one token refresh scan.

    Examples:
        $ socialsync refresh -a mastodon=myadapters:MastodonAdapter
    """
    configure_logging(verbose)
    console.print("🔐 [bold cyan]SocialSync Token Refresh[/bold cyan]\n")

    async def _refresh():
        pipeline = build_pipeline(adapter, database_url)
        try:
            pipeline.initialize()
            return await pipeline.refresh_tokens()
        finally:
            await pipeline.registry.aclose()
            pipeline.close()

    try:
        stats = run_async(_refresh())
    except Exception as e:
        console.print(f"\n❌ [bold red]Refresh failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Refresh Scan")
    table.add_column("Outcome", style="cyan")
    table.add_column("Connections", justify="right", style="green")
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


@app.command()
def reindex(
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Rebuild the search index from the store of record.

    Examples:
        $ SEARCH_URL=http://localhost:7700 socialsync reindex
    """
    configure_logging(verbose)
    console.print("🔎 [bold cyan]SocialSync Reindex[/bold cyan]\n")

    async def _reindex():
        pipeline = build_pipeline(database_url=database_url)
        try:
            pipeline.initialize()
            return await pipeline.reindex(show_progress=True)
        finally:
            await pipeline.search_index.close()
            pipeline.close()

    try:
        stats = run_async(_reindex())
    except Exception as e:
        console.print(f"\n❌ [bold red]Reindex failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(
        f"\n✅ [bold green]Reindexed {stats['posts']:,} posts and "
        f"{stats['profiles']:,} profiles[/bold green]"
    )


@app.command()
def reencrypt(
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Re-encrypt every stored token with the first configured key.

    Run after prepending a new key to TOKEN_ENCRYPTION_KEYS; the old key can
    be removed afterwards.
    """
    configure_logging(verbose)

    try:
        db = DatabaseManager(database_url)
        db.initialize()
        rewritten = TokenVault(db).reencrypt_all()
        db.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Re-encryption failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"✅ [bold green]Re-encrypted {rewritten} connection(s)[/bold green]")


@app.command()
def status(
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show connection states and entity counts.

    Examples:
        $ socialsync status
    """
    configure_logging(verbose)
    console.print("📊 [bold cyan]SocialSync Status[/bold cyan]\n")

    try:
        pipeline = SyncPipeline(db=DatabaseManager(database_url))
        pipeline.initialize()

        stats_table = Table(title="Store of Record")
        stats_table.add_column("Entity", style="cyan")
        stats_table.add_column("Count", justify="right", style="green")
        for key, value in pipeline.db.get_entity_counts().items():
            stats_table.add_row(key.replace("_", " ").title(), f"{value:,}")
        console.print(stats_table)
        console.print()

        states = pipeline.connection_states()
        if not states:
            console.print("🔌 No connections")
        else:
            conn_table = Table(title="Connections")
            conn_table.add_column("Connection", style="cyan")
            conn_table.add_column("Platform")
            conn_table.add_column("Handle")
            conn_table.add_column("Active")
            conn_table.add_column("Status", style="yellow")
            conn_table.add_column("Health")
            conn_table.add_column("Expires")
            conn_table.add_column("Last Poll")
            conn_table.add_column("Error", style="red")
            for row in states:
                conn_table.add_row(
                    row["id"],
                    row["platform"],
                    row["handle"],
                    "✅" if row["active"] else "❌",
                    row["status"],
                    row["health"],
                    format_iso(row["expires_at"]) or "never",
                    format_iso(row["polled_at"]) or "never",
                    row["error"] or "",
                )
            console.print(conn_table)

        pipeline.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Status failed: {e}[/bold red]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
