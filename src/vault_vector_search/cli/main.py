"""Command line interface for vault-vector-search."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from loguru import logger

from .. import __version__
from ..config.settings import VaultConfig, load_config
from ..core.exceptions import ConfigurationError, VaultSearchError, WorkerLockError
from ..core.factory import ComponentBundle, ComponentFactory, handle_cli_errors
from ..core.models import IndexRunStats
from ..core.singleton import PidFileGuard
from .output import (
    confirm_action,
    console,
    print_error,
    print_index_status,
    print_info,
    print_json,
    print_run_stats,
    print_search_results,
    print_success,
    print_warning,
)

app = typer.Typer(
    name="vault-vector-search",
    help="Semantic search over a markdown vault, kept in sync with the filesystem.",
    add_completion=False,
    no_args_is_help=True,
)

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="JSON configuration file",
    exists=True,
    dir_okay=False,
    resolve_path=True,
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Route loguru output to stderr (and optionally a rotating file)."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level.upper(),
            rotation="10 MB",
            retention=3,
            enqueue=True,
        )


def _load(config_file: Path | None, verbose: bool) -> VaultConfig:
    """Load configuration and configure logging, exiting 1 on bad config."""
    setup_logging("DEBUG" if verbose else "INFO")
    try:
        config = load_config(config_file)
    except ConfigurationError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    setup_logging("DEBUG" if verbose else config.log_level, config.log_file)
    return config


def _build(config: VaultConfig) -> ComponentBundle:
    try:
        return ComponentFactory.create_components(config)
    except VaultSearchError as e:
        print_error(str(e))
        raise typer.Exit(1) from e


def _acquire_worker_lock(config: VaultConfig) -> PidFileGuard:
    """Take the worker PID lock; exit 0 if another worker holds it."""
    guard = ComponentFactory.create_worker_guard(config)
    try:
        acquired = guard.acquire()
    except WorkerLockError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    if not acquired:
        logger.info("Another worker is already running, exiting")
        print_info("Another indexing worker is already running")
        raise typer.Exit(0)
    return guard


def version_callback(value: bool) -> None:
    if value:
        console.print(f"vault-vector-search {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Index a markdown vault for semantic search."""


# ── index ───────────────────────────────────────────────────────────────


async def _run_index(bundle: ComponentBundle, force: bool) -> IndexRunStats:
    indexer = bundle.indexer
    if force:
        logger.info("Forced full reindex requested")
        return await indexer.index_all(force_reindex=True)

    decision = await indexer.startup_decision()
    if decision.reindex:
        logger.info(f"Full reindex required: {decision.reason}")
    return await indexer.index_all(force_reindex=decision.reindex)


@app.command()
def index(
    force: bool = typer.Option(
        False, "--force", "-f", help="Re-embed every document, even unchanged ones"
    ),
    config_file: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index the vault (the single background worker path).

    Exits with status 0 without doing anything if another indexing worker
    already holds the index.
    """
    config = _load(config_file, verbose)
    guard = _acquire_worker_lock(config)
    guard.install_signal_handlers()

    try:
        bundle = _build(config)
        stats = asyncio.run(_run_index(bundle, force))
    except VaultSearchError as e:
        logger.error(f"Indexing failed: {e}")
        print_error(f"Indexing failed: {e}")
        raise typer.Exit(1) from e
    finally:
        guard.release()

    print_run_stats(stats)
    if stats.failed:
        print_warning(f"{stats.failed} documents could not be indexed (see log)")


# ── watch ───────────────────────────────────────────────────────────────


async def _run_watch(bundle: ComponentBundle) -> None:
    stats = await bundle.indexer.run_startup_index()
    if stats is not None:
        print_run_stats(stats)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with ComponentFactory.create_watcher(bundle):
            print_success(f"Watching {bundle.config.vault_path} (Ctrl+C to stop)")
            await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    logger.info("Shutdown complete")


@app.command()
def watch(
    config_file: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index on startup when needed, then keep the index in sync with the vault."""
    config = _load(config_file, verbose)
    guard = _acquire_worker_lock(config)
    # Covers the startup indexing phase; the watcher installs its own handlers
    guard.install_signal_handlers()

    try:
        bundle = _build(config)
        asyncio.run(_run_watch(bundle))
    except VaultSearchError as e:
        logger.error(f"Watcher failed: {e}")
        print_error(f"Watcher failed: {e}")
        raise typer.Exit(1) from e
    finally:
        guard.release()


# ── status ──────────────────────────────────────────────────────────────


@handle_cli_errors("Status")
async def _run_status(bundle: ComponentBundle) -> None:
    decision = await bundle.indexer.should_reindex()
    stats = await bundle.indexer.get_stats()
    holder = ComponentFactory.create_worker_guard(bundle.config).holder_pid()
    print_index_status(decision, stats, bundle.gateway.model_name, worker_pid=holder)


@app.command()
def status(
    config_file: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show index statistics and whether a reindex is needed."""
    config = _load(config_file, verbose)
    asyncio.run(_run_status(_build(config)))


# ── search ──────────────────────────────────────────────────────────────


@handle_cli_errors("Search")
async def _run_search(
    bundle: ComponentBundle, query: str, limit: int, min_score: float, as_json: bool
) -> None:
    results = await bundle.indexer.search_text(query, limit=limit, min_score=min_score)
    if as_json:
        print_json([r.to_dict() for r in results])
    else:
        print_search_results(results, query)


@app.command()
def search(
    query: str = typer.Argument(..., help="Natural language query"),
    limit: int = typer.Option(10, "--limit", "-l", min=1, max=100),
    min_score: float = typer.Option(0.0, "--min-score", "-s", min=0.0, max=1.0),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
    config_file: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Semantic search over the indexed vault."""
    config = _load(config_file, verbose)
    asyncio.run(_run_search(_build(config), query, limit, min_score, as_json))


# ── clear ───────────────────────────────────────────────────────────────


@handle_cli_errors("Clear")
async def _run_clear(bundle: ComponentBundle) -> None:
    await bundle.indexer.clear()


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_file: Path | None = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete the vector index and all fingerprints."""
    config = _load(config_file, verbose)

    holder = ComponentFactory.create_worker_guard(config).holder_pid()
    if holder is not None:
        print_error(f"An indexing worker is running (PID {holder}); stop it first")
        raise typer.Exit(1)

    if not yes and not confirm_action(
        f"Delete the index at {config.index_path}?", default=False
    ):
        print_info("Cancelled")
        raise typer.Exit(0)

    asyncio.run(_run_clear(_build(config)))
    print_success("Index cleared")


if __name__ == "__main__":
    app()
