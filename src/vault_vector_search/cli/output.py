"""Rich formatting helpers for the CLI."""

from datetime import datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table

from ..core.models import IndexRunStats, IndexStats, ReindexDecision, SearchResult

console = Console(stderr=False)


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def print_tip(message: str) -> None:
    console.print(f"[dim]💡 {message}[/dim]")


def print_json(data: Any) -> None:
    import orjson

    console.print(
        Syntax(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode(), "json")
    )


def confirm_action(message: str, default: bool = False) -> bool:
    return Confirm.ask(message, default=default, console=console)


def format_timestamp(epoch_ms: int | None) -> str:
    if not epoch_ms:
        return "never"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def print_run_stats(stats: IndexRunStats) -> None:
    """Print the summary table of an indexing run."""
    table = Table(title="Indexing Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Indexed", f"[green]{stats.indexed}[/green]")
    table.add_row("Skipped (unchanged)", str(stats.skipped))
    table.add_row(
        "Failed", f"[red]{stats.failed}[/red]" if stats.failed else str(stats.failed)
    )
    table.add_row("Removed", str(stats.removed))
    table.add_row("Duration", f"{stats.duration_seconds:.1f}s")
    console.print(table)


def print_index_status(
    decision: ReindexDecision,
    stats: IndexStats,
    model: str,
    worker_pid: int | None = None,
) -> None:
    """Print index health and counters."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Documents", str(stats.total_documents))
    table.add_row("Last indexed", format_timestamp(stats.last_indexed))
    table.add_row("Embedding model", model)
    table.add_row(
        "Indexing worker",
        f"running (PID {worker_pid})" if worker_pid else "[dim]not running[/dim]",
    )
    style = "yellow" if decision.reindex else "green"
    table.add_row(
        "Reindex needed",
        f"[{style}]{'yes' if decision.reindex else 'no'}[/{style}] ({decision.reason})",
    )
    console.print(Panel(table, title="Index Status", border_style="blue"))


def print_search_results(results: list[SearchResult], query: str) -> None:
    """Print search hits as a table."""
    if not results:
        print_warning(f"No notes found matching '{query}'")
        print_tip("Try lowering --min-score or rephrasing your query.")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Note", style="cyan")
    table.add_column("Excerpt")
    for rank, result in enumerate(results, 1):
        table.add_row(
            str(rank),
            f"{result.score:.3f}",
            f"{result.title}\n[dim]{result.path}[/dim]",
            result.excerpt.replace("\n", " "),
        )
    console.print(table)
