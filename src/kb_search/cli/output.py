"""Rich console output helpers shared by CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.table import Table

from ..core.models import ScoredResult

console = Console()


def print_error(message: str) -> None:
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ {message}[/blue]")


def print_success(message: str) -> None:
    console.print(f"[green]✓ {message}[/green]")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def print_search_results(query: str, results: list[ScoredResult], preview: int = 240) -> None:
    """Show results best first, with a short text preview per hit."""
    if not results:
        print_warning(f"No results for '{query}'")
        return

    console.print(f"\n[bold]Results for[/bold] [cyan]{query}[/cyan]\n")
    for rank, result in enumerate(results, start=1):
        meta = result.chunk.metadata
        location = meta.file_name or meta.source
        if meta.page_number is not None:
            location += f" (page {meta.page_number})"
        text = " ".join(result.text.split())
        if len(text) > preview:
            text = text[:preview] + "..."
        console.print(
            f"[bold]{rank}.[/bold] [green]{location}[/green] "
            f"[dim]score {result.score:.3f}[/dim]"
        )
        if meta.tags:
            console.print(f"   [magenta]{', '.join(meta.tags)}[/magenta]")
        console.print(f"   {text}\n")


def print_stats_table(stats: dict[str, Any]) -> None:
    table = Table(title="Knowledge base", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in stats.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        table.add_row(key, str(value))
    console.print(table)
