"""kb-search command-line interface."""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from loguru import logger

from .. import __version__
from ..config.defaults import DATA_DIR_NAME, DEFAULT_FILE_EXTENSIONS
from ..core.exceptions import EmptyIndexError, KBSearchError
from ..core.factory import ComponentBundle, create_components
from ..core.models import RefreshReport
from ..core.path_utils import is_url
from ..core.progress import ConsoleProgressReporter
from .output import (
    console,
    print_error,
    print_info,
    print_json,
    print_search_results,
    print_stats_table,
    print_success,
    print_warning,
)

T = TypeVar("T")

app = typer.Typer(
    name="kb-search",
    help="Hybrid search over a local document knowledge base",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
collection_app = typer.Typer(help="Manage document collections")
app.add_typer(collection_app, name="collection")


def setup_logging(verbose: bool) -> None:
    """Send loguru output to stderr at WARNING, DEBUG with --verbose or KB_SEARCH_LOG_LEVEL."""
    level = "DEBUG" if verbose else os.environ.get("KB_SEARCH_LOG_LEVEL", "WARNING")
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def version_callback(value: bool) -> None:
    if value:
        console.print(f"kb-search {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    root: Path | None = typer.Option(
        None,
        "--root",
        "-r",
        help=f"Knowledge-base root holding {DATA_DIR_NAME} (default: current directory)",
        file_okay=False,
        dir_okay=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    setup_logging(verbose)
    ctx.obj = {"root": root or Path.cwd(), "verbose": verbose}


def _run(ctx: typer.Context, action: Callable[[ComponentBundle], Awaitable[T]]) -> T:
    """Build the components for the selected root, run ``action``, close them."""
    reporter = ConsoleProgressReporter(console, verbose=ctx.obj["verbose"])

    async def runner() -> T:
        bundle = await create_components(ctx.obj["root"], progress=reporter)
        try:
            return await action(bundle)
        finally:
            await bundle.close()

    try:
        return asyncio.run(runner())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130) from None
    except EmptyIndexError:
        print_warning("The knowledge base is empty. Import files with 'kb-search index'.")
        raise typer.Exit(1) from None
    except KBSearchError as e:
        logger.error(f"Command failed: {e}")
        print_error(str(e))
        raise typer.Exit(1) from None


def expand_paths(paths: list[str]) -> list[str]:
    """Expand directories into the supported files they contain."""
    expanded: list[str] = []
    for raw in paths:
        if is_url(raw):
            expanded.append(raw)
            continue
        path = Path(raw).expanduser().resolve()
        if path.is_dir():
            expanded.extend(
                str(p)
                for p in sorted(path.rglob("*"))
                if p.is_file()
                and p.suffix.lower() in DEFAULT_FILE_EXTENSIONS
                and DATA_DIR_NAME not in p.parts
            )
        else:
            expanded.append(str(path))
    return expanded


def _print_report(report: RefreshReport) -> None:
    print_success(
        f"{report.mode.capitalize()}: {report.embedded_files} indexed, "
        f"{report.unchanged} unchanged, {report.missing} missing, "
        f"{report.failed} failed ({report.chunks_written} chunks, "
        f"{report.elapsed_seconds:.1f}s)"
    )
    for path, error in report.errors.items():
        print_warning(f"{path}: {error}")


@app.command()
def index(
    ctx: typer.Context,
    paths: list[str] = typer.Argument(..., help="Files, directories or URLs to import"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Tag for every imported file"),
    collection: str | None = typer.Option(
        None, "--collection", "-c", help="Add imported files to this collection id"
    ),
) -> None:
    """Import files into the knowledge base.

    [bold cyan]Examples:[/bold cyan]

        $ kb-search index docs/ --tag handbook
        $ kb-search index https://example.com/faq.html
    """
    sources = expand_paths(paths)
    if not sources:
        print_warning("No supported files found")
        raise typer.Exit(1)

    async def action(bundle: ComponentBundle) -> RefreshReport:
        return await bundle.indexer.import_files(
            sources,
            tags=tag,
            collection_id=collection,
            progress=ConsoleProgressReporter(console, ctx.obj["verbose"]),
        )

    report = _run(ctx, action)
    _print_report(report)
    if report.failed and not report.embedded_files:
        raise typer.Exit(1)


@app.command()
def refresh(
    ctx: typer.Context,
    rebuild: bool = typer.Option(
        False, "--rebuild", help="Drop the index and re-embed every file"
    ),
) -> None:
    """Re-index files that changed since they were imported."""

    async def action(bundle: ComponentBundle) -> RefreshReport:
        return await bundle.indexer.refresh(
            progress=ConsoleProgressReporter(console, ctx.obj["verbose"]),
            mode="rebuild" if rebuild else "incremental",
        )

    _print_report(_run(ctx, action))


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="What to look for, in any language"),
    k: int | None = typer.Option(None, "--limit", "-k", help="Number of results"),
    source: list[str] = typer.Option([], "--source", "-s", help="Only search these files"),
    tag: list[str] = typer.Option([], "--tag", "-t", help="Only chunks with one of these tags"),
    rerank: bool | None = typer.Option(
        None, "--rerank/--no-rerank", help="Rerank with a cross-encoder"
    ),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Search the knowledge base."""

    async def action(bundle: ComponentBundle) -> list[Any]:
        return await bundle.engine.search(
            query,
            k=k,
            sources=[str(Path(s).expanduser().resolve()) for s in source] or None,
            tags=tag or None,
            use_rerank=rerank,
        )

    results = _run(ctx, action)
    if json_output:
        print_json([r.to_dict() for r in results])
    else:
        print_search_results(query, results)


@app.command()
def remove(
    ctx: typer.Context,
    paths: list[str] = typer.Argument(..., help="Files or URLs to remove"),
) -> None:
    """Remove files from the knowledge base."""
    sources = [p if is_url(p) else str(Path(p).expanduser().resolve()) for p in paths]

    async def action(bundle: ComponentBundle) -> int:
        return await bundle.indexer.remove_files(sources)

    removed = _run(ctx, action)
    print_success(f"Removed {removed} chunks from {len(sources)} source(s)")


@app.command()
def stats(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print stats as JSON"),
) -> None:
    """Show index, cache and registry statistics."""

    async def action(bundle: ComponentBundle) -> dict[str, Any]:
        data = await bundle.engine.get_stats()
        snapshot = bundle.registry.snapshot()
        data["registered_files"] = len(snapshot["files"])
        data["collections"] = len(snapshot["collections"])
        data["tags"] = {t["name"]: t["count"] for t in snapshot["available_tags"]}
        return data

    data = _run(ctx, action)
    if json_output:
        print_json(data)
    else:
        print_stats_table(data)


@collection_app.command("list")
def collection_list(ctx: typer.Context) -> None:
    """List collections."""

    async def action(bundle: ComponentBundle) -> list[Any]:
        return bundle.registry.collections()

    collections = _run(ctx, action)
    if not collections:
        print_info("No collections")
    for c in collections:
        console.print(f"[cyan]{c.id}[/cyan]  [bold]{c.name}[/bold]  {len(c.file_paths)} files")
        if c.description:
            console.print(f"    [dim]{c.description}[/dim]")


@collection_app.command("create")
def collection_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Collection name"),
    description: str = typer.Option("", "--description", "-d"),
    files: list[str] = typer.Option([], "--file", "-f", help="Registered file to include"),
) -> None:
    """Create a collection of registered files."""

    async def action(bundle: ComponentBundle) -> Any:
        return await bundle.registry.create_collection(
            name, description, [str(Path(f).expanduser().resolve()) for f in files]
        )

    created = _run(ctx, action)
    print_success(f"Created collection '{created.name}' ({created.id})")


@collection_app.command("delete")
def collection_delete(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Collection id"),
    keep_files: bool = typer.Option(
        False, "--keep-files", help="Keep files that were only in this collection"
    ),
) -> None:
    """Delete a collection and the files that belonged only to it."""

    async def action(bundle: ComponentBundle) -> list[str]:
        return await bundle.indexer.delete_collection(
            collection_id, remove_files=not keep_files
        )

    orphaned = _run(ctx, action)
    if keep_files:
        print_success(f"Deleted collection ({len(orphaned)} files kept in the index)")
    else:
        print_success(f"Deleted collection and {len(orphaned)} files only in it")


if __name__ == "__main__":
    app()
