"""Typer application: a thin CLI over the indexing service handlers."""

import asyncio
from pathlib import Path

import typer
from loguru import logger
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .. import __version__
from ..config.defaults import get_default_config_path
from ..config.settings import IndexerSettings
from ..core.exceptions import MCPCodebaseIndexError
from ..core.models import IndexingTask, TaskStatus
from ..core.service import IndexingService
from ..utils.hardware import log_hardware_config
from ..utils.logging import configure_logging
from .output import (
    console,
    print_error,
    print_info,
    print_json,
    print_success,
    print_table,
    print_warning,
)

app = typer.Typer(
    name="mcp-codebase-index",
    help="Incremental semantic indexing for source code libraries",
    no_args_is_help=True,
)


def _load_settings(ctx: typer.Context) -> IndexerSettings:
    return ctx.obj["settings"]


def _run(coro) -> None:
    """Run a coroutine, mapping service errors to a non-zero exit."""
    try:
        asyncio.run(coro)
    except MCPCodebaseIndexError as e:
        print_error(str(e))
        raise typer.Exit(1) from e


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Settings file (JSON); defaults to ~/.mcp-codebase-index/config.json",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """MCP Codebase Index command line."""
    try:
        settings = IndexerSettings.load(config or get_default_config_path())
    except MCPCodebaseIndexError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    configure_logging("DEBUG" if verbose else settings.log_level, settings.log_file)
    ctx.obj = {"settings": settings}


@app.command()
def version() -> None:
    """Show the version."""
    console.print(f"mcp-codebase-index {__version__}")


@app.command()
def create(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Root directory of the library"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
    no_watch: bool = typer.Option(False, "--no-watch", help="Disable file watching"),
) -> None:
    """Register a source tree as a library."""

    async def _create() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            library = await service.create_library(path, name=name)
            if no_watch:
                library = await service.update_watch_config(
                    library.id, library.watch_config.model_copy(update={"enabled": False})
                )
        finally:
            await service.stop()
        print_success(f"Created library {library.name} ({library.id})")
        if library.project_type:
            print_info(f"Detected project type: {library.project_type}")

    _run(_create())


@app.command()
def index(
    ctx: typer.Context,
    library_id: str = typer.Argument(..., help="Library id"),
    rebuild: bool = typer.Option(False, "--rebuild", help="Drop existing vectors first"),
) -> None:
    """Index a library and wait for the run to finish."""

    async def _index() -> None:
        service = IndexingService(_load_settings(ctx))
        log_hardware_config()
        try:
            task = await service.start_indexing(library_id, rebuild=rebuild)
            task = await _follow(service, task)
        finally:
            await service.stop()
        _report_task(task)
        if task.status != TaskStatus.COMPLETED:
            raise typer.Exit(1)

    _run(_index())


async def _follow(service: IndexingService, task: IndexingTask) -> IndexingTask:
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        bar = progress.add_task(f"{task.kind}", total=100)
        while service.orchestrator.is_running(task.id):
            current = service.get_task(task.id)
            progress.update(
                bar,
                completed=current.progress,
                description=current.current_file or str(current.kind),
            )
            await asyncio.sleep(0.5)
        progress.update(bar, completed=100)
    return await service.orchestrator.wait_for_task(task.id)


def _report_task(task: IndexingTask) -> None:
    if task.status == TaskStatus.COMPLETED:
        if task.result.get("completed_with_errors"):
            print_warning(f"Task {task.id} completed with errors")
        else:
            print_success(f"Task {task.id} completed")
    else:
        print_error(f"Task {task.id} {task.status}: {task.error_message or ''}")
    if task.result:
        print_json(task.result, title="Result")


@app.command()
def status(
    ctx: typer.Context,
    library_id: str | None = typer.Argument(None, help="Library id (all when omitted)"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show libraries and their indexing state."""

    async def _status() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            if library_id:
                library = service.get_library(library_id)
                data = library.to_dict()
                data["pending_changes"] = len(service.queue.load_pending(library_id))
                print_json(data, title=f"Library {library.name}")
                return
            libraries = service.list_libraries()
            if json_output:
                print_json([lib.to_dict() for lib in libraries])
                return
            print_table(
                "Libraries",
                ["Id", "Name", "Status", "Files", "Units", "Root"],
                [
                    [
                        lib.id,
                        lib.name,
                        lib.status,
                        lib.statistics.total_files,
                        lib.statistics.total_units,
                        lib.root_path,
                    ]
                    for lib in libraries
                ],
            )
        finally:
            await service.stop()

    _run(_status())


@app.command()
def tasks(
    ctx: typer.Context,
    library_id: str | None = typer.Option(None, "--library", "-l", help="Filter by library"),
    limit: int = typer.Option(20, "--limit", help="Maximum tasks to show"),
) -> None:
    """List recent indexing tasks."""

    async def _tasks() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            rows = [
                [
                    task.id,
                    task.library_id,
                    task.kind,
                    task.status,
                    f"{task.progress:.0f}%",
                    task.error_message,
                ]
                for task in service.list_tasks(library_id, limit=limit)
            ]
        finally:
            await service.stop()
        print_table("Tasks", ["Id", "Library", "Kind", "Status", "Progress", "Error"], rows)

    _run(_tasks())


@app.command()
def search(
    ctx: typer.Context,
    library_id: str = typer.Argument(..., help="Library id"),
    query: str = typer.Argument(..., help="Natural language or code query"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum results"),
    threshold: float | None = typer.Option(
        None, "--threshold", "-t", min=0.0, max=1.0, help="Minimum similarity"
    ),
) -> None:
    """Search a library's vectors."""

    async def _search() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            hits = await service.search(library_id, query, limit=limit, threshold=threshold)
        finally:
            await service.stop()
        if not hits:
            print_info("No results")
            return
        for rank, hit in enumerate(hits, start=1):
            meta = hit.metadata
            label = ".".join(
                p for p in (meta.get("namespace"), meta.get("container"), meta.get("member")) if p
            )
            console.print(
                f"[bold]{rank}.[/bold] [cyan]{meta.get('file_path')}[/cyan]:"
                f"{meta.get('start_line')}-{meta.get('end_line')} "
                f"[dim]{label}[/dim] [green]{hit.score:.3f}[/green]"
            )

    _run(_search())


@app.command()
def watch(ctx: typer.Context) -> None:
    """Run the service: recover, watch every library and apply changes."""

    async def _watch() -> None:
        service = IndexingService(_load_settings(ctx))
        actions = await service.start()
        if actions:
            print_warning(f"Recovered {len(actions)} interrupted records")
        print_success(
            f"Watching {len(service.watcher.watched_libraries())} libraries (Ctrl+C to stop)"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    try:
        _run(_watch())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


@app.command()
def recover(ctx: typer.Context) -> None:
    """Repair state left behind by an interrupted service."""

    async def _recover() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            actions = await service.start(watch=False, restart_tasks=False)
        finally:
            await service.stop()
        if not actions:
            print_success("Nothing to recover")
            return
        for action in actions:
            console.print(f"  {action}")
        print_success(f"Recovered {len(actions)} records")

    _run(_recover())


@app.command()
def remove(
    ctx: typer.Context,
    library_id: str = typer.Argument(..., help="Library id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Remove a library and its vectors."""
    if not yes and not typer.confirm(f"Remove library {library_id} and its vectors?"):
        raise typer.Abort()

    async def _remove() -> None:
        service = IndexingService(_load_settings(ctx))
        try:
            library = await service.remove_library(library_id)
        finally:
            await service.stop()
        print_success(f"Removed library {library.name}")

    _run(_remove())


if __name__ == "__main__":
    app()
