"""Rich console helpers shared by CLI commands."""

from typing import Any

import orjson
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

console = Console()


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]i[/blue] {message}")


def print_json(data: Any, title: str | None = None) -> None:
    if title:
        console.print(f"[bold blue]{title}[/bold blue]")
    text = orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str).decode()
    console.print(Syntax(text, "json", theme="ansi_dark", background_color="default"))


def print_table(title: str, columns: list[str], rows: list[list[Any]]) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*("" if value is None else str(value) for value in row))
    console.print(table)
