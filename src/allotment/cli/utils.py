"""
CLI utility helpers — output formatting and allocator management.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from allotment.allocator import Allocator
from allotment.core.errors import (
    AllotmentError,
    ErrorCategory,
    categorize_error,
    classify_storage_error,
)
from allotment.core.logging import LogContext
from allotment.core.settings import AllotmentSettings, get_settings

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


# ── Allocator helpers ────────────────────────────────────────────────────


def cli_settings(database: str | None = None) -> AllotmentSettings:
    """Environment settings, with ``--database`` selecting a SQLite file."""
    settings = get_settings()
    if database:
        settings = settings.model_copy(update={"db_type": "sqlite", "db_filename": database})
    return settings


def run_with_allocator(
    database: str | None,
    operation: Callable[[Allocator], Awaitable[T]],
    *,
    command: str,
    as_json: bool = False,
    create_schema: bool = False,
) -> T:
    """Open an allocator, run one operation, close it and return the result.

    Allocation and storage errors are rendered and turned into exit code 1.
    """

    async def _main() -> T:
        async with LogContext(command=command):
            allocator = Allocator(cli_settings(database), create_schema=create_schema, name="cli")
            async with allocator:
                return await operation(allocator)

    try:
        return asyncio.run(_main())
    except AllotmentError as exc:
        output_error(exc, as_json=as_json)
    except Exception as exc:
        if categorize_error(exc) is not ErrorCategory.DATABASE:
            raise
        output_error(classify_storage_error(exc, busy=False), as_json=as_json)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / named tuple / dict to plain dict."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if hasattr(obj, "_asdict"):
        return obj._asdict()
    if isinstance(obj, dict):
        return obj
    return {"value": obj}


def output_error(error: AllotmentError, *, as_json: bool = False) -> None:
    """Render an error and exit with status 1."""
    if as_json:
        console.print_json(json.dumps({"error": error.to_dict()}, default=str))
    else:
        err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    raise typer.Exit(code=1)


def output_result(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a command result to the terminal."""
    if as_json:
        if isinstance(data, list):
            payload: Any = [_to_dict(d) if not isinstance(d, str) else d for d in data]
        elif isinstance(data, str | bool | int) or data is None:
            payload = data
        else:
            payload = _to_dict(data)
        console.print_json(json.dumps(payload, default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        if isinstance(data[0], str):
            for item in data:
                console.print(escape(item))
            return
        _print_table(data, title=title)
    elif data is None or isinstance(data, str | bool | int):
        console.print("[dim]none[/dim]" if data is None else _cell(data))
    else:
        _print_record(_to_dict(data), title=title)


def output_ok(message: str, *, as_json: bool = False, **fields: Any) -> None:
    """Confirm a write command."""
    if as_json:
        console.print_json(json.dumps({"ok": True, **fields}, default=str))
    else:
        console.print(f"[green]✓[/green] {message}")


# ── Private helpers ──────────────────────────────────────────────────────


def _cell(value: Any) -> str:
    if isinstance(value, bool):
        return "[green]yes[/green]" if value else "[red]no[/red]"
    return escape(str(value))


def _print_table(items: list, *, title: str = "") -> None:
    """Render records as a Rich table, one column per field."""
    rows = [_to_dict(item) for item in items]
    table = Table(title=title or None, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(_cell(v) for v in row.values()))
    console.print(table)


def _print_record(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    width = max(len(k) for k in data)
    for k, v in data.items():
        console.print(f"  [cyan]{k.ljust(width)}[/cyan]  {_cell(v)}")
