"""
CLI: ``allotment db`` — schema management commands.
"""

from __future__ import annotations

import typer

from allotment.cli.utils import output_ok, run_with_allocator
from allotment.core.schema import drop_schema

app = typer.Typer(no_args_is_help=True)


def _database(ctx: typer.Context) -> str | None:
    parent = ctx.find_root()
    return (parent.obj or {}).get("database")


@app.command()
def init(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Create the allocation tables (idempotent)."""

    async def noop(allocator) -> None:
        return None

    run_with_allocator(_database(ctx), noop, command="db init", as_json=json_out, create_schema=True)
    output_ok("schema ready", as_json=json_out)


@app.command()
def drop(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Drop the allocation tables and every allocation in them."""
    if not yes:
        typer.confirm("Drop all instances and allocations?", abort=True)

    async def _drop(allocator) -> None:
        await allocator.runner.single(drop_schema, allocator.adapter, operation="drop_schema")

    run_with_allocator(_database(ctx), _drop, command="db drop", as_json=json_out)
    output_ok("schema dropped", as_json=json_out)
