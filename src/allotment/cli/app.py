"""
Root Typer application for the allotment CLI.

Every command opens an allocator on the configured store, runs one
operation and closes it again, so the CLI is just one more engine sharing
the store with any running services.
"""

from __future__ import annotations

import typer
from typer import Typer

from allotment.cli.utils import output_ok, output_result, run_with_allocator
from allotment.core.logging import configure_logging
from allotment.core.settings import get_settings

app = Typer(
    name="allotment",
    help="allotment — persistent allocation of jobs to instances.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("allotment")
        except PackageNotFoundError:
            from allotment import __version__ as v
        typer.echo(f"allotment {v}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    database: str | None = typer.Option(
        None, "--database", "-d", help="SQLite database file (overrides ALLOTMENT_DB_* settings)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at the configured level."),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """allotment CLI — manage instances and job allocations."""
    settings = get_settings()
    configure_logging(
        level=settings.log_level if verbose else "WARNING",
        json_format=settings.log_json,
    )
    ctx.obj = {"database": database}


def _database(ctx: typer.Context) -> str | None:
    return (ctx.obj or {}).get("database")


# ── Instances ────────────────────────────────────────────────────────────


@app.command()
def available(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Make an instance available for job allocation."""
    run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.available(instance_id),
        command="available",
        as_json=json_out,
    )
    output_ok(f"{instance_id} is available", as_json=json_out, instance_id=instance_id)


@app.command()
def unavailable(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance ID"),
    destroy: bool = typer.Option(False, "--destroy", help="Also delete the instance and its allocations"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Stop allocating jobs to an instance."""
    run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.unavailable(instance_id, destroy=destroy),
        command="unavailable",
        as_json=json_out,
    )
    message = f"{instance_id} destroyed" if destroy else f"{instance_id} is unavailable"
    output_ok(message, as_json=json_out, instance_id=instance_id, destroyed=destroy)


@app.command()
def instances(
    ctx: typer.Context,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List instances and their availability."""
    records = run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.instances(),
        command="instances",
        as_json=json_out,
    )
    output_result(records, as_json=json_out, title="Instances")


@app.command("has-jobs")
def has_jobs(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Whether any job is allocated to an instance."""
    result = run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.has_jobs(instance_id),
        command="has-jobs",
        as_json=json_out,
    )
    output_result(result, as_json=json_out)


@app.command()
def jobs(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """List the jobs allocated to an instance."""
    job_ids = run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.jobs(instance_id),
        command="jobs",
        as_json=json_out,
    )
    output_result(job_ids, as_json=json_out)


# ── Jobs ─────────────────────────────────────────────────────────────────


@app.command()
def allocate(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Allocate a job to an instance (idempotent)."""
    result = run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.allocate(job_id),
        command="allocate",
        as_json=json_out,
    )
    output_result({"job_id": job_id, **result._asdict()}, as_json=json_out, title="Allocation")


@app.command()
def deallocate(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Remove a job's allocation."""
    run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.deallocate(job_id),
        command="deallocate",
        as_json=json_out,
    )
    output_ok(f"{job_id} deallocated", as_json=json_out, job_id=job_id)


@app.command()
def instance(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job ID"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show the instance a job is allocated to."""
    instance_id = run_with_allocator(
        _database(ctx),
        lambda allocator: allocator.instance(job_id),
        command="instance",
        as_json=json_out,
    )
    output_result(instance_id, as_json=json_out)


# ── Sub-command registration ─────────────────────────────────────────────

from allotment.cli.db import app as db_app  # noqa: E402

app.add_typer(db_app, name="db", help="Schema management.")
