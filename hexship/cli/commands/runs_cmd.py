"""Runs commands for hexship CLI - inspect persisted runs, artifacts and environments.

These commands read the configured storage; use a persistent backend
(``storage.backend: sqlite``) to inspect runs of a server or earlier
``hexship run`` invocations.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
import typer
from rich.table import Table

from hexship.api import processes
from hexship.cli.utils import cli_config, console, output_format, print_output
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import HexShipError

app = typer.Typer()

T = TypeVar("T")


def _query(ctx: click.Context, call: Callable[[PipelineEngine], Awaitable[T]]) -> T:
    engine = PipelineEngine(cli_config(ctx))

    async def _with_engine() -> T:
        await engine.start(workers=0, recover=False)
        try:
            return await call(engine)
        finally:
            await engine.stop()

    try:
        return asyncio.run(_with_engine())
    except HexShipError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1) from e


@app.command("list")
def list_runs(
    status: str | None = typer.Option(None, "--status", help="Filter by run status"),
    repository: str | None = typer.Option(None, "--repository", help="Filter by repository"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    """List runs, newest first."""
    ctx = click.get_current_context()
    runs = _query(
        ctx,
        lambda engine: processes.list_runs(
            engine, status=status, repository=repository, limit=limit
        ),
    )
    if output_format(ctx) != "pretty":
        print_output(runs, ctx)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run ID")
    table.add_column("Pipeline")
    table.add_column("Change")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Created")
    for run in runs:
        table.add_row(
            run["run_id"],
            run["pipeline_name"],
            f"{run['repository']}@{run['branch']} ({run['change_ref']})",
            run["status"],
            "" if run["exit_code"] is None else str(run["exit_code"]),
            run["created_at"],
        )
    console.print(table)


@app.command("show")
def show_run(run_id: str) -> None:
    """Show a run with its stage results."""
    ctx = click.get_current_context()
    run = _query(ctx, lambda engine: processes.get_run(engine, run_id))
    if run is None:
        console.print(f"[red]Run {run_id} not found[/red]")
        raise typer.Exit(1)
    if output_format(ctx) != "pretty":
        print_output(run, ctx)
        return

    console.print(f"[bold]Run {run_id}[/bold]: {run['status']} ({run['pipeline_name']})")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for stage_id, stage in run["stages"].items():
        detail = stage["error"] or stage["skip_reason"] or stage["output_ref"] or ""
        table.add_row(stage_id, stage["status"], str(stage["attempts"]), detail)
    console.print(table)
    if run["gate"]:
        console.print(f"Gate: {run['gate']['verdict']}")


@app.command("history")
def run_history(run_id: str) -> None:
    """Show the append-only transition history of a run."""
    ctx = click.get_current_context()
    entries = _query(ctx, lambda engine: processes.get_run_history(engine, run_id))
    if output_format(ctx) != "pretty":
        print_output(entries, ctx)
        return
    for entry in entries:
        stage = f" [{entry['stage_id']}]" if "stage_id" in entry else ""
        console.print(f"{entry['recorded_at']}  {entry['event']}{stage}  {entry['run_status']}")


@app.command("environments")
def environments() -> None:
    """Show the rollout state of every environment."""
    ctx = click.get_current_context()
    records: list[dict[str, Any]] = _query(ctx, processes.list_environments)
    if output_format(ctx) != "pretty":
        print_output(records, ctx)
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Environment")
    table.add_column("State")
    table.add_column("Current")
    table.add_column("Previous")
    table.add_column("Target")
    for record in records:
        table.add_row(
            record["environment"],
            record["state"],
            record["current_version"] or "",
            record["previous_version"] or "",
            record["target_version"] or "",
        )
    console.print(table)
