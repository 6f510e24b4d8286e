"""CLI helper utilities for hexship commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Protocol

import typer
import yaml
from rich.console import Console
from rich.table import Table

from hexship.compiler.config_loader import load_config
from hexship.kernel.domain.run import StageStatus
from hexship.kernel.exceptions import ConfigurationError

if TYPE_CHECKING:
    from hexship.kernel.config.models import HexShipConfig
    from hexship.kernel.domain.run import Run


class ContextProtocol(Protocol):
    """Protocol for common interface between Click and Typer contexts."""

    @property
    def obj(self) -> dict[str, Any] | None: ...


console = Console()

_STAGE_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.RUNNING: "cyan",
    StageStatus.RETRYING: "cyan",
    StageStatus.PENDING: "dim",
}


def output_format(ctx: ContextProtocol | None) -> str:
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    if isinstance(settings, dict):
        return settings.get("output_format", "pretty")
    return "pretty"


def print_output(obj: Any, ctx: ContextProtocol | None = None) -> None:
    """Print `obj` according to `ctx.obj['output_format']`.

    If ctx is None or no format specified, pretty-print using rich.console.
    """
    fmt = output_format(ctx)
    if fmt == "json":
        typer.echo(json.dumps(obj, default=str, indent=2))
    elif fmt == "yaml":
        typer.echo(yaml.safe_dump(obj, sort_keys=False))
    elif isinstance(obj, (str, int, float)):
        typer.echo(str(obj))
    else:
        console.print(obj)


def cli_config(ctx: ContextProtocol | None) -> HexShipConfig:
    """Load the configuration named by ``--config`` (or discovered)."""
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    path = settings.get("config_path") if isinstance(settings, dict) else None
    try:
        return load_config(path)
    except (FileNotFoundError, ConfigurationError) as e:
        console.print(f"[red]✗ Configuration error:[/red] {e}")
        raise typer.Exit(1) from e


def stage_table(run: Run) -> Table:
    """Per-stage results of a run as a rich table."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for stage_id, result in run.stages.items():
        style = _STAGE_STYLES.get(result.status, "white")
        detail = result.error or result.skip_reason or result.output_ref or ""
        table.add_row(
            stage_id,
            f"[{style}]{result.status}[/{style}]",
            str(result.attempts),
            detail,
        )
    return table
