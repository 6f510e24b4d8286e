"""hexship CLI - Main entrypoint.

Exit codes of ``hexship run``: ``0`` success, ``1`` stage failure (or an
invalid pipeline/configuration), ``2`` quality gate failure, ``3`` stage or
rollout timeout, ``4`` a rollback occurred.
"""

from contextlib import suppress

import typer
from loguru import logger
from rich.console import Console

from hexship import __version__
from hexship.cli.commands import run_cmd, runs_cmd, serve_cmd, validate_cmd
from hexship.kernel.logging import configure_logging

# Create the main Typer app
app = typer.Typer(
    name="hexship",
    help="hexship - pipeline orchestration: build, gate, package and canary deploy.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

console = Console()

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}

# Add subcommands
app.command(name="run", help="Run a pipeline once and exit with its outcome code")(run_cmd.run)
app.command(name="validate", help="Validate a pipeline file")(validate_cmd.validate)
app.command(name="serve", help="Start the HTTP service and worker pool")(serve_cmd.serve)
app.add_typer(runs_cmd.app, name="runs", help="Inspect persisted runs and environments")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold blue]hexship[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    *,
    config: str | None = typer.Option(
        None, "--config", "-c", help="Path to a kind: Config YAML or pyproject.toml"
    ),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Suppress non-error output"),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Enable verbose logging"),
    json_out: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    yaml_out: bool = typer.Option(False, "--yaml", help="Output machine-readable YAML"),
    log_level: str = typer.Option("warning", "--log-level", help="debug|info|warning|error"),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """hexship CLI.

    Global flags are parsed here and stored on `ctx.obj` for subcommands.
    """
    if ctx.obj is None:
        ctx.obj = {}

    output_format = "pretty"
    if json_out:
        output_format = "json"
    elif yaml_out:
        output_format = "yaml"

    effective_level = log_level.upper()
    effective_level = _LEVEL_ALIASES.get(effective_level, effective_level)
    if quiet:
        effective_level = "ERROR"
    elif verbose:
        effective_level = "DEBUG"

    ctx.obj.update({
        "config_path": config,
        "quiet": quiet,
        "output_format": output_format,
        "log_level": effective_level,
    })

    # Handler 0 is loguru's default stderr sink
    with suppress(ValueError):
        logger.remove(0)
    configure_logging(level=effective_level, format="rich")  # type: ignore[arg-type]


def main() -> None:
    """Main CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
