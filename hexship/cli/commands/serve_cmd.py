"""Serve command for hexship CLI - HTTP service plus worker pool."""

from pathlib import Path
from typing import Annotated

import typer

from hexship.cli.utils import cli_config, console
from hexship.compiler.pipeline_loader import load_pipelines
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import ConfigurationError, PipelineDefinitionError


def serve(
    ctx: typer.Context,
    pipeline_files: Annotated[
        list[Path] | None,
        typer.Argument(help="Pipeline files to serve, in addition to the configured ones"),
    ] = None,
    host: Annotated[str, typer.Option("--host", help="Host to bind to")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", help="Port to bind to")] = 8080,
) -> None:
    """Start the trigger endpoint, status API and worker pool.

    Examples
    --------
    hexship serve pipelines/service.yaml --port 8080
    """
    from hexship.server.main import run_server  # lazy: pulls in fastapi and uvicorn

    config = cli_config(ctx)
    paths = [Path(p) for p in config.pipelines] + list(pipeline_files or [])
    if not paths:
        console.print("[red]✗ No pipeline files given or configured[/red]")
        raise typer.Exit(1)

    try:
        pipelines = [p for path in paths for p in load_pipelines(path)]
        engine = PipelineEngine(config, pipelines=pipelines)
    except (OSError, PipelineDefinitionError, ConfigurationError) as e:
        console.print(f"[red]✗ Cannot start server:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(
        f"[cyan]Serving {len(pipelines)} pipeline(s) on http://{host}:{port}[/cyan]"
    )
    run_server(engine, host=host, port=port)
