"""Run command for hexship CLI - executes one pipeline run and exits with its code."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel

from hexship.api.processes import run_detail
from hexship.cli.utils import cli_config, console, output_format, print_output, stage_table
from hexship.compiler.pipeline_loader import load_pipeline
from hexship.kernel.domain.run import ExitCode, Run, RunStatus, TriggerContext
from hexship.kernel.engine import PipelineEngine
from hexship.kernel.exceptions import ConfigurationError, PipelineDefinitionError

_STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "yellow",
}


def run(
    ctx: typer.Context,
    pipeline_file: Annotated[
        Path,
        typer.Argument(
            help="Path to the pipeline YAML file",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    repository: Annotated[str, typer.Option("--repository", "-r", help="Repository name")] = (
        "local"
    ),
    branch: Annotated[str, typer.Option("--branch", "-b", help="Branch name")] = "main",
    change_ref: Annotated[
        str, typer.Option("--change-ref", help="Commit or change identifier")
    ] = "HEAD",
    pipeline: Annotated[
        str | None,
        typer.Option("--pipeline", "-p", help="Pipeline name when the file holds several"),
    ] = None,
) -> None:
    """Run a pipeline once, inline, and exit with its outcome code.

    Exit codes: 0 success, 1 stage failure, 2 quality gate failure,
    3 timeout, 4 rollback occurred.

    Examples
    --------
    hexship run pipeline.yaml --repository api --branch main --change-ref 1a2b3c
    """
    config = cli_config(ctx)
    try:
        definition = load_pipeline(pipeline_file, pipeline)
        engine = PipelineEngine(config, pipelines=[definition])
    except (PipelineDefinitionError, ConfigurationError) as e:
        console.print(f"[red]✗ Cannot run {pipeline_file}:[/red] {e}")
        raise typer.Exit(ExitCode.STAGE_FAILURE) from e

    context = TriggerContext(repository=repository, branch=branch, change_ref=change_ref)
    result = asyncio.run(_run(engine, definition.name, context))

    if output_format(ctx) == "pretty":
        style = _STATUS_STYLES.get(result.status, "white")
        console.print(stage_table(result))
        summary = f"[{style}]{result.status}[/{style}] (exit code {int(result.exit_code())})"
        if result.artifact_version:
            summary += f"\nartifact: {result.artifact_version}"
        if result.error:
            summary += f"\n{result.error}"
        console.print(Panel(summary, title=f"Run {result.run_id}", border_style=style))
    else:
        print_output(run_detail(result), ctx)

    raise typer.Exit(int(result.exit_code()))


async def _run(engine: PipelineEngine, pipeline_name: str, context: TriggerContext) -> Run:
    try:
        return await engine.run_once(engine.pipelines[pipeline_name], context)
    finally:
        await engine.stop()
