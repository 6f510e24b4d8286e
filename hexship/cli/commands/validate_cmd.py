"""Pipeline validation command for hexship CLI."""

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from hexship.cli.utils import console, output_format, print_output
from hexship.compiler.pipeline_loader import validate_pipeline_file


def validate(
    ctx: typer.Context,
    pipeline_file: Annotated[
        Path,
        typer.Argument(
            help="Path to the pipeline YAML file to validate",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    explain: Annotated[
        bool,
        typer.Option("--explain", "-e", help="Show the execution waves of each pipeline"),
    ] = False,
) -> None:
    """Validate a pipeline file without running it.

    This command validates:
    - YAML syntax and manifest format (kind, metadata, spec)
    - Stage ids, capabilities and dependency references
    - Dependency cycles
    - Adapter aliases and module paths

    Examples
    --------
    hexship validate pipeline.yaml
    hexship validate pipeline.yaml --explain
    """
    report = validate_pipeline_file(pipeline_file)

    if output_format(ctx) != "pretty":
        print_output(
            {
                "file": str(pipeline_file),
                "valid": report.is_valid,
                "pipelines": [p.name for p in report.pipelines],
                "errors": report.errors,
                "warnings": report.warnings,
            },
            ctx,
        )
        if not report.is_valid:
            raise typer.Exit(1)
        return

    console.print()
    if report.is_valid:
        console.print(f"[green]✓ Validation successful:[/green] {pipeline_file}")
    else:
        console.print(f"[red]✗ Validation failed:[/red] {pipeline_file}")

    if report.warnings:
        console.print()
        console.print("[yellow]Warnings:[/yellow]")
        for warning in report.warnings:
            console.print(f"  [yellow]⚠[/yellow] {warning}")

    if report.errors:
        console.print()
        console.print("[red]Errors:[/red]")
        for error in report.errors:
            console.print(f"  [red]✗[/red] {error}")

    if explain and report.is_valid:
        for pipeline in report.pipelines:
            table = Table(title=f"Pipeline '{pipeline.name}'", show_header=True)
            table.add_column("Wave", justify="right", style="cyan")
            table.add_column("Stages", style="green")
            for index, wave in enumerate(pipeline.waves(), start=1):
                table.add_row(str(index), ", ".join(wave))
            console.print()
            console.print(table)

    console.print()
    if not report.is_valid:
        raise typer.Exit(1)
