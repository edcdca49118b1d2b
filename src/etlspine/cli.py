"""
Typer application for the etl-spine CLI.

Commands::

    etlspine plan PIPELINE_FILE        execution levels of a pipeline
    etlspine validate DESCRIPTOR_FILE  structural problems (exit 1 if any)
    etlspine config                    effective settings

Every command accepts ``--json`` for machine-readable output.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NoReturn

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from etlspine import __version__
from etlspine.core.errors import EtlError
from etlspine.core.logging import configure_logging
from etlspine.core.settings import get_settings
from etlspine.orchestration.exceptions import PipelineError
from etlspine.orchestration.planner import build_execution_plan, validate_steps
from etlspine.orchestration.specs import IncrementalSyncSpec, TransformationSpec, load_descriptor

app = typer.Typer(
    name="etlspine",
    help="etl-spine: incremental sync and transformation pipeline orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"etl-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """etl-spine CLI: inspect pipelines and settings."""
    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
        service=settings.service_name,
    )


# ── Output helpers ───────────────────────────────────────────────────────


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def _fail(message: str, *, as_json: bool) -> NoReturn:
    if as_json:
        _print_json({"ok": False, "problems": [message]})
    else:
        err_console.print(f"[bold red]Error[/bold red]: {escape(message)}")
    raise typer.Exit(code=1)


def _schema_problems(error: PydanticValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}"
        for e in error.errors()
    ]


def _load_pipeline(path: Path, as_json: bool) -> TransformationSpec:
    try:
        return TransformationSpec.from_file(path)
    except PydanticValidationError as e:
        _fail("; ".join(_schema_problems(e)), as_json=as_json)
    except (EtlError, OSError) as e:
        _fail(str(e), as_json=as_json)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("plan")
def plan(
    pipeline_file: Path = typer.Argument(..., help="Pipeline descriptor (YAML or JSON)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Print the execution levels of a pipeline."""
    spec = _load_pipeline(pipeline_file, json_out)
    steps = spec.to_steps()

    try:
        execution_plan = build_execution_plan(steps)
    except PipelineError as e:
        _fail(str(e), as_json=json_out)

    if json_out:
        _print_json({"pipeline": spec.pipeline.id, "levels": execution_plan.to_list()})
        return

    by_id = {s.id: s for s in steps}
    table = Table(title=f"Execution plan: {spec.pipeline.name}", show_lines=False)
    table.add_column("Level", style="cyan", justify="right")
    table.add_column("Step")
    table.add_column("Output table", style="dim")
    table.add_column("Depends on", style="dim")
    for index, level in enumerate(execution_plan):
        for step_id in level:
            step = by_id[step_id]
            table.add_row(str(index), step_id, step.output_table, ", ".join(step.dependencies) or "-")
    console.print(table)


@app.command("validate")
def validate(
    descriptor_file: Path = typer.Argument(..., help="Pipeline or sync descriptor"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List structural problems of a descriptor.  Exits 1 if there are any."""
    problems: list[str] = []
    kind = "unknown"

    try:
        spec = load_descriptor(descriptor_file)
    except PydanticValidationError as e:
        problems = _schema_problems(e)
    except (EtlError, OSError) as e:
        problems = [str(e)]
    else:
        kind = spec.kind
        if isinstance(spec, TransformationSpec):
            problems = validate_steps(spec.to_steps())
        elif isinstance(spec, IncrementalSyncSpec):
            try:
                spec.to_input()
            except EtlError as e:
                problems = [str(e)]

    if json_out:
        _print_json({"ok": not problems, "kind": kind, "problems": problems})
    elif problems:
        err_console.print(f"[bold red]{len(problems)} problem(s)[/bold red] in {escape(str(descriptor_file))}:")
        for problem in problems:
            err_console.print(f"  - {escape(problem)}")
    else:
        console.print(f"[green]OK[/green] {escape(str(descriptor_file))} ({kind})")

    if problems:
        raise typer.Exit(code=1)


@app.command("config")
def config(
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Print the effective settings."""
    settings = get_settings()
    data = settings.model_dump(mode="json")

    if json_out:
        _print_json(data)
        return

    table = Table(title="etl-spine settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in sorted(data.items()):
        if isinstance(value, dict):
            for sub_key, sub_value in sorted(value.items()):
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        else:
            table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
