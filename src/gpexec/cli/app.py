"""
Root Typer application for the gpexec CLI.

Commands:
    gpexec validate TASK_FILE            design-time check of a task definition
    gpexec run TASK_FILE -p name=value   run one job locally, print its outputs
    gpexec config CONFIG_FILE --task T   show which executor and properties apply
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from gpexec.core.errors import GpExecError
from gpexec.core.job_config import JobConfiguration
from gpexec.core.logging import configure_logging
from gpexec.core.models import Job, JobStatus, Parameter
from gpexec.core.settings import get_settings
from gpexec.core.stores import InMemoryJobStore, InMemoryTaskCatalog, load_task_template
from gpexec.execution.command import CommandPreparer
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.executors.local import LocalCommandExecutor
from gpexec.execution.staging import FileStager
from gpexec.execution.validation import validate_task

app = typer.Typer(
    name="gpexec",
    help="gpexec — job dispatch, command-line templating and execution tracking.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from gpexec import __version__

        typer.echo(f"gpexec {__version__}")
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
    """gpexec CLI — validate task definitions and run jobs."""


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_assignments(values: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"expected name=value, got '{item}'")
        parsed[name] = value
    return parsed


def _fail(message: str) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    raise typer.Exit(code=1)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def validate(
    task_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Task YAML file"),
) -> None:
    """Check a task definition: legal name, cited parameters, quoting."""
    try:
        template = load_task_template(task_file)
    except GpExecError as e:
        _fail(e.message)
    problems = validate_task(template)
    if problems:
        for problem in problems:
            err_console.print(f"[red]-[/red] {problem}")
        raise typer.Exit(code=1)
    console.print(f"[green]{template.name}[/green]: ok")


@app.command()
def run(
    task_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Task YAML file"),
    param: list[str] = typer.Option([], "--param", "-p", help="name=value (repeatable)"),
    jobs_dir: Path | None = typer.Option(None, "--jobs-dir", help="Override GPEXEC_JOBS_DIR"),
    task_lib_dir: Path | None = typer.Option(None, "--task-lib-dir", help="Override GPEXEC_TASK_LIB_DIR"),
    job_id: int = typer.Option(1, "--job-id"),
    user: str = typer.Option("", "--user", "-u"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one job on this machine and print its status and outputs."""
    settings = get_settings()
    overrides: dict[str, Path] = {}
    if jobs_dir is not None:
        overrides["jobs_dir"] = jobs_dir
    if task_lib_dir is not None:
        overrides["task_lib_dir"] = task_lib_dir
    elif settings.task_lib_dir is None:
        overrides["task_lib_dir"] = task_file.resolve().parent
    settings = settings.model_copy(update=overrides)
    json_logs = {"json": True, "console": False}.get(settings.log_format)
    configure_logging(level=settings.log_level, json_format=json_logs)

    try:
        template = load_task_template(task_file)
    except GpExecError as e:
        _fail(e.message)

    values = _parse_assignments(param)
    parameters = []
    for name, value in values.items():
        formal = template.formal(name)
        parameters.append(Parameter(name, value, is_file=bool(formal and formal.is_file)))

    job = Job(job_id=job_id, task_name=template.name, parameters=parameters,
              lsid=template.lsid, task_id=template.task_id, user_id=user,
              status=JobStatus.DISPATCHING)
    store = InMemoryJobStore([job])
    stager = FileStager(settings)
    completion = JobCompletionHandler(store, settings, stager)
    executor = LocalCommandExecutor(
        "cli",
        job_store=store,
        catalog=InMemoryTaskCatalog([template]),
        preparer=CommandPreparer(settings, stager),
        completion=completion,
        max_workers=1,
    )
    try:
        finished = executor.execute(job)
    except GpExecError as e:
        _fail(e.message)

    if json_out:
        payload = {
            "job_id": finished.job_id,
            "status": finished.status.value,
            "outputs": [p.to_dict() for p in finished.output_parameters],
        }
        console.print_json(json.dumps(payload, default=str))
    else:
        table = Table(title=f"Job {finished.job_id}: {template.name}")
        table.add_column("Output", style="cyan")
        table.add_column("Value")
        for output in finished.output_parameters:
            table.add_row(output.name, output.value)
        console.print(table)
        style = "green" if finished.status == JobStatus.FINISHED else "red"
        console.print(f"Status: [{style}]{finished.status.value}[/{style}]")
    if finished.status != JobStatus.FINISHED:
        raise typer.Exit(code=1)


@app.command("config")
def show_config(
    config_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Job configuration YAML"),
    task: str = typer.Option(..., "--task", "-t", help="Task name or LSID"),
    user: str = typer.Option("", "--user", "-u"),
) -> None:
    """Show the executor and properties that would apply to a job."""
    try:
        config = JobConfiguration.from_yaml(config_file)
    except GpExecError as e:
        _fail(e.message)
    sample = Job(job_id=0, task_name=task, lsid=task, user_id=user)
    table = Table(title=f"{task} ({config.executor_id_for(sample) or 'default executor'})")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    for key, value in sorted(config.properties_for(sample).items()):
        table.add_row(key, str(value))
    worker_config = config.worker_config_for(sample)
    for key, value in sorted(worker_config.items()):
        table.add_row(f"worker: {key}", str(value))
    console.print(table)
