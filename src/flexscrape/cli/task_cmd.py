"""CLI commands for tasks.

Subcommands for running, validating and inspecting task JSON files.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from flexscrape.exceptions import ConfigurationError

task_app = typer.Typer(help="Run, validate and inspect task definitions.")
console = Console()


def _load_or_exit(path: Path):
    from pydantic import ValidationError

    from flexscrape.steps.loader import load_task_from_file

    try:
        return load_task_from_file(path)
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] {e}")
        if isinstance(e.__cause__, ValidationError):
            for err in e.__cause__.errors():
                loc = " → ".join(str(x) for x in err["loc"])
                console.print(f"  {loc}: {err['msg']}")
        raise typer.Exit(code=1) from None


# ---------------------------------------------------------------------------
# flexscrape task run
# ---------------------------------------------------------------------------


@task_app.command("run")
def task_run(
    paths: list[Path] = typer.Argument(..., help="Task JSON file(s) to run."),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="Directory for JSONL output."),
    results_file: Optional[Path] = typer.Option(None, "--results", "-r", help="Write step results as JSON."),
    headful: bool = typer.Option(False, "--headful", help="Launch a visible browser (enables manual CAPTCHA)."),
    max_concurrent: Optional[int] = typer.Option(
        None, "--concurrent", "-c", min=1, help="Max tasks running at once (default: limiter.max_concurrent)."
    ),
) -> None:
    """Run one or more tasks, each in its own browser session."""
    from flexscrape.runner import TaskRunner
    from flexscrape.settings import get_settings

    tasks = [_load_or_exit(p) for p in paths]

    settings = get_settings()
    updates = {}
    if headful:
        updates["browser"] = settings.browser.model_copy(update={"headless": False})
    if max_concurrent:
        updates["limiter"] = settings.limiter.model_copy(update={"max_concurrent": max_concurrent})
    if updates:
        settings = settings.model_copy(update=updates)

    session_kwargs = {"output_dir": output_dir} if output_dir else {}
    runner = TaskRunner.from_settings(settings, **session_kwargs)
    for path, task in zip(paths, tasks):
        try:
            runner.interpreter.check(task.steps)
        except ConfigurationError as e:
            console.print(f"[red]✗[/red] {path}: {e}")
            raise typer.Exit(code=1) from None

    runs = asyncio.run(runner.run_tasks(tasks))

    table = Table(title="Task runs")
    table.add_column("Task", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Results", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error", max_width=60)
    for run in runs:
        table.add_row(
            run.name or "<unnamed>",
            "[green]✓[/green]" if run.success else "[red]✗[/red]",
            str(len(run.results)),
            f"{run.duration_s:.1f}s",
            run.error,
        )
    console.print(table)

    if results_file:
        results_file.parent.mkdir(parents=True, exist_ok=True)
        payload = [{"name": r.name, "success": r.success, "error": r.error, "results": r.results} for r in runs]
        results_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        console.print(f"Results written to {results_file}")

    if any(not r.success for r in runs):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# flexscrape task validate
# ---------------------------------------------------------------------------


@task_app.command("validate")
def task_validate(
    path: Path = typer.Argument(..., help="Path to a task JSON file."),
) -> None:
    """Validate a task JSON file against the step schema."""
    task = _load_or_exit(path)
    console.print(f"[green]✓[/green] Valid task: {task.name} ({len(task.steps)} steps)")


# ---------------------------------------------------------------------------
# flexscrape task show / list
# ---------------------------------------------------------------------------


@task_app.command("show")
def task_show(
    path: Path = typer.Argument(..., help="Path to a task JSON file."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output the normalised task as JSON."),
) -> None:
    """Display the steps of a task."""
    task = _load_or_exit(path)

    if json_output:
        console.print_json(json.dumps(task.to_wire(), indent=2))
        return

    console.print(f"[bold cyan]{task.name}[/bold cyan]")
    console.print(f"\n[bold]Steps ({len(task.steps)}):[/bold]")
    for i, step in enumerate(task.steps, 1):
        desc = f" — {step.description}" if step.description else ""
        delay = f" [dim](+{step.random_delay.min:g}-{step.random_delay.max:g}ms)[/dim]" if step.random_delay else ""
        console.print(f"  {i:2d}. [yellow]{step.type}[/yellow]{desc}{delay}")


@task_app.command("list")
def task_list(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Override task directory."),
) -> None:
    """List the tasks in the task directory."""
    from flexscrape.settings import get_settings
    from flexscrape.steps.loader import load_tasks_from_dir

    task_dir = directory or Path(get_settings().scrape.task_dir)
    tasks = load_tasks_from_dir(task_dir)
    if not tasks:
        console.print(f"No tasks found in {task_dir}")
        return

    table = Table(title=f"Tasks ({task_dir})")
    table.add_column("Name", style="cyan")
    table.add_column("Steps", justify="right")
    table.add_column("Kinds")
    for task in tasks:
        kinds = sorted({str(s.type) for s in task.steps})
        table.add_row(task.name, str(len(task.steps)), ", ".join(kinds))
    console.print(table)
