# Copyright (c) Syntropy Systems
"""simstudy run-job command."""

from pathlib import Path

import typer
from rich.console import Console

from simstudy.batch import run_job as execute_job
from simstudy.errors import SimStudyError
from simstudy.models.study import StudyDescriptor

console = Console()


def run_job(
    job_file: Path = typer.Argument(
        ...,
        help="Job file written by a cluster submission",
        exists=True,
    ),
) -> None:
    """Run the simulations of a batch job file.

    Called by the generated cluster scripts; safe to rerun, since finished
    simulations are loaded from disk.
    """
    try:
        outcomes = execute_job(job_file)
    except (SimStudyError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    failures = [outcome for outcome in outcomes if isinstance(outcome, StudyDescriptor)]
    console.print(f"[green]Ran {len(outcomes) - len(failures)} simulations[/green] from {job_file}")
    if failures:
        for failure in failures:
            console.print(f"[red]Failed:[/red] {failure.error}")
        raise typer.Exit(1)
