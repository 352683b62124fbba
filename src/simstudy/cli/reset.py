# Copyright (c) Syntropy Systems
"""simstudy reset command."""

from pathlib import Path

import typer
from rich.console import Console

from simstudy.db import get_connection, reset_simulations, update_study
from simstudy.study import StudyStore

console = Console()


def reset(
    study_dir: Path = typer.Argument(
        ...,
        help="Study directory",
        exists=True,
    ),
) -> None:
    """Mark failed and interrupted simulations pending.

    Rerunning the study then computes only these simulations.
    """
    store = StudyStore(study_dir)
    if not store.exists:
        console.print(f"[red]Error:[/red] No study found in {store.study_dir}")
        raise typer.Exit(1)

    conn = get_connection(store.db_path)
    try:
        reset_ids = reset_simulations(conn)
        if reset_ids:
            update_study(conn, status="pending", error=None)
    finally:
        conn.close()

    if not reset_ids:
        console.print("[dim]Nothing to reset[/dim]")
        return

    console.print(f"[green]Reset {len(reset_ids)} simulations[/green]")
    console.print(f"  [dim]IDs:[/dim] {', '.join(str(i) for i in reset_ids)}")
