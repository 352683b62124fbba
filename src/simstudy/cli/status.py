# Copyright (c) Syntropy Systems
"""simstudy status command."""

from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from simstudy.errors import ConfigurationError
from simstudy.models.study import VariantRecord
from simstudy.study import StudyStore

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "started": "blue",
    "running": "blue",
    "finished": "green",
    "failed": "red",
    "submitted": "cyan",
}


def format_duration(seconds: Optional[float]) -> str:
    """Format a duration in seconds."""
    if seconds is None:
        return "-"

    total_seconds = int(seconds)
    if total_seconds < 60:
        return f"{seconds:.1f}s"
    elif total_seconds < 3600:
        minutes = total_seconds // 60
        return f"{minutes}m {total_seconds % 60}s"
    else:
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        return f"{hours}h {minutes}m"


def format_timestamp(timestamp: Optional[str]) -> str:
    """Format an ISO timestamp for display."""
    if not timestamp:
        return "-"
    try:
        ts = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return ts.strftime("%Y-%m-%d %H:%M:%S")


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def status(
    study_dir: Path = typer.Argument(
        ...,
        help="Study directory",
        exists=True,
    ),
    sim_id: Optional[int] = typer.Argument(
        None,
        help="Simulation ID to show details for",
    ),
) -> None:
    """
    Show study status.

    Without a simulation ID, lists every variant of the study.
    """
    try:
        descriptor = StudyStore(study_dir).load()
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if sim_id is not None:
        record = descriptor.get_simulation(sim_id)
        if record is None:
            console.print(f"[red]Error:[/red] Simulation {sim_id} not found")
            raise typer.Exit(1)
        _show_details(record)
        return

    console.print(f"[bold]Study[/bold] {descriptor.study_dir} {_styled(descriptor.status)}")
    if descriptor.error:
        console.print(f"  [dim]error:[/dim] {descriptor.error}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Sim", style="dim")
    table.add_column("Modifications")
    table.add_column("Status")
    table.add_column("Duration")
    for record in descriptor.simulations:
        mods = ", ".join(f"{m.target}.{m.property}={m.value}" for m in record.modifications) or "-"
        table.add_row(str(record.sim_id), mods, _styled(record.status), format_duration(record.duration))
    console.print(table)

    counts: dict[str, int] = {}
    for record in descriptor.simulations:
        counts[record.status] = counts.get(record.status, 0) + 1
    console.print("  ".join(f"{name}: {count}" for name, count in sorted(counts.items())))


def _show_details(record: VariantRecord) -> None:
    """Display detailed variant information."""
    console.print(f"\n[bold]Simulation {record.sim_id}[/bold]")
    console.print(f"  [dim]status:[/dim] {_styled(record.status)}")
    for mod in record.modifications:
        console.print(f"  [dim]{mod.target}.{mod.property}:[/dim] {mod.value}")
    console.print(f"  [dim]data file:[/dim] {record.data_file or '-'}")
    console.print(f"  [dim]solve file:[/dim] {record.solve_file or '-'}")
    if record.job_file:
        console.print(f"  [dim]job file:[/dim] {record.job_file}")

    console.print()
    console.print(f"  [dim]started:[/dim] {format_timestamp(record.started_at)}")
    console.print(f"  [dim]finished:[/dim] {format_timestamp(record.finished_at)}")
    console.print(f"  [dim]duration:[/dim] {format_duration(record.duration)}")

    if record.error_message:
        console.print(f"  [dim]error:[/dim] {record.error_message}")
