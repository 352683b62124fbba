# Copyright (c) Syntropy Systems
"""simstudy init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from simstudy.config import CONFIG_FILE, PROJECT_DIR, SOLVE_DIR, ProjectConfig

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new simstudy project.

    Creates a .simstudy directory with default options and a shared solver cache.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    # Create directory structure
    project_dir.mkdir(parents=True)
    solve_dir = project_dir / SOLVE_DIR
    solve_dir.mkdir()

    # Create default config
    defaults = ProjectConfig()
    config = {
        "solver": defaults.solver,
        "dt": defaults.dt,
        "tspan": defaults.tspan,
        "num_cores": defaults.num_cores,
        "memory_limit": defaults.memory_limit,
        "submit_command": defaults.submit_command,
    }

    config_path = project_dir / CONFIG_FILE
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    console.print(f"[green]Initialized simstudy project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]solvers:[/dim] {solve_dir}")
