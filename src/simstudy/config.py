# Copyright (c) Syntropy Systems
"""Project configuration for simstudy."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

import yaml

PROJECT_DIR = ".simstudy"
CONFIG_FILE = "config.yaml"
SOLVE_DIR = "solve"


@dataclass
class ProjectConfig:
    """Default simulator options for a project."""

    solver: str = "rk4"
    dt: float = 0.01
    tspan: list[float] = field(default_factory=lambda: [0.0, 100.0])

    # Workers for --parallel
    num_cores: int = 4

    # Cluster submission
    memory_limit: str = "8G"
    submit_command: str = "qsub"

    def to_options(self) -> dict[str, Any]:
        """Return the values as simulator option overrides."""
        return {
            "solver": self.solver,
            "dt": self.dt,
            "tspan": tuple(self.tspan),
            "num_cores": self.num_cores,
            "memory_limit": self.memory_limit,
            "submit_command": self.submit_command,
        }


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .simstudy directory by walking up from start_path.

    Returns None if no .simstudy directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR
    if project_dir.is_dir():
        return project_dir

    return None


def load_config(project_dir: Path | None = None) -> ProjectConfig:
    """Load configuration from .simstudy/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .simstudy directory walking up
    3. Defaults
    """
    config = ProjectConfig()

    if project_dir is None:
        project_dir = find_project_dir()
    if project_dir is None:
        return config

    config_path = project_dir / CONFIG_FILE
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    solver = data.get("solver")
    if isinstance(solver, str):
        config.solver = solver
    dt = data.get("dt")
    if isinstance(dt, (int, float)):
        config.dt = float(dt)
    tspan = data.get("tspan")
    if isinstance(tspan, list) and len(tspan) == 2:  # noqa: PLR2004
        config.tspan = [float(cast("float", t)) for t in tspan]
    num_cores = data.get("num_cores")
    if isinstance(num_cores, int):
        config.num_cores = num_cores
    memory_limit = data.get("memory_limit")
    if isinstance(memory_limit, str):
        config.memory_limit = memory_limit
    submit_command = data.get("submit_command")
    if isinstance(submit_command, str):
        config.submit_command = submit_command

    return config


def get_solve_dir(project_dir: Path | None = None) -> Path | None:
    """Get the shared solver directory of a project, if there is one."""
    if project_dir is None:
        project_dir = find_project_dir()
    if project_dir is None:
        return None
    return project_dir / SOLVE_DIR
