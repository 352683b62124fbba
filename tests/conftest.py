# Copyright (c) Syntropy Systems
"""Pytest fixtures for simstudy tests."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from simstudy.mechanisms import reset_registry

# Store original cwd at module load time
_original_cwd = Path.cwd()

DECAY_EQUATIONS = "dv/dt = -v/tau; tau = 10; v(0) = 1"

HH_SPEC = {
    "populations": [
        {
            "name": "E",
            "size": 2,
            "equations": "dv/dt = @current + I; I = 10; v(0) = -65",
            "mechanism_list": ["iNa", "iK", "iLeak"],
        },
    ],
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def isolated_home(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Keep the default solver cache out of the real home directory."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    yield home
    reset_registry()
    os.chdir(_original_cwd)


@pytest.fixture
def study_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary simstudy project directory."""
    project_dir = temp_dir / ".simstudy"
    project_dir.mkdir()
    (project_dir / "solve").mkdir()
    (project_dir / "config.yaml").write_text("solver: rk4\ndt: 0.05\ntspan: [0, 2]\n")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def solve_dir(temp_dir: Path) -> Path:
    """Shared solver directory for orchestrators under test."""
    return temp_dir / "solve"
