# Copyright (c) Syntropy Systems
"""simstudy simulate command."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from simstudy.config import find_project_dir, get_solve_dir, load_config
from simstudy.equations import check_model, extract_vary_statement
from simstudy.errors import SimStudyError
from simstudy.models.study import StudyDescriptor
from simstudy.simulate import StudyOrchestrator
from simstudy.vary import VariationSpec, expand_variations

console = Console()

YAML_SUFFIXES = (".yaml", ".yml")


def load_model_file(path: Path) -> Any:  # noqa: ANN401
    """Read a YAML model specification or an equations text file."""
    if path.suffix in YAML_SUFFIXES:
        with path.open() as f:
            return yaml.safe_load(f)
    return path.read_text()


def _format_modifications(modifications: list[Any]) -> str:
    if not modifications:
        return "-"
    return ", ".join(
        f"{m.target or '<first>'}.{m.property}={m.value}" for m in modifications
    )


def simulate(  # noqa: PLR0913
    model_file: Path = typer.Argument(
        ...,
        help="Model specification (YAML) or equations text file",
        exists=True,
    ),
    vary_file: Optional[Path] = typer.Option(
        None,
        "--vary",
        help="Variation YAML file (method: grid|zip, vary: [[target, property, values], ...])",
        exists=True,
    ),
    study_dir: Optional[Path] = typer.Option(
        None,
        "--study-dir", "-s",
        help="Save results and metadata in this directory",
    ),
    tspan: Optional[tuple[float, float]] = typer.Option(
        None,
        "--tspan",
        help="Start and end time",
    ),
    dt: Optional[float] = typer.Option(None, "--dt", help="Integration step"),
    solver: Optional[str] = typer.Option(None, "--solver", help="euler, rk2 or rk4"),
    overwrite: bool = typer.Option(
        False,
        "--overwrite",
        help="Recompute variants that already have saved results",
    ),
    parallel: bool = typer.Option(False, "--parallel", help="Run variants on local workers"),
    cores: Optional[int] = typer.Option(None, "--cores", help="Number of local workers"),
    cluster: bool = typer.Option(False, "--cluster", help="Submit variants as batch jobs"),
    disk: bool = typer.Option(False, "--disk", help="Run solvers as child processes"),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="List variants without simulating",
    ),
) -> None:
    r"""Simulate a model across the variants of a vary file.

    Example vary.yaml:

    \b
        method: grid
        vary:
          - [E, gNa, [80, 100, 120]]
          - [E, mechanism_list, ["+iM", "-iM"]]
    """
    project_dir = find_project_dir()
    options: dict[str, Any] = load_config(project_dir).to_options()
    if study_dir is not None:
        options["study_dir"] = str(study_dir.resolve())
    if tspan is not None:
        options["tspan"] = tspan
    if dt is not None:
        options["dt"] = dt
    if solver is not None:
        options["solver"] = solver
    if cores is not None:
        options["num_cores"] = cores
    options.update(
        overwrite_flag=overwrite,
        parallel_flag=parallel,
        cluster_flag=cluster,
        disk_flag=disk,
    )

    try:
        raw_model = load_model_file(model_file)
        vary = VariationSpec.from_yaml(vary_file) if vary_file is not None else None
        if dry_run:
            raw_model, vary = extract_vary_statement(raw_model, vary)
            variants = expand_variations(vary, check_model(raw_model))
            _show_variants(variants)
            console.print("\n[yellow]Dry run - nothing simulated[/yellow]")
            return

        orchestrator = StudyOrchestrator(solve_dir=get_solve_dir(project_dir))
        outcome = orchestrator.simulate(raw_model, vary=vary, **options)
    except (SimStudyError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if isinstance(outcome, StudyDescriptor):
        if outcome.failed:
            console.print(f"[red]Study failed:[/red] {outcome.error}")
            console.print(f"  [dim]completed results:[/dim] {len(outcome.results)}")
            raise typer.Exit(1)
        console.print(f"[green]Submitted {len(outcome.simulations)} simulations[/green]")
        console.print(f"  [dim]study:[/dim] {outcome.study_dir}")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Sim", style="dim")
    table.add_column("Varied")
    table.add_column("Samples")
    table.add_column("Duration")
    for record in outcome:
        varied = ", ".join(f"{k}={v}" for k, v in record.varied.items()) or "-"
        duration = f"{record.duration:.2f}s" if record.duration is not None else "-"
        table.add_row(str(record.sim_id or "-"), varied, str(len(record.time)), duration)
    console.print(table)
    console.print(f"\n[green]{len(outcome)} results[/green]")


def _show_variants(variants: list[Any]) -> None:
    table = Table(title="Variants")
    table.add_column("Sim", style="dim")
    table.add_column("Modifications")
    for sim_id, modifications in enumerate(variants, start=1):
        table.add_row(str(sim_id), _format_modifications(modifications))
    console.print(table)
    console.print(f"\n[bold]{len(variants)} variants[/bold]")
