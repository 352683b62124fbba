# Copyright (c) Syntropy Systems
"""Main CLI entry point for simstudy."""

import typer

from simstudy.cli.init_cmd import init
from simstudy.cli.logging_setup import setup_console_logging
from simstudy.cli.reset import reset
from simstudy.cli.run_job import run_job
from simstudy.cli.simulate import simulate
from simstudy.cli.status import status

app = typer.Typer(
    name="simstudy",
    help=(
        "Simulation studies for differential-equation models. Vary parameters "
        "and mechanisms, resume interrupted studies, submit to a cluster."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show debug logging",
    ),
) -> None:
    """Configure logging for every command."""
    setup_console_logging("DEBUG" if verbose else "INFO")


# Register commands
_ = app.command()(init)
_ = app.command()(simulate)
_ = app.command()(status)
_ = app.command(name="run-job")(run_job)
_ = app.command()(reset)


if __name__ == "__main__":
    app()
