# Copyright (c) Syntropy Systems
"""Console logging for the CLI."""
from __future__ import annotations

import logging

from rich.logging import RichHandler


def setup_console_logging(level: str = "INFO") -> None:
    """Configure the root logger for CLI use. Library code only calls getLogger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(level.upper())

    handler = RichHandler(show_time=True, show_level=True, markup=False, rich_tracebacks=False)
    handler.setLevel(level.upper())
    root.addHandler(handler)
