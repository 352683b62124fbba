# Copyright (c) Syntropy Systems
"""Solver artifact reuse across the variants of a study."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from simstudy.codegen import SolverArtifact, artifact_from_file
from simstudy.errors import ArtifactGenerationError, SimStudyError
from simstudy.models.study import ModificationSet, is_structural_set

if TYPE_CHECKING:
    from simstudy.models.model import Model
    from simstudy.models.options import SimulatorOptions

logger = logging.getLogger(__name__)

SOLVE_DIR = "solve"


class CodeGenerator(Protocol):
    def resolve_artifact(
        self,
        model: Model,
        options: SimulatorOptions,
        solve_dir: Path,
    ) -> SolverArtifact:
        ...


def default_solve_dir(options: SimulatorOptions, fallback: Path | None = None) -> Path:
    """Where generated solvers go: the study's ``solve/``, ``fallback``, or ``~/.simstudy/solve``."""
    if options.study_dir:
        return Path(options.study_dir).resolve() / SOLVE_DIR
    if fallback is not None:
        return fallback
    return Path.home() / ".simstudy" / SOLVE_DIR


@dataclass
class ResolvedSolver:
    """A solver artifact plus the parameter values to run it with."""

    artifact: SolverArtifact
    parameters: dict[str, Any]


class SolverArtifactManager:
    """Decides per variant whether to reuse the current solver or resolve a new one.

    A solver is resolved for the first variant that runs, and again before
    every variant when any modification set in the study is structural.
    Parameter-only studies reuse one solver throughout.
    """

    def __init__(
        self,
        generator: CodeGenerator,
        options: SimulatorOptions,
        solve_dir: Path,
        modification_sets: list[ModificationSet],
    ) -> None:
        self.generator = generator
        self.options = options
        self.solve_dir = solve_dir
        self.structural = any(is_structural_set(mods) for mods in modification_sets)
        self.resolutions = 0
        self._current: SolverArtifact | None = None
        if options.solve_file and not self.structural:
            self._current = artifact_from_file(Path(options.solve_file))

    @property
    def current(self) -> SolverArtifact | None:
        return self._current

    def needs_resolution(self) -> bool:
        return self._current is None or self.structural

    def resolve(self, model: Model) -> ResolvedSolver:
        """Return the solver for ``model``, resolving a new one when policy requires."""
        if self.needs_resolution():
            try:
                self._current = self.generator.resolve_artifact(model, self.options, self.solve_dir)
            except SimStudyError:
                self._current = None
                raise
            except (OSError, ValueError, KeyError) as e:
                self._current = None
                msg = f"Solver generation failed: {e}"
                raise ArtifactGenerationError(msg) from e
            self.resolutions += 1
            log = logger.info if self.options.verbose_flag else logger.debug
            log("resolved solver file %s", self._current.path)

        artifact = self._current
        if artifact is None:
            msg = "No solver artifact resolved"
            raise ArtifactGenerationError(msg)
        return ResolvedSolver(artifact=artifact, parameters=dict(model.parameters))
