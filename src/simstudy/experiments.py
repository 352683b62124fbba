# Copyright (c) Syntropy Systems
"""Experiment delegates run in place of a plain simulation for each variant."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from simstudy.equations import check_model
from simstudy.errors import SimulationError
from simstudy.models.study import StudyDescriptor
from simstudy.modifications import apply_modifications

if TYPE_CHECKING:
    from collections.abc import Sequence

    from simstudy.equations import RawModel
    from simstudy.models.model import Model
    from simstudy.models.options import SimulatorOptions
    from simstudy.results import ResultRecord

logger = logging.getLogger(__name__)

# Options that would make a delegate's own simulate call recurse or clash
# with the calling study
RECURSIVE_OPTIONS: dict[str, Any] = {
    "vary": None,
    "modifications": None,
    "cluster_flag": False,
    "experiment": None,
    "optimization": None,
    "experiment_options": {},
    "sim_id": None,
    "solve_file": None,
    "save_data_flag": False,
    "study_dir": None,
}

DEFAULT_AMPLITUDES = (-10.0, -5.0, 0.0, 5.0, 10.0)


class ExperimentDelegate(Protocol):
    """Procedure run per variant in place of a single simulation."""

    def __call__(
        self,
        model: Model,
        options: SimulatorOptions,
        **experiment_options: Any,  # noqa: ANN401
    ) -> ResultRecord | list[ResultRecord]:
        ...


def strip_recursive_options(options: SimulatorOptions) -> SimulatorOptions:
    """Return a copy of ``options`` safe to hand to a delegate."""
    return options.model_copy(update=dict(RECURSIVE_OPTIONS))


def probe_fi(
    model: RawModel,
    options: SimulatorOptions,
    amplitudes: Sequence[float] | None = None,
) -> list[ResultRecord]:
    """Drive every population with a tonic input and simulate each amplitude.

    Adds ``+TONIC`` to the first ODE of each population and returns one
    result per amplitude, tagged with the ``TONIC`` value.
    """
    from simstudy.simulate import simulate_model  # noqa: PLC0415

    values = [float(a) for a in (amplitudes if amplitudes is not None else DEFAULT_AMPLITUDES)]
    base = check_model(model)
    names = [population.name for population in base.specification.populations]
    drive = []
    for name in names:
        drive.extend([(name, "TONIC", 0), (name, "equations", "cat(ODE1, +TONIC)")])
    probe_model = apply_modifications(base, drive)

    target = names[0] if len(names) == 1 else f"({','.join(names)})"
    logger.debug("probing %s with %d amplitudes", target, len(values))
    outcome = simulate_model(probe_model, vary=[(target, "TONIC", values)], options=options)
    if isinstance(outcome, StudyDescriptor):
        msg = f"Tonic drive simulation failed: {outcome.error}"
        raise SimulationError(msg)
    return outcome
