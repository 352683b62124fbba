# Copyright (c) Syntropy Systems
"""Result records and their aggregation across variants."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable

    from simstudy.models.base import JSONValue
    from simstudy.models.model import Model
    from simstudy.models.study import Modification

_SEPARATOR_RE = re.compile(r"(->)|(<-)|(-)|(\.)")
_BRACKET_RE = re.compile(r"[\[\]\(\)\{\}]")
_INVALID_RE = re.compile(r"[^0-9A-Za-z_]")


def varied_field_name(target: str, prop: str) -> str:
    """Build a valid identifier naming a varied (target, property) pair.

    Arrows, dashes and dots become underscores and brackets are removed,
    so ``("E->I", "gSYN")`` becomes ``E_I_gSYN``. An empty target yields
    the bare property name.
    """
    name = f"{target}_{prop}" if target else prop
    name = _SEPARATOR_RE.sub("_", name)
    name = _BRACKET_RE.sub("", name)
    name = _INVALID_RE.sub("_", name).strip("_")
    if not name or name[0].isdigit():
        name = f"v_{name}"
    return name


@dataclass
class ResultRecord:
    """Output of one variant execution.

    ``labels`` lists state variables and monitors with ``time`` last;
    ``channels`` maps every label to its array with ``time`` first.
    """

    labels: list[str]
    channels: dict[str, np.ndarray]
    simulator_options: dict[str, JSONValue] = field(default_factory=dict)
    model: Optional[Model] = None
    varied: dict[str, JSONValue] = field(default_factory=dict)
    sim_id: Optional[int] = None
    duration: Optional[float] = None
    data_file: Optional[str] = None

    def __post_init__(self) -> None:
        if "time" not in self.channels:
            msg = "Result channels must include 'time'"
            raise ValueError(msg)
        missing = [label for label in self.labels if label not in self.channels]
        if missing:
            msg = f"Result labels without channels: {missing}"
            raise ValueError(msg)

    @classmethod
    def from_outputs(
        cls,
        output_variables: list[str],
        outputs: Iterable[Any],
        **metadata: Any,  # noqa: ANN401
    ) -> ResultRecord:
        """Build a record from solver outputs ordered as ``output_variables``.

        Solvers emit ``time`` first; labels move it to the end.
        """
        arrays = [np.asarray(output) for output in outputs]
        if len(arrays) != len(output_variables):
            msg = (
                f"Solver returned {len(arrays)} outputs for "
                f"{len(output_variables)} output variables"
            )
            raise ValueError(msg)
        channels = {"time": arrays[output_variables.index("time")]}
        for name, array in zip(output_variables, arrays):
            if name != "time":
                channels[name] = array
        labels = [name for name in output_variables if name != "time"] + ["time"]
        return cls(labels=labels, channels=channels, **metadata)

    @property
    def time(self) -> np.ndarray:
        """The shared time axis."""
        return self.channels["time"]

    def __getitem__(self, label: str) -> np.ndarray:
        return self.channels[label]

    def tag_varied(self, modifications: Iterable[Modification]) -> None:
        """Attach the varied tag set computed from applied modifications."""
        for mod in modifications:
            self.varied[varied_field_name(mod.target, mod.property)] = mod.value


class ResultAggregator:
    """Ordered accumulator for per-variant results.

    Storage is preallocated on the first batch: ``expected`` variants times
    the number of results the first variant produced. Later batches fill
    the next free slots, growing the storage when a variant returns more.
    """

    def __init__(self, expected: int) -> None:
        self.expected = expected
        self._slots: list[ResultRecord | None] = []
        self._count = 0

    def add(self, results: ResultRecord | Iterable[ResultRecord]) -> range:
        """Append one variant's results and return the slot indices they used."""
        batch = [results] if isinstance(results, ResultRecord) else list(results)
        if not self._slots and batch:
            self._slots = [None] * (self.expected * len(batch))
        start = self._count
        for record in batch:
            if self._count < len(self._slots):
                self._slots[self._count] = record
            else:
                self._slots.append(record)
            self._count += 1
        return range(start, self._count)

    def __len__(self) -> int:
        return self._count

    @property
    def results(self) -> list[ResultRecord]:
        """Filled results in insertion order."""
        return [record for record in self._slots[: self._count] if record is not None]
