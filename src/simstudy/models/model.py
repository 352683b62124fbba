# Copyright (c) Syntropy Systems
"""Pydantic models for model specifications and normalized models."""

from __future__ import annotations

from typing import Union

from pydantic import Field, field_validator
from typing_extensions import TypeAlias

from .base import JSONValue, SimStudyBaseModel

ParameterValue: TypeAlias = Union[int, float, list[float]]

DEFAULT_POPULATION = "pop1"
CONNECTION_ARROW = "->"


def _pairs_to_mapping(value: object) -> object:
    # Flat [name, value, name, value, ...] lists are accepted as well
    if isinstance(value, (list, tuple)):
        items = list(value)
        return dict(zip(items[0::2], items[1::2]))
    return value


class PopulationSpec(SimStudyBaseModel):
    """A population of identical cells sharing one equation block."""

    name: str = DEFAULT_POPULATION
    size: int = 1
    equations: str = ""
    mechanism_list: list[str] = Field(default_factory=list)
    parameters: dict[str, ParameterValue] = Field(default_factory=dict)

    @field_validator("equations", mode="before")
    @classmethod
    def _join_equations(cls, value: object) -> object:
        if isinstance(value, (list, tuple)):
            return "; ".join(str(item) for item in value)
        return value

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, value: object) -> object:
        return _pairs_to_mapping(value)


class ConnectionSpec(SimStudyBaseModel):
    """Directed coupling from a source population to a target population."""

    source: str
    target: str
    mechanism_list: list[str] = Field(default_factory=list)
    parameters: dict[str, ParameterValue] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, value: object) -> object:
        return _pairs_to_mapping(value)

    @property
    def name(self) -> str:
        """Connection name in ``source->target`` form."""
        return f"{self.source}{CONNECTION_ARROW}{self.target}"


class ModelSpecification(SimStudyBaseModel):
    """Structural description of a model before normalization."""

    populations: list[PopulationSpec] = Field(default_factory=list)
    connections: list[ConnectionSpec] = Field(default_factory=list)

    def find_population(self, name: str) -> PopulationSpec | None:
        """Return the population called ``name``.

        An empty name selects the first population.
        """
        if not self.populations:
            return None
        if name == "":
            return self.populations[0]
        for population in self.populations:
            if population.name == name:
                return population
        return None

    def find_connection(self, name: str) -> ConnectionSpec | None:
        """Return the connection called ``source->target``."""
        for connection in self.connections:
            if connection.name == name:
                return connection
        return None

    def find_component(self, name: str) -> PopulationSpec | ConnectionSpec | None:
        """Return the population or connection addressed by ``name``."""
        if CONNECTION_ARROW in name:
            return self.find_connection(name)
        return self.find_population(name)


class MonitorDef(SimStudyBaseModel):
    """A recorded quantity that is not a state variable."""

    expression: str = ""
    variable: str | None = None
    threshold: str | None = None

    @property
    def is_spike_monitor(self) -> bool:
        """Return whether this monitor records threshold crossings."""
        return self.variable is not None


class ResetRule(SimStudyBaseModel):
    """Conditional reset applied after every integration step."""

    condition: str
    variable: str
    expression: str


class Model(SimStudyBaseModel):
    """Normalized model ready for code generation.

    All names are namespaced by their owning component, so ``v`` in
    population ``E`` becomes ``E_v``.
    """

    specification: ModelSpecification
    state_variables: list[str] = Field(default_factory=list)
    parameters: dict[str, ParameterValue] = Field(default_factory=dict)
    odes: dict[str, str] = Field(default_factory=dict)
    ics: dict[str, str] = Field(default_factory=dict)
    monitors: dict[str, MonitorDef] = Field(default_factory=dict)
    conditionals: list[ResetRule] = Field(default_factory=list)
    mechanisms: dict[str, list[str]] = Field(default_factory=dict)
    # state variable or monitor -> parameter holding its cell count
    sizes: dict[str, str] = Field(default_factory=dict)

    @field_validator("state_variables")
    @classmethod
    def _unique_state_variables(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            msg = f"State variables must be unique: {value}"
            raise ValueError(msg)
        return value

    @property
    def output_variables(self) -> list[str]:
        """Names of the channels produced by a solver, time first."""
        return ["time", *self.state_variables, *self.monitors]

    def structure(self) -> dict[str, JSONValue]:
        """Return the subset of the model that determines solver code shape.

        Parameter values and population sizes are excluded because the
        solver reads them at run time.
        """
        return {
            "state_variables": list(self.state_variables),
            "odes": dict(self.odes),
            "ics": dict(self.ics),
            "monitors": {
                name: monitor.model_dump() for name, monitor in self.monitors.items()
            },
            "conditionals": [rule.model_dump() for rule in self.conditionals],
            "mechanisms": {k: list(v) for k, v in self.mechanisms.items()},
            "sizes": dict(self.sizes),
        }

    def cell_count(self, name: str) -> int:
        """Return the number of cells recorded for a state variable or monitor."""
        size_param = self.sizes.get(name)
        if size_param is None:
            return 1
        value = self.parameters.get(size_param, 1)
        if isinstance(value, list):
            return len(value)
        return int(value)
