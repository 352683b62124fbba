# Copyright (c) Syntropy Systems
"""Pydantic models for study metadata and modification sets."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal, Optional, cast

from pydantic import Field, PrivateAttr, TypeAdapter, field_validator, model_validator

from .base import JSONValue, RecordModel, SimStudyBaseModel
from .model import Model

if TYPE_CHECKING:
    from simstudy.results import ResultRecord

VariantStatus = Literal["pending", "started", "finished", "failed"]
StudyStatus = Literal["pending", "running", "finished", "failed", "submitted"]

# Properties whose modification changes the shape of the generated solver
STRUCTURAL_PROPERTIES = frozenset({"mechanism_list", "equations"})


class Modification(SimStudyBaseModel):
    """One (target, property, value) edit of a model component."""

    target: str
    property: str
    value: JSONValue

    @model_validator(mode="before")
    @classmethod
    def _from_triple(cls, data: object) -> object:
        if isinstance(data, (list, tuple)):
            if len(data) != 3:  # noqa: PLR2004
                msg = f"Modification must be (target, property, value), got {data!r}"
                raise ValueError(msg)
            target, prop, value = data
            return {"target": target, "property": prop, "value": value}
        return data

    @property
    def is_structural(self) -> bool:
        """Return whether this edit changes the model's structural shape."""
        return self.property in STRUCTURAL_PROPERTIES

    def as_tuple(self) -> tuple[str, str, JSONValue]:
        """Return the modification as a plain triple."""
        return (self.target, self.property, self.value)


ModificationSet = list[Modification]

_MODIFICATION_SET_ADAPTER = TypeAdapter(list[Modification])


def parse_modification_set(value: object) -> ModificationSet:
    """Coerce triples, dicts or a JSON string into a list of modifications."""
    if value is None:
        return []
    if isinstance(value, str):
        return _MODIFICATION_SET_ADAPTER.validate_json(value)
    # a single bare triple is accepted as a one-element set
    if (
        isinstance(value, (list, tuple))
        and len(value) == 3  # noqa: PLR2004
        and isinstance(value[0], str)
        and isinstance(value[1], str)
    ):
        value = [value]
    return _MODIFICATION_SET_ADAPTER.validate_python(value)


def is_structural_set(modifications: ModificationSet) -> bool:
    """Return whether any modification in the set is structure-changing."""
    return any(mod.is_structural for mod in modifications)


class VariantRecord(RecordModel):
    """Per-variant metadata stored in the study database."""

    sim_id: int
    modifications: list[Modification] = Field(default_factory=list)
    data_file: Optional[str] = None
    solve_file: Optional[str] = None
    batch_dir: Optional[str] = None
    job_file: Optional[str] = None
    status: VariantStatus = "pending"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration: Optional[float] = None
    error_message: Optional[str] = None

    @field_validator("modifications", mode="before")
    @classmethod
    def _parse_modifications(cls, value: object) -> list[Modification]:
        return parse_modification_set(value)


class StudyDescriptor(RecordModel):
    """Persisted unit of record for a study.

    Returned to callers for cluster submissions and as the failure signal
    when a variant fails; ``results`` then holds the partial results that
    were aggregated before the failure.
    """

    study_dir: Optional[str] = None
    prefix: str = "study"
    base_model: Optional[Model] = None
    base_simulator_options: dict[str, JSONValue] = Field(default_factory=dict)
    base_solve_file: Optional[str] = None
    simulations: list[VariantRecord] = Field(default_factory=list)
    status: StudyStatus = "pending"
    error: Optional[str] = None
    created_at: Optional[str] = None

    _results: list[Any] = PrivateAttr(default_factory=list)

    @property
    def results(self) -> list[ResultRecord]:
        """Results aggregated by the run that produced this descriptor."""
        return self._results

    def attach_results(self, results: list[ResultRecord]) -> None:
        """Attach in-memory results without persisting them."""
        self._results = list(results)

    @property
    def failed(self) -> bool:
        """Return whether the study ended in failure."""
        return self.status == "failed"

    def get_simulation(self, sim_id: int) -> VariantRecord | None:
        """Return the record with the given identifier."""
        for record in self.simulations:
            if record.sim_id == sim_id:
                return record
        return None

    def mark(self, sim_id: int, **fields: Any) -> None:  # noqa: ANN401
        """Update attributes of one variant record in place."""
        record = self.get_simulation(sim_id)
        if record is not None:
            for name, value in fields.items():
                setattr(record, name, value)

    def failed_simulations(self) -> list[VariantRecord]:
        """Return all records currently marked failed."""
        return [record for record in self.simulations if record.status == "failed"]

    def modification_sets(self) -> list[ModificationSet]:
        """Return the identifier-ordered list of modification sets."""
        ordered = sorted(self.simulations, key=lambda record: record.sim_id)
        return [cast("ModificationSet", list(r.modifications)) for r in ordered]
