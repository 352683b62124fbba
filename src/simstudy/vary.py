# Copyright (c) Syntropy Systems
"""Variation specifications and their expansion into modification sets."""
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, cast

import yaml
from pydantic import ValidationError

from simstudy.errors import ConfigurationError
from simstudy.models.study import (
    STRUCTURAL_PROPERTIES,
    Modification,
    ModificationSet,
    parse_modification_set,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from simstudy.models.base import JSONValue
    from simstudy.models.model import Model

VARY_METHODS = ("grid", "zip", "sets")


@dataclass
class VariationRow:
    """Candidate values for one (target, property) pair.

    Grouped names like ``(E,I)`` or ``(gNa,gK)`` apply each value to every
    member of the group.
    """

    target: str
    property: str
    values: list[JSONValue]

    @property
    def targets(self) -> list[str]:
        return _split_group(self.target)

    @property
    def properties(self) -> list[str]:
        return _split_group(self.property)

    @property
    def is_structural(self) -> bool:
        """Return whether this row changes the model's structural shape."""
        return any(prop in STRUCTURAL_PROPERTIES for prop in self.properties)


@dataclass
class VariationSpec:
    """Rows expanded by cross-product (``grid``), position (``zip``), or explicit ``sets``."""

    rows: list[VariationRow] = field(default_factory=list)
    method: str = "grid"
    sets: list[ModificationSet] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rows and not self.sets

    @property
    def is_structural(self) -> bool:
        if self.method == "sets":
            return any(mod.is_structural for mods in self.sets for mod in mods)
        return any(row.is_structural for row in self.rows)

    @classmethod
    def from_sets(cls, sets: list[object]) -> VariationSpec:
        """Build an explicit enumeration, one modification set per variant."""
        try:
            parsed = [parse_modification_set(mods) for mods in sets]
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
        return cls(method="sets", sets=parsed)

    @classmethod
    def from_input(cls, vary: object) -> VariationSpec:
        """Coerce ``None``, a spec, a mapping or a list of rows into a VariationSpec."""
        if vary is None:
            return cls()
        if isinstance(vary, VariationSpec):
            return vary
        if isinstance(vary, dict):
            return cls.from_dict(cast("dict[str, object]", vary))
        if isinstance(vary, (list, tuple)):
            return cls(rows=[_parse_row(row) for row in vary])
        msg = f"Unsupported variation specification: {vary!r}"
        raise ConfigurationError(msg)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> VariationSpec:
        method = cast("str", data.get("method", "grid"))
        if method not in VARY_METHODS:
            msg = f"Unknown vary method: {method}"
            raise ConfigurationError(msg)
        if method == "sets":
            return cls.from_sets(cast("list[object]", data.get("sets") or []))
        rows = cast("list[object]", data.get("vary") or [])
        return cls(rows=[_parse_row(row) for row in rows], method=method)

    @classmethod
    def from_yaml(cls, path: Path) -> VariationSpec:
        """Load a variation specification from a YAML file."""
        with path.open() as f:
            data = yaml.safe_load(f)

        if isinstance(data, list):
            return cls.from_input(data)
        if not isinstance(data, dict) or ("vary" not in data and "sets" not in data):
            msg = "Vary file must have a 'vary' or 'sets' field"
            raise ConfigurationError(msg)
        return cls.from_dict(cast("dict[str, object]", data))


def _split_group(name: str) -> list[str]:
    name = name.strip()
    if name.startswith("(") and name.endswith(")"):
        return [part.strip() for part in name[1:-1].split(",") if part.strip()]
    return [name]


def _parse_row(row: object) -> VariationRow:
    if isinstance(row, VariationRow):
        return row
    if isinstance(row, dict):
        row = cast("dict[str, object]", row)
        row = (row.get("target", ""), row.get("property"), row.get("values"))
    if not isinstance(row, (list, tuple)) or len(row) != 3:  # noqa: PLR2004
        msg = f"Vary row must be (target, property, values), got {row!r}"
        raise ConfigurationError(msg)
    target, prop, values = row
    if not isinstance(target, str) or not isinstance(prop, str) or not prop:
        msg = f"Vary row target and property must be strings, got {row!r}"
        raise ConfigurationError(msg)
    if not isinstance(values, list):
        values = [values]
    return VariationRow(target=target, property=prop, values=cast("list[JSONValue]", values))


def _check_value(row: VariationRow, value: JSONValue) -> None:
    if row.is_structural:
        return
    values = value if isinstance(value, list) else [value]
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            msg = f"Vary values for {row.property!r} must be finite numbers, got {value!r}"
            raise ConfigurationError(msg)


def _check_target(model: Model, target: str) -> None:
    if model.specification.find_component(target) is None:
        msg = f"Vary target not found in model: {target!r}"
        raise ConfigurationError(msg)


def validate_variation(spec: VariationSpec, model: Model) -> None:
    """Reject rows whose targets are missing or whose values are not finite."""
    for row in spec.rows:
        if not row.values:
            msg = f"Vary row ({row.target!r}, {row.property!r}) has no values"
            raise ConfigurationError(msg)
        for target in row.targets:
            _check_target(model, target)
        for value in row.values:
            _check_value(row, value)
    for mods in spec.sets:
        for mod in mods:
            _check_target(model, mod.target)


def _row_modifications(row: VariationRow, value: JSONValue) -> list[Modification]:
    return [
        Modification(target=target, property=prop, value=value)
        for target in row.targets
        for prop in row.properties
    ]


def generate_grid_combinations(rows: list[VariationRow]) -> Iterator[ModificationSet]:
    """Generate one modification set per element of the rows' cross-product.

    The last row varies fastest.
    """
    for combo in itertools.product(*(row.values for row in rows)):
        mods: ModificationSet = []
        for row, value in zip(rows, combo):
            mods.extend(_row_modifications(row, value))
        yield mods


def generate_zip_combinations(rows: list[VariationRow]) -> Iterator[ModificationSet]:
    """Generate one modification set per position across equal-length rows."""
    lengths = {len(row.values) for row in rows}
    if len(lengths) > 1:
        msg = f"Vary rows must have equal lengths for zip expansion, got {sorted(lengths)}"
        raise ConfigurationError(msg)
    for combo in zip(*(row.values for row in rows)):
        mods: ModificationSet = []
        for row, value in zip(rows, combo):
            mods.extend(_row_modifications(row, value))
        yield mods


def expand_variations(vary: object, model: Model) -> list[ModificationSet]:
    """Expand a variation specification into an ordered list of modification sets.

    Always returns at least one set; no variation yields ``[[]]``.
    Position in the returned list is the variant's identity.
    """
    spec = VariationSpec.from_input(vary)
    if spec.is_empty:
        return [[]]
    validate_variation(spec, model)

    if spec.method == "sets":
        return [list(mods) for mods in spec.sets]
    if spec.method == "zip":
        return list(generate_zip_combinations(spec.rows))
    if spec.method == "grid":
        return list(generate_grid_combinations(spec.rows))
    msg = f"Unknown vary method: {spec.method}"
    raise ConfigurationError(msg)
