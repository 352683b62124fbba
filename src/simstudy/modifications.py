# Copyright (c) Syntropy Systems
"""Apply modification sets to models."""
from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

from pydantic import ValidationError

from simstudy.equations import ODE_RE, normalize_specification
from simstudy.errors import ModelError, ModificationError
from simstudy.models.model import ConnectionSpec, PopulationSpec
from simstudy.models.study import Modification, parse_modification_set

if TYPE_CHECKING:
    from simstudy.models.base import JSONValue
    from simstudy.models.model import Model

_CAT_RE = re.compile(r"^cat\(\s*(?P<var>\w+)\s*,\s*(?P<expr>.+)\)$")
_MECHANISM_OP_RE = re.compile(r"^(?P<op>[+-])\s*\(?(?P<names>[^)]*)\)?$")
_STATEMENT_SPLIT_RE = re.compile(r"[;\n]")
FIRST_ODE = "ODE1"


def apply_modifications(model: Model, modifications: object) -> Model:
    """Return a new model with ``modifications`` applied.

    ``model`` is left untouched: edits go to a deep copy of its
    specification, which is then normalized again.
    """
    try:
        mods = parse_modification_set(modifications)
    except ValidationError as e:
        raise ModificationError(str(e)) from e
    if not mods:
        return model

    spec = model.specification.model_copy(deep=True)
    for mod in mods:
        component = spec.find_component(mod.target)
        if component is None:
            msg = f"Modification target not found: {mod.target!r}"
            raise ModificationError(msg)
        _apply_one(component, mod)

    try:
        return normalize_specification(spec)
    except ModelError as e:
        msg = f"Modified model is invalid: {e}"
        raise ModificationError(msg) from e


def _apply_one(component: PopulationSpec | ConnectionSpec, mod: Modification) -> None:
    if mod.property == "mechanism_list":
        component.mechanism_list = _edit_mechanisms(component.mechanism_list, mod.value)
    elif mod.property == "equations":
        if not isinstance(component, PopulationSpec):
            msg = f"Connections have no equations: {mod.target!r}"
            raise ModificationError(msg)
        component.equations = _edit_equations(component.equations, mod.value)
    elif mod.property == "size":
        if not isinstance(component, PopulationSpec):
            msg = f"Connections have no size: {mod.target!r}"
            raise ModificationError(msg)
        if not isinstance(mod.value, (int, float)) or isinstance(mod.value, bool) or mod.value < 1:
            msg = f"Population size must be a positive number, got {mod.value!r}"
            raise ModificationError(msg)
        component.size = int(mod.value)
    else:
        component.parameters[mod.property] = _parameter_value(mod)


def _parameter_value(mod: Modification) -> int | float | list[float]:
    if not mod.property.isidentifier():
        msg = f"Parameter name must be an identifier: {mod.property!r}"
        raise ModificationError(msg)
    value = mod.value
    values = value if isinstance(value, list) else [value]
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            msg = f"Parameter {mod.property!r} must be a finite number, got {value!r}"
            raise ModificationError(msg)
    if isinstance(value, list):
        return [float(v) for v in values]  # pyright: ignore[reportArgumentType]
    return value  # pyright: ignore[reportReturnType]


def _edit_mechanisms(current: list[str], value: JSONValue) -> list[str]:
    """Replace the list, or add/remove names with ``+iM``, ``-iNa``, ``+(iM,iNa)``."""
    if isinstance(value, list):
        return [str(name) for name in value]
    if not isinstance(value, str):
        msg = f"mechanism_list value must be a list or string, got {value!r}"
        raise ModificationError(msg)
    match = _MECHANISM_OP_RE.match(value.strip())
    if match is None:
        return [name.strip() for name in value.split(",") if name.strip()]

    names = [name.strip() for name in match.group("names").split(",") if name.strip()]
    if match.group("op") == "+":
        return current + [name for name in names if name not in current]
    return [name for name in current if name not in names]


def _edit_equations(equations: str, value: JSONValue) -> str:
    """Replace equations, or append to one ODE with ``cat(X, expr)``."""
    if not isinstance(value, str):
        msg = f"equations value must be a string, got {value!r}"
        raise ModificationError(msg)
    match = _CAT_RE.match(value.strip())
    if match is None:
        return value

    statements = [s.strip() for s in _STATEMENT_SPLIT_RE.split(equations) if s.strip()]
    odes: list[tuple[int, str]] = []
    for i, statement in enumerate(statements):
        if ode := ODE_RE.match(statement):
            odes.append((i, ode.group("var")))
    var = match.group("var")
    if var == FIRST_ODE:
        index = odes[0][0] if odes else None
    else:
        index = next((i for i, name in odes if name == var), None)
    if index is None:
        msg = f"No ODE {var!r} to append to in equations: {equations!r}"
        raise ModificationError(msg)
    statements[index] = f"{statements[index]} {match.group('expr').strip()}"
    return "; ".join(statements)
