# Copyright (c) Syntropy Systems
"""Normalize equation text and specifications into a Model.

Statements are separated by ``;`` or newlines:

- ``name = 1.5`` parameter (``[1, 2]`` lists allowed)
- ``dX/dt = expr`` ODE
- ``X(0) = expr`` initial condition
- ``monitor name = expr`` or ``monitor X.spikes(thresh)``
- ``if(cond)(X = expr)`` reset rule
- ``{iNa, iK}`` mechanism list
- ``@current`` sum of mechanism currents (``@current += expr`` inside mechanisms)

Expressions use Python syntax; ``^`` is accepted for powers.
"""
from __future__ import annotations

import ast
import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from pydantic import ValidationError

from simstudy.errors import ConfigurationError, ModelError
from simstudy.mechanisms import get_mechanism
from simstudy.models.model import (
    DEFAULT_POPULATION,
    Model,
    ModelSpecification,
    MonitorDef,
    ParameterValue,
    PopulationSpec,
    ResetRule,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

FUNCTIONS = frozenset({
    "exp", "log", "log10", "sqrt", "sin", "cos", "tan", "tanh", "sinh", "cosh",
    "abs", "minimum", "maximum", "where", "mean", "sum", "heaviside", "randn", "rand",
})
CONSTANTS = frozenset({"t", "dt", "pi"})
HOST = "X"
SIZE_NAME = "Npop"
CURRENT_TOKEN = "@current"
_CURRENT_SENTINEL = "__current__"

_STATEMENT_SPLIT_RE = re.compile(r"[;\n]")
ODE_RE = re.compile(r"^d(?P<var>[A-Za-z_]\w*)\s*/\s*dt\s*=\s*(?P<expr>.+)$")
_IC_RE = re.compile(r"^(?P<var>[A-Za-z_]\w*)\s*\(\s*0\s*\)\s*=\s*(?P<expr>.+)$")
_MONITOR_RE = re.compile(r"^monitor\s+(?P<body>.+)$")
_SPIKES_RE = re.compile(r"^(?P<var>[A-Za-z_]\w*)\.spikes(?:\((?P<thresh>[^)]*)\))?$")
_IF_RE = re.compile(
    r"^if\s*\((?P<cond>.+)\)\s*\(\s*(?P<var>[A-Za-z_]\w*)\s*=\s*(?P<expr>.+)\)$",
)
_CURRENT_RE = re.compile(r"^@current\s*\+=\s*(?P<expr>.+)$")
_ASSIGN_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*=\s*(?P<value>.+)$")
_MECHANISMS_RE = re.compile(r"^\{(?P<names>[^}]*)\}$")
_IDENT_RE = re.compile(r"(?<![\w.])([A-Za-z_]\w*)")
_VARY_STATEMENT_RE = re.compile(r";\s*(vary\((?P<body>.*)\));?\s*$")

DEFAULT_SPIKE_THRESHOLD = "0"


@dataclass
class _Block:
    """Parsed statements of one equation block, names still local."""

    parameters: dict[str, ParameterValue] = field(default_factory=dict)
    odes: dict[str, str] = field(default_factory=dict)
    ics: dict[str, str] = field(default_factory=dict)
    monitors: dict[str, MonitorDef] = field(default_factory=dict)
    conditionals: list[ResetRule] = field(default_factory=list)
    currents: list[str] = field(default_factory=list)
    mechanisms: list[str] = field(default_factory=list)


def _clean_expression(expr: str) -> str:
    expr = expr.strip().replace("^", "**").replace(CURRENT_TOKEN, _CURRENT_SENTINEL)
    try:
        _ = compile(expr.replace(_CURRENT_SENTINEL, "0"), "<expr>", "eval")
    except SyntaxError as e:
        msg = f"Invalid expression: {expr!r}"
        raise ModelError(msg) from e
    return expr


def _parse_parameter_value(text: str) -> ParameterValue | None:
    try:
        value = ast.literal_eval(text.strip())
    except (ValueError, SyntaxError):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (list, tuple)) and all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in value
    ):
        return [float(v) for v in value]
    return None


def _parse_monitor(body: str, block: _Block) -> None:
    assignment = _ASSIGN_RE.match(body)
    if assignment and not _SPIKES_RE.match(body):
        block.monitors[assignment.group("name")] = MonitorDef(
            expression=_clean_expression(assignment.group("value")),
        )
        return
    for item in (part.strip() for part in body.split(",")):
        if not item:
            continue
        spikes = _SPIKES_RE.match(item)
        if spikes is None:
            msg = f"Unsupported monitor: {item!r}"
            raise ModelError(msg)
        var = spikes.group("var")
        threshold = spikes.group("thresh") or DEFAULT_SPIKE_THRESHOLD
        block.monitors[f"{var}_spikes"] = MonitorDef(
            variable=var,
            threshold=_clean_expression(threshold),
        )


def parse_equations(text: str) -> _Block:  # noqa: C901
    """Parse one equation block into local (un-namespaced) definitions."""
    block = _Block()
    for raw in _STATEMENT_SPLIT_RE.split(text or ""):
        statement = raw.strip()
        if not statement or statement.startswith(("%", "#")):
            continue

        if match := _MECHANISMS_RE.match(statement):
            names = [n.strip() for n in match.group("names").split(",") if n.strip()]
            block.mechanisms.extend(names)
        elif match := _MONITOR_RE.match(statement):
            _parse_monitor(match.group("body"), block)
        elif match := _IF_RE.match(statement):
            block.conditionals.append(
                ResetRule(
                    condition=_clean_expression(match.group("cond")),
                    variable=match.group("var"),
                    expression=_clean_expression(match.group("expr")),
                ),
            )
        elif match := _CURRENT_RE.match(statement):
            block.currents.append(_clean_expression(match.group("expr")))
        elif match := ODE_RE.match(statement):
            block.odes[match.group("var")] = _clean_expression(match.group("expr"))
        elif match := _IC_RE.match(statement):
            block.ics[match.group("var")] = _clean_expression(match.group("expr"))
        elif match := _ASSIGN_RE.match(statement):
            value = _parse_parameter_value(match.group("value"))
            if value is None:
                msg = f"Parameter {match.group('name')!r} must be numeric: {statement!r}"
                raise ModelError(msg)
            block.parameters[match.group("name")] = value
        else:
            msg = f"Unsupported statement: {statement!r}"
            raise ModelError(msg)

    for var in block.ics:
        if var not in block.odes:
            msg = f"Initial condition given for unknown state variable {var!r}"
            raise ModelError(msg)
    return block


def _namespace(expr: str, mapping: Mapping[str, str], context: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in mapping:
            return mapping[name]
        if name in FUNCTIONS or name in CONSTANTS or name == _CURRENT_SENTINEL:
            return name
        msg = f"Undefined name {name!r} in {context}: {expr}"
        raise ModelError(msg)

    return _IDENT_RE.sub(replace, expr)


class _Normalizer:
    """Accumulates namespaced definitions across populations and connections."""

    def __init__(self, spec: ModelSpecification) -> None:
        self.spec = spec
        self.state_variables: list[str] = []
        self.parameters: dict[str, ParameterValue] = {}
        self.odes: dict[str, str] = {}
        self.ics: dict[str, str] = {}
        self.monitors: dict[str, MonitorDef] = {}
        self.conditionals: list[ResetRule] = []
        self.mechanisms: dict[str, list[str]] = {}
        self.sizes: dict[str, str] = {}
        self.hosts: dict[str, str] = {}
        self.currents: dict[str, list[str]] = {}

    def run(self) -> Model:
        if not self.spec.populations:
            msg = "Model must define at least one population"
            raise ModelError(msg)
        names = [p.name for p in self.spec.populations]
        if len(set(names)) != len(names):
            msg = f"Population names must be unique: {names}"
            raise ModelError(msg)

        blocks = {p.name: self._prepare_population(p) for p in self.spec.populations}
        for population in self.spec.populations:
            self._add_population(population, *blocks[population.name])
        for connection in self.spec.connections:
            self._add_connection(connection)
        if not self.state_variables:
            msg = "Model defines no state variables"
            raise ModelError(msg)

        for var, expr in self.odes.items():
            owner = self.sizes[var][: -len(SIZE_NAME) - 1]
            terms = self.currents.get(owner, [])
            current = f"({' + '.join(terms)})" if terms else "0"
            self.odes[var] = expr.replace(_CURRENT_SENTINEL, current)

        return Model(
            specification=self.spec,
            state_variables=self.state_variables,
            parameters=self.parameters,
            odes=self.odes,
            ics=self.ics,
            monitors=self.monitors,
            conditionals=self.conditionals,
            mechanisms=self.mechanisms,
            sizes=self.sizes,
        )

    def _prepare_population(self, population: PopulationSpec) -> tuple[_Block, list[tuple[str, _Block]]]:
        block = parse_equations(population.equations)
        mech_names = list(dict.fromkeys([*population.mechanism_list, *block.mechanisms]))
        mech_blocks = [(name, parse_equations(get_mechanism(name))) for name in mech_names]
        local_states = list(block.odes) + [v for _, b in mech_blocks for v in b.odes]
        if not local_states:
            msg = f"Population {population.name!r} defines no state variables"
            raise ModelError(msg)
        self.hosts[population.name] = f"{population.name}_{local_states[0]}"
        return block, mech_blocks

    def _add_population(
        self,
        population: PopulationSpec,
        block: _Block,
        mech_blocks: list[tuple[str, _Block]],
    ) -> None:
        prefix = population.name
        size_param = f"{prefix}_{SIZE_NAME}"
        local: dict[str, str] = {SIZE_NAME: size_param}

        params: dict[str, ParameterValue] = {}
        states: list[str] = list(block.odes)
        for name, mech in mech_blocks:
            params.update(mech.parameters)
            for var in mech.odes:
                if var in states:
                    msg = f"State variable {var!r} of mechanism {name!r} collides in {prefix!r}"
                    raise ModelError(msg)
                states.append(var)
        params.update(block.parameters)
        params.update(population.parameters)

        for name in [*params, *states, *block.monitors]:
            local[name] = f"{prefix}_{name}"
        mech_local = dict(local)
        mech_local[HOST] = self.hosts[prefix]

        self.parameters.update({local[name]: value for name, value in params.items()})
        self.parameters[size_param] = population.size

        for context_block, mapping in [(block, local)] + [(m, mech_local) for _, m in mech_blocks]:
            for var, expr in context_block.odes.items():
                full = local[var]
                self.state_variables.append(full)
                self.odes[full] = _namespace(expr, mapping, f"d{var}/dt")
                self.ics[full] = _namespace(context_block.ics.get(var, "0"), mapping, f"{var}(0)")
                self.sizes[full] = size_param
            self._add_monitors(context_block, mapping, prefix, size_param)
            self._add_conditionals(context_block, mapping)
            self.currents.setdefault(prefix, []).extend(
                _namespace(expr, mapping, "@current") for expr in context_block.currents
            )
        self.mechanisms[prefix] = [name for name, _ in mech_blocks]

    def _add_connection(self, connection: Any) -> None:  # noqa: ANN401
        for end in (connection.source, connection.target):
            if end not in self.hosts:
                msg = f"Connection {connection.name!r} references unknown population {end!r}"
                raise ModelError(msg)
        prefix = f"{connection.source}_{connection.target}"
        size_param = f"{connection.target}_{SIZE_NAME}"
        mech_blocks = [(name, parse_equations(get_mechanism(name))) for name in connection.mechanism_list]

        params: dict[str, ParameterValue] = {}
        for _, mech in mech_blocks:
            params.update(mech.parameters)
        params.update(connection.parameters)

        local: dict[str, str] = {
            f"{HOST}_pre": self.hosts[connection.source],
            f"{HOST}_post": self.hosts[connection.target],
        }
        for name in params:
            local[name] = f"{prefix}_{name}"
        for _, mech in mech_blocks:
            for var in [*mech.odes, *mech.monitors]:
                local[var] = f"{prefix}_{var}"
        self.parameters.update({local[name]: value for name, value in params.items()})

        for _, mech in mech_blocks:
            for var, expr in mech.odes.items():
                full = local[var]
                if full in self.odes:
                    msg = f"State variable {full!r} defined twice in connection {connection.name!r}"
                    raise ModelError(msg)
                self.state_variables.append(full)
                self.odes[full] = _namespace(expr, local, f"d{var}/dt")
                self.ics[full] = _namespace(mech.ics.get(var, "0"), local, f"{var}(0)")
                self.sizes[full] = size_param
            self._add_monitors(mech, local, prefix, size_param)
            self._add_conditionals(mech, local)
            self.currents.setdefault(connection.target, []).extend(
                _namespace(expr, local, "@current") for expr in mech.currents
            )
        self.mechanisms[connection.name] = [name for name, _ in mech_blocks]

    def _add_monitors(
        self,
        block: _Block,
        mapping: Mapping[str, str],
        prefix: str,
        size_param: str,
    ) -> None:
        for name, monitor in block.monitors.items():
            full = f"{prefix}_{name}"
            if monitor.is_spike_monitor:
                variable = mapping.get(monitor.variable or "")
                if variable is None or variable not in self.odes:
                    msg = f"Spike monitor on unknown state variable {monitor.variable!r}"
                    raise ModelError(msg)
                self.monitors[full] = MonitorDef(
                    variable=variable,
                    threshold=_namespace(monitor.threshold or "0", mapping, f"monitor {name}"),
                )
            else:
                self.monitors[full] = MonitorDef(
                    expression=_namespace(monitor.expression, mapping, f"monitor {name}"),
                )
            self.sizes[full] = size_param

    def _add_conditionals(self, block: _Block, mapping: Mapping[str, str]) -> None:
        for rule in block.conditionals:
            variable = mapping.get(rule.variable)
            if variable is None:
                msg = f"Reset rule targets unknown variable {rule.variable!r}"
                raise ModelError(msg)
            self.conditionals.append(
                ResetRule(
                    condition=_namespace(rule.condition, mapping, "if"),
                    variable=variable,
                    expression=_namespace(rule.expression, mapping, "if"),
                ),
            )


RawModel = Union[Model, ModelSpecification, dict, str, list, tuple]


def normalize_specification(spec: ModelSpecification) -> Model:
    """Normalize a structural specification into a Model."""
    return _Normalizer(spec).run()


def check_model(raw: RawModel) -> Model:
    """Normalize any supported model input.

    Accepts a Model (returned unchanged), a ModelSpecification, a mapping
    with ``populations``/``connections`` or population fields, equation text,
    or a list of equation strings.
    """
    if isinstance(raw, Model):
        return raw
    try:
        if isinstance(raw, ModelSpecification):
            spec = raw
        elif isinstance(raw, str):
            spec = ModelSpecification(populations=[PopulationSpec(equations=raw)])
        elif isinstance(raw, (list, tuple)):
            text = "; ".join(str(line) for line in raw)
            spec = ModelSpecification(populations=[PopulationSpec(equations=text)])
        elif isinstance(raw, dict):
            if "populations" in raw or "connections" in raw:
                spec = ModelSpecification.model_validate(raw)
            else:
                spec = ModelSpecification(populations=[PopulationSpec.model_validate(raw)])
        else:
            msg = f"Unsupported model input: {type(raw).__name__}"
            raise ModelError(msg)
    except ValidationError as e:
        raise ModelError(str(e)) from e
    return normalize_specification(spec)


def extract_vary_statement(raw: RawModel, vary: Any) -> tuple[RawModel, Any]:  # noqa: ANN401
    """Split a trailing ``; vary(name=[values])`` statement off equation text.

    The statement becomes a variation row on the default population and
    replaces any ``vary`` passed in.
    """
    if not isinstance(raw, str):
        return raw, vary
    match = _VARY_STATEMENT_RE.search(raw)
    if match is None:
        return raw, vary
    body = match.group("body")
    name, _, values = body.partition("=")
    try:
        parsed = ast.literal_eval(values.strip())
    except (ValueError, SyntaxError) as e:
        msg = f"Invalid vary statement: {match.group(1)!r}"
        raise ConfigurationError(msg) from e
    stripped = raw[: match.start()] + raw[match.end():]
    return stripped, [(DEFAULT_POPULATION, name.strip(), list(parsed))]


def apply_initial_conditions(
    model: Model,
    ic: list[float] | dict[str, Any],
) -> Model:
    """Return a copy of ``model`` with initial conditions overridden.

    A list holds one value per cell of every state variable, in
    ``state_variables`` order. A mapping names state variables directly.
    """
    ics = dict(model.ics)
    if isinstance(ic, dict):
        for name, value in ic.items():
            if name not in ics:
                msg = f"Initial condition for unknown state variable {name!r}"
                raise ConfigurationError(msg)
            ics[name] = _ic_literal(value)
    else:
        counts = [model.cell_count(var) for var in model.state_variables]
        if len(ic) != sum(counts):
            msg = (
                f"Incorrect number of initial conditions: {sum(counts)} values are "
                f"needed for {len(counts)} state variables, got {len(ic)}"
            )
            raise ConfigurationError(msg)
        offset = 0
        for var, count in zip(model.state_variables, counts):
            values = list(ic[offset: offset + count])
            ics[var] = _ic_literal(values[0] if count == 1 else values)
            offset += count
    return model.model_copy(update={"ics": ics})


def _ic_literal(value: Any) -> str:  # noqa: ANN401
    values = value if isinstance(value, (list, tuple)) else [value]
    for v in values:
        if not isinstance(v, (int, float)) or not math.isfinite(v):
            msg = f"Initial conditions must be finite numbers, got {value!r}"
            raise ConfigurationError(msg)
    if isinstance(value, (list, tuple)):
        return repr([float(v) for v in value])
    return repr(float(value))
