# Copyright (c) Syntropy Systems
"""Generate fixed-step numpy solver modules from normalized models.

A generated module exposes ``OUTPUT_VARIABLES``, ``solve_ode(params_file)``
and a ``__main__`` entry (``python solve_ode_<key>.py PARAMS OUTPUT``)
that writes the outputs to an ``.npz`` file.
"""
from __future__ import annotations

import hashlib
import importlib.util
import json
import logging
import py_compile
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from simstudy.equations import CONSTANTS, FUNCTIONS
from simstudy.errors import ArtifactGenerationError
from simstudy.storage import write_atomic

if TYPE_CHECKING:
    from types import ModuleType

    from simstudy.models.model import Model
    from simstudy.models.options import SimulatorOptions

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "solve_ode_"
KEY_LENGTH = 16

SOLVER_FAMILIES = {
    "euler": "euler",
    "rk1": "euler",
    "rk2": "rk2",
    "modified_euler": "rk2",
    "rk4": "rk4",
    "rungekutta": "rk4",
    "rk": "rk4",
}

_IDENT_RE = re.compile(r"(?<![\w.])([A-Za-z_]\w*)")

_HEADER = '''\
# Generated by simstudy; do not edit.
"""Fixed-step {solver} solver for model structure {key}."""
import json
import sys

import numpy as np

OUTPUT_VARIABLES = {outputs!r}
SOLVER = {solver!r}

exp = np.exp
log = np.log
log10 = np.log10
sqrt = np.sqrt
sin = np.sin
cos = np.cos
tan = np.tan
tanh = np.tanh
sinh = np.sinh
cosh = np.cosh
abs = np.abs
minimum = np.minimum
maximum = np.maximum
where = np.where
mean = np.mean
sum = np.sum
pi = np.pi


def heaviside(x):
    return np.heaviside(x, 0.5)


def _value(value):
    if isinstance(value, list):
        return np.asarray(value, dtype=float)
    return value


def solve_ode(params_file):
    with open(params_file) as f:
        config = json.load(f)
    p = config["parameters"]
    t0, t1 = (float(x) for x in config["tspan"])
    dt = float(config["dt"])
    dsfact = int(config.get("downsample_factor", 1))
    seed = config.get("random_seed", "shuffle")
    rng = np.random.default_rng(None if seed == "shuffle" else int(seed))

    def randn(*shape):
        return rng.standard_normal(shape)

    def rand(*shape):
        return rng.random(shape)

'''

_STEPS = {
    "euler": """\
    def _step(t, state):
        k1 = _rhs(t, *state)
        return tuple(x + dt * a for x, a in zip(state, k1))
""",
    "rk2": """\
    def _step(t, state):
        k1 = _rhs(t, *state)
        k2 = _rhs(t + dt / 2, *(x + dt / 2 * a for x, a in zip(state, k1)))
        return tuple(x + dt * b for x, b in zip(state, k2))
""",
    "rk4": """\
    def _step(t, state):
        k1 = _rhs(t, *state)
        k2 = _rhs(t + dt / 2, *(x + dt / 2 * a for x, a in zip(state, k1)))
        k3 = _rhs(t + dt / 2, *(x + dt / 2 * b for x, b in zip(state, k2)))
        k4 = _rhs(t + dt, *(x + dt * c for x, c in zip(state, k3)))
        return tuple(
            x + dt / 6 * (a + 2 * b + 2 * c + d)
            for x, a, b, c, d in zip(state, k1, k2, k3, k4)
        )
""",
}

_LOOP = """\
    nsteps = int(round((t1 - t0) / dt))
    record = range(0, nsteps + 1, dsfact)
    t = t0
    first = _observe(t, state, state)
    time = np.zeros(len(record))
    outputs = [np.zeros((len(record), np.size(x))) for x in first]
    time[0] = t
    for j, x in enumerate(first):
        outputs[j][0] = x
    k = 1
    for i in range(1, nsteps + 1):
        prev = state
        state = _reset(t0 + i * dt, _step(t, state))
        t = t0 + i * dt
        if i % dsfact == 0:
            time[k] = t
            for j, x in enumerate(_observe(t, prev, state)):
                outputs[j][k] = x
            k += 1
    return (time, *outputs)


def main(argv):
    params_file, output_file = argv[1], argv[2]
    outputs = solve_ode(params_file)
    np.savez(output_file, **dict(zip(OUTPUT_VARIABLES, outputs)))


if __name__ == "__main__":
    main(sys.argv)
"""


def hash_json(obj: Any, *, sort_keys: bool = True) -> str:  # noqa: ANN401
    """Stable SHA-256 over a canonical JSON representation of ``obj``."""
    text = json.dumps(obj, sort_keys=sort_keys, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class SolverArtifact:
    """A generated solver module on disk."""

    path: Path
    key: str
    solver: str
    output_variables: list[str] = field(default_factory=list)

    def load(self) -> ModuleType:
        """Import the module (cached per path)."""
        return load_solver_module(self.path)


_loaded_modules: dict[str, ModuleType] = {}


def load_solver_module(path: Path) -> ModuleType:
    """Import a generated solver module from ``path``."""
    cache_key = str(path.resolve())
    cached = _loaded_modules.get(cache_key)
    if cached is not None:
        return cached

    spec = importlib.util.spec_from_file_location(f"simstudy_{path.stem}", path)
    if spec is None or spec.loader is None:
        msg = f"Failed to load solver module from {path}"
        raise ArtifactGenerationError(msg)
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except (OSError, SyntaxError, ImportError) as e:
        msg = f"Failed to import solver module {path}: {e}"
        raise ArtifactGenerationError(msg) from e
    if not callable(getattr(module, "solve_ode", None)):
        msg = f"Solver module missing solve_ode(): {path}"
        raise ArtifactGenerationError(msg)
    _loaded_modules[cache_key] = module
    return module


def artifact_from_file(path: Path) -> SolverArtifact:
    """Describe an existing solver module without regenerating it."""
    if not path.exists():
        msg = f"Solver file not found: {path}"
        raise ArtifactGenerationError(msg)
    module = load_solver_module(path)
    return SolverArtifact(
        path=path,
        key=path.stem.removeprefix(ARTIFACT_PREFIX),
        solver=str(getattr(module, "SOLVER", "")),
        output_variables=list(getattr(module, "OUTPUT_VARIABLES", [])),
    )


class SolverCodeGenerator:
    """Writes content-addressed solver modules.

    The file name is derived from the model structure and solver family,
    so models differing only in parameter values share one module.
    """

    def artifact_key(self, model: Model, solver: str) -> str:
        family = SOLVER_FAMILIES[solver]
        return hash_json({"structure": model.structure(), "solver": family})[:KEY_LENGTH]

    def render(self, model: Model, solver: str) -> str:
        """Return the source of the solver module for ``model``."""
        family = SOLVER_FAMILIES[solver]
        key = self.artifact_key(model, solver)
        states = list(model.state_variables)
        unpack = ", ".join(states) + ","
        lines = [_HEADER.format(solver=family, key=key, outputs=model.output_variables)]

        for name in self._referenced_parameters(model):
            if name in model.sizes.values():
                lines.append(f"    {name} = int(p[{name!r}])\n")
            else:
                lines.append(f"    {name} = _value(p[{name!r}])\n")
        lines.append("\n    t = t0\n")
        for var in states:
            size = model.sizes[var]
            lines.append(f"    {var} = np.zeros({size}) + np.asarray({model.ics[var]}, dtype=float)\n")
        lines.append(f"    state = ({unpack})\n\n")

        lines.append(f"    def _rhs(t, {', '.join(states)}):\n        return (\n")
        for var in states:
            lines.append(f"            np.zeros({model.sizes[var]}) + ({model.odes[var]}),\n")
        lines.append("        )\n\n")

        lines.append(f"    def _reset(t, state):\n        {unpack} = state\n")
        for rule in model.conditionals:
            lines.append(
                f"        {rule.variable} = np.where({rule.condition}, {rule.expression}, {rule.variable})\n",
            )
        lines.append(f"        return ({unpack})\n\n")

        lines.append(f"    def _observe(t, prev, state):\n        {unpack} = state\n        return (\n")
        for var in states:
            lines.append(f"            {var},\n")
        for name, monitor in model.monitors.items():
            if monitor.is_spike_monitor:
                index = states.index(monitor.variable or "")
                threshold = monitor.threshold or "0"
                lines.append(
                    f"            ((prev[{index}] < ({threshold})) & "
                    f"(state[{index}] >= ({threshold}))).astype(float),\n",
                )
            else:
                lines.append(f"            np.zeros({model.sizes[name]}) + ({monitor.expression}),\n")
        lines.append("        )\n\n")

        lines.append(_STEPS[family])
        lines.append("\n")
        lines.append(_LOOP)
        return "".join(lines)

    def _referenced_parameters(self, model: Model) -> list[str]:
        expressions = [*model.odes.values(), *model.ics.values()]
        for monitor in model.monitors.values():
            expressions.extend([monitor.expression, monitor.threshold or ""])
        for rule in model.conditionals:
            expressions.extend([rule.condition, rule.expression])
        names = {match for expr in expressions for match in _IDENT_RE.findall(expr)}
        names.update(model.sizes.values())
        names -= set(model.state_variables) | FUNCTIONS | CONSTANTS
        # sizes first so that ICs and arrays can use them
        sizes = sorted(n for n in names if n in model.sizes.values())
        return sizes + sorted(n for n in names if n not in sizes)

    def resolve_artifact(
        self,
        model: Model,
        options: SimulatorOptions,
        solve_dir: Path,
    ) -> SolverArtifact:
        """Return the solver module for ``model``, writing it when absent."""
        key = self.artifact_key(model, options.solver)
        path = solve_dir / f"{ARTIFACT_PREFIX}{key}.py"
        artifact = SolverArtifact(
            path=path,
            key=key,
            solver=SOLVER_FAMILIES[options.solver],
            output_variables=model.output_variables,
        )
        if path.exists():
            logger.debug("reusing solver file %s", path)
            return artifact

        source = self.render(model, options.solver)
        try:
            compile(source, str(path), "exec")
        except SyntaxError as e:
            msg = f"Generated solver for {key} does not compile: {e}"
            raise ArtifactGenerationError(msg) from e

        try:
            _ = write_atomic(path, source.encode())
        except OSError as e:
            msg = f"Failed to write solver file {path}: {e}"
            raise ArtifactGenerationError(msg) from e

        if options.compile_flag:
            try:
                py_compile.compile(str(path), doraise=True)
            except py_compile.PyCompileError as e:
                msg = f"Failed to compile solver file {path}: {e}"
                raise ArtifactGenerationError(msg) from e

        logger.info("created solver file %s", path)
        return artifact
