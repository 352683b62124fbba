# Copyright (c) Syntropy Systems
"""Registry of reusable mechanism equation blocks.

A mechanism is written in the same statement language as population
equations. ``X`` refers to the host population's first state variable
(``X_pre``/``X_post`` for connection mechanisms), and ``@current += expr``
adds a term to the host's ``@current``.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from simstudy.errors import ModelError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

MECHANISM_SUFFIX = ".eqs"

BUILTIN_MECHANISMS: dict[str, str] = {
    "iNa": """
        gNa = 120; ENa = 50
        dm/dt = (2.5-0.1*(X+65))/(exp(2.5-0.1*(X+65))-1)*(1-m) - 4*exp(-(X+65)/18)*m
        dh/dt = 0.07*exp(-(X+65)/20)*(1-h) - 1/(exp(3-0.1*(X+65))+1)*h
        m(0) = 0.05; h(0) = 0.6
        @current += -gNa*m**3*h*(X-ENa)
    """,
    "iK": """
        gK = 36; EK = -77
        dn/dt = (0.1-0.01*(X+65))/(exp(1-0.1*(X+65))-1)*(1-n) - 0.125*exp(-(X+65)/80)*n
        n(0) = 0.3
        @current += -gK*n**4*(X-EK)
    """,
    "iLeak": """
        gLeak = 0.3; ELeak = -54.4
        @current += -gLeak*(X-ELeak)
    """,
    "iM": """
        gM = 1; EM = -100; tauM = 100
        dw/dt = (1/(1+exp(-(X+35)/10))-w)/tauM
        w(0) = 0
        @current += -gM*w*(X-EM)
    """,
    "iAMPA": """
        gSYN = 0.1; ESYN = 0; tauD = 2; tauR = 0.4
        ds/dt = -s/tauD + ((1-s)/tauR)*(1+tanh(mean(X_pre)/10))/2
        s(0) = 0
        @current += -gSYN*s*(X_post-ESYN)
    """,
    "iGABAa": """
        gSYN = 0.1; ESYN = -80; tauD = 10; tauR = 0.5
        ds/dt = -s/tauD + ((1-s)/tauR)*(1+tanh(mean(X_pre)/10))/2
        s(0) = 0
        @current += -gSYN*s*(X_post-ESYN)
    """,
}

_registry: dict[str, str] = dict(BUILTIN_MECHANISMS)


def register_mechanism(name: str, equations: str) -> None:
    """Register (or replace) a mechanism under ``name``."""
    if not name.isidentifier():
        msg = f"Mechanism name must be an identifier: {name!r}"
        raise ValueError(msg)
    _registry[name] = equations
    logger.debug("registered mechanism %s", name)


def load_mechanisms(directory: Path) -> list[str]:
    """Register every ``*.eqs`` file in ``directory``, named by file stem.

    Call once before simulating; returns the registered names.
    """
    names: list[str] = []
    for path in sorted(directory.glob(f"*{MECHANISM_SUFFIX}")):
        register_mechanism(path.stem, path.read_text())
        names.append(path.stem)
    return names


def get_mechanism(name: str) -> str:
    """Return the equations of a registered mechanism."""
    try:
        return _registry[name]
    except KeyError as e:
        msg = f"Unknown mechanism: {name!r}"
        raise ModelError(msg) from e


def list_mechanisms() -> list[str]:
    """Return registered mechanism names in sorted order."""
    return sorted(_registry)


def reset_registry() -> None:
    """Restore the registry to the built-in mechanisms."""
    _registry.clear()
    _registry.update(BUILTIN_MECHANISMS)
