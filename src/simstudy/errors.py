# Copyright (c) Syntropy Systems
"""Exception types raised by simstudy."""
from __future__ import annotations


class SimStudyError(Exception):
    """Base class for all simstudy errors."""


class ConfigurationError(SimStudyError, ValueError):
    """Invalid option combination or malformed variation specification."""


class ModelError(SimStudyError, ValueError):
    """Model input could not be normalized."""


class ModificationError(SimStudyError, ValueError):
    """A modification references a missing target or carries an invalid value."""


class ArtifactGenerationError(SimStudyError, RuntimeError):
    """The solver artifact could not be written, compiled or loaded."""


class SimulationError(SimStudyError, RuntimeError):
    """The numerical integration of a variant failed."""
