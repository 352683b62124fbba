# Copyright (c) Syntropy Systems
"""Simulator options recognized by the study orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, ClassVar, Literal, Optional, Union

from pydantic import AliasChoices, ConfigDict, Field, ValidationError, model_validator
from typing_extensions import Self

from simstudy.errors import ConfigurationError

from .base import JSONValue, SimStudyBaseModel

SolverName = Literal["euler", "rk1", "rk2", "modified_euler", "rk4", "rungekutta", "rk"]

# Options that hold callables or variation input and never go to disk as-is
_NON_RECORD_FIELDS = frozenset({"experiment", "optimization", "vary", "modifications"})


def _aliases(name: str, *legacy: str) -> AliasChoices:
    return AliasChoices(name, *legacy)


class SimulatorOptions(SimStudyBaseModel):
    """Every option that gates orchestrator behavior.

    Legacy option names (``timelimits``, ``IC``, ``dsfact``, ...) are
    accepted as aliases of their current names.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    # numerics
    tspan: tuple[float, float] = Field(
        default=(0.0, 100.0), validation_alias=_aliases("tspan", "timelimits"),
    )
    dt: float = 0.01
    solver: SolverName = Field(default="rk4", validation_alias=_aliases("solver", "SOLVER"))
    downsample_factor: int = Field(
        default=1, validation_alias=_aliases("downsample_factor", "dsfact"),
    )
    ic: Optional[Union[list[float], dict[str, Union[float, list[float]]]]] = Field(
        default=None, validation_alias=_aliases("ic", "IC"),
    )
    random_seed: Union[int, Literal["shuffle"]] = "shuffle"

    # saved data
    save_data_flag: bool = False
    overwrite_flag: bool = False
    study_dir: Optional[str] = None
    prefix: str = "study"
    disk_flag: bool = False
    store_model_flag: bool = True
    save_parameters_flag: bool = True
    compile_flag: bool = False

    # cluster computing
    cluster_flag: bool = False
    sims_per_job: int = 1
    memory_limit: str = Field(default="8G", validation_alias=_aliases("memory_limit", "memlimit"))
    submit_command: str = "qsub"
    submit_jobs: bool = True

    # local parallel computing
    parallel_flag: bool = False
    num_cores: int = 4
    parallel_backend: Literal["process", "thread"] = "process"

    # variation and delegates
    vary: Optional[Any] = None
    modifications: Optional[Any] = Field(
        default=None, validation_alias=_aliases("modifications", "override"),
    )
    experiment: Optional[Callable[..., Any]] = None
    optimization: Optional[Callable[..., Any]] = None
    experiment_options: dict[str, Any] = Field(default_factory=dict)

    # set when resuming or dispatching a single variant
    solve_file: Optional[str] = None
    sim_id: Optional[int] = None

    verbose_flag: bool = Field(default=False, validation_alias=_aliases("verbose_flag", "verbose"))

    @model_validator(mode="after")
    def _check_combinations(self) -> Self:
        if self.tspan[1] <= self.tspan[0]:
            msg = f"tspan must be increasing, got {list(self.tspan)}"
            raise ValueError(msg)
        if self.dt <= 0:
            msg = f"dt must be positive, got {self.dt}"
            raise ValueError(msg)
        if self.downsample_factor < 1:
            msg = "downsample_factor must be >= 1"
            raise ValueError(msg)
        if self.num_cores < 1 or self.sims_per_job < 1:
            msg = "num_cores and sims_per_job must be >= 1"
            raise ValueError(msg)
        if self.cluster_flag and self.parallel_flag:
            msg = "cluster_flag and parallel_flag cannot both be set"
            raise ValueError(msg)
        if self.experiment is not None and self.optimization is not None:
            msg = "experiment and optimization cannot both be set"
            raise ValueError(msg)
        # Cluster results and explicit study directories are only useful on disk
        if self.cluster_flag or self.study_dir:
            self.save_data_flag = True
        return self

    @classmethod
    def build(
        cls,
        options: SimulatorOptions | dict[str, Any] | None = None,
        **overrides: Any,  # noqa: ANN401
    ) -> SimulatorOptions:
        """Create validated options from an existing object, a mapping and overrides.

        Raises ConfigurationError for unknown options or invalid values.
        """
        data: dict[str, Any] = {}
        if isinstance(options, SimulatorOptions):
            # raw values, so variation specs and callables are not dumped to dicts
            data.update({name: getattr(options, name) for name in options.model_fields_set})
        elif options:
            data.update(options)
        data.update(overrides)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    @property
    def delegate(self) -> Callable[..., Any] | None:
        """Experiment or optimization procedure to run per variant."""
        return self.experiment or self.optimization

    def to_record(self) -> dict[str, JSONValue]:
        """Return a JSON-safe dump for storing with results and study metadata."""
        data = self.model_dump(mode="json", exclude=set(_NON_RECORD_FIELDS) | {"experiment_options"})
        delegate = self.delegate
        if delegate is not None:
            data["experiment"] = delegate_path(delegate)
        return data


def delegate_path(func: Callable[..., Any]) -> str:
    """Return the ``module:qualname`` import path of a delegate."""
    module = getattr(func, "__module__", None) or "__main__"
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    return f"{module}:{qualname}"
