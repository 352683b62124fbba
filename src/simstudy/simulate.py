# Copyright (c) Syntropy Systems
"""Study orchestration: expansion, caching, dispatch and failure recovery.

A study runs a base model across an ordered list of modification sets.
For each variant the orchestrator either loads a saved result or applies
the modifications, resolves a solver and integrates, then aggregates the
results in variant order. Failures during the variant loop are turned
into a returned ``StudyDescriptor`` with ``status == "failed"``.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Optional, Union

from pydantic import ValidationError
from typing_extensions import Self

from simstudy.artifacts import SolverArtifactManager, default_solve_dir
from simstudy.batch import BatchSubmitter
from simstudy.codegen import SolverCodeGenerator
from simstudy.equations import apply_initial_conditions, check_model, extract_vary_statement
from simstudy.errors import ConfigurationError
from simstudy.experiments import strip_recursive_options
from simstudy.models.options import SimulatorOptions
from simstudy.models.study import (
    ModificationSet,
    StudyDescriptor,
    VariantRecord,
    is_structural_set,
    parse_modification_set,
)
from simstudy.modifications import apply_modifications
from simstudy.results import ResultAggregator, ResultRecord
from simstudy.runner import VariantRunner
from simstudy.storage import ResultStore
from simstudy.study import StudyStore, status_fields
from simstudy.vary import VariationSpec, expand_variations

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from simstudy.equations import RawModel
    from simstudy.models.model import Model
    from simstudy.models.study import VariantStatus

logger = logging.getLogger(__name__)

SimulationOutcome = Union[list[ResultRecord], StudyDescriptor]
Variant = tuple[int, ModificationSet]


class FailureRecoveryManager:
    """Protected region around a study's variant loop.

    Records the working directory on entry and restores it on every exit.
    An ``Exception`` raised inside the region marks the variant in
    progress as failed (in the database when ``store`` is set) and is
    suppressed; ``state`` becomes ``"error"`` and ``error`` holds it.
    Other ``BaseException``s propagate after the directory is restored.
    """

    def __init__(self, descriptor: StudyDescriptor, store: StudyStore | None = None) -> None:
        self.descriptor = descriptor
        self.store = store
        self.state: Literal["idle", "running", "success", "error"] = "idle"
        self.error: Exception | None = None
        self.failed_sim_id: int | None = None
        self._cwd: str | None = None
        self._sim_id: int | None = None

    def __enter__(self) -> Self:
        self._cwd = os.getcwd()
        self.state = "running"
        return self

    def begin(self, sim_id: int) -> None:
        """Mark ``sim_id`` as the variant in progress."""
        self._sim_id = sim_id

    def end(self) -> None:
        self._sim_id = None

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        try:
            if exc_val is None:
                self.state = "success"
                return False
            if not isinstance(exc_val, Exception):
                return False
            self.state = "error"
            self.error = exc_val
            self.failed_sim_id = self._sim_id
            logger.error(
                "simulation failed%s: %s",
                f" for sim {self._sim_id}" if self._sim_id is not None else "",
                exc_val,
                exc_info=exc_val,
            )
            if self._sim_id is not None:
                self._mark_failed(self._sim_id, str(exc_val))
            return True
        finally:
            self._restore_cwd()

    def _mark_failed(self, sim_id: int, message: str) -> None:
        if self.store is None:
            self.descriptor.mark(sim_id, **status_fields("failed", error_message=message))
            return
        try:
            self.store.update_status(self.descriptor, sim_id, "failed", error_message=message)
        except (sqlite3.Error, OSError):
            logger.exception("could not record failure of sim %s", sim_id)
            self.descriptor.mark(sim_id, **status_fields("failed", error_message=message))

    def _restore_cwd(self) -> None:
        if self._cwd is not None and os.getcwd() != self._cwd:
            os.chdir(self._cwd)


def _simulate_variant(
    orchestrator: StudyOrchestrator,
    model: Model,
    modifications: ModificationSet,
    options: SimulatorOptions,
    sim_id: int,
) -> SimulationOutcome:
    """Worker entry: run one pre-selected variant through the orchestrator."""
    return orchestrator.simulate(
        model,
        vary=VariationSpec.from_sets([modifications]),
        options=options,
        sim_id=sim_id,
    )


class StudyOrchestrator:
    """Runs studies with injectable collaborators.

    Args:
        normalizer: turns raw model input into a ``Model``
        modifier: applies a modification set to a ``Model``
        generator: resolves solver artifacts for a model
        results: result persistence (``exists``/``load``/``save``)
        submitter: batch-cluster submission
        store_factory: opens a ``StudyStore`` for a study directory
        solve_dir: where solvers go when the study has no directory

    """

    def __init__(  # noqa: PLR0913
        self,
        normalizer: Callable[[Any], Model] = check_model,
        modifier: Callable[[Model, ModificationSet], Model] = apply_modifications,
        generator: Optional[Any] = None,  # noqa: ANN401
        results: Optional[ResultStore] = None,
        submitter: Optional[BatchSubmitter] = None,
        store_factory: Callable[[Path], StudyStore] = StudyStore,
        solve_dir: Optional[Path] = None,
    ) -> None:
        self.normalizer = normalizer
        self.modifier = modifier
        self.generator = generator if generator is not None else SolverCodeGenerator()
        self.results = results if results is not None else ResultStore()
        self.submitter = submitter if submitter is not None else BatchSubmitter()
        self.store_factory = store_factory
        self.solve_dir = solve_dir
        self.runner = VariantRunner(self.results)
        self.artifact_manager: SolverArtifactManager | None = None

    def simulate(
        self,
        model: RawModel,
        vary: object = None,
        options: SimulatorOptions | dict[str, Any] | None = None,
        **kwargs: Any,  # noqa: ANN401
    ) -> SimulationOutcome:
        """Run ``model`` across the variants of ``vary``.

        Returns the ordered results, or a ``StudyDescriptor`` for cluster
        submissions and failed runs. Invalid options or variation specs
        raise ``ConfigurationError`` before any variant runs.
        """
        opts = SimulatorOptions.build(options, **kwargs)
        raw_model, vary = extract_vary_statement(model, vary if vary is not None else opts.vary)

        model0 = self.normalizer(raw_model)
        try:
            base_mods = parse_modification_set(opts.modifications)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
        base_model = self.modifier(model0, base_mods) if base_mods else model0
        if opts.ic is not None:
            base_model = apply_initial_conditions(base_model, opts.ic)

        modification_sets = expand_variations(vary, base_model)
        if opts.sim_id is not None:
            if len(modification_sets) != 1:
                msg = f"sim_id={opts.sim_id} requires exactly one variant, got {len(modification_sets)}"
                raise ConfigurationError(msg)
            variants: list[Variant] = [(opts.sim_id, modification_sets[0])]
        else:
            variants = list(enumerate(modification_sets, start=1))

        if opts.save_data_flag and not opts.study_dir:
            opts = opts.model_copy(update={"study_dir": str(Path(f"{opts.prefix}_study").resolve())})
        store, descriptor = self._open_study(base_model, opts, modification_sets, variants)

        log = logger.info if opts.verbose_flag else logger.debug
        if opts.cluster_flag:
            log("submitting %d variants to the cluster", len(variants))
            return self._run_cluster(model0, base_model, base_mods, opts, variants, store, descriptor)
        if opts.parallel_flag and len(variants) > 1:
            log("running %d variants on %d workers", len(variants), opts.num_cores)
            return self._run_parallel(model0, base_model, base_mods, opts, variants, store, descriptor)
        log("running %d variants sequentially", len(variants))
        return self._run_sequential(base_model, base_mods, opts, variants, store, descriptor)

    # --- study setup ---

    def _open_study(
        self,
        base_model: Model,
        opts: SimulatorOptions,
        modification_sets: list[ModificationSet],
        variants: list[Variant],
    ) -> tuple[StudyStore | None, StudyDescriptor]:
        if not opts.save_data_flag or not opts.study_dir:
            descriptor = StudyDescriptor(
                prefix=opts.prefix,
                base_model=base_model,
                base_simulator_options=opts.to_record(),
                simulations=[VariantRecord(sim_id=sim_id, modifications=mods) for sim_id, mods in variants],
                status="running",
            )
            return None, descriptor

        store = self.store_factory(Path(opts.study_dir))
        if opts.sim_id is not None:
            # a worker reuses the record its parent created
            descriptor = store.load()
            record = descriptor.get_simulation(opts.sim_id)
            if record is None:
                msg = f"Study {store.study_dir} has no sim {opts.sim_id}"
                raise ConfigurationError(msg)
            if [m.as_tuple() for m in record.modifications] != [m.as_tuple() for m in variants[0][1]]:
                msg = f"Modifications of sim {opts.sim_id} differ from the stored study"
                raise ConfigurationError(msg)
            return store, descriptor

        descriptor = store.setup(base_model, opts, modification_sets)
        return store, descriptor

    def _solve_dir(self, opts: SimulatorOptions) -> Path:
        return default_solve_dir(opts, self.solve_dir)

    def _set_status(
        self,
        store: StudyStore | None,
        descriptor: StudyDescriptor,
        sim_id: int,
        status: VariantStatus,
        **fields: Any,  # noqa: ANN401
    ) -> None:
        if store is not None:
            store.update_status(descriptor, sim_id, status, **fields)
        else:
            descriptor.mark(sim_id, **status_fields(status, **fields))

    def _shared_solve_file(
        self,
        base_model: Model,
        opts: SimulatorOptions,
        variants: list[Variant],
    ) -> str | None:
        """Resolve one solver for all variants when none changes structure."""
        if opts.solve_file or opts.delegate is not None:
            return opts.solve_file
        if any(is_structural_set(mods) for _, mods in variants):
            return None
        artifact = self.generator.resolve_artifact(base_model, opts, self._solve_dir(opts))
        return str(artifact.path)

    # --- sequential loop ---

    def _run_sequential(  # noqa: PLR0913
        self,
        base_model: Model,
        base_mods: ModificationSet,
        opts: SimulatorOptions,
        variants: list[Variant],
        store: StudyStore | None,
        descriptor: StudyDescriptor,
    ) -> SimulationOutcome:
        aggregator = ResultAggregator(len(variants))
        with FailureRecoveryManager(descriptor, store) as guard, ExitStack() as stack:
            manager = SolverArtifactManager(
                self.generator,
                opts,
                self._solve_dir(opts),
                [mods for _, mods in variants],
            )
            self.artifact_manager = manager
            if store is not None:
                runs_dir = store.runs_dir
            else:
                runs_dir = Path(stack.enter_context(tempfile.TemporaryDirectory()))

            for sim_id, mods in variants:
                guard.begin(sim_id)
                record = descriptor.get_simulation(sim_id)
                data_file = (
                    Path(record.data_file) if store is not None and record and record.data_file else None
                )
                if data_file is not None and not opts.overwrite_flag and self.results.exists(data_file):
                    logger.info("loading data from %s", data_file)
                    _ = aggregator.add(self.results.load(data_file))
                    if record is not None and record.status != "finished":
                        self._set_status(store, descriptor, sim_id, "finished")
                    guard.end()
                    continue

                results = self._run_variant(
                    base_model, base_mods, mods, opts, manager,
                    sim_id=sim_id, run_dir=runs_dir / f"sim{sim_id}", data_file=data_file,
                    store=store, descriptor=descriptor,
                )
                _ = aggregator.add(results)
                guard.end()

        if guard.state == "error":
            return self._failure(descriptor, store, opts, guard.error, aggregator.results)
        descriptor.attach_results(aggregator.results)
        if opts.sim_id is None:
            if store is not None:
                store.update_study_status(descriptor, "finished")
            else:
                descriptor.status = "finished"
        return aggregator.results

    def _run_variant(  # noqa: PLR0913
        self,
        base_model: Model,
        base_mods: ModificationSet,
        mods: ModificationSet,
        opts: SimulatorOptions,
        manager: SolverArtifactManager,
        *,
        sim_id: int,
        run_dir: Path,
        data_file: Path | None,
        store: StudyStore | None,
        descriptor: StudyDescriptor,
    ) -> list[ResultRecord]:
        """Modify, resolve, integrate, tag and persist one variant."""
        self._set_status(store, descriptor, sim_id, "started")
        model = self.modifier(base_model, mods) if mods else base_model
        if mods and opts.ic is not None:
            model = apply_initial_conditions(model, opts.ic)
        varied = [*base_mods, *mods]

        if opts.delegate is not None:
            results = self._run_delegate(model, opts, varied, sim_id)
            if data_file is not None:
                self.results.save(results, data_file, store_model=opts.store_model_flag)
            duration = sum(r.duration or 0.0 for r in results)
            self._set_status(store, descriptor, sim_id, "finished", duration=duration)
            return results

        resolved = manager.resolve(model)
        result = self.runner.run(
            model,
            resolved.artifact,
            resolved.parameters,
            opts,
            run_dir,
            varied=varied,
            sim_id=sim_id,
            data_file=data_file,
        )
        self._set_status(
            store, descriptor, sim_id, "finished",
            duration=result.duration, solve_file=str(resolved.artifact.path),
        )
        return [result]

    def _run_delegate(
        self,
        model: Model,
        opts: SimulatorOptions,
        varied: ModificationSet,
        sim_id: int,
    ) -> list[ResultRecord]:
        delegate = opts.delegate
        if delegate is None:
            msg = "No experiment or optimization delegate set"
            raise ConfigurationError(msg)
        inner = strip_recursive_options(opts)
        outcome = delegate(model, inner, **opts.experiment_options)
        results = [outcome] if isinstance(outcome, ResultRecord) else list(outcome)
        for result in results:
            result.tag_varied(varied)
            result.sim_id = sim_id
        return results

    def _failure(
        self,
        descriptor: StudyDescriptor,
        store: StudyStore | None,
        opts: SimulatorOptions,
        error: Exception | None,
        results: list[ResultRecord],
    ) -> StudyDescriptor:
        message = str(error) if error is not None else "unknown error"
        if store is not None and opts.sim_id is None:
            store.update_study_status(descriptor, "failed", message)
        else:
            descriptor.status = "failed"
            descriptor.error = message
        descriptor.attach_results(results)
        return descriptor

    # --- fan-out strategies ---

    def _run_parallel(  # noqa: PLR0913
        self,
        model0: Model,
        base_model: Model,
        base_mods: ModificationSet,
        opts: SimulatorOptions,
        variants: list[Variant],
        store: StudyStore | None,
        descriptor: StudyDescriptor,
    ) -> SimulationOutcome:
        aggregator = ResultAggregator(len(variants))
        outcomes: list[SimulationOutcome | None] = [None] * len(variants)
        with FailureRecoveryManager(descriptor, store) as guard:
            solve_file = self._shared_solve_file(base_model, opts, variants)
            worker_options = opts.model_copy(update={
                "parallel_flag": False,
                "vary": None,
                "modifications": [list(m.as_tuple()) for m in base_mods],
                "solve_file": solve_file,
            })
            executor: Executor
            workers = min(opts.num_cores, len(variants))
            if opts.parallel_backend == "thread":
                executor = ThreadPoolExecutor(max_workers=workers)
            else:
                executor = ProcessPoolExecutor(max_workers=workers)
            with executor:
                futures = {
                    executor.submit(_simulate_variant, self, model0, mods, worker_options, sim_id): index
                    for index, (sim_id, mods) in enumerate(variants)
                }
                for future in as_completed(futures):
                    index = futures[future]
                    guard.begin(variants[index][0])
                    outcomes[index] = future.result()
                    guard.end()

        if store is not None:
            descriptor = store.load()
        failed: StudyDescriptor | None = None
        for (sim_id, _), outcome in zip(variants, outcomes):
            if isinstance(outcome, StudyDescriptor):
                failed = failed or outcome
                descriptor.mark(sim_id, **status_fields("failed", error_message=outcome.error))
                _ = aggregator.add(outcome.results)
            elif outcome is not None:
                if store is None:
                    descriptor.mark(sim_id, status="finished")
                _ = aggregator.add(outcome)

        if guard.state == "error" or failed is not None:
            error = guard.error or RuntimeError(failed.error if failed else "worker failed")
            return self._failure(descriptor, store, opts, error, aggregator.results)
        descriptor.attach_results(aggregator.results)
        if store is not None and opts.sim_id is None:
            store.update_study_status(descriptor, "finished")
        return aggregator.results

    def _run_cluster(  # noqa: PLR0913
        self,
        model0: Model,
        base_model: Model,
        base_mods: ModificationSet,
        opts: SimulatorOptions,
        variants: list[Variant],
        store: StudyStore | None,
        descriptor: StudyDescriptor,
    ) -> StudyDescriptor:
        if store is None:
            msg = "Cluster submission requires a study directory"
            raise ConfigurationError(msg)
        solve_file = self._shared_solve_file(base_model, opts, variants)
        job_options = opts.model_copy(update={"solve_file": solve_file})
        return self.submitter.submit(
            descriptor,
            [mods for _, mods in variants],
            model=model0,
            base_modifications=base_mods,
            options=job_options,
            store=store,
        )


def simulate_model(
    model: RawModel,
    vary: object = None,
    options: SimulatorOptions | dict[str, Any] | None = None,
    **kwargs: Any,  # noqa: ANN401
) -> SimulationOutcome:
    """Simulate ``model`` across ``vary`` with the default collaborators.

    Options may be given as a ``SimulatorOptions``, a mapping, keyword
    arguments, or a combination (keywords win).
    """
    return StudyOrchestrator().simulate(model, vary=vary, options=options, **kwargs)
