# Copyright (c) Syntropy Systems
"""Batch-cluster job files, submission scripts and job execution."""
from __future__ import annotations

import importlib
import logging
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, cast

import yaml

from simstudy.errors import ConfigurationError, SimStudyError
from simstudy.models.model import Model
from simstudy.models.options import SimulatorOptions, delegate_path
from simstudy.models.study import ModificationSet, parse_modification_set

if TYPE_CHECKING:
    from simstudy.models.study import StudyDescriptor
    from simstudy.results import ResultRecord
    from simstudy.study import StudyStore

logger = logging.getLogger(__name__)

BATCH_DIR = "batch"
SUBMIT_SCRIPT = "submit.sh"

# Options that only make sense for the submitting process
_JOB_EXCLUDED_OPTIONS = ("cluster_flag", "parallel_flag", "sim_id", "experiment")


def _serialize_set(modifications: ModificationSet) -> list[list[Any]]:
    return [list(mod.as_tuple()) for mod in modifications]


def resolve_delegate(path: str) -> Callable[..., Any]:
    """Import a delegate from its ``module:qualname`` path."""
    module_name, _, qualname = path.partition(":")
    if not module_name or not qualname:
        msg = f"Delegate path must be 'module:qualname', got {path!r}"
        raise ConfigurationError(msg)
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        msg = f"Cannot import delegate {path!r}: {e}"
        raise ConfigurationError(msg) from e
    if not callable(obj):
        msg = f"Delegate {path!r} is not callable"
        raise ConfigurationError(msg)
    return cast("Callable[..., Any]", obj)


class BatchSubmitter:
    """Writes one YAML job file per group of variants and a ``qsub`` script."""

    def submit(  # noqa: PLR0913
        self,
        descriptor: StudyDescriptor,
        modification_sets: list[ModificationSet],
        *,
        model: Model,
        base_modifications: ModificationSet,
        options: SimulatorOptions,
        store: StudyStore,
    ) -> StudyDescriptor:
        """Write job artifacts for every variant and submit them when possible.

        ``model`` is the normalized model before ``base_modifications``.
        Returns ``descriptor`` marked ``submitted``; results are produced
        by the jobs.
        """
        batch_dir = store.study_dir / BATCH_DIR
        (batch_dir / "logs").mkdir(parents=True, exist_ok=True)

        job_options = options.to_record()
        for name in _JOB_EXCLUDED_OPTIONS:
            job_options.pop(name, None)
        job_options["save_data_flag"] = True
        job_options["study_dir"] = str(store.study_dir)

        sims = list(enumerate(modification_sets, start=1))
        groups = [sims[i: i + options.sims_per_job] for i in range(0, len(sims), options.sims_per_job)]
        commands: list[list[str]] = []
        for job_index, group in enumerate(groups, start=1):
            job_file = batch_dir / f"job{job_index}.yaml"
            job = {
                "study_dir": str(store.study_dir),
                "model": model.model_dump(mode="json"),
                "modifications": _serialize_set(base_modifications),
                "options": job_options,
                "experiment": delegate_path(options.delegate) if options.delegate else None,
                "experiment_options": options.experiment_options,
                "sims": [
                    {"sim_id": sim_id, "modifications": _serialize_set(mods)}
                    for sim_id, mods in group
                ],
            }
            with job_file.open("w") as f:
                yaml.safe_dump(job, f, sort_keys=False)
            store.mark_batch(descriptor, [sim_id for sim_id, _ in group], str(batch_dir), str(job_file))
            commands.append(self._submit_command(options, batch_dir, job_index, job_file))

        script = batch_dir / SUBMIT_SCRIPT
        lines = ["#!/bin/sh", *(shlex.join(command) for command in commands)]
        script.write_text("\n".join(lines) + "\n")
        script.chmod(0o755)

        if options.submit_jobs and shutil.which(options.submit_command):
            for command in commands:
                result = subprocess.run(command, capture_output=True, text=True, check=False)  # noqa: S603
                if result.returncode != 0:
                    msg = f"Job submission failed: {result.stderr.strip() or result.stdout.strip()}"
                    raise SimStudyError(msg)
                logger.info("submitted %s", result.stdout.strip())
        else:
            logger.warning(
                "%s not available; submit jobs manually with %s",
                options.submit_command,
                script,
            )

        store.update_study_status(descriptor, "submitted")
        return descriptor

    def _submit_command(
        self,
        options: SimulatorOptions,
        batch_dir: Path,
        job_index: int,
        job_file: Path,
    ) -> list[str]:
        logs = batch_dir / "logs"
        return [
            options.submit_command,
            "-V",
            "-cwd",
            "-N",
            f"{options.prefix}_job{job_index}",
            "-l",
            f"h_vmem={options.memory_limit}",
            "-o",
            str(logs / f"job{job_index}.out"),
            "-e",
            str(logs / f"job{job_index}.err"),
            "-b",
            "y",
            sys.executable,
            "-m",
            "simstudy.cli.main",
            "run-job",
            str(job_file),
        ]


def load_job(job_file: Path) -> dict[str, Any]:
    """Read and check a job file."""
    with job_file.open() as f:
        job = yaml.safe_load(f)
    if not isinstance(job, dict):
        msg = f"Job file {job_file} must contain a mapping"
        raise ConfigurationError(msg)
    for key in ("model", "options", "sims"):
        if key not in job:
            msg = f"Job file {job_file} must have '{key}' field"
            raise ConfigurationError(msg)
    return cast("dict[str, Any]", job)


def run_job(job_file: Path) -> list[list[ResultRecord] | StudyDescriptor]:
    """Run every variant of a job file in this process.

    Each variant reuses its record in the study database, so finished
    variants are loaded rather than recomputed.
    """
    from simstudy.simulate import StudyOrchestrator  # noqa: PLC0415
    from simstudy.vary import VariationSpec  # noqa: PLC0415

    job = load_job(job_file)
    model = Model.model_validate(job["model"])
    overrides: dict[str, Any] = {"modifications": parse_modification_set(job.get("modifications"))}
    if job.get("experiment"):
        overrides["experiment"] = resolve_delegate(job["experiment"])
        overrides["experiment_options"] = job.get("experiment_options") or {}
    base = SimulatorOptions.build(job["options"], **overrides)

    orchestrator = StudyOrchestrator()
    outcomes: list[list[ResultRecord] | StudyDescriptor] = []
    for sim in job["sims"]:
        logger.info("running sim %s from %s", sim["sim_id"], job_file)
        vary = VariationSpec.from_sets([sim["modifications"]])
        outcomes.append(
            orchestrator.simulate(model, vary=vary, options=base, sim_id=int(sim["sim_id"])),
        )
    return outcomes
