# Copyright (c) Syntropy Systems
"""Run generated solvers in-process or as child processes."""
from __future__ import annotations

import contextlib
import ctypes
import json
import logging
import os
import signal
import subprocess
import sys
import time
from typing import IO, TYPE_CHECKING, Any

from simstudy.errors import SimulationError
from simstudy.results import ResultRecord
from simstudy.storage import write_atomic

if TYPE_CHECKING:
    from pathlib import Path

    from simstudy.codegen import SolverArtifact
    from simstudy.models.model import Model
    from simstudy.models.options import SimulatorOptions
    from simstudy.models.study import ModificationSet
    from simstudy.storage import ResultStore

logger = logging.getLogger(__name__)

PARAMS_FILE = "params.json"
OUTPUT_FILE = "outputs.npz"


def _die_with_parent() -> None:
    # Linux only: SIGKILL the solver if the study process goes away
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        libc.prctl(1, signal.SIGKILL)  # PR_SET_PDEATHSIG
    except (AttributeError, OSError):
        return


class SolverProcess:
    """A generated solver running as a child process in its own session.

    Output goes to ``solver.log`` in ``run_dir``.
    """

    def __init__(self, argv: list[str], run_dir: Path) -> None:
        self.argv = argv
        self.run_dir = run_dir
        self.log_path = run_dir / "solver.log"
        self._process: subprocess.Popen[bytes] | None = None
        self._log: IO[str] | None = None

    def start(self) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._log = self.log_path.open("w")
        self._process = subprocess.Popen(  # noqa: S603
            self.argv,
            stdout=self._log,
            stderr=subprocess.STDOUT,
            cwd=str(self.run_dir),
            start_new_session=True,
            preexec_fn=_die_with_parent if sys.platform == "linux" else None,  # noqa: PLW1509
        )

    def wait(self) -> int:
        if self._process is None:
            msg = "Solver process was never started"
            raise SimulationError(msg)
        try:
            return self._process.wait()
        finally:
            self._close_log()

    def kill(self, grace_period: float = 2.0) -> None:
        """Terminate the solver's process group, escalating to SIGKILL."""
        if self._process is None or self._process.poll() is not None:
            self._close_log()
            return
        with contextlib.suppress(OSError):
            os.killpg(os.getpgid(self._process.pid), signal.SIGTERM)
        try:
            _ = self._process.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError):
                os.killpg(os.getpgid(self._process.pid), signal.SIGKILL)
            _ = self._process.wait()
        self._close_log()

    def _close_log(self) -> None:
        if self._log is not None:
            self._log.close()
            self._log = None


def write_params_file(
    path: Path,
    parameters: dict[str, Any],
    options: SimulatorOptions,
) -> Path:
    """Write the parameter file a generated solver reads."""
    payload = {
        "parameters": parameters,
        "tspan": list(options.tspan),
        "dt": options.dt,
        "downsample_factor": options.downsample_factor,
        "random_seed": options.random_seed,
    }
    return write_atomic(path, json.dumps(payload, indent=2).encode())


class VariantRunner:
    """Executes one variant against a resolved solver artifact.

    Parameter and output files live in ``run_dir``, which is passed in
    explicitly; the process working directory is never changed.
    """

    def __init__(self, store: ResultStore) -> None:
        self.store = store

    def run(  # noqa: PLR0913
        self,
        model: Model,
        artifact: SolverArtifact,
        parameters: dict[str, Any],
        options: SimulatorOptions,
        run_dir: Path,
        *,
        varied: ModificationSet | None = None,
        sim_id: int | None = None,
        data_file: Path | None = None,
    ) -> ResultRecord:
        """Integrate ``model`` and return its tagged result.

        The result is saved to ``data_file`` when one is given.
        """
        if artifact.output_variables != model.output_variables:
            msg = (
                f"Solver {artifact.path.name} produces {artifact.output_variables}, "
                f"model expects {model.output_variables}"
            )
            raise SimulationError(msg)

        params_file = write_params_file(run_dir / PARAMS_FILE, parameters, options)
        log = logger.info if options.verbose_flag else logger.debug
        log("solving system using %s", artifact.path)

        start = time.perf_counter()
        if options.disk_flag:
            outputs = self._run_on_disk(artifact, params_file, run_dir)
        else:
            outputs = self._run_in_memory(artifact, params_file)
        duration = time.perf_counter() - start
        log("Elapsed time: %.3f seconds", duration)

        record = ResultRecord.from_outputs(
            artifact.output_variables,
            outputs,
            simulator_options=options.to_record(),
            model=model if options.store_model_flag else None,
            sim_id=sim_id,
            duration=duration,
        )
        record.tag_varied(varied or [])
        if data_file is not None:
            self.store.save(record, data_file, store_model=options.store_model_flag)
        return record

    def _run_in_memory(self, artifact: SolverArtifact, params_file: Path) -> list[Any]:
        module = artifact.load()
        try:
            return list(module.solve_ode(str(params_file)))
        except Exception as e:
            msg = f"Solver {artifact.path.name} failed: {e}"
            raise SimulationError(msg) from e

    def _run_on_disk(self, artifact: SolverArtifact, params_file: Path, run_dir: Path) -> list[Any]:
        output_file = run_dir / OUTPUT_FILE
        output_file.unlink(missing_ok=True)
        process = SolverProcess(
            [sys.executable, str(artifact.path), str(params_file), str(output_file)],
            run_dir,
        )
        process.start()
        try:
            code = process.wait()
        except BaseException:
            process.kill()
            raise
        if code != 0:
            msg = f"Solver {artifact.path.name} exited with code {code}; see {process.log_path}"
            raise SimulationError(msg)
        if not output_file.exists():
            msg = f"Solver {artifact.path.name} wrote no output file {output_file}"
            raise SimulationError(msg)
        return self.store.load_outputs(output_file, artifact.output_variables)
