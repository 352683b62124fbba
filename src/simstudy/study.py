# Copyright (c) Syntropy Systems
"""Study directory setup and status tracking."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from simstudy.db import (
    DB_NAME,
    get_connection,
    get_simulations,
    get_study,
    init_db,
    replace_simulations,
    save_study,
    update_simulation,
    update_study,
    utcnow,
)
from simstudy.errors import ConfigurationError
from simstudy.models.study import (
    ModificationSet,
    StudyDescriptor,
    StudyStatus,
    VariantRecord,
    VariantStatus,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterator

    from simstudy.models.model import Model
    from simstudy.models.options import SimulatorOptions

logger = logging.getLogger(__name__)

DATA_DIR = "data"
RUNS_DIR = "runs"


def _serialize_set(modifications: ModificationSet) -> list[list[Any]]:
    return [list(mod.as_tuple()) for mod in modifications]


def status_fields(
    status: VariantStatus,
    *,
    duration: Optional[float] = None,
    error_message: Optional[str] = None,
    solve_file: Optional[str] = None,
) -> dict[str, Any]:
    """Columns to update when a variant moves to ``status``."""
    fields: dict[str, Any] = {"status": status}
    if status == "started":
        fields.update(started_at=utcnow(), finished_at=None, error_message=None)
    elif status in ("finished", "failed"):
        fields["finished_at"] = utcnow()
    if duration is not None:
        fields["duration"] = duration
    if error_message is not None:
        fields["error_message"] = error_message
    if solve_file is not None:
        fields["solve_file"] = solve_file
    return fields


class StudyStore:
    """Study metadata kept in ``<study_dir>/studyinfo.db``."""

    def __init__(self, study_dir: str | Path) -> None:
        self.study_dir = Path(study_dir).resolve()
        self.db_path = self.study_dir / DB_NAME

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @property
    def exists(self) -> bool:
        return self.db_path.exists()

    def data_file(self, prefix: str, sim_id: int) -> Path:
        """Expected result location for a variant."""
        return self.study_dir / DATA_DIR / f"{prefix}_sim{sim_id}_data.npz"

    @property
    def runs_dir(self) -> Path:
        """Parent of the per-variant ``sim<id>`` directories holding parameter files."""
        return self.study_dir / RUNS_DIR

    def setup(
        self,
        base_model: Model,
        options: SimulatorOptions,
        modification_sets: list[ModificationSet],
        *,
        base_solve_file: str | None = None,
    ) -> StudyDescriptor:
        """Create the study, or reopen it with an unchanged variant list.

        Variant identifiers are 1-based positions in ``modification_sets``.
        Reopening with a different identifier to modification-set mapping
        is rejected unless ``overwrite_flag`` is set.
        """
        (self.study_dir / DATA_DIR).mkdir(parents=True, exist_ok=True)
        init_db(self.db_path)

        expected = [
            {
                "sim_id": sim_id,
                "modifications": _serialize_set(mods),
                "data_file": str(self.data_file(options.prefix, sim_id)),
            }
            for sim_id, mods in enumerate(modification_sets, start=1)
        ]

        with self._connect() as conn:
            existing = get_simulations(conn)
            stored = [(sim["sim_id"], sim["modifications"]) for sim in existing]
            wanted = [(sim["sim_id"], sim["modifications"]) for sim in expected]
            if existing and stored != wanted:
                if not options.overwrite_flag:
                    msg = (
                        f"Study in {self.study_dir} was set up with different variants; "
                        "use overwrite_flag to replace it"
                    )
                    raise ConfigurationError(msg)
                logger.info("replacing variants of study %s", self.study_dir)
                existing = []
            if not existing:
                replace_simulations(conn, expected)

            save_study(
                conn,
                study_dir=str(self.study_dir),
                prefix=options.prefix,
                base_model=base_model.model_dump(mode="json") if options.store_model_flag else None,
                base_simulator_options=options.to_record(),
                base_solve_file=base_solve_file,
                status="running",
            )
        return self.load()

    def load(self) -> StudyDescriptor:
        """Read the study descriptor from the database."""
        if not self.exists:
            msg = f"No study found in {self.study_dir}"
            raise ConfigurationError(msg)
        with self._connect() as conn:
            study = get_study(conn)
            simulations = get_simulations(conn)
        if study is None:
            msg = f"Study database in {self.study_dir} has no study record"
            raise ConfigurationError(msg)
        return StudyDescriptor.model_validate(
            {**study, "simulations": [VariantRecord.model_validate(sim) for sim in simulations]},
        )

    def update_status(
        self,
        descriptor: StudyDescriptor,
        sim_id: int,
        status: VariantStatus,
        *,
        duration: Optional[float] = None,
        error_message: Optional[str] = None,
        solve_file: Optional[str] = None,
    ) -> None:
        """Set a variant's status in the database and in ``descriptor``."""
        fields = status_fields(
            status,
            duration=duration,
            error_message=error_message,
            solve_file=solve_file,
        )
        with self._connect() as conn:
            update_simulation(conn, sim_id, **fields)
        descriptor.mark(sim_id, **fields)

    def update_study_status(
        self,
        descriptor: StudyDescriptor,
        status: StudyStatus,
        error: Optional[str] = None,
    ) -> None:
        """Set the study-level status in the database and in ``descriptor``."""
        with self._connect() as conn:
            update_study(conn, status=status, error=error)
        descriptor.status = status
        descriptor.error = error

    def mark_batch(
        self,
        descriptor: StudyDescriptor,
        sim_ids: list[int],
        batch_dir: str,
        job_file: str,
    ) -> None:
        """Record the batch job that will run ``sim_ids``."""
        with self._connect() as conn:
            for sim_id in sim_ids:
                update_simulation(conn, sim_id, batch_dir=batch_dir, job_file=job_file)
        for sim_id in sim_ids:
            descriptor.mark(sim_id, batch_dir=batch_dir, job_file=job_file)
