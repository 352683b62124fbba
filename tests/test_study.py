# Copyright (c) Syntropy Systems
"""Tests for options, the study database and study directories."""

import sqlite3
from pathlib import Path

import pytest

from conftest import DECAY_EQUATIONS
from simstudy.config import find_project_dir, get_solve_dir, load_config
from simstudy.db import (
    get_connection,
    get_simulation,
    get_simulations,
    get_study,
    init_db,
    replace_simulations,
    reset_simulations,
    save_study,
    update_simulation,
)
from simstudy.equations import check_model
from simstudy.errors import ConfigurationError
from simstudy.models.options import SimulatorOptions
from simstudy.models.study import StudyDescriptor, VariantRecord, parse_modification_set
from simstudy.study import StudyStore


def probe(model, options):
    return []


@pytest.fixture
def db_connection(temp_dir: Path):
    """Get a connection to a fresh study database."""
    db_path = temp_dir / "studyinfo.db"
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


def _sets(*values):
    return [parse_modification_set([("pop1", "tau", v)]) for v in values]


class TestSimulatorOptions:
    """Tests for option validation."""

    def test_defaults(self):
        options = SimulatorOptions.build()

        assert options.tspan == (0.0, 100.0)
        assert options.solver == "rk4"
        assert not options.save_data_flag

    def test_legacy_aliases(self):
        options = SimulatorOptions.build({"timelimits": [0, 50], "dsfact": 2, "IC": [1.0]})

        assert options.tspan == (0.0, 50.0)
        assert options.downsample_factor == 2
        assert options.ic == [1.0]

    def test_overrides_win(self):
        options = SimulatorOptions.build({"dt": 0.1}, dt=0.2)
        assert options.dt == 0.2

    def test_build_from_options(self):
        base = SimulatorOptions.build(dt=0.2, experiment=probe)
        options = SimulatorOptions.build(base, solver="euler")

        assert options.dt == 0.2
        assert options.experiment is probe
        assert options.solver == "euler"

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError, match="not_an_option"):
            SimulatorOptions.build(not_an_option=1)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"cluster_flag": True, "parallel_flag": True},
            {"tspan": (10, 0)},
            {"dt": 0},
            {"solver": "rk45"},
            {"num_cores": 0},
            {"experiment": probe, "optimization": probe},
        ],
    )
    def test_invalid_combinations(self, overrides):
        with pytest.raises(ConfigurationError):
            SimulatorOptions.build(**overrides)

    def test_study_dir_saves_data(self):
        assert SimulatorOptions.build(study_dir="out").save_data_flag

    def test_cluster_saves_data(self):
        assert SimulatorOptions.build(cluster_flag=True).save_data_flag

    def test_record_names_delegate(self):
        record = SimulatorOptions.build(experiment=probe).to_record()

        assert record["experiment"] == f"{__name__}:probe"
        assert "vary" not in record
        assert "experiment_options" not in record


class TestStudyDatabase:
    """Tests for study database operations."""

    def test_save_and_get_study(self, db_connection: sqlite3.Connection) -> None:
        save_study(db_connection, "/tmp/study", "study", None, {"dt": 0.1}, status="running")

        study = get_study(db_connection)

        assert study is not None
        assert study["status"] == "running"
        assert study["base_simulator_options"] == {"dt": 0.1}
        assert study["base_model"] is None

    def test_save_study_keeps_solve_file(self, db_connection: sqlite3.Connection) -> None:
        save_study(db_connection, "/tmp/study", "study", None, {}, base_solve_file="/tmp/solve.py")
        save_study(db_connection, "/tmp/study", "study", None, {})

        study = get_study(db_connection)
        assert study is not None
        assert study["base_solve_file"] == "/tmp/solve.py"

    def test_replace_and_get_simulations(self, db_connection: sqlite3.Connection) -> None:
        replace_simulations(db_connection, [
            {"sim_id": 1, "modifications": [["pop1", "tau", 5]]},
            {"sim_id": 2, "modifications": [["pop1", "tau", 10]]},
        ])
        replace_simulations(db_connection, [
            {"sim_id": 1, "modifications": []},
        ])

        simulations = get_simulations(db_connection)

        assert [s["sim_id"] for s in simulations] == [1]
        assert simulations[0]["modifications"] == []
        assert simulations[0]["status"] == "pending"

    def test_update_and_filter(self, db_connection: sqlite3.Connection) -> None:
        replace_simulations(db_connection, [
            {"sim_id": 1, "modifications": []},
            {"sim_id": 2, "modifications": []},
        ])
        update_simulation(db_connection, 2, status="failed", error_message="boom")

        failed = get_simulations(db_connection, status="failed")
        sim = get_simulation(db_connection, 2)

        assert [s["sim_id"] for s in failed] == [2]
        assert sim is not None
        assert sim["error_message"] == "boom"
        assert get_simulation(db_connection, 3) is None

    def test_reset_simulations(self, db_connection: sqlite3.Connection) -> None:
        replace_simulations(db_connection, [
            {"sim_id": 1, "modifications": []},
            {"sim_id": 2, "modifications": []},
            {"sim_id": 3, "modifications": []},
        ])
        update_simulation(db_connection, 1, status="finished")
        update_simulation(db_connection, 2, status="failed", error_message="boom")
        update_simulation(db_connection, 3, status="started")

        reset = reset_simulations(db_connection)

        assert reset == [2, 3]
        assert [s["status"] for s in get_simulations(db_connection)] == ["finished", "pending", "pending"]
        sim = get_simulation(db_connection, 2)
        assert sim is not None
        assert sim["error_message"] is None


class TestStudyStore:
    """Tests for study directory setup."""

    def test_setup_creates_records(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        options = SimulatorOptions.build(study_dir=str(temp_dir / "study"), prefix="decay")

        descriptor = store.setup(check_model(DECAY_EQUATIONS), options, _sets(5, 10))

        assert store.exists
        assert descriptor.status == "running"
        assert [r.sim_id for r in descriptor.simulations] == [1, 2]
        assert descriptor.simulations[0].data_file == str(store.study_dir / "data" / "decay_sim1_data.npz")
        assert descriptor.simulations[1].modifications[0].value == 10
        assert descriptor.base_model is not None
        assert descriptor.base_model.model_dump() == check_model(DECAY_EQUATIONS).model_dump()

    def test_setup_without_model(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        options = SimulatorOptions.build(store_model_flag=False)

        descriptor = store.setup(check_model(DECAY_EQUATIONS), options, [[]])
        assert descriptor.base_model is None

    def test_reopen_same_variants(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        options = SimulatorOptions.build()
        model = check_model(DECAY_EQUATIONS)
        descriptor = store.setup(model, options, _sets(5, 10))
        store.update_status(descriptor, 1, "finished", duration=1.5)

        reopened = store.setup(model, options, _sets(5, 10))

        record = reopened.get_simulation(1)
        assert record is not None
        assert record.status == "finished"
        assert record.duration == 1.5

    def test_reopen_different_variants(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        model = check_model(DECAY_EQUATIONS)
        _ = store.setup(model, SimulatorOptions.build(), _sets(5, 10))

        with pytest.raises(ConfigurationError, match="different variants"):
            store.setup(model, SimulatorOptions.build(), _sets(5, 20))

    def test_overwrite_replaces_variants(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        model = check_model(DECAY_EQUATIONS)
        _ = store.setup(model, SimulatorOptions.build(), _sets(5, 10))

        descriptor = store.setup(model, SimulatorOptions.build(overwrite_flag=True), _sets(1, 2, 3))

        assert len(descriptor.simulations) == 3

    def test_update_status(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        descriptor = store.setup(check_model(DECAY_EQUATIONS), SimulatorOptions.build(), _sets(5))

        store.update_status(descriptor, 1, "started")
        assert descriptor.simulations[0].started_at is not None
        store.update_status(descriptor, 1, "failed", error_message="boom")

        loaded = store.load()
        assert loaded.simulations[0].status == "failed"
        assert loaded.simulations[0].error_message == "boom"
        assert loaded.simulations[0].finished_at is not None
        assert descriptor.failed_simulations()[0].sim_id == 1

    def test_update_study_status(self, temp_dir):
        store = StudyStore(temp_dir / "study")
        descriptor = store.setup(check_model(DECAY_EQUATIONS), SimulatorOptions.build(), [[]])

        store.update_study_status(descriptor, "failed", "boom")

        assert descriptor.failed
        assert store.load().error == "boom"

    def test_load_missing_study(self, temp_dir):
        with pytest.raises(ConfigurationError, match="No study found"):
            StudyStore(temp_dir).load()

    def test_modification_sets(self):
        descriptor = StudyDescriptor.model_validate({
            "simulations": [
                {"sim_id": 2, "modifications": [["E", "gNa", 120]]},
                {"sim_id": 1, "modifications": [["E", "gNa", 100]]},
            ],
        })

        sets = descriptor.modification_sets()

        assert [mods[0].value for mods in sets] == [100, 120]


class TestRecordRows:
    """Tests for reading stored rows."""

    def test_unknown_columns_ignored(self):
        record = VariantRecord.model_validate(
            {"sim_id": 3, "status": "failed", "worker_host": "node7"},
        )

        assert record.sim_id == 3
        assert record.status == "failed"
        assert "worker_host" not in record.model_dump()


class TestProjectConfig:
    """Tests for project configuration."""

    def test_defaults_without_project(self, temp_dir):
        assert find_project_dir(temp_dir) is None
        assert load_config(temp_dir / "missing").solver == "rk4"

    def test_load_config(self, study_project):
        config = load_config()

        assert config.dt == 0.05
        assert config.tspan == [0.0, 2.0]
        assert config.to_options()["tspan"] == (0.0, 2.0)

    def test_find_from_subdirectory(self, study_project):
        nested = study_project / "a" / "b"
        nested.mkdir(parents=True)

        assert find_project_dir(nested) == (study_project / ".simstudy").resolve()
        assert get_solve_dir(find_project_dir(nested)) == (study_project / ".simstudy" / "solve").resolve()
