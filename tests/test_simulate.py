# Copyright (c) Syntropy Systems
"""Tests for study orchestration."""

import math
import os
from pathlib import Path

import numpy as np
import pytest
import yaml

from conftest import DECAY_EQUATIONS, HH_SPEC
from simstudy import StudyOrchestrator, simulate_model
from simstudy.batch import load_job, run_job
from simstudy.codegen import SolverCodeGenerator
from simstudy.errors import ConfigurationError, ModificationError, SimulationError
from simstudy.experiments import probe_fi, strip_recursive_options
from simstudy.models.options import SimulatorOptions
from simstudy.models.study import StudyDescriptor, VariantRecord
from simstudy.results import ResultRecord
from simstudy.simulate import FailureRecoveryManager
from simstudy.study import StudyStore
from simstudy.vary import VariationSpec

FAST = {"tspan": (0, 1), "dt": 0.1}


class CountingGenerator:
    """Code generator that records every resolution request."""

    def __init__(self):
        self.inner = SolverCodeGenerator()
        self.calls = 0

    def resolve_artifact(self, model, options, solve_dir):
        self.calls += 1
        return self.inner.resolve_artifact(model, options, solve_dir)


def two_scales(model, options, scale=1.0):
    """Experiment returning two results per variant."""
    value = float(model.parameters["pop1_tau"])
    return [
        ResultRecord(
            labels=["pop1_v", "time"],
            channels={"time": np.arange(3.0), "pop1_v": np.full((3, 1), value * k * scale)},
        )
        for k in (1, 2)
    ]


def failing_sets():
    return VariationSpec.from_sets([
        [("pop1", "tau", 5)],
        [("pop1", "equations", "dv/dt = -undefined")],
        [("pop1", "tau", 20)],
    ])


class TestSimulateModel:
    """Tests for the in-memory simulation path."""

    def test_single_variant(self):
        results = simulate_model(DECAY_EQUATIONS, tspan=(0, 1), dt=0.01)

        assert isinstance(results, list)
        assert len(results) == 1
        assert results[0].sim_id == 1
        assert results[0].varied == {}
        assert results[0]["pop1_v"][-1, 0] == pytest.approx(math.exp(-0.1), abs=1e-8)

    def test_results_in_variant_order(self):
        cwd = os.getcwd()

        results = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10, 20])], **FAST)

        assert [r.varied for r in results] == [{"pop1_tau": 5}, {"pop1_tau": 10}, {"pop1_tau": 20}]
        assert [r.sim_id for r in results] == [1, 2, 3]
        finals = [r["pop1_v"][-1, 0] for r in results]
        assert finals == sorted(finals)
        assert os.getcwd() == cwd

    def test_population_tags(self):
        results = simulate_model(HH_SPEC, vary=[("E", "gNa", [100, 120])], **FAST)

        assert [r.varied for r in results] == [{"E_gNa": 100}, {"E_gNa": 120}]
        assert results[1].model is not None
        assert results[1].model.parameters["E_gNa"] == 120

    def test_empty_target(self):
        """Test that an empty target varies the first population."""
        results = simulate_model(HH_SPEC, vary=[("", "gNa", [50, 100, 200])], **FAST)

        assert [r.varied for r in results] == [{"gNa": 50}, {"gNa": 100}, {"gNa": 200}]
        assert [r.model.parameters["E_gNa"] for r in results if r.model] == [50, 100, 200]

    def test_vary_statement(self):
        results = simulate_model(f"{DECAY_EQUATIONS}; vary(tau=[5, 10])", **FAST)
        assert [r.varied for r in results] == [{"pop1_tau": 5}, {"pop1_tau": 10}]

    def test_vary_option(self):
        results = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10])], **FAST)
        from_option = simulate_model(DECAY_EQUATIONS, options={"vary": [("pop1", "tau", [5, 10])], **FAST})

        assert [r.varied for r in from_option] == [r.varied for r in results]

    def test_zip_variation(self):
        vary = {
            "method": "zip",
            "vary": [("pop1", "tau", [5, 10]), ("pop1", "v0", [1, 2])],
        }
        results = simulate_model(DECAY_EQUATIONS, vary=vary, **FAST)

        assert [r.varied for r in results] == [
            {"pop1_tau": 5, "pop1_v0": 1},
            {"pop1_tau": 10, "pop1_v0": 2},
        ]

    def test_deterministic(self):
        model = "dv/dt = randn(); v(0) = 0"
        first = simulate_model(model, random_seed=3, **FAST)
        second = simulate_model(model, random_seed=3, **FAST)

        np.testing.assert_array_equal(first[0]["pop1_v"], second[0]["pop1_v"])

    def test_base_modifications(self):
        results = simulate_model(DECAY_EQUATIONS, modifications=[("pop1", "tau", 1)], **FAST)

        assert results[0].varied == {"pop1_tau": 1}
        assert results[0]["pop1_v"][-1, 0] < 0.5

    def test_base_modifications_combined_with_vary(self):
        results = simulate_model(
            HH_SPEC,
            vary=[("E", "gK", [30, 40])],
            modifications=[("E", "gNa", 100)],
            **FAST,
        )
        assert results[1].varied == {"E_gNa": 100, "E_gK": 40}

    def test_initial_conditions(self):
        results = simulate_model(DECAY_EQUATIONS, IC=[2.0], **FAST)
        assert results[0]["pop1_v"][0, 0] == 2.0

    def test_initial_conditions_survive_structural_variation(self):
        results = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "equations", ["dv/dt = -v", "dv/dt = -2*v"])],
            ic=[3.0],
            **FAST,
        )
        assert [r["pop1_v"][0, 0] for r in results] == [3.0, 3.0]

    def test_disk_mode(self):
        results = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10])], disk_flag=True, **FAST)
        memory = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10])], **FAST)

        for disk_result, memory_result in zip(results, memory):
            np.testing.assert_allclose(disk_result["pop1_v"], memory_result["pop1_v"])

    def test_default_solve_dir(self, isolated_home):
        _ = simulate_model(DECAY_EQUATIONS, **FAST)
        assert list((isolated_home / ".simstudy" / "solve").glob("solve_ode_*.py"))


class TestUpFrontErrors:
    """Tests for errors raised before any variant runs."""

    def test_conflicting_options(self):
        with pytest.raises(ConfigurationError):
            simulate_model(DECAY_EQUATIONS, cluster_flag=True, parallel_flag=True)

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError):
            simulate_model(DECAY_EQUATIONS, timestep=0.1)

    def test_invalid_vary_target(self):
        with pytest.raises(ConfigurationError, match="target not found"):
            simulate_model(DECAY_EQUATIONS, vary=[("I", "tau", [1])])

    def test_invalid_base_modification(self):
        with pytest.raises(ModificationError):
            simulate_model(DECAY_EQUATIONS, modifications=[("I", "tau", 1)])

    def test_wrong_initial_condition_count(self):
        with pytest.raises(ConfigurationError, match="initial conditions"):
            simulate_model(DECAY_EQUATIONS, ic=[1.0, 2.0])

    def test_sim_id_requires_one_variant(self):
        with pytest.raises(ConfigurationError, match="exactly one variant"):
            simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [1, 2])], sim_id=1)


class TestFailureRecovery:
    """Tests for per-variant failures."""

    def test_failure_returns_descriptor(self):
        cwd = os.getcwd()

        outcome = simulate_model(DECAY_EQUATIONS, vary=failing_sets(), **FAST)

        assert isinstance(outcome, StudyDescriptor)
        assert outcome.failed
        assert "Undefined name" in (outcome.error or "")
        assert [r.status for r in outcome.simulations] == ["finished", "failed", "pending"]
        assert len(outcome.results) == 1
        assert outcome.results[0].varied == {"pop1_tau": 5}
        assert os.getcwd() == cwd

    def test_failure_recorded_in_study(self, temp_dir):
        study_dir = temp_dir / "study"

        outcome = simulate_model(DECAY_EQUATIONS, vary=failing_sets(), study_dir=str(study_dir), **FAST)

        assert isinstance(outcome, StudyDescriptor)
        stored = StudyStore(study_dir).load()
        assert stored.status == "failed"
        assert [r.status for r in stored.simulations] == ["finished", "failed", "pending"]
        assert "Undefined name" in (stored.simulations[1].error_message or "")

    def test_manager_restores_cwd(self, temp_dir):
        """Test that the protected region restores cwd and suppresses errors."""
        cwd = os.getcwd()
        descriptor = StudyDescriptor(simulations=[VariantRecord(sim_id=1)])

        with FailureRecoveryManager(descriptor) as guard:
            guard.begin(1)
            os.chdir(temp_dir)
            msg = "solver blew up"
            raise SimulationError(msg)

        assert os.getcwd() == cwd
        assert guard.state == "error"
        assert guard.failed_sim_id == 1
        assert descriptor.simulations[0].status == "failed"
        assert descriptor.simulations[0].error_message == "solver blew up"

    def test_manager_success(self):
        descriptor = StudyDescriptor()
        with FailureRecoveryManager(descriptor) as guard:
            pass
        assert guard.state == "success"
        assert guard.error is None

    def test_manager_propagates_interrupts(self, temp_dir):
        cwd = os.getcwd()
        descriptor = StudyDescriptor(simulations=[VariantRecord(sim_id=1)])

        with pytest.raises(KeyboardInterrupt), FailureRecoveryManager(descriptor) as guard:
            guard.begin(1)
            os.chdir(temp_dir)
            raise KeyboardInterrupt

        assert os.getcwd() == cwd
        assert descriptor.simulations[0].status == "pending"


class TestCachingAndResume:
    """Tests for saved results and solver reuse."""

    def test_saves_data(self, temp_dir, solve_dir):
        study_dir = temp_dir / "study"
        orchestrator = StudyOrchestrator(solve_dir=solve_dir)

        results = orchestrator.simulate(
            DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10])], study_dir=str(study_dir), prefix="decay", **FAST,
        )

        assert isinstance(results, list)
        assert (study_dir / "data" / "decay_sim1_data.npz").exists()
        assert (study_dir / "data" / "decay_sim2_data.npz").exists()
        # solvers go to the study when it has a directory
        assert list((study_dir / "solve").glob("solve_ode_*.py"))
        stored = StudyStore(study_dir).load()
        assert stored.status == "finished"
        assert all(r.status == "finished" for r in stored.simulations)
        assert all(r.solve_file for r in stored.simulations)

    def test_save_data_flag_default_directory(self, temp_dir):
        os.chdir(temp_dir)

        _ = simulate_model(DECAY_EQUATIONS, save_data_flag=True, prefix="decay", **FAST)

        assert (temp_dir / "decay_study" / "studyinfo.db").exists()

    def test_resume_is_idempotent(self, temp_dir):
        study_dir = str(temp_dir / "study")
        vary = [("pop1", "tau", [5, 10, 20])]
        first = simulate_model(DECAY_EQUATIONS, vary=vary, study_dir=study_dir, **FAST)

        generator = CountingGenerator()
        orchestrator = StudyOrchestrator(generator=generator)
        second = orchestrator.simulate(DECAY_EQUATIONS, vary=vary, study_dir=study_dir, **FAST)

        assert generator.calls == 0
        assert orchestrator.artifact_manager is not None
        assert orchestrator.artifact_manager.resolutions == 0
        assert isinstance(first, list)
        assert isinstance(second, list)
        assert [r.varied for r in second] == [r.varied for r in first]
        for loaded, computed in zip(second, first):
            np.testing.assert_array_equal(loaded["pop1_v"], computed["pop1_v"])

    def test_resume_computes_only_missing(self, temp_dir):
        study_dir = temp_dir / "study"
        vary = [("pop1", "tau", [5, 10, 20])]
        _ = simulate_model(DECAY_EQUATIONS, vary=vary, study_dir=str(study_dir), prefix="decay", **FAST)
        (study_dir / "data" / "decay_sim2_data.npz").unlink()

        generator = CountingGenerator()
        results = StudyOrchestrator(generator=generator).simulate(
            DECAY_EQUATIONS, vary=vary, study_dir=str(study_dir), prefix="decay", **FAST,
        )

        assert generator.calls == 1
        assert len(results) == 3
        assert (study_dir / "data" / "decay_sim2_data.npz").exists()

    def test_overwrite_recomputes(self, temp_dir):
        study_dir = str(temp_dir / "study")
        vary = [("pop1", "tau", [5, 10])]
        _ = simulate_model(DECAY_EQUATIONS, vary=vary, study_dir=study_dir, **FAST)

        generator = CountingGenerator()
        _ = StudyOrchestrator(generator=generator).simulate(
            DECAY_EQUATIONS, vary=vary, study_dir=study_dir, overwrite_flag=True, **FAST,
        )

        assert generator.calls == 1

    def test_changed_variants_rejected(self, temp_dir):
        study_dir = str(temp_dir / "study")
        _ = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10])], study_dir=study_dir, **FAST)

        with pytest.raises(ConfigurationError, match="different variants"):
            simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 20])], study_dir=study_dir, **FAST)

    def test_parameter_study_resolves_once(self, solve_dir):
        generator = CountingGenerator()
        orchestrator = StudyOrchestrator(generator=generator, solve_dir=solve_dir)

        _ = orchestrator.simulate(HH_SPEC, vary=[("E", "gNa", [100, 120, 140])], **FAST)

        assert generator.calls == 1

    def test_mechanism_study_resolves_every_variant(self, solve_dir):
        generator = CountingGenerator()
        orchestrator = StudyOrchestrator(generator=generator, solve_dir=solve_dir)

        results = orchestrator.simulate(HH_SPEC, vary=[("E", "mechanism_list", ["+iM", "-iM"])], **FAST)

        assert generator.calls == 2
        assert results[0].labels == ["E_v", "E_m", "E_h", "E_n", "E_w", "time"]
        assert results[1].labels == ["E_v", "E_m", "E_h", "E_n", "time"]
        assert results[0].varied == {"E_mechanism_list": "+iM"}
        assert len(list(solve_dir.glob("solve_ode_*.py"))) == 2

    def test_solvers_shared_across_studies(self, solve_dir):
        _ = StudyOrchestrator(solve_dir=solve_dir).simulate(DECAY_EQUATIONS, **FAST)
        _ = StudyOrchestrator(solve_dir=solve_dir).simulate("dv/dt = -v/tau; tau = 99; v(0) = 1", **FAST)

        assert len(list(solve_dir.glob("solve_ode_*.py"))) == 1


class TestExperiments:
    """Tests for experiment delegates."""

    def test_delegate_results_aggregated(self):
        """Test that M results per variant are kept together in variant order."""
        results = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10])],
            experiment=two_scales,
            experiment_options={"scale": 2.0},
        )

        assert len(results) == 4
        assert [r["pop1_v"][0, 0] for r in results] == [10.0, 20.0, 20.0, 40.0]
        assert [r.varied for r in results] == [{"pop1_tau": 5}] * 2 + [{"pop1_tau": 10}] * 2
        assert [r.sim_id for r in results] == [1, 1, 2, 2]

    def test_delegate_results_saved_together(self, temp_dir):
        study_dir = str(temp_dir / "study")
        vary = [("pop1", "tau", [5, 10])]
        first = simulate_model(DECAY_EQUATIONS, vary=vary, experiment=two_scales, study_dir=study_dir)
        second = simulate_model(DECAY_EQUATIONS, vary=vary, experiment=two_scales, study_dir=study_dir)

        assert len(first) == len(second) == 4
        assert len(list((temp_dir / "study" / "data").glob("*.npz"))) == 2
        assert [r["pop1_v"][0, 0] for r in second] == [r["pop1_v"][0, 0] for r in first]

    def test_probe_fi(self):
        results = probe_fi(DECAY_EQUATIONS, SimulatorOptions.build(**FAST), amplitudes=[0, 1])

        assert [r.varied for r in results] == [{"pop1_TONIC": 0.0}, {"pop1_TONIC": 1.0}]
        assert results[1]["pop1_v"][-1, 0] > results[0]["pop1_v"][-1, 0]

    def test_probe_fi_as_experiment(self):
        results = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10])],
            experiment=probe_fi,
            experiment_options={"amplitudes": [0, 1]},
            **FAST,
        )

        assert len(results) == 4
        assert results[0].varied == {"pop1_TONIC": 0.0, "pop1_tau": 5}
        assert results[3].varied == {"pop1_TONIC": 1.0, "pop1_tau": 10}

    def test_strip_recursive_options(self):
        options = SimulatorOptions.build(
            study_dir="out", vary=[("pop1", "tau", [1])], experiment=two_scales, sim_id=2,
        )

        inner = strip_recursive_options(options)

        assert inner.vary is None
        assert inner.experiment is None
        assert inner.sim_id is None
        assert inner.study_dir is None
        assert not inner.save_data_flag


class TestParallel:
    """Tests for local parallel execution."""

    def test_thread_workers_keep_order(self, solve_dir):
        generator = CountingGenerator()
        orchestrator = StudyOrchestrator(generator=generator, solve_dir=solve_dir)

        results = orchestrator.simulate(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10, 20, 40])],
            parallel_flag=True,
            parallel_backend="thread",
            num_cores=2,
            **FAST,
        )
        sequential = simulate_model(DECAY_EQUATIONS, vary=[("pop1", "tau", [5, 10, 20, 40])], **FAST)

        assert [r.varied["pop1_tau"] for r in results] == [5, 10, 20, 40]
        assert [r.sim_id for r in results] == [1, 2, 3, 4]
        assert generator.calls == 1
        for parallel_result, sequential_result in zip(results, sequential):
            np.testing.assert_allclose(parallel_result["pop1_v"], sequential_result["pop1_v"])

    def test_thread_workers_with_study(self, temp_dir):
        study_dir = temp_dir / "study"

        results = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10, 20])],
            parallel_flag=True,
            parallel_backend="thread",
            num_cores=3,
            study_dir=str(study_dir),
            **FAST,
        )

        assert len(results) == 3
        stored = StudyStore(study_dir).load()
        assert stored.status == "finished"
        assert [r.status for r in stored.simulations] == ["finished"] * 3

    def test_thread_workers_share_structural_solver(self, solve_dir):
        vary = [
            ("pop1", "equations", ["dv/dt = -v/tau + 0*t"]),
            ("pop1", "tau", list(range(1, 17))),
        ]

        results = StudyOrchestrator(solve_dir=solve_dir).simulate(
            DECAY_EQUATIONS,
            vary=vary,
            parallel_flag=True,
            parallel_backend="thread",
            num_cores=16,
            **FAST,
        )

        assert isinstance(results, list)
        assert [r.varied["pop1_tau"] for r in results] == list(range(1, 17))
        assert len(list(solve_dir.glob("solve_ode_*.py"))) == 1
        assert not list(solve_dir.glob(".*.tmp"))

    def test_process_workers_keep_order(self, solve_dir):
        results = StudyOrchestrator(solve_dir=solve_dir).simulate(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10, 20])],
            parallel_flag=True,
            num_cores=2,
            **FAST,
        )

        assert isinstance(results, list)
        assert [r.varied["pop1_tau"] for r in results] == [5, 10, 20]
        assert [r.sim_id for r in results] == [1, 2, 3]

    def test_process_workers_with_study(self, temp_dir):
        study_dir = temp_dir / "study"

        results = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10, 20])],
            parallel_flag=True,
            num_cores=2,
            study_dir=str(study_dir),
            **FAST,
        )

        assert [r.varied["pop1_tau"] for r in results] == [5, 10, 20]
        stored = StudyStore(study_dir).load()
        assert stored.status == "finished"
        assert [r.status for r in stored.simulations] == ["finished"] * 3

    def test_worker_failure(self):
        outcome = simulate_model(
            DECAY_EQUATIONS,
            vary=failing_sets(),
            parallel_flag=True,
            parallel_backend="thread",
            **FAST,
        )

        assert isinstance(outcome, StudyDescriptor)
        assert outcome.failed
        assert outcome.simulations[1].status == "failed"
        assert [r.varied for r in outcome.results] == [{"pop1_tau": 5}, {"pop1_tau": 20}]


class TestCluster:
    """Tests for batch submission and job execution."""

    def test_submit_writes_jobs(self, temp_dir):
        study_dir = temp_dir / "study"

        outcome = simulate_model(
            DECAY_EQUATIONS,
            vary=[("pop1", "tau", [5, 10, 20])],
            cluster_flag=True,
            submit_jobs=False,
            sims_per_job=2,
            study_dir=str(study_dir),
            memory_limit="2G",
            **FAST,
        )

        assert isinstance(outcome, StudyDescriptor)
        assert outcome.status == "submitted"
        assert sorted(p.name for p in (study_dir / "batch").glob("job*.yaml")) == ["job1.yaml", "job2.yaml"]
        script = (study_dir / "batch" / "submit.sh").read_text()
        assert "h_vmem=2G" in script
        assert "run-job" in script
        job = load_job(study_dir / "batch" / "job1.yaml")
        assert [sim["sim_id"] for sim in job["sims"]] == [1, 2]
        assert job["options"]["solve_file"]
        assert outcome.simulations[2].job_file == str(study_dir.resolve() / "batch" / "job2.yaml")

    def test_run_job(self, temp_dir):
        study_dir = temp_dir / "study"
        vary = [("pop1", "tau", [5, 10])]
        _ = simulate_model(
            DECAY_EQUATIONS, vary=vary, cluster_flag=True, submit_jobs=False, study_dir=str(study_dir), **FAST,
        )

        outcomes = run_job(study_dir / "batch" / "job1.yaml") + run_job(study_dir / "batch" / "job2.yaml")

        assert all(isinstance(outcome, list) for outcome in outcomes)
        stored = StudyStore(study_dir).load()
        assert [r.status for r in stored.simulations] == ["finished", "finished"]

        # every result is on disk, so a plain rerun only loads
        generator = CountingGenerator()
        results = StudyOrchestrator(generator=generator).simulate(
            DECAY_EQUATIONS, vary=vary, study_dir=str(study_dir), **FAST,
        )
        assert generator.calls == 0
        assert [r.varied for r in results] == [{"pop1_tau": 5}, {"pop1_tau": 10}]

    def test_run_job_with_base_modifications(self, temp_dir):
        study_dir = temp_dir / "study"
        _ = simulate_model(
            DECAY_EQUATIONS,
            modifications=[("pop1", "equations", "cat(v, + 1)")],
            cluster_flag=True,
            submit_jobs=False,
            study_dir=str(study_dir),
            **FAST,
        )

        outcomes = run_job(study_dir / "batch" / "job1.yaml")

        result = outcomes[0]
        assert isinstance(result, list)
        assert result[0].model is not None
        assert result[0].model.odes["pop1_v"] == "-pop1_v/pop1_tau + 1"

    def test_invalid_job_file(self, temp_dir):
        job_file = temp_dir / "job.yaml"
        job_file.write_text(yaml.safe_dump({"model": {}}))

        with pytest.raises(ConfigurationError, match="'options'"):
            run_job(job_file)

    def test_cluster_uses_study_dir_for_solvers(self, temp_dir):
        study_dir = temp_dir / "study"
        _ = simulate_model(
            DECAY_EQUATIONS, cluster_flag=True, submit_jobs=False, study_dir=str(study_dir), **FAST,
        )

        job = load_job(study_dir / "batch" / "job1.yaml")
        assert Path(job["options"]["solve_file"]).parent == (study_dir / "solve").resolve()
