"""Tests for the StEM driver."""
from __future__ import annotations

import json
import shutil
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from flexlink.config import RunConfig
from flexlink.evaluation import evaluate_links
from flexlink.exceptions import ConfigurationError, EstimabilityError, NumericalInstabilityError
from flexlink.mstep import update_parameters
from flexlink.observers import IterationReport, IterationWriter, ParameterLogger, StopAfter
from flexlink.parameters import ParameterState
from flexlink.records import LinkageData
from flexlink.schema import MistakeControl, PIVSchema, StablePIV, UnstablePIV
from flexlink.stem import StEM, fit
from flexlink.synthetic import SyntheticConfig, generate


def _with_schema(data: LinkageData, pivs) -> LinkageData:
    return LinkageData(schema=PIVSchema(pivs=pivs), a=data.a, b=data.b)


class TestRun:
    """Tests for a complete fit."""

    def test_result_shape(self, small_data: LinkageData, quick_config: RunConfig):
        result = fit(small_data, quick_config)

        assert result.iterations_run == 4
        assert not result.partial
        assert len(result.chains) == 4
        assert result.n_draws == (4 - 2) * (4 - 2)
        assert {"idx_a", "idx_b", "proba_link"} <= set(result.delta.columns)
        assert result.delta["proba_link"].between(0.0, 1.0).all()
        assert result.imputed_a.shape == small_data.a.codes.shape

    def test_links_are_one_to_one(self, small_data: LinkageData, quick_config: RunConfig):
        """Above one half, no record appears in two links."""
        links = fit(small_data, quick_config).links(threshold=0.5)
        assert links["idx_a"].is_unique
        assert links["idx_b"].is_unique

    def test_deterministic_under_seed(self, small_data: LinkageData, quick_config: RunConfig):
        first = fit(small_data, quick_config)
        second = fit(small_data, quick_config)
        pd.testing.assert_frame_equal(first.delta, second.delta)
        np.testing.assert_array_equal(first.chains.phi, second.chains.phi)
        np.testing.assert_array_equal(first.chains.alpha["V3"], second.chains.alpha["V3"])

    def test_overrides(self, small_data: LinkageData, quick_config: RunConfig):
        result = fit(small_data, quick_config, stem_iter=3, stem_burnin=1, gibbs_iter=2, gibbs_burnin=0)
        assert result.iterations_run == 3
        assert result.n_draws == 2 * 2

    def test_burnin_accounting(self, small_data: LinkageData):
        """With one retained iteration at both levels exactly one draw is accumulated."""
        config = RunConfig(stem_iter=3, stem_burnin=2, gibbs_iter=3, gibbs_burnin=2, seed=1)
        result = fit(small_data, config)
        assert result.n_draws == 1
        assert set(result.delta["proba_link"]) <= {1.0}

    def test_point_estimate(self, small_data: LinkageData, quick_config: RunConfig):
        result = fit(small_data, quick_config)
        estimate = result.point_estimate()
        np.testing.assert_allclose(estimate.phi, result.chains.phi[2:].mean(axis=0))
        estimate.validate(result.schema)

    def test_invalid_run_length(self, small_data: LinkageData):
        with pytest.raises(ConfigurationError):
            fit(small_data, RunConfig(stem_iter=2, stem_burnin=2, gibbs_iter=2, gibbs_burnin=0))


class TestMistakeControls:
    """Tests that declared mistake controls hold across every iteration."""

    def test_ceiling_and_fixation(self, small_data: LinkageData, quick_config: RunConfig):
        schema = small_data.schema
        data = _with_schema(small_data, [
            StablePIV(name="V1", cardinality=schema[0].cardinality, mistakes=MistakeControl(bounded=True, ceiling=0.001)),
            StablePIV(name="V2", cardinality=schema[1].cardinality, mistakes=MistakeControl(fixed_a=0.03)),
            schema[2].model_copy(update={"mistakes": MistakeControl(shared=True, fixed_a=0.0)}),
        ])
        result = fit(data, quick_config)
        phi = result.chains.phi

        assert np.all(phi[:, 0, :] <= 0.001)
        assert np.all(phi[:, 1, 0] == 0.03)
        assert np.all(phi[:, 2, :] == 0.0)

    def test_non_estimable_schema(self, small_data: LinkageData, quick_config: RunConfig):
        schema = small_data.schema
        data = _with_schema(small_data, [
            schema[0],
            schema[1],
            UnstablePIV(name="V3", cardinality=schema[2].cardinality),
        ])
        with pytest.raises(EstimabilityError):
            fit(data, quick_config)

    def test_auto_fix(self, small_data: LinkageData, quick_config: RunConfig):
        """Opt-in repair fixes the confounded mistake rates to 0 and runs."""
        schema = small_data.schema
        data = _with_schema(small_data, [
            schema[0],
            schema[1],
            UnstablePIV(name="V3", cardinality=schema[2].cardinality),
        ])
        result = fit(data, quick_config, auto_fix=True)
        assert result.schema[2].mistakes.fixed == (True, True)
        assert np.all(result.chains.phi[:, 2, :] == 0.0)


class TestEarlyStop:
    """Tests for stopping between outer iterations."""

    def test_observer_stop(self, small_data: LinkageData):
        config = RunConfig(stem_iter=6, stem_burnin=1, gibbs_iter=3, gibbs_burnin=1, seed=2)
        result = fit(small_data, config, observers=[StopAfter(3)])
        assert result.partial
        assert result.iterations_run == 3
        assert len(result.chains) == 3
        assert result.n_draws == 2 * 2

    def test_stop_before_outer_burnin_ends(self, small_data: LinkageData):
        """No accumulated draw leaves an empty posterior."""
        config = RunConfig(stem_iter=6, stem_burnin=4, gibbs_iter=3, gibbs_burnin=1, seed=2)
        result = fit(small_data, config, observers=[StopAfter(2)])
        assert result.partial
        assert result.n_draws == 0
        assert result.delta.empty
        assert result.links().empty

    def test_stop_on_last_iteration_is_complete(self, small_data: LinkageData, quick_config: RunConfig):
        result = fit(small_data, quick_config, observers=[StopAfter(4)])
        assert not result.partial
        assert result.iterations_run == 4

    def test_request_stop(self, small_data: LinkageData, quick_config: RunConfig):
        driver = StEM(small_data, quick_config)

        class _Stopper:
            def on_iteration(self, report: IterationReport) -> None:
                driver.request_stop()

            def on_finish(self, result) -> None:
                return None

            def close(self) -> None:
                return None

        driver.observers.append(_Stopper())
        result = driver.run()
        assert result.partial
        assert result.iterations_run == 1


class TestErrors:
    """Tests for numerical failure reporting."""

    def test_iteration_added_to_numerical_errors(self, small_data, quick_config, monkeypatch):
        def explode(*args, **kwargs):
            raise NumericalInstabilityError("update diverged", piv="V1")

        monkeypatch.setattr("flexlink.stem.update_parameters", explode)
        with pytest.raises(NumericalInstabilityError) as exc:
            fit(small_data, quick_config)
        assert exc.value.iteration == 0
        assert exc.value.piv == "V1"
        assert "iteration=0" in str(exc.value)

    def test_observers_closed_on_failure(self, small_data, quick_config, monkeypatch, tmp_path):
        """Diagnostics written before a failure reach the disk."""
        calls = []

        def fail_second(*args, **kwargs):
            calls.append(1)
            if len(calls) > 1:
                raise NumericalInstabilityError("update diverged", piv="V1")
            return update_parameters(*args, **kwargs)

        monkeypatch.setattr("flexlink.stem.update_parameters", fail_second)
        writer = IterationWriter(tmp_path / "diagnostics")
        with pytest.raises(NumericalInstabilityError) as exc:
            fit(small_data, quick_config, observers=[writer])
        assert exc.value.iteration == 1
        assert not writer._thread.is_alive()
        lines = (tmp_path / "diagnostics" / "iterations.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert not (tmp_path / "diagnostics" / "delta.csv").exists()


class TestObservers:
    """Tests for the iteration observers."""

    def test_iteration_writer(self, small_data: LinkageData, quick_config: RunConfig, tmp_path: Path):
        writer = IterationWriter(tmp_path / "diagnostics")
        result = fit(small_data, quick_config, observers=[writer, ParameterLogger()])

        lines = (tmp_path / "diagnostics" / "iterations.jsonl").read_text().splitlines()
        assert len(lines) == result.iterations_run
        first = json.loads(lines[0])
        assert first["iteration"] == 0
        assert set(first["parameters"]) == {"V1", "V2", "V3"}
        assert "alpha" in first["parameters"]["V3"]

        delta = pd.read_csv(tmp_path / "diagnostics" / "delta.csv")
        assert len(delta) == len(result.delta)
        assert writer.failures == 0

    def test_iteration_writer_failures_are_counted(self, small_data: LinkageData, tmp_path: Path):
        """A failing disk never reaches the caller."""
        directory = tmp_path / "gone"
        writer = IterationWriter(directory)
        shutil.rmtree(directory)

        params = ParameterState.initialize(small_data, initial_mistake=0.05, initial_change=0.1)
        report = IterationReport(
            iteration=0,
            stem_iter=1,
            accumulating=True,
            mean_links=0.0,
            n_draws=0,
            params=params,
            schema=small_data.schema,
        )
        writer.on_iteration(report)
        writer.close()
        assert writer.failures == 1


class TestStatisticalBehaviour:
    """Tests of linkage quality on synthetic data."""

    def test_no_true_links(self):
        """Two unrelated sources leave almost every pair below one half."""
        sim = generate(SyntheticConfig(n_a=60, n_b=80, n_links=0, seed=21))
        config = RunConfig(stem_iter=4, stem_burnin=2, gibbs_iter=4, gibbs_burnin=2, seed=3)
        result = fit(sim.data, config)

        likely = (result.delta["proba_link"] >= 0.5).sum()
        assert likely <= 0.01 * sim.data.n_a * sim.data.n_b
        assert likely <= 4

    @pytest.mark.slow
    def test_recovers_true_links(self):
        """500 and 800 records sharing 300 entities at low noise."""
        # Cardinalities are high enough for F1 >= 0.9 to be reachable; with [6, 7, 8, 9, 15]
        # even a run at the true parameters stays near 0.83
        sim = generate(SyntheticConfig(
            cardinalities=[10, 12, 15, 20, 25],
            n_a=500,
            n_b=800,
            n_links=300,
            mistakes=(0.02, 0.02),
            missing=(0.01, 0.01),
            seed=2024,
        ))
        config = RunConfig(stem_iter=10, stem_burnin=5, gibbs_iter=10, gibbs_burnin=5, seed=2024)
        result = fit(sim.data, config)

        metrics = evaluate_links(result.links(0.5), sim.true_links)
        assert metrics.f1 >= 0.9
        estimate = result.point_estimate()
        assert np.all(estimate.phi <= 0.1)
