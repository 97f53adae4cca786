"""Tests for the synthetic data generator and link evaluation."""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError

from flexlink.evaluation import LinkageMetrics, evaluate_links
from flexlink.schema import UnstablePIV
from flexlink.synthetic import TIME_COLUMN, SyntheticConfig, generate


class TestSyntheticConfig:
    """Tests for generator settings."""

    def test_defaults(self):
        config = SyntheticConfig()
        assert config.names == ["V1", "V2", "V3", "V4", "V5"]
        assert config.unstable == [False, False, False, False, True]

    def test_too_many_links(self):
        with pytest.raises(ValidationError):
            SyntheticConfig(n_a=10, n_b=20, n_links=11)

    def test_flag_count(self):
        with pytest.raises(ValidationError):
            SyntheticConfig(cardinalities=[3, 4], unstable=[True])

    def test_change_rate_broadcast(self):
        config = SyntheticConfig(cardinalities=[3, 4, 5], unstable=[True, False, True], change_rate=0.4)
        assert config.change_rates == [0.4, 0.4]

    def test_change_rate_per_piv(self):
        config = SyntheticConfig(cardinalities=[3, 4, 5], unstable=[True, False, True], change_rate=[0.1, 0.9])
        assert config.change_rates == [0.1, 0.9]

    def test_change_rate_count(self):
        with pytest.raises(ValidationError):
            SyntheticConfig(cardinalities=[3, 4], unstable=[True, True], change_rate=[0.1])


class TestGenerate:
    """Tests for generated sources."""

    def test_shapes_and_schema(self, small_sim):
        assert len(small_sim.frame_a) == 30
        assert len(small_sim.frame_b) == 40
        assert len(small_sim.true_links) == 15
        assert TIME_COLUMN in small_sim.frame_b.columns
        assert isinstance(small_sim.schema[2], UnstablePIV)
        assert small_sim.schema[2].mistakes.bounded
        assert small_sim.data.n_b == 40

    def test_true_links_point_at_counterparts(self):
        """Without noise, true links agree on every stable value and are later in time."""
        sim = generate(SyntheticConfig(
            cardinalities=[6, 7],
            unstable=[False, False],
            n_a=20,
            n_b=25,
            n_links=12,
            mistakes=(0.0, 0.0),
            missing=(0.0, 0.0),
            seed=4,
        ))
        a = sim.frame_a.iloc[sim.true_links["idx_a"]].reset_index(drop=True)
        b = sim.frame_b.iloc[sim.true_links["idx_b"]].reset_index(drop=True)
        assert a["V1"].tolist() == b["V1"].tolist()
        assert a["V2"].tolist() == b["V2"].tolist()
        assert (b[TIME_COLUMN] >= a[TIME_COLUMN]).all()
        assert sim.true_links["idx_b"].is_unique

    def test_change_rate_per_unstable_piv(self):
        """A zero hazard keeps a PIV fixed across true links while a large one moves it."""
        sim = generate(SyntheticConfig(
            cardinalities=[10, 10],
            unstable=[True, True],
            n_a=200,
            n_b=200,
            n_links=200,
            mistakes=(0.0, 0.0),
            missing=(0.0, 0.0),
            change_rate=[0.0, 50.0],
            seed=6,
        ))
        a = sim.frame_a.iloc[sim.true_links["idx_a"]].reset_index(drop=True)
        b = sim.frame_b.iloc[sim.true_links["idx_b"]].reset_index(drop=True)
        assert (a["V1"] == b["V1"]).all()
        assert (a["V2"] != b["V2"]).mean() > 0.8

    def test_codes_in_range_with_missing(self):
        sim = generate(SyntheticConfig(cardinalities=[3], unstable=[False], missing=(0.5, 0.5), seed=8))
        column = sim.frame_a["V1"]
        assert column.isna().any()
        observed = column.dropna()
        assert observed.min() >= 0
        assert observed.max() <= 2

    def test_seeded(self):
        first = generate(SyntheticConfig(n_a=20, n_b=20, n_links=5, seed=1))
        second = generate(SyntheticConfig(n_a=20, n_b=20, n_links=5, seed=1))
        pd.testing.assert_frame_equal(first.frame_b, second.frame_b)
        pd.testing.assert_frame_equal(first.true_links, second.true_links)

    def test_to_csv(self, small_sim, tmp_path):
        paths = small_sim.to_csv(tmp_path)
        assert sorted(p.name for p in paths.values()) == ["a.csv", "b.csv", "truth.csv"]
        assert len(pd.read_csv(paths["truth"])) == 15
        mapping = small_sim.config_mapping()
        assert mapping["nvalues"] == [5, 6, 8]
        assert mapping["control_on_mistakes"] == [False, False, True]


class TestEvaluation:
    """Tests for link quality metrics."""

    def test_counts_and_rates(self):
        truth = pd.DataFrame({"idx_a": [0, 1, 2, 3], "idx_b": [5, 6, 7, 8]})
        predicted = pd.DataFrame({"idx_a": [0, 1, 4], "idx_b": [5, 7, 9], "proba_link": [0.9, 0.8, 0.7]})
        metrics = evaluate_links(predicted, truth)

        assert metrics.true_positives == 1
        assert metrics.false_positives == 2
        assert metrics.false_negatives == 3
        assert metrics.precision == pytest.approx(1 / 3)
        assert metrics.recall == pytest.approx(1 / 4)
        assert metrics.f1 == pytest.approx(2 / 9)
        assert metrics.fdr == pytest.approx(2 / 3)

    def test_empty(self):
        empty = pd.DataFrame({"idx_a": pd.Series(dtype="int64"), "idx_b": pd.Series(dtype="int64")})
        metrics = evaluate_links(empty, empty)
        assert metrics.f1 == 1.0
        assert metrics.summary()["true_positives"] == 0

    def test_requires_index_columns(self):
        with pytest.raises(ValueError):
            evaluate_links(pd.DataFrame({"a": [1]}), pd.DataFrame({"idx_a": [1], "idx_b": [1]}))

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            LinkageMetrics(true_positives=-1, false_positives=0, false_negatives=0)
