"""Tests for the Gibbs sampler."""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from flexlink.gibbs import GibbsSampler, sample_log_categorical
from flexlink.link_state import LinkState
from flexlink.parameters import ParameterState
from flexlink.records import LinkageData
from flexlink.schema import PIVSchema, StablePIV


def _sampler(data: LinkageData, seed: int = 5) -> GibbsSampler:
    params = ParameterState.initialize(data, initial_mistake=0.02, initial_change=0.1)
    return GibbsSampler(data, params, LinkState(data.n_a, data.n_b), np.random.default_rng(seed))


@pytest.fixture()
def duplicated_data() -> tuple[LinkageData, np.ndarray]:
    """B is a shuffled copy of A over three high-cardinality PIVs."""
    rng = np.random.default_rng(3)
    n = 10
    frame_a = pd.DataFrame({f"v{j}": rng.permutation(50)[:n] for j in range(3)})
    order = rng.permutation(n)
    frame_b = frame_a.iloc[order].reset_index(drop=True)
    schema = PIVSchema(pivs=[StablePIV(name=f"v{j}", cardinality=50) for j in range(3)])
    # B-record k is A-record order[k]
    return LinkageData.from_frames(frame_a, frame_b, schema), order


class TestCategorical:
    """Tests for Gumbel-max draws."""

    def test_frequencies_follow_weights(self, rng):
        log_weights = np.tile(np.log([1.0, 3.0]), (20000, 1))
        draws = sample_log_categorical(log_weights, rng)
        assert draws.mean() == pytest.approx(0.75, abs=0.02)

    def test_zero_weight_never_drawn(self, rng):
        log_weights = np.tile([0.0, -np.inf, 0.0], (5000, 1))
        draws = sample_log_categorical(log_weights, rng)
        assert not np.any(draws == 1)


class TestSweep:
    """Tests for one joint draw."""

    def test_matching_stays_one_to_one(self, small_data: LinkageData):
        """The one-to-one invariant holds after every sweep."""
        sampler = _sampler(small_data)
        for _ in range(10):
            sampler.sweep()
            sampler.links.check_invariant()
        assert sampler.n_sweeps == 10

    def test_recovers_exact_duplicates(self, duplicated_data):
        data, order = duplicated_data
        sampler = _sampler(data)
        for _ in range(10):
            sampler.sweep()
        correct = sum(sampler.links.b_to_a[k] == order[k] for k in range(data.n_b))
        assert correct >= 9

    def test_no_candidates_no_links(self, small_sim):
        """With every pair blocked, no record is ever linked."""
        base = small_sim.data
        data = LinkageData(
            schema=base.schema,
            a=base.a,
            b=base.b,
            candidates=np.zeros((base.n_a, base.n_b), dtype=bool),
        )
        sampler = _sampler(data)
        for _ in range(3):
            sampler.sweep()
        assert sampler.links.n_links == 0

    def test_record_without_candidates_stays_unlinked(self, duplicated_data):
        """A B-record with every pair blocked is left alone while the rest link."""
        base, _ = duplicated_data
        candidates = np.ones((base.n_a, base.n_b), dtype=bool)
        candidates[:, 0] = False
        data = LinkageData(schema=base.schema, a=base.a, b=base.b, candidates=candidates)
        sampler = _sampler(data)
        for _ in range(5):
            sampler.sweep()
        assert sampler.links.b_to_a[0] == -1
        assert sampler.links.n_links >= 7

    def test_imputation(self, small_data: LinkageData):
        """Missing entries get a drawn value, observed ones are kept."""
        sampler = _sampler(small_data)
        sampler.sweep()
        for store in (small_data.a, small_data.b):
            imputed = sampler.imputed(store)
            np.testing.assert_array_equal(imputed[~store.missing], store.codes[~store.missing])
            for j, k in enumerate(small_data.schema.cardinalities):
                assert imputed[:, j].min() >= 0
                assert imputed[:, j].max() < k

    def test_statistics(self, small_data: LinkageData):
        sampler = _sampler(small_data)
        stats = sampler.sweep()
        n_pivs = len(small_data.schema)

        assert stats.mistakes.shape == (n_pivs, 2)
        assert stats.records[0].tolist() == [small_data.n_a, small_data.n_b]
        np.testing.assert_array_equal(stats.missing[:, 0], small_data.a.missing_counts())
        # Every A-record plus every unlinked B-record
        expected_entities = small_data.n_a + small_data.n_b - sampler.links.n_links
        for counts in stats.value_counts:
            assert counts.sum() == expected_entities
        assert list(stats.hazard) == small_data.schema.unstable_indices
        assert stats.hazard[2].size == sampler.links.n_links
        assert np.all(stats.mistakes <= stats.observed_linked)


class TestRun:
    """Tests for a full sampling phase."""

    def test_burnin_and_accumulation(self, small_data: LinkageData):
        sampler = _sampler(small_data)
        stats = sampler.run(n_iter=5, burnin=2, accumulate=True)
        assert sampler.links.n_draws == 3
        assert stats.n_links >= 0

    def test_no_accumulation_during_outer_burnin(self, small_data: LinkageData):
        sampler = _sampler(small_data)
        sampler.run(n_iter=5, burnin=2, accumulate=False)
        assert sampler.links.n_draws == 0
        assert not sampler.links.counts

    def test_same_seed_same_draws(self, small_data: LinkageData):
        first = _sampler(small_data, seed=9)
        second = _sampler(small_data, seed=9)
        first.run(4, 1)
        second.run(4, 1)
        np.testing.assert_array_equal(first.links.a_to_b, second.links.a_to_b)
        np.testing.assert_array_equal(first.truths_a, second.truths_a)
