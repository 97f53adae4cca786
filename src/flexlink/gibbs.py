"""Gibbs sampler over linkage, true values and change indicators.

With the parameters held fixed, one sweep draws in turn:

1. Linkage: each B-record, in order, is released from its current partner
   and relinked to a free A-record or left unlinked, from its full
   conditional. With a Beta(a, b) prior on the proportion of linked
   B-records the weight of staying unlinked is
   ``(n_a - n_links) * (n_b - n_links - 1 + b) / (n_links + a)`` and the
   weight of A-record ``i`` is its likelihood ratio with the B-record.
   Only free A-records are proposed, so the matching stays one-to-one.
2. True values: every record's latent value of every PIV. For a missing
   entry this is its imputed value. Linked pairs share the value of a
   stable PIV; for an unstable PIV ``(h_A, h_B)`` is drawn jointly, which
   also draws whether the value changed between the two observations.

All categorical draws use the Gumbel-max trick on log-weights.
"""
from __future__ import annotations

import numpy as np

from flexlink.exceptions import NumericalInstabilityError
from flexlink.likelihood import change_matrix, log_likelihood_ratio, pair_tables
from flexlink.link_state import UNLINKED, LinkState
from flexlink.logging import get_logger
from flexlink.parameters import ParameterState
from flexlink.records import LinkageData, RecordStore
from flexlink.schema import UnstablePIV
from flexlink.statistics import HazardSample, StatisticsAccumulator, SufficientStatistics

logger = get_logger(__name__)


def sample_log_categorical(log_weights: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw one index per row from unnormalized log-weights."""
    noise = rng.gumbel(size=log_weights.shape)
    return np.argmax(log_weights + noise, axis=-1)


def _evidence(log_emission: np.ndarray, store: RecordStore, j: int) -> np.ndarray:
    """``(n, K)`` log-probability of each record's observation for every true value."""
    evidence = log_emission[:, store.codes[:, j]].T
    return np.where(store.missing[:, j][:, None], 0.0, evidence)


class GibbsSampler:
    """Draws (linkage, true values, change indicators) for fixed parameters.

    The sampler mutates ``links`` in place and never keeps a reference to it
    beyond its own lifetime; one sampler is built per sampling phase.
    """

    def __init__(
        self,
        data: LinkageData,
        params: ParameterState,
        links: LinkState,
        rng: np.random.Generator,
        link_prior: tuple[float, float] = (1.0, 1.0),
    ) -> None:
        self.data = data
        self.params = params
        self.links = links
        self.rng = rng
        self.link_prior = link_prior
        self.n_sweeps = 0

        schema = data.schema
        self.tables = [
            pair_tables(params.gamma[j], params.phi[j, 0], params.phi[j, 1])
            for j in range(len(schema))
        ]
        # Row k holds the log-likelihood ratios of B-record k with every A-record
        self.log_lr_b = np.ascontiguousarray(log_likelihood_ratio(data, params).T)

        with np.errstate(divide="ignore"):
            self.log_gamma = [np.log(g) for g in params.gamma]
            self.log_change = {j: np.log(change_matrix(params.gamma[j])) for j in schema.unstable_indices}
        self.evidence_a = [_evidence(t.log_emission_a, data.a, j) for j, t in enumerate(self.tables)]
        self.evidence_b = [_evidence(t.log_emission_b, data.b, j) for j, t in enumerate(self.tables)]
        self.covariates = {j: data.hazard_covariates(j) for j in schema.unstable_indices}

        self.truths_a = np.zeros((data.n_a, len(schema)), dtype=np.int64)
        self.truths_b = np.zeros((data.n_b, len(schema)), dtype=np.int64)

        self._missing = np.column_stack([data.a.missing_counts(), data.b.missing_counts()]).astype(np.float64)
        self._records = np.tile([float(data.n_a), float(data.n_b)], (len(schema), 1))

    # ------------------------------------------------------------------
    # Linkage
    # ------------------------------------------------------------------

    def _update_links(self) -> None:
        links = self.links
        n_a, n_b = self.data.n_a, self.data.n_b
        a_prior, b_prior = self.link_prior
        noise = self.rng.gumbel(size=(n_b, n_a + 1))

        for k in range(n_b):
            current = links.b_to_a[k]
            if current != UNLINKED:
                links.unlink(int(current), k)

            free = np.flatnonzero(links.a_to_b == UNLINKED)
            if free.size == 0:
                continue
            n_links = links.n_links
            log_stay = (
                np.log(n_a - n_links)
                + np.log(n_b - n_links - 1 + b_prior)
                - np.log(n_links + a_prior)
            )
            weights = self.log_lr_b[k, free] + noise[k, free]
            best = int(np.argmax(weights))
            # log_stay is finite, so a record whose candidates are all impossible stays unlinked
            if weights[best] > log_stay + noise[k, n_a]:
                links.link(int(free[best]), k)

    # ------------------------------------------------------------------
    # True values and change indicators
    # ------------------------------------------------------------------

    def _draw(self, log_weights: np.ndarray, j: int, rows: np.ndarray) -> np.ndarray:
        if log_weights.shape[0] == 0:
            return np.zeros(0, dtype=np.int64)
        peak = log_weights.max(axis=1)
        bad = ~np.isfinite(peak)
        if bad.any():
            raise NumericalInstabilityError(
                "full conditional of the true value has no mass",
                piv=self.data.schema[j].name,
                records=tuple(int(r) for r in rows[bad]),
            )
        return sample_log_categorical(log_weights, self.rng)

    def _pair_hazard(self, j: int, linked_a: np.ndarray, linked_b: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        covariates_a, covariates_b = self.covariates[j]
        design = np.column_stack([
            np.ones(len(linked_a)),
            covariates_a[linked_a],
            covariates_b[linked_b],
        ])
        gaps = self.data.time_gaps[linked_a, linked_b]
        rate = np.exp(design @ self.params.alpha[j]) * gaps
        return design, gaps, rate

    def _impute(self) -> SufficientStatistics:
        data = self.data
        links = self.links
        schema = data.schema
        linked_a, linked_b = links.pairs()
        free_a = np.flatnonzero(links.a_to_b == UNLINKED)
        free_b = np.flatnonzero(links.b_to_a == UNLINKED)

        value_counts = []
        mistakes = np.zeros((len(schema), 2))
        observed_linked = np.zeros((len(schema), 2))
        hazard: dict[int, HazardSample] = {}

        for j, piv in enumerate(schema.pivs):
            k = piv.cardinality
            log_gamma = self.log_gamma[j]
            evidence_a = self.evidence_a[j]
            evidence_b = self.evidence_b[j]
            truth_a = self.truths_a[:, j]
            truth_b = self.truths_b[:, j]

            truth_a[free_a] = self._draw(log_gamma[None, :] + evidence_a[free_a], j, free_a)
            truth_b[free_b] = self._draw(log_gamma[None, :] + evidence_b[free_b], j, free_b)

            if isinstance(piv, UnstablePIV):
                design, gaps, rate = self._pair_hazard(j, linked_a, linked_b)
                with np.errstate(divide="ignore"):
                    log_same = -rate
                    log_change = np.log(-np.expm1(-rate))
                transition = np.where(
                    np.eye(k, dtype=bool)[None, :, :],
                    log_same[:, None, None],
                    log_change[:, None, None] + self.log_change[j][None, :, :],
                )
                joint = (
                    log_gamma[None, :, None]
                    + evidence_a[linked_a][:, :, None]
                    + evidence_b[linked_b][:, None, :]
                    + transition
                )
                drawn = self._draw(joint.reshape(len(linked_a), k * k), j, linked_a)
                truth_a[linked_a] = drawn // k
                truth_b[linked_b] = drawn % k
                changed = truth_a[linked_a] != truth_b[linked_b]
                hazard[j] = HazardSample(
                    changed=changed.astype(np.float64),
                    design=design,
                    gaps=gaps,
                    weights=np.ones(len(linked_a)),
                )
            else:
                shared = self._draw(
                    log_gamma[None, :] + evidence_a[linked_a] + evidence_b[linked_b],
                    j,
                    linked_a,
                )
                truth_a[linked_a] = shared
                truth_b[linked_b] = shared

            for side, (store, rows, truth) in enumerate(
                ((data.a, linked_a, truth_a), (data.b, linked_b, truth_b))
            ):
                observed = ~store.missing[rows, j]
                observed_linked[j, side] = observed.sum()
                mistakes[j, side] = ((store.codes[rows, j] != truth[rows]) & observed).sum()

            # Each entity is counted once: every A-record plus the unlinked B-records
            value_counts.append(
                np.bincount(truth_a, minlength=k) + np.bincount(truth_b[free_b], minlength=k)
            )

        return SufficientStatistics(
            value_counts=[c.astype(np.float64) for c in value_counts],
            missing=self._missing.copy(),
            records=self._records.copy(),
            mistakes=mistakes,
            observed_linked=observed_linked,
            hazard=hazard,
            n_links=float(links.n_links),
        )

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def sweep(self) -> SufficientStatistics:
        """One joint draw; mutates the link state."""
        self._update_links()
        stats = self._impute()
        self.n_sweeps += 1
        return stats

    def run(self, n_iter: int, burnin: int, accumulate: bool = False) -> SufficientStatistics:
        """Run ``n_iter`` sweeps and average the statistics of those after ``burnin``.

        When ``accumulate`` is set, each retained draw is also folded into
        the link posterior counts.
        """
        retained = StatisticsAccumulator()
        for sweep in range(n_iter):
            stats = self.sweep()
            if sweep >= burnin:
                retained.add(stats)
                if accumulate:
                    self.links.accumulate()
            logger.debug("gibbs.sweep", sweep=sweep, links=self.links.n_links)
        return retained.mean()

    def imputed(self, store: RecordStore) -> np.ndarray:
        """Codes of a source with missing entries replaced by their latest draw."""
        truths = self.truths_a if store is self.data.a else self.truths_b
        return np.where(store.missing, truths, store.codes)
