"""Pairwise likelihoods of the linkage model.

A record's observed value ``g`` of a PIV with true value ``h`` is missing
with probability ``eta``; otherwise it equals ``h`` with probability
``1 - phi`` and is one of the other ``K - 1`` categories, uniformly, with
probability ``phi``.

For a candidate pair the evidence of PIV ``j`` is the log-ratio between the
probability of both observed values under "same entity" and under "two
independent entities". Missing values carry no evidence (their ratio is 1).
Per-PIV tables are small ``K x K`` arrays; everything summed over PIVs and
over pairs is kept in log space.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from flexlink.exceptions import NumericalInstabilityError
from flexlink.parameters import ParameterState, log_same_probability
from flexlink.records import LinkageData
from flexlink.schema import UnstablePIV


def emission_matrix(cardinality: int, phi: float) -> np.ndarray:
    """``e[h, g]``: probability of recording ``g`` for true value ``h`` when observed."""
    off = phi / (cardinality - 1)
    matrix = np.full((cardinality, cardinality), off)
    np.fill_diagonal(matrix, 1.0 - phi)
    return matrix


def change_matrix(gamma: np.ndarray) -> np.ndarray:
    """``t[h_a, h_b]``: distribution of the new value given the old one changed."""
    remaining = 1.0 - gamma
    with np.errstate(divide="ignore", invalid="ignore"):
        weights = np.where(remaining > 0, 1.0 / remaining, 0.0)
    matrix = np.tile(gamma, (len(gamma), 1)) * weights[:, None]
    np.fill_diagonal(matrix, 0.0)
    return matrix


@dataclass
class PairTables:
    """Log-probability tables of one PIV, indexed by observed codes."""

    log_emission_a: np.ndarray
    log_emission_b: np.ndarray
    log_joint_same: np.ndarray
    log_joint_change: np.ndarray
    log_marginal_a: np.ndarray
    log_marginal_b: np.ndarray

    @property
    def log_ratio_same(self) -> np.ndarray:
        return self.log_joint_same - self.log_marginal_a[:, None] - self.log_marginal_b[None, :]


def pair_tables(gamma: np.ndarray, phi_a: float, phi_b: float) -> PairTables:
    k = len(gamma)
    e_a = emission_matrix(k, phi_a)
    e_b = emission_matrix(k, phi_b)
    joint_same = (e_a * gamma[:, None]).T @ e_b
    joint_change = (e_a * gamma[:, None]).T @ change_matrix(gamma) @ e_b
    with np.errstate(divide="ignore"):
        return PairTables(
            log_emission_a=np.log(e_a),
            log_emission_b=np.log(e_b),
            log_joint_same=np.log(joint_same),
            log_joint_change=np.log(joint_change),
            log_marginal_a=np.log(gamma @ e_a),
            log_marginal_b=np.log(gamma @ e_b),
        )


def piv_log_likelihood_ratio(
    data: LinkageData,
    params: ParameterState,
    j: int,
    tables: PairTables | None = None,
) -> np.ndarray:
    """``(n_a, n_b)`` log-likelihood ratio contributed by PIV ``j``."""
    piv = data.schema[j]
    if tables is None:
        tables = pair_tables(params.gamma[j], params.phi[j, 0], params.phi[j, 1])
    codes_a = data.a.codes[:, j]
    codes_b = data.b.codes[:, j]

    if isinstance(piv, UnstablePIV):
        covariates_a, covariates_b = data.hazard_covariates(j)
        log_same, log_change = log_same_probability(
            params.alpha[j], covariates_a, covariates_b, data.time_gaps
        )
        grid = np.ix_(codes_a, codes_b)
        term = np.logaddexp(
            log_same + tables.log_joint_same[grid],
            log_change + tables.log_joint_change[grid],
        )
        with np.errstate(invalid="ignore"):
            term = term - tables.log_marginal_a[codes_a][:, None] - tables.log_marginal_b[codes_b][None, :]
    else:
        term = tables.log_ratio_same[np.ix_(codes_a, codes_b)]

    no_evidence = data.a.missing[:, j][:, None] | data.b.missing[:, j][None, :]
    term = np.where(no_evidence, 0.0, term)

    bad = np.isnan(term) | np.isposinf(term)
    if bad.any():
        i, k = np.argwhere(bad)[0]
        raise NumericalInstabilityError(
            f"log-likelihood ratio is not finite for {int(bad.sum())} pairs",
            piv=piv.name,
            records=(int(i), int(k)),
        )
    return term


def log_likelihood_ratio(data: LinkageData, params: ParameterState) -> np.ndarray:
    """``(n_a, n_b)`` total log-likelihood ratio of every candidate pair.

    Pairs excluded by the candidate mask get ``-inf``.
    """
    total = np.zeros((data.n_a, data.n_b))
    for j in range(len(data.schema)):
        total += piv_log_likelihood_ratio(data, params, j)
    if data.candidates is not None:
        total = np.where(data.candidates, total, -np.inf)
    return total
