"""Stochastic M-step: re-estimate the parameters from completed-data statistics.

- gamma: Dirichlet posterior mean of the true-value counts
- eta: Beta posterior mean of the missing counts, per source
- phi: Beta posterior mean of the mistakes made on linked records, pooled
  over both sources when shared, skipped when fixed, capped at the ceiling
  when bounded
- alpha: maximum likelihood of the change indicators under the
  complementary log-log hazard model, by L-BFGS-B
"""
from __future__ import annotations

import numpy as np
from scipy.optimize import minimize

from flexlink.config import RunConfig
from flexlink.logging import get_logger
from flexlink.parameters import ParameterState
from flexlink.schema import MistakeControl, PIVSchema, UnstablePIV
from flexlink.statistics import HazardSample, SufficientStatistics

logger = get_logger(__name__)

# Box for the hazard coefficients, keeps the rate away from exactly 0 or inf
HAZARD_BOUNDS = (-30.0, 10.0)


def update_mistakes(
    current: np.ndarray,
    mistakes: np.ndarray,
    trials: np.ndarray,
    control: MistakeControl,
    prior: float = 0.5,
) -> np.ndarray:
    """New ``(phi_A, phi_B)`` for one PIV."""
    phi = current.astype(np.float64).copy()
    if control.shared:
        if control.any_fixed:
            phi[:] = control.fixed_a
        elif trials.sum() > 0:
            phi[:] = (mistakes.sum() + prior) / (trials.sum() + 2 * prior)
    else:
        for side, fixed in enumerate((control.fixed_a, control.fixed_b)):
            if fixed is not None:
                phi[side] = fixed
            elif trials[side] > 0:
                phi[side] = (mistakes[side] + prior) / (trials[side] + 2 * prior)
    if control.bounded:
        phi = np.minimum(phi, control.ceiling)
    return phi


def _hazard_objective(
    coefficients: np.ndarray,
    changed: np.ndarray,
    design: np.ndarray,
    gaps: np.ndarray,
    weights: np.ndarray,
) -> tuple[float, np.ndarray]:
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        rate = np.exp(design @ coefficients) * gaps
        log_same = -rate
        log_change = np.log(-np.expm1(-rate))
        log_lik = np.sum(weights * np.where(changed > 0, log_change, log_same))
        # d log_change / d eta = rate / expm1(rate); d log_same / d eta = -rate
        score = np.where(changed > 0, rate / np.expm1(rate), -rate)
    score = np.nan_to_num(score, nan=0.0, posinf=0.0, neginf=0.0)
    gradient = -(design.T @ (weights * score))
    return -float(log_lik), gradient


def update_hazard(current: np.ndarray, sample: HazardSample) -> np.ndarray:
    """Maximum-likelihood hazard coefficients from sampled change indicators.

    Pairs observed with no elapsed time carry no information and are left
    out; with nothing left the coefficients are kept.
    """
    keep = (sample.gaps > 0) & (sample.weights > 0)
    if not keep.any():
        return current.copy()

    result = minimize(
        _hazard_objective,
        np.clip(current, *HAZARD_BOUNDS),
        args=(sample.changed[keep], sample.design[keep], sample.gaps[keep], sample.weights[keep]),
        jac=True,
        method="L-BFGS-B",
        bounds=[HAZARD_BOUNDS] * len(current),
    )
    if not result.success:
        logger.warning("mstep.hazard_not_converged", message=str(result.message))
    if not np.all(np.isfinite(result.x)):
        return current.copy()
    return np.asarray(result.x, dtype=np.float64)


def update_parameters(
    params: ParameterState,
    stats: SufficientStatistics,
    schema: PIVSchema,
    config: RunConfig,
) -> ParameterState:
    """Parameters maximizing the completed-data posterior for ``stats``."""
    updated = params.copy()
    for j, piv in enumerate(schema.pivs):
        counts = stats.value_counts[j] + config.gamma_prior
        updated.gamma[j] = counts / counts.sum()

        updated.eta[j] = (stats.missing[j] + config.rate_prior) / (
            stats.records[j] + 2 * config.rate_prior
        )

        updated.phi[j] = update_mistakes(
            params.phi[j],
            stats.mistakes[j],
            stats.observed_linked[j],
            piv.mistakes,
            prior=config.rate_prior,
        )

        if isinstance(piv, UnstablePIV):
            updated.alpha[j] = update_hazard(params.alpha[j], stats.hazard[j])
    return updated
