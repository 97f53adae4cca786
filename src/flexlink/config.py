"""Run configuration for the StEM driver.

Process-wide defaults are read from the environment once, at import time.

Environment Variables:
    FLEXLINK_STEM_ITER: Outer StEM iterations, burn-in included (default 50)
    FLEXLINK_STEM_BURNIN: Outer iterations discarded as burn-in (default 30)
    FLEXLINK_GIBBS_ITER: Gibbs sweeps per outer iteration (default 50)
    FLEXLINK_GIBBS_BURNIN: Gibbs sweeps discarded per outer iteration (default 30)
    FLEXLINK_SEED: Seed for the random generator (default unset)
    FLEXLINK_MISTAKE_CEILING: Ceiling on bounded mistake rates (default 0.1)
    FLEXLINK_INITIAL_MISTAKE: Starting value of free mistake rates (default 0.05)
    FLEXLINK_INITIAL_CHANGE: Starting change probability over one time unit (default 0.1)
    FLEXLINK_TOLERANCE: Accepted deviation of updated parameters (default 1e-9)
    FLEXLINK_LOG_LEVEL: Log level used by the default logging setup (default INFO)

Example:
    >>> from flexlink.config import CONFIG, RunConfig
    >>> RunConfig(stem_iter=10, stem_burnin=5, gibbs_iter=10, gibbs_burnin=5, seed=1)
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from pydantic import BaseModel, Field


def _f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except Exception:
        return default


def _i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except Exception:
        return default


def _seed(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class StEMDefaults:
    stem_iter: int = _i("FLEXLINK_STEM_ITER", 50)
    stem_burnin: int = _i("FLEXLINK_STEM_BURNIN", 30)
    gibbs_iter: int = _i("FLEXLINK_GIBBS_ITER", 50)
    gibbs_burnin: int = _i("FLEXLINK_GIBBS_BURNIN", 30)
    seed: int | None = _seed("FLEXLINK_SEED")

    # Mistake rates
    mistake_ceiling: float = _f("FLEXLINK_MISTAKE_CEILING", 0.1)
    initial_mistake: float = _f("FLEXLINK_INITIAL_MISTAKE", 0.05)

    # Probability an unstable value changes over one time unit, at start
    initial_change: float = _f("FLEXLINK_INITIAL_CHANGE", 0.1)

    tolerance: float = _f("FLEXLINK_TOLERANCE", 1e-9)
    log_level: str = os.getenv("FLEXLINK_LOG_LEVEL", "INFO").upper()


CONFIG = StEMDefaults()


class RunConfig(BaseModel):
    """Run-length and prior settings for one StEM fit.

    Burn-in consistency (``*_burnin < *_iter``) is checked by the
    estimability guard so that it surfaces as a ``ConfigurationError``.
    """

    stem_iter: int = Field(default=CONFIG.stem_iter, ge=1)
    stem_burnin: int = Field(default=CONFIG.stem_burnin, ge=0)
    gibbs_iter: int = Field(default=CONFIG.gibbs_iter, ge=1)
    gibbs_burnin: int = Field(default=CONFIG.gibbs_burnin, ge=0)
    seed: int | None = Field(default=CONFIG.seed)

    # Beta prior on the proportion of B-records that have a link
    link_prior: tuple[float, float] = Field(default=(1.0, 1.0))

    # Dirichlet pseudo-count added to every category of gamma
    gamma_prior: float = Field(default=1.0, ge=0.0)

    # Pseudo-counts for the Beta updates of eta and phi
    rate_prior: float = Field(default=0.5, ge=0.0)

    initial_mistake: float = Field(default=CONFIG.initial_mistake, ge=0.0, lt=1.0)
    initial_change: float = Field(default=CONFIG.initial_change, gt=0.0, lt=1.0)
