"""Stochastic Expectation-Maximisation driver.

Each outer iteration runs a Gibbs sampling phase against the current
parameters, then re-estimates the parameters from the statistics of the
retained sweeps. After the outer burn-in, the retained link draws of every
sampling phase are counted into the link posterior.

Example:
    >>> from flexlink import RunConfig, fit
    >>> result = fit(data, RunConfig(stem_iter=50, stem_burnin=30, gibbs_iter=50, gibbs_burnin=30, seed=1))
    >>> result.links(threshold=0.5)
"""
from __future__ import annotations

import dataclasses
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from flexlink.config import RunConfig
from flexlink.exceptions import NumericalInstabilityError
from flexlink.gibbs import GibbsSampler
from flexlink.guard import check_estimability, check_run_length
from flexlink.link_state import LinkState
from flexlink.logging import get_logger
from flexlink.mstep import update_parameters
from flexlink.observers import IterationReport, Observer
from flexlink.parameters import ParameterChains, ParameterState
from flexlink.records import LinkageData
from flexlink.schema import PIVSchema

logger = get_logger(__name__)


@dataclass
class StEMResult:
    """Link posterior and parameter chains of one fit."""

    delta: pd.DataFrame
    chains: ParameterChains
    schema: PIVSchema
    stem_burnin: int
    n_draws: int
    iterations_run: int
    partial: bool = False
    imputed_a: np.ndarray | None = None
    imputed_b: np.ndarray | None = None

    def links(self, threshold: float = 0.5) -> pd.DataFrame:
        """Pairs whose posterior link probability exceeds ``threshold``.

        With a threshold of at least 0.5 the returned pairs are one-to-one.
        """
        return self.delta[self.delta["proba_link"] > threshold].reset_index(drop=True)

    def point_estimate(self) -> ParameterState:
        """Average of the parameter chains after the outer burn-in."""
        return self.chains.mean(start=self.stem_burnin)


class StEM:
    """Runs the StEM outer loop over one ``LinkageData``.

    The driver owns the parameter state and the link state; each sampling
    phase borrows them for its duration only.
    """

    def __init__(
        self,
        data: LinkageData,
        config: RunConfig | None = None,
        observers: Iterable[Observer] = (),
        auto_fix: bool = False,
    ) -> None:
        self.data = data
        self.config = config or RunConfig()
        self.observers = list(observers)
        self.auto_fix = auto_fix
        self._stop = threading.Event()

    def request_stop(self) -> None:
        """Stop after the current outer iteration; safe to call from another thread."""
        self._stop.set()

    def _notify(self, report: IterationReport) -> bool:
        keep_going = True
        for observer in self.observers:
            if observer.on_iteration(report) is False:
                keep_going = False
        return keep_going

    def run(self) -> StEMResult:
        """Run every outer iteration, or until a stop; observers are closed even on failure."""
        try:
            return self._run()
        finally:
            for observer in self.observers:
                observer.close()

    def _run(self) -> StEMResult:
        config = self.config
        check_run_length(config)
        schema = check_estimability(self.data.schema, auto_fix=self.auto_fix)
        data = self.data if schema is self.data.schema else dataclasses.replace(self.data, schema=schema)

        rng = np.random.default_rng(config.seed)
        params = ParameterState.initialize(
            data,
            initial_mistake=config.initial_mistake,
            initial_change=config.initial_change,
            gamma_prior=config.gamma_prior,
            rate_prior=config.rate_prior,
        )
        params.validate(schema)
        links = LinkState(data.n_a, data.n_b)
        chains = ParameterChains(schema)

        logger.info(
            "stem.start",
            n_a=data.n_a,
            n_b=data.n_b,
            pivs=schema.names,
            stem_iter=config.stem_iter,
            gibbs_iter=config.gibbs_iter,
            seed=config.seed,
        )
        started = time.perf_counter()
        partial = False
        iterations_run = 0
        sampler: GibbsSampler | None = None

        for iteration in range(config.stem_iter):
            accumulating = iteration >= config.stem_burnin
            try:
                sampler = GibbsSampler(data, params, links, rng, link_prior=config.link_prior)
                stats = sampler.run(config.gibbs_iter, config.gibbs_burnin, accumulate=accumulating)
                params = update_parameters(params, stats, schema, config)
                params.validate(schema, iteration=iteration)
            except NumericalInstabilityError as e:
                if e.iteration is None:
                    raise dataclasses.replace(e, iteration=iteration) from e
                raise

            chains.append(params)
            iterations_run = iteration + 1
            logger.info(
                "stem.iteration",
                iteration=iteration,
                mean_links=round(stats.n_links, 2),
                accumulating=accumulating,
                draws=links.n_draws,
            )

            report = IterationReport(
                iteration=iteration,
                stem_iter=config.stem_iter,
                accumulating=accumulating,
                mean_links=stats.n_links,
                n_draws=links.n_draws,
                params=params.copy(),
                schema=schema,
            )
            keep_going = self._notify(report)
            if iterations_run < config.stem_iter and (not keep_going or self._stop.is_set()):
                partial = True
                logger.warning("stem.stopped_early", iterations_run=iterations_run, draws=links.n_draws)
                break

        result = StEMResult(
            delta=links.posterior(data.a.index, data.b.index),
            chains=chains,
            schema=schema,
            stem_burnin=config.stem_burnin,
            n_draws=links.n_draws,
            iterations_run=iterations_run,
            partial=partial,
            imputed_a=sampler.imputed(data.a) if sampler is not None else None,
            imputed_b=sampler.imputed(data.b) if sampler is not None else None,
        )
        logger.info(
            "stem.finish",
            iterations_run=iterations_run,
            draws=links.n_draws,
            candidate_pairs=len(result.delta),
            seconds=round(time.perf_counter() - started, 3),
        )
        for observer in self.observers:
            observer.on_finish(result)
        return result


def fit(
    data: LinkageData,
    config: RunConfig | None = None,
    *,
    observers: Iterable[Observer] = (),
    auto_fix: bool = False,
    **overrides: Any,
) -> StEMResult:
    """Fit the linkage model; keyword overrides update ``config`` fields."""
    base = config or RunConfig()
    if overrides:
        base = RunConfig.model_validate({**base.model_dump(), **overrides})
    return StEM(data, base, observers=observers, auto_fix=auto_fix).run()
