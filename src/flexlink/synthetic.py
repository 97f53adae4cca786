"""Synthetic two-source data with known true links.

Records are drawn from the same generative model the sampler assumes:
true values from a uniform population distribution, changes of unstable
values over the time gap of a linked pair at a constant hazard rate, then
missing values and recording mistakes per source.

Example:
    >>> from flexlink import fit
    >>> from flexlink.synthetic import SyntheticConfig, generate
    >>> sim = generate(SyntheticConfig(seed=3))
    >>> result = fit(sim.data, stem_iter=10, stem_burnin=5, gibbs_iter=5, gibbs_burnin=2)
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, model_validator

from flexlink.logging import get_logger
from flexlink.records import LinkageData
from flexlink.schema import MistakeControl, PIVSchema, StablePIV, UnstablePIV

logger = get_logger(__name__)

TIME_COLUMN = "time"


class SyntheticConfig(BaseModel):
    """Shape and noise of a synthetic linkage problem."""

    cardinalities: list[int] = Field(default_factory=lambda: [10, 12, 15, 20, 25])
    unstable: list[bool] | None = Field(
        default=None,
        description="Per PIV; defaults to only the last PIV being unstable",
    )
    names: list[str] | None = None
    n_a: int = Field(default=500, ge=1)
    n_b: int = Field(default=800, ge=1)
    n_links: int = Field(default=300, ge=0)
    mistakes: tuple[float, float] = (0.02, 0.02)
    missing: tuple[float, float] = (0.01, 0.01)
    change_rate: float | list[float] = Field(
        default=0.28,
        description="Hazard of a value change per time unit; one value for all unstable PIVs or one each",
    )
    max_gap: float = Field(default=2.0, gt=0.0)
    enforce_estimability: bool = Field(
        default=True,
        description="Bound the mistake rate of unstable PIVs in the generated schema",
    )
    seed: int | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "SyntheticConfig":
        p = len(self.cardinalities)
        if p == 0:
            raise ValueError("at least one PIV is required")
        if any(k < 2 for k in self.cardinalities):
            raise ValueError("every cardinality must be at least 2")
        if self.unstable is None:
            self.unstable = [False] * (p - 1) + [True]
        if len(self.unstable) != p:
            raise ValueError(f"unstable has {len(self.unstable)} flags for {p} PIVs")
        if self.names is None:
            self.names = [f"V{j + 1}" for j in range(p)]
        if len(self.names) != p or len(set(self.names)) != p:
            raise ValueError("names must be unique, one per PIV")
        if self.n_links > min(self.n_a, self.n_b):
            raise ValueError(f"n_links={self.n_links} exceeds the smaller source")
        n_unstable = sum(self.unstable)
        if isinstance(self.change_rate, list) and len(self.change_rate) != n_unstable:
            raise ValueError(f"change_rate has {len(self.change_rate)} entries for {n_unstable} unstable PIVs")
        if any(r < 0.0 for r in self.change_rates):
            raise ValueError("change rates must be non-negative")
        for label, rates in (("mistakes", self.mistakes), ("missing", self.missing)):
            if not all(0.0 <= r < 1.0 for r in rates):
                raise ValueError(f"{label} rates must lie in [0, 1)")
        return self

    @property
    def change_rates(self) -> list[float]:
        """Change hazard per unstable PIV, in PIV order."""
        if isinstance(self.change_rate, list):
            return list(self.change_rate)
        return [self.change_rate] * sum(self.unstable)


@dataclass
class SyntheticData:
    """Generated sources, their schema and the true links."""

    frame_a: pd.DataFrame
    frame_b: pd.DataFrame
    true_links: pd.DataFrame
    schema: PIVSchema

    @cached_property
    def data(self) -> LinkageData:
        return LinkageData.from_frames(self.frame_a, self.frame_b, self.schema, time_column=TIME_COLUMN)

    def to_csv(self, directory: Path | str) -> dict[str, Path]:
        """Write ``a.csv``, ``b.csv`` and ``truth.csv`` and return their paths."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        paths = {
            "a": directory / "a.csv",
            "b": directory / "b.csv",
            "truth": directory / "truth.csv",
        }
        self.frame_a.to_csv(paths["a"], index=False)
        self.frame_b.to_csv(paths["b"], index=False)
        self.true_links.to_csv(paths["truth"], index=False)
        return paths

    def config_mapping(self) -> dict:
        """Schema in the configuration-file layout read by ``flexlink fit``."""
        return {
            "pivs_config": {piv.name: {"stable": piv.stable} for piv in self.schema.pivs},
            "nvalues": [piv.cardinality for piv in self.schema.pivs],
            "control_on_mistakes": [piv.mistakes.bounded for piv in self.schema.pivs],
            "time_column": TIME_COLUMN,
        }


def _observe(
    truth: np.ndarray,
    cardinality: int,
    mistake: float,
    missing: float,
    rng: np.random.Generator,
) -> pd.Series:
    n = len(truth)
    recorded = truth.copy()
    wrong = rng.random(n) < mistake
    # A mistake lands on one of the other categories, uniformly
    recorded[wrong] = (truth[wrong] + rng.integers(1, cardinality, size=wrong.sum())) % cardinality
    observed = pd.Series(recorded, dtype="Int64")
    return observed.mask(rng.random(n) < missing)


def generate(config: SyntheticConfig | None = None) -> SyntheticData:
    """Draw two sources sharing ``n_links`` entities."""
    config = config or SyntheticConfig()
    rng = np.random.default_rng(config.seed)
    n_a, n_b, n_links = config.n_a, config.n_b, config.n_links

    # B-records 0..n_links-1 are the counterparts of A-records 0..n_links-1 before shuffling
    times_a = rng.uniform(0.0, 1.0, size=n_a)
    gaps = rng.uniform(0.0, config.max_gap, size=n_links)
    times_b = rng.uniform(0.0, 1.0 + config.max_gap, size=n_b)
    times_b[:n_links] = times_a[:n_links] + gaps

    columns_a: dict[str, pd.Series] = {}
    columns_b: dict[str, pd.Series] = {}
    pivs: list[StablePIV | UnstablePIV] = []
    rates = iter(config.change_rates)
    for name, k, unstable in zip(config.names, config.cardinalities, config.unstable):
        truth_a = rng.integers(0, k, size=n_a)
        truth_b = rng.integers(0, k, size=n_b)
        truth_b[:n_links] = truth_a[:n_links]
        if unstable:
            changed = rng.random(n_links) < -np.expm1(-next(rates) * gaps)
            shift = rng.integers(1, k, size=changed.sum())
            truth_b[:n_links][changed] = (truth_a[:n_links][changed] + shift) % k
            pivs.append(UnstablePIV(
                name=name,
                cardinality=k,
                mistakes=MistakeControl(bounded=config.enforce_estimability),
            ))
        else:
            pivs.append(StablePIV(name=name, cardinality=k))
        columns_a[name] = _observe(truth_a, k, config.mistakes[0], config.missing[0], rng)
        columns_b[name] = _observe(truth_b, k, config.mistakes[1], config.missing[1], rng)

    frame_a = pd.DataFrame(columns_a)
    frame_a[TIME_COLUMN] = times_a
    frame_b = pd.DataFrame(columns_b)
    frame_b[TIME_COLUMN] = times_b

    order = rng.permutation(n_b)
    frame_b = frame_b.iloc[order].reset_index(drop=True)
    position = np.empty(n_b, dtype=np.int64)
    position[order] = np.arange(n_b)
    true_links = pd.DataFrame({
        "idx_a": np.arange(n_links, dtype=np.int64),
        "idx_b": position[:n_links],
    })

    logger.debug("synthetic.generate", n_a=n_a, n_b=n_b, n_links=n_links, pivs=config.names)
    return SyntheticData(
        frame_a=frame_a,
        frame_b=frame_b,
        true_links=true_links,
        schema=PIVSchema(pivs=pivs),
    )
