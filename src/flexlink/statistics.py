"""Sufficient statistics produced by the Gibbs sampler for the M-step."""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class HazardSample:
    """Change indicators of one unstable PIV over linked pairs.

    ``design`` rows are ``[1, covariates of the A-record, covariates of the
    B-record]``; ``weights`` let several sweeps be averaged.
    """

    changed: np.ndarray
    design: np.ndarray
    gaps: np.ndarray
    weights: np.ndarray

    @property
    def size(self) -> int:
        return len(self.changed)


@dataclass
class SufficientStatistics:
    """Completed-data counts from one sweep (or an average of sweeps).

    Arrays indexed ``[piv, source]`` use source 0 for A and 1 for B.
    """

    value_counts: list[np.ndarray]
    missing: np.ndarray
    records: np.ndarray
    mistakes: np.ndarray
    observed_linked: np.ndarray
    hazard: dict[int, HazardSample] = field(default_factory=dict)
    n_links: float = 0.0


class StatisticsAccumulator:
    """Averages the statistics of the retained sweeps of one sampling phase."""

    def __init__(self) -> None:
        self._sweeps: list[SufficientStatistics] = []

    def add(self, stats: SufficientStatistics) -> None:
        self._sweeps.append(stats)

    @property
    def n_sweeps(self) -> int:
        return len(self._sweeps)

    def mean(self) -> SufficientStatistics:
        if not self._sweeps:
            raise ValueError("no sweeps retained")
        n = len(self._sweeps)
        first = self._sweeps[0]

        hazard = {}
        for j in first.hazard:
            samples = [s.hazard[j] for s in self._sweeps]
            hazard[j] = HazardSample(
                changed=np.concatenate([h.changed for h in samples]),
                design=np.concatenate([h.design for h in samples]),
                gaps=np.concatenate([h.gaps for h in samples]),
                weights=np.concatenate([h.weights for h in samples]) / n,
            )

        return SufficientStatistics(
            value_counts=[
                np.mean([s.value_counts[j] for s in self._sweeps], axis=0)
                for j in range(len(first.value_counts))
            ],
            missing=np.mean([s.missing for s in self._sweeps], axis=0),
            records=first.records.copy(),
            mistakes=np.mean([s.mistakes for s in self._sweeps], axis=0),
            observed_linked=np.mean([s.observed_linked for s in self._sweeps], axis=0),
            hazard=hazard,
            n_links=float(np.mean([s.n_links for s in self._sweeps])),
        )
