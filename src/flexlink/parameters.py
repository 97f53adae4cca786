"""Parameter state of the linkage model and its chains across StEM iterations.

For PIV ``j``:

- ``gamma[j]``: distribution of the true value in the population (simplex)
- ``eta[j]``: ``(eta_A, eta_B)`` probability the value is missing per source
- ``phi[j]``: ``(phi_A, phi_B)`` probability of a recording mistake per source
- ``alpha[j]``: hazard coefficients ``[intercept, beta_A..., beta_B...]``,
  unstable PIVs only
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from flexlink.exceptions import NumericalInstabilityError
from flexlink.schema import PIVSchema, UnstablePIV

if TYPE_CHECKING:
    from flexlink.records import LinkageData


def log_same_probability(
    alpha: np.ndarray,
    covariates_a: np.ndarray,
    covariates_b: np.ndarray,
    gaps: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Log-probabilities that an unstable value stays the same / changes.

    Returns two ``(n_a, n_b)`` arrays. The hazard rate of pair ``(i, k)`` is
    ``exp(alpha_0 + x_a[i] . beta_A + x_b[k] . beta_B)``.
    """
    n_cov_a = covariates_a.shape[1]
    linear_a = alpha[0] + covariates_a @ alpha[1 : 1 + n_cov_a]
    linear_b = covariates_b @ alpha[1 + n_cov_a :]
    rate = np.exp(linear_a[:, None] + linear_b[None, :]) * gaps
    with np.errstate(divide="ignore"):
        log_change = np.log(-np.expm1(-rate))
    return -rate, log_change


@dataclass
class ParameterState:
    """Current estimate of gamma, eta, phi and alpha."""

    gamma: list[np.ndarray]
    eta: np.ndarray
    phi: np.ndarray
    alpha: dict[int, np.ndarray] = field(default_factory=dict)

    def copy(self) -> "ParameterState":
        return ParameterState(
            gamma=[g.copy() for g in self.gamma],
            eta=self.eta.copy(),
            phi=self.phi.copy(),
            alpha={j: a.copy() for j, a in self.alpha.items()},
        )

    def change_probability(
        self,
        j: int,
        gap: float = 1.0,
        covariates_a: np.ndarray | None = None,
        covariates_b: np.ndarray | None = None,
    ) -> float:
        """Probability PIV ``j`` changes over ``gap`` for one pair of records."""
        alpha = self.alpha[j]
        linear = alpha[0]
        if covariates_a is not None and len(covariates_a):
            linear += float(np.dot(covariates_a, alpha[1 : 1 + len(covariates_a)]))
            offset = 1 + len(covariates_a)
        else:
            offset = 1
        if covariates_b is not None and len(covariates_b):
            linear += float(np.dot(covariates_b, alpha[offset : offset + len(covariates_b)]))
        return float(-np.expm1(-np.exp(linear) * gap))

    @classmethod
    def initialize(
        cls,
        data: "LinkageData",
        initial_mistake: float,
        initial_change: float,
        gamma_prior: float = 1.0,
        rate_prior: float = 0.5,
    ) -> "ParameterState":
        """Starting values from the observed data and the schema.

        gamma starts at the smoothed observed frequencies in both sources and
        eta at the observed missing fractions; free mistake rates start at
        ``initial_mistake`` (capped by their ceiling), fixed ones at their
        fixed value.
        """
        schema = data.schema
        gamma = []
        for j, piv in enumerate(schema.pivs):
            counts = np.full(piv.cardinality, gamma_prior, dtype=np.float64)
            for store in (data.a, data.b):
                observed = store.codes[~store.missing[:, j], j]
                counts += np.bincount(observed, minlength=piv.cardinality)
            if counts.sum() <= 0:
                counts = np.ones(piv.cardinality)
            gamma.append(counts / counts.sum())

        eta = np.column_stack([
            (data.a.missing_counts() + rate_prior) / (data.n_a + 2 * rate_prior),
            (data.b.missing_counts() + rate_prior) / (data.n_b + 2 * rate_prior),
        ])

        phi = np.zeros((len(schema), 2))
        for j, piv in enumerate(schema.pivs):
            control = piv.mistakes
            start = min(initial_mistake, control.ceiling) if control.bounded else initial_mistake
            phi[j, 0] = control.fixed_a if control.fixed_a is not None else start
            phi[j, 1] = control.fixed_b if control.fixed_b is not None else start

        intercept = float(np.log(-np.log1p(-initial_change)))
        alpha = {}
        for j in schema.unstable_indices:
            coefficients = np.zeros(schema[j].n_coefficients)
            coefficients[0] = intercept
            alpha[j] = coefficients

        return cls(gamma=gamma, eta=eta, phi=phi, alpha=alpha)

    def validate(self, schema: PIVSchema, iteration: int | None = None) -> None:
        """Check every parameter lies in its domain.

        Deviations within a PIV's tolerance are corrected in place (simplex
        renormalized, rates clipped); larger ones raise
        ``NumericalInstabilityError``.
        """
        for j, piv in enumerate(schema.pivs):
            tol = piv.tolerance

            def fail(reason: str) -> None:
                raise NumericalInstabilityError(reason, iteration=iteration, piv=piv.name)

            g = self.gamma[j]
            if g.shape != (piv.cardinality,) or not np.all(np.isfinite(g)):
                fail("gamma is not a finite vector of the PIV's cardinality")
            if g.min() < -tol or abs(g.sum() - 1.0) > max(tol, 1e-12 * piv.cardinality):
                fail(f"gamma left the simplex (min={g.min():.3g}, sum={g.sum():.12g})")
            g = np.clip(g, 0.0, None)
            self.gamma[j] = g / g.sum()

            for label, values in (("eta", self.eta[j]), ("phi", self.phi[j])):
                if not np.all(np.isfinite(values)):
                    fail(f"{label} is not finite")
                if values.min() < -tol or values.max() > 1.0 + tol:
                    fail(f"{label}={values.tolist()} outside [0, 1]")
            self.eta[j] = np.clip(self.eta[j], 0.0, 1.0)
            self.phi[j] = np.clip(self.phi[j], 0.0, 1.0)

            control = piv.mistakes
            if control.bounded:
                if self.phi[j].max() > control.ceiling + tol:
                    fail(f"phi={self.phi[j].tolist()} exceeds ceiling {control.ceiling}")
                self.phi[j] = np.minimum(self.phi[j], control.ceiling)
            for side, fixed in enumerate((control.fixed_a, control.fixed_b)):
                if fixed is not None and abs(self.phi[j, side] - fixed) > tol:
                    fail(f"fixed phi moved from {fixed} to {self.phi[j, side]}")

            if isinstance(piv, UnstablePIV):
                a = self.alpha.get(j)
                if a is None or a.shape != (piv.n_coefficients,) or not np.all(np.isfinite(a)):
                    fail("hazard coefficients are missing or not finite")

    def to_dict(self, schema: PIVSchema) -> dict[str, Any]:
        """JSON-friendly view keyed by PIV name."""
        out: dict[str, Any] = {}
        for j, piv in enumerate(schema.pivs):
            entry: dict[str, Any] = {
                "gamma": self.gamma[j].tolist(),
                "eta": self.eta[j].tolist(),
                "phi": self.phi[j].tolist(),
            }
            if j in self.alpha:
                entry["alpha"] = self.alpha[j].tolist()
            out[piv.name] = entry
        return out


class ParameterChains:
    """Snapshots of the parameter state, one per outer StEM iteration."""

    def __init__(self, schema: PIVSchema) -> None:
        self.schema = schema
        self.states: list[ParameterState] = []

    def append(self, state: ParameterState) -> None:
        self.states.append(state.copy())

    def __len__(self) -> int:
        return len(self.states)

    @property
    def gamma(self) -> dict[str, np.ndarray]:
        """``(iterations, cardinality)`` array per PIV name."""
        return {
            piv.name: np.array([s.gamma[j] for s in self.states]).reshape(len(self.states), piv.cardinality)
            for j, piv in enumerate(self.schema.pivs)
        }

    @property
    def eta(self) -> np.ndarray:
        """``(iterations, n_pivs, 2)``."""
        return np.array([s.eta for s in self.states]).reshape(len(self.states), len(self.schema), 2)

    @property
    def phi(self) -> np.ndarray:
        """``(iterations, n_pivs, 2)``."""
        return np.array([s.phi for s in self.states]).reshape(len(self.states), len(self.schema), 2)

    @property
    def alpha(self) -> dict[str, np.ndarray]:
        """``(iterations, n_coefficients)`` array per unstable PIV name."""
        return {
            self.schema[j].name: np.array([s.alpha[j] for s in self.states]).reshape(
                len(self.states), self.schema[j].n_coefficients
            )
            for j in self.schema.unstable_indices
        }

    def mean(self, start: int = 0) -> ParameterState:
        """Average of the snapshots from ``start`` on (all of them if none remain)."""
        if not self.states:
            raise ValueError("no parameter snapshots recorded")
        kept = self.states[start:] or self.states
        gamma = [np.mean([s.gamma[j] for s in kept], axis=0) for j in range(len(self.schema))]
        return ParameterState(
            gamma=[g / g.sum() for g in gamma],
            eta=np.mean([s.eta for s in kept], axis=0),
            phi=np.mean([s.phi for s in kept], axis=0),
            alpha={j: np.mean([s.alpha[j] for s in kept], axis=0) for j in self.schema.unstable_indices},
        )
