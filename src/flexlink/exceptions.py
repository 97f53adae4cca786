"""Errors raised by flexlink.

Configuration and estimability problems are detected before any sampling
starts. Numerical problems are detected inside the sampler or the M-step and
carry enough context (outer iteration, PIV, record indices) to locate the
offending data.
"""
from __future__ import annotations

from dataclasses import dataclass, field


class FlexLinkError(Exception):
    """Base class for all flexlink errors."""


@dataclass
class ConfigurationError(FlexLinkError):
    """Malformed or incomplete schema, record data or run-length settings."""

    reason: str
    piv: str | None = None

    def __str__(self) -> str:
        if self.piv is not None:
            return f"PIV {self.piv!r}: {self.reason}"
        return self.reason


@dataclass
class EstimabilityError(FlexLinkError):
    """A declared parameterization cannot be identified from the data.

    Raised for unstable PIVs whose change rate and mistake rate would both
    have to be learned from the same disagreements.
    """

    piv: str
    reason: str
    suggestion: str = "fix or bound the mistake rate, or declare hazard covariates"

    def __str__(self) -> str:
        return f"PIV {self.piv!r}: {self.reason} ({self.suggestion})"


@dataclass
class NumericalInstabilityError(FlexLinkError):
    """A likelihood or parameter update left its valid domain."""

    reason: str
    iteration: int | None = None
    piv: str | None = None
    records: tuple[int, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        parts = [self.reason]
        if self.iteration is not None:
            parts.append(f"iteration={self.iteration}")
        if self.piv is not None:
            parts.append(f"piv={self.piv!r}")
        if self.records:
            shown = ", ".join(str(r) for r in self.records[:10])
            parts.append(f"records=({shown})")
        return "; ".join(parts)
