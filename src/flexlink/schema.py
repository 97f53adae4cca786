"""PIV schema for flexlink.

Each partially identifying variable (PIV) is described once, up front, by a
tagged variant:

- ``StablePIV``: the true value is the same at both observation times
- ``UnstablePIV``: the true value may change between the observation of a
  record in A and its counterpart in B, at a hazard rate that may depend on
  per-record covariates

Both carry a ``MistakeControl`` describing how the recording-mistake rate
is parameterized (shared or per source, bounded, fixed).

Example:
    >>> from flexlink.schema import PIVSchema, StablePIV, UnstablePIV, MistakeControl
    >>> schema = PIVSchema(pivs=[
    ...     StablePIV(name="sex", cardinality=2),
    ...     UnstablePIV(
    ...         name="postcode",
    ...         cardinality=40,
    ...         mistakes=MistakeControl(shared=True, fixed_a=0.0, fixed_b=0.0),
    ...     ),
    ... ])
"""
from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from flexlink.config import CONFIG


class MistakeControl(BaseModel):
    """How the recording-mistake rate ``phi`` of one PIV is estimated."""

    bounded: bool = Field(
        default=False,
        description="Whether the estimate may not exceed the ceiling",
    )
    ceiling: float = Field(
        default=CONFIG.mistake_ceiling,
        gt=0.0, le=1.0,
        description="Upper bound applied when bounded",
    )
    shared: bool = Field(
        default=False,
        description="One mistake rate for both sources instead of one each",
    )
    fixed_a: float | None = Field(
        default=None,
        ge=0.0, lt=1.0,
        description="Fixed mistake rate in source A, if any",
    )
    fixed_b: float | None = Field(
        default=None,
        ge=0.0, lt=1.0,
        description="Fixed mistake rate in source B, if any",
    )

    @model_validator(mode="after")
    def _check_fixation(self) -> "MistakeControl":
        if self.shared:
            if (
                self.fixed_a is not None
                and self.fixed_b is not None
                and self.fixed_a != self.fixed_b
            ):
                raise ValueError(
                    f"shared mistake rate cannot be fixed to {self.fixed_a} in A "
                    f"and {self.fixed_b} in B"
                )
            # A value fixed on one side fixes the shared parameter
            value = self.fixed_a if self.fixed_a is not None else self.fixed_b
            self.fixed_a = value
            self.fixed_b = value
        if self.bounded:
            for side, value in (("A", self.fixed_a), ("B", self.fixed_b)):
                if value is not None and value > self.ceiling:
                    raise ValueError(
                        f"fixed mistake rate {value} in {side} exceeds ceiling {self.ceiling}"
                    )
        return self

    @property
    def fixed(self) -> tuple[bool, bool]:
        return self.fixed_a is not None, self.fixed_b is not None

    @property
    def any_fixed(self) -> bool:
        return any(self.fixed)


class _PIVBase(BaseModel):
    name: str = Field(min_length=1, description="Column name in both sources")
    cardinality: int = Field(ge=2, description="Number of distinct coded values")
    mistakes: MistakeControl = Field(default_factory=MistakeControl)
    tolerance: float = Field(
        default=CONFIG.tolerance,
        ge=0.0,
        description="Deviation from a valid parameter value accepted without error",
    )


class StablePIV(_PIVBase):
    """A PIV whose true value does not change over time."""

    kind: Literal["stable"] = "stable"

    @property
    def stable(self) -> bool:
        return True


class UnstablePIV(_PIVBase):
    """A PIV whose true value may change between the two observation times.

    The probability the value stays the same over a gap ``dt`` is
    ``exp(-exp(x . alpha) * dt)`` where ``x`` is ``[1, covariates of the
    A-record..., covariates of the B-record...]``.
    """

    kind: Literal["unstable"] = "unstable"
    hazard_covariates_a: list[str] = Field(default_factory=list)
    hazard_covariates_b: list[str] = Field(default_factory=list)

    @property
    def stable(self) -> bool:
        return False

    @property
    def has_hazard_covariates(self) -> bool:
        return bool(self.hazard_covariates_a or self.hazard_covariates_b)

    @property
    def n_coefficients(self) -> int:
        return 1 + len(self.hazard_covariates_a) + len(self.hazard_covariates_b)


PIVSpec = Annotated[StablePIV | UnstablePIV, Field(discriminator="kind")]


class PIVSchema(BaseModel):
    """Ordered, validated description of every PIV used for linkage."""

    pivs: list[PIVSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_unique_names(self) -> "PIVSchema":
        seen: set[str] = set()
        for piv in self.pivs:
            if piv.name in seen:
                raise ValueError(f"duplicate PIV name {piv.name!r}")
            seen.add(piv.name)
        return self

    def __len__(self) -> int:
        return len(self.pivs)

    def __getitem__(self, index: int) -> StablePIV | UnstablePIV:
        return self.pivs[index]

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.pivs]

    @property
    def cardinalities(self) -> list[int]:
        return [p.cardinality for p in self.pivs]

    @property
    def unstable_indices(self) -> list[int]:
        return [j for j, p in enumerate(self.pivs) if not p.stable]

    def index_of(self, name: str) -> int:
        return self.names.index(name)
