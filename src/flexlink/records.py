"""In-memory record stores for the two sources.

PIV values are held as 0-based integer codes next to an explicit boolean
missingness mask, so no category value doubles as a missing marker. Loaders
accept frames with nullable codes (``from_frame``), the historical encoding
where 0 marks a missing value and categories run from 1 (``from_sentinel_frame``),
or raw labels that still need a shared encoding (``encode_frames``).
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any

import numpy as np
import pandas as pd

from flexlink.exceptions import ConfigurationError
from flexlink.guard import schema_from_mapping
from flexlink.logging import get_logger
from flexlink.schema import PIVSchema, UnstablePIV

logger = get_logger(__name__)

_DAYS_PER_YEAR = 365.25


class Source(str, Enum):
    """Which of the two record sources a record belongs to."""

    A = "A"
    B = "B"


@dataclass
class RecordStore:
    """Encoded PIV values of one source.

    ``codes[r, j]`` is the 0-based category of PIV ``j`` for record ``r`` and
    is meaningless where ``missing[r, j]`` is set.
    """

    source: Source
    codes: np.ndarray
    missing: np.ndarray
    index: pd.Index
    times: np.ndarray | None = None
    covariates: dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.codes = np.asarray(self.codes, dtype=np.int64)
        self.missing = np.asarray(self.missing, dtype=bool)
        if self.codes.ndim != 2 or self.codes.shape != self.missing.shape:
            raise ConfigurationError(
                f"source {self.source.value}: codes {self.codes.shape} and "
                f"missing mask {self.missing.shape} must be matching 2-D arrays"
            )
        if len(self.index) != self.codes.shape[0]:
            raise ConfigurationError(f"source {self.source.value}: index length does not match records")
        # Keep the unused code slots in range so table lookups stay valid
        self.codes = np.where(self.missing, 0, self.codes)
        if self.times is not None:
            self.times = np.asarray(self.times, dtype=np.float64)

    @property
    def n_records(self) -> int:
        return self.codes.shape[0]

    @property
    def n_pivs(self) -> int:
        return self.codes.shape[1]

    def missing_counts(self) -> np.ndarray:
        return self.missing.sum(axis=0)

    def covariate_matrix(self, names: Sequence[str]) -> np.ndarray:
        if not names:
            return np.zeros((self.n_records, 0))
        return np.column_stack([self.covariates[n] for n in names])

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        schema: PIVSchema,
        source: Source,
        time_column: str | None = None,
    ) -> "RecordStore":
        """Load a source whose PIV columns hold 0-based codes, missing as NA."""
        n = len(frame)
        codes = np.zeros((n, len(schema)), dtype=np.int64)
        missing = np.zeros((n, len(schema)), dtype=bool)

        for j, piv in enumerate(schema.pivs):
            if piv.name not in frame.columns:
                raise ConfigurationError(f"column missing from source {source.value}", piv=piv.name)
            column = frame[piv.name]
            mask = column.isna().to_numpy()
            try:
                values = column[~mask].astype(np.float64).to_numpy()
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"source {source.value} holds non-numeric codes; use encode_frames first",
                    piv=piv.name,
                ) from e
            bad = (values != np.round(values)) | (values < 0) | (values >= piv.cardinality)
            if bad.any():
                rows = np.flatnonzero(~mask)[bad]
                raise ConfigurationError(
                    f"source {source.value} has codes outside 0..{piv.cardinality - 1} "
                    f"at rows {rows[:10].tolist()}",
                    piv=piv.name,
                )
            codes[~mask, j] = values.astype(np.int64)
            missing[:, j] = mask

        times = _read_times(frame, time_column, source) if time_column else None
        covariates = _read_covariates(frame, schema, source)

        return cls(
            source=source,
            codes=codes,
            missing=missing,
            index=frame.index,
            times=times,
            covariates=covariates,
        )

    @classmethod
    def from_sentinel_frame(
        cls,
        frame: pd.DataFrame,
        schema: PIVSchema,
        source: Source,
        time_column: str | None = None,
    ) -> "RecordStore":
        """Load a source encoded with 0 for missing and 1..K for categories."""
        shifted = frame.copy()
        for name in schema.names:
            if name not in shifted.columns:
                raise ConfigurationError(f"column missing from source {source.value}", piv=name)
            try:
                column = pd.to_numeric(shifted[name], errors="raise")
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"source {source.value} holds non-numeric codes", piv=name) from e
            shifted[name] = column.where(column != 0) - 1
        return cls.from_frame(shifted, schema, source, time_column=time_column)


def _read_times(frame: pd.DataFrame, column: str, source: Source) -> np.ndarray:
    if column not in frame.columns:
        raise ConfigurationError(f"time column {column!r} missing from source {source.value}")
    values = frame[column]
    if pd.api.types.is_datetime64_any_dtype(values):
        # Gaps are measured in years
        values = (values - pd.Timestamp("1970-01-01")).dt.total_seconds() / (86400 * _DAYS_PER_YEAR)
    if values.isna().any():
        raise ConfigurationError(f"time column {column!r} of source {source.value} has missing values")
    return values.astype(np.float64).to_numpy()


def _read_covariates(frame: pd.DataFrame, schema: PIVSchema, source: Source) -> dict[str, np.ndarray]:
    covariates: dict[str, np.ndarray] = {}
    for piv in schema.pivs:
        if not isinstance(piv, UnstablePIV):
            continue
        names = piv.hazard_covariates_a if source is Source.A else piv.hazard_covariates_b
        for name in names:
            if name not in frame.columns:
                raise ConfigurationError(
                    f"hazard covariate {name!r} missing from source {source.value}",
                    piv=piv.name,
                )
            values = pd.to_numeric(frame[name], errors="coerce")
            if values.isna().any():
                raise ConfigurationError(
                    f"hazard covariate {name!r} of source {source.value} has missing or non-numeric values",
                    piv=piv.name,
                )
            covariates[name] = values.to_numpy(dtype=np.float64)
    return covariates


def encode_frames(
    frame_a: pd.DataFrame,
    frame_b: pd.DataFrame,
    columns: Sequence[str],
) -> tuple[pd.DataFrame, pd.DataFrame, dict[str, int]]:
    """Encode raw PIV labels to shared 0-based codes across both sources.

    Returns copies of both frames with the PIV columns replaced by nullable
    integer codes, plus the number of distinct labels seen per column.
    """
    coded_a = frame_a.copy()
    coded_b = frame_b.copy()
    cardinalities: dict[str, int] = {}
    for name in columns:
        for frame, label in ((frame_a, "A"), (frame_b, "B")):
            if name not in frame.columns:
                raise ConfigurationError(f"column missing from source {label}", piv=name)
        combined = pd.concat([frame_a[name], frame_b[name]], ignore_index=True)
        codes, uniques = pd.factorize(combined, sort=True)
        # factorize marks missing labels with -1
        coded = pd.Series(codes, dtype="Int64").where(codes >= 0)
        coded_a[name] = coded.iloc[: len(frame_a)].array
        coded_b[name] = coded.iloc[len(frame_a):].array
        cardinalities[name] = len(uniques)
    return coded_a, coded_b, cardinalities


@dataclass
class LinkageData:
    """Both sources plus the schema that describes their shared PIVs.

    ``candidates`` optionally restricts which pairs may be linked (an
    ``n_a x n_b`` boolean mask produced by an external blocking step).
    """

    schema: PIVSchema
    a: RecordStore
    b: RecordStore
    candidates: np.ndarray | None = None

    def __post_init__(self) -> None:
        for store in (self.a, self.b):
            if store.n_pivs != len(self.schema):
                raise ConfigurationError(
                    f"source {store.source.value} has {store.n_pivs} PIV columns, "
                    f"schema has {len(self.schema)}"
                )
        if self.candidates is not None:
            self.candidates = np.asarray(self.candidates, dtype=bool)
            if self.candidates.shape != (self.n_a, self.n_b):
                raise ConfigurationError(
                    f"candidate mask has shape {self.candidates.shape}, "
                    f"expected {(self.n_a, self.n_b)}"
                )
        if self.schema.unstable_indices and (self.a.times is None) != (self.b.times is None):
            raise ConfigurationError("observation times must be given for both sources or neither")

    @property
    def n_a(self) -> int:
        return self.a.n_records

    @property
    def n_b(self) -> int:
        return self.b.n_records

    @cached_property
    def time_gaps(self) -> np.ndarray:
        """Elapsed time between the observations of every (A, B) pair."""
        if self.a.times is None or self.b.times is None:
            return np.ones((self.n_a, self.n_b))
        return np.abs(self.b.times[None, :] - self.a.times[:, None])

    def hazard_covariates(self, j: int) -> tuple[np.ndarray, np.ndarray]:
        piv = self.schema[j]
        if not isinstance(piv, UnstablePIV):
            raise ValueError(f"PIV {piv.name!r} is stable")
        return (
            self.a.covariate_matrix(piv.hazard_covariates_a),
            self.b.covariate_matrix(piv.hazard_covariates_b),
        )

    @classmethod
    def from_frames(
        cls,
        frame_a: pd.DataFrame,
        frame_b: pd.DataFrame,
        schema: PIVSchema,
        time_column: str | None = None,
        candidates: np.ndarray | None = None,
    ) -> "LinkageData":
        return cls(
            schema=schema,
            a=RecordStore.from_frame(frame_a, schema, Source.A, time_column=time_column),
            b=RecordStore.from_frame(frame_b, schema, Source.B, time_column=time_column),
            candidates=candidates,
        )

    @classmethod
    def from_legacy(
        cls,
        data: Mapping[str, Any],
        time_column: str | None = None,
        auto_fix: bool = False,
    ) -> "LinkageData":
        """Build from the historical input: ``A``, ``B``, ``Nvalues``, ``PIVs_config``, ...

        PIV columns use 0 for missing values and 1..K for categories.
        """
        if "A" not in data or "B" not in data:
            raise ConfigurationError("data must contain the two sources 'A' and 'B'")
        schema = schema_from_mapping(
            {k: v for k, v in data.items() if k not in ("A", "B")},
            auto_fix=auto_fix,
        )
        logger.debug("records.load_legacy", pivs=schema.names, n_a=len(data["A"]), n_b=len(data["B"]))
        return cls(
            schema=schema,
            a=RecordStore.from_sentinel_frame(data["A"], schema, Source.A, time_column=time_column),
            b=RecordStore.from_sentinel_frame(data["B"], schema, Source.B, time_column=time_column),
        )
