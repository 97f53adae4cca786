"""Link quality against a known set of true links."""
from __future__ import annotations

import pandas as pd
from pydantic import BaseModel, Field


class LinkageMetrics(BaseModel):
    """Pair-level confusion counts and the derived rates."""

    true_positives: int = Field(ge=0)
    false_positives: int = Field(ge=0)
    false_negatives: int = Field(ge=0)

    @property
    def precision(self) -> float:
        predicted = self.true_positives + self.false_positives
        return self.true_positives / predicted if predicted else 1.0

    @property
    def recall(self) -> float:
        actual = self.true_positives + self.false_negatives
        return self.true_positives / actual if actual else 1.0

    @property
    def f1(self) -> float:
        denominator = 2 * self.true_positives + self.false_positives + self.false_negatives
        return 2 * self.true_positives / denominator if denominator else 1.0

    @property
    def fdr(self) -> float:
        """False discovery rate."""
        return 1.0 - self.precision

    def summary(self) -> dict[str, float]:
        return {
            "true_positives": self.true_positives,
            "false_positives": self.false_positives,
            "false_negatives": self.false_negatives,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
            "fdr": self.fdr,
        }


def _pairs(frame: pd.DataFrame) -> set[tuple[int, int]]:
    missing = {"idx_a", "idx_b"} - set(frame.columns)
    if missing:
        raise ValueError(f"link table lacks columns {sorted(missing)}")
    return set(zip(frame["idx_a"].astype(int), frame["idx_b"].astype(int)))


def evaluate_links(predicted: pd.DataFrame, truth: pd.DataFrame) -> LinkageMetrics:
    """Compare two ``(idx_a, idx_b)`` tables.

    Empty predictions against an empty truth count as perfect.
    """
    found = _pairs(predicted)
    actual = _pairs(truth)
    return LinkageMetrics(
        true_positives=len(found & actual),
        false_positives=len(found - actual),
        false_negatives=len(actual - found),
    )
