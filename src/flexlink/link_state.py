"""Current linkage between the two sources and its running posterior counts."""
from __future__ import annotations

from collections import Counter

import numpy as np
import pandas as pd

UNLINKED = -1


class LinkState:
    """Partial one-to-one matching between A-records and B-records.

    ``a_to_b[i]`` is the B-record linked to A-record ``i`` (``-1`` if none)
    and ``b_to_a`` is its inverse. Links are only created between two free
    records, so no record is ever linked twice.

    After burn-in each retained draw is folded into ``counts``; the
    posterior probability of a pair is its count over ``n_draws``.
    """

    def __init__(self, n_a: int, n_b: int) -> None:
        self.n_a = n_a
        self.n_b = n_b
        self.a_to_b = np.full(n_a, UNLINKED, dtype=np.int64)
        self.b_to_a = np.full(n_b, UNLINKED, dtype=np.int64)
        self.n_links = 0
        self.counts: Counter[tuple[int, int]] = Counter()
        self.n_draws = 0

    def link(self, i: int, k: int) -> None:
        if self.a_to_b[i] != UNLINKED or self.b_to_a[k] != UNLINKED:
            raise ValueError(
                f"cannot link A[{i}] to B[{k}]: A[{i}] -> {self.a_to_b[i]}, B[{k}] -> {self.b_to_a[k]}"
            )
        self.a_to_b[i] = k
        self.b_to_a[k] = i
        self.n_links += 1

    def unlink(self, i: int, k: int) -> None:
        if self.a_to_b[i] != k or self.b_to_a[k] != i:
            raise ValueError(f"A[{i}] and B[{k}] are not linked")
        self.a_to_b[i] = UNLINKED
        self.b_to_a[k] = UNLINKED
        self.n_links -= 1

    def pairs(self) -> tuple[np.ndarray, np.ndarray]:
        """Linked ``(a_indices, b_indices)`` ordered by A index."""
        linked_a = np.flatnonzero(self.a_to_b != UNLINKED)
        return linked_a, self.a_to_b[linked_a]

    def check_invariant(self) -> None:
        """Raise ``RuntimeError`` if the matching is not one-to-one."""
        linked_a, linked_b = self.pairs()
        if len(np.unique(linked_b)) != len(linked_b):
            raise RuntimeError("a B-record is linked to several A-records")
        if not np.all(self.b_to_a[linked_b] == linked_a):
            raise RuntimeError("a_to_b and b_to_a disagree")
        linked_from_b = np.flatnonzero(self.b_to_a != UNLINKED)
        if not len(linked_from_b) == len(linked_a) == self.n_links:
            raise RuntimeError("link count is out of sync")

    def accumulate(self) -> None:
        """Fold the current matching into the posterior counts."""
        linked_a, linked_b = self.pairs()
        self.counts.update(zip(linked_a.tolist(), linked_b.tolist()))
        self.n_draws += 1

    def reset(self) -> None:
        """Drop the matching and the posterior counts, for a new independent run."""
        self.a_to_b.fill(UNLINKED)
        self.b_to_a.fill(UNLINKED)
        self.n_links = 0
        self.counts.clear()
        self.n_draws = 0

    def posterior(
        self,
        index_a: pd.Index | None = None,
        index_b: pd.Index | None = None,
    ) -> pd.DataFrame:
        """Sparse link posterior: one row per pair linked in at least one draw."""
        columns = ["idx_a", "idx_b", "proba_link"]
        if not self.counts or self.n_draws == 0:
            frame = pd.DataFrame({c: pd.Series(dtype="int64" if c != "proba_link" else "float64") for c in columns})
        else:
            keys = sorted(self.counts)
            frame = pd.DataFrame({
                "idx_a": np.array([k[0] for k in keys], dtype=np.int64),
                "idx_b": np.array([k[1] for k in keys], dtype=np.int64),
                "proba_link": np.array([self.counts[k] for k in keys], dtype=np.float64) / self.n_draws,
            })
        if index_a is not None:
            frame["id_a"] = np.asarray(index_a)[frame["idx_a"].to_numpy()]
        if index_b is not None:
            frame["id_b"] = np.asarray(index_b)[frame["idx_b"].to_numpy()]
        return frame
