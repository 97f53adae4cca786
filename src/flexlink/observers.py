"""Observers notified by the StEM driver between outer iterations.

Observers are side channels: they see a snapshot of each iteration and the
final result, and may ask the driver to stop early by returning ``False``
from ``on_iteration``. They are never called from inside a sampling phase.
"""
from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from flexlink.logging import get_logger
from flexlink.parameters import ParameterState
from flexlink.schema import PIVSchema

if TYPE_CHECKING:
    from flexlink.stem import StEMResult

logger = get_logger(__name__)


@dataclass
class IterationReport:
    """What an observer sees after each outer iteration."""

    iteration: int
    stem_iter: int
    accumulating: bool
    mean_links: float
    n_draws: int
    params: ParameterState
    schema: PIVSchema

    def to_record(self) -> dict:
        return {
            "iteration": self.iteration,
            "stem_iter": self.stem_iter,
            "accumulating": self.accumulating,
            "mean_links": self.mean_links,
            "n_draws": self.n_draws,
            "parameters": self.params.to_dict(self.schema),
        }


class Observer(Protocol):
    def on_iteration(self, report: IterationReport) -> bool | None:
        """Return ``False`` to stop after this iteration."""
        ...

    def on_finish(self, result: "StEMResult") -> None:
        ...

    def close(self) -> None:
        """Release resources; called once the run ends, whether or not it failed."""
        ...


class StopAfter:
    """Requests an early stop once ``iterations`` outer iterations have run."""

    def __init__(self, iterations: int) -> None:
        self.iterations = iterations

    def on_iteration(self, report: IterationReport) -> bool:
        return report.iteration + 1 < self.iterations

    def on_finish(self, result: "StEMResult") -> None:
        return None

    def close(self) -> None:
        return None


class ParameterLogger:
    """Logs the full parameter state after each outer iteration at debug level."""

    def __init__(self, every: int = 1) -> None:
        self.every = max(1, every)

    def on_iteration(self, report: IterationReport) -> None:
        if report.iteration % self.every == 0 or report.iteration + 1 == report.stem_iter:
            logger.debug(
                "stem.parameters",
                iteration=report.iteration,
                parameters=report.params.to_dict(report.schema),
            )

    def on_finish(self, result: "StEMResult") -> None:
        logger.info(
            "stem.link_summary",
            candidate_pairs=len(result.delta),
            links=len(result.links()),
            draws=result.n_draws,
            partial=result.partial,
        )

    def close(self) -> None:
        return None


_CLOSE = object()


class IterationWriter:
    """Best-effort persistence of per-iteration diagnostics.

    Writes one JSON line per outer iteration to ``iterations.jsonl`` and the
    final link posterior to ``delta.csv`` inside ``directory``. Writing
    happens on a background thread fed by a queue, so a slow or failing disk
    never holds up the sampler; write failures are logged and dropped.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / "iterations.jsonl"
        self.path.write_text("", encoding="utf-8")
        self.failures = 0
        self._queue: queue.Queue = queue.Queue()
        self._thread = threading.Thread(target=self._drain, name="flexlink-iteration-writer", daemon=True)
        self._thread.start()

    def on_iteration(self, report: IterationReport) -> None:
        # Serialize now so the sampler may keep mutating its state
        self._queue.put(("iterations.jsonl", json.dumps(report.to_record(), separators=(",", ":")) + "\n", "a"))

    def on_finish(self, result: "StEMResult") -> None:
        self._queue.put(("delta.csv", result.delta.to_csv(index=False), "w"))
        self.close()

    def close(self) -> None:
        if self._thread.is_alive():
            self._queue.put(_CLOSE)
            self._thread.join()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            name, text, mode = item
            try:
                with open(self.directory / name, mode, encoding="utf-8") as fh:
                    fh.write(text)
            except OSError:
                self.failures += 1
                logger.exception("observers.write_failed", path=str(self.directory / name))
