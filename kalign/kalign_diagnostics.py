"""
KALIGN Diagnostics — Histogram Collector & Timing Report
=========================================================

Fire-and-forget diagnostic sink. Values are buffered in memory by name and
written once, at termination, to a NumPy ``.npz`` archive:

    hist/<name>   1-D array of filled values
    graph/<name>  (N, 2) array of (x, y) points

Author: KALIGN developers
"""

from __future__ import annotations

import logging
import time
import numpy as np
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, TextIO, Tuple

logger = logging.getLogger(__name__)


class DataCollector:
    """Named histograms and graphs, flushed to disk on ``write()``.

    Args:
        output_file: Destination ``.npz`` path. ``None`` keeps data in memory.
        enabled: When False every fill is ignored.
    """

    def __init__(self, output_file: Optional[str] = None, enabled: bool = True):
        self.output_file = output_file
        self.enabled = enabled
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._graphs: Dict[str, List[Tuple[float, float]]] = defaultdict(list)

    def configure(self, output_file: Optional[str] = None,
                  enabled: Optional[bool] = None) -> None:
        if output_file is not None:
            self.output_file = output_file
        if enabled is not None:
            self.enabled = enabled

    def fill_histogram(self, name: str, value: float) -> None:
        if self.enabled:
            self._histograms[name].append(float(value))

    def fill_graph(self, name: str, x: float, y: float) -> None:
        if self.enabled:
            self._graphs[name].append((float(x), float(y)))

    def histogram(self, name: str) -> np.ndarray:
        return np.array(self._histograms.get(name, []), dtype=float)

    def graph(self, name: str) -> np.ndarray:
        return np.array(self._graphs.get(name, []), dtype=float).reshape(-1, 2)

    def names(self) -> List[str]:
        return sorted(self._histograms) + sorted(self._graphs)

    def summary(self, name: str) -> Dict[str, float]:
        """Entries, mean and RMS of a histogram."""
        values = self.histogram(name)
        if values.size == 0:
            return {'entries': 0, 'mean': 0.0, 'rms': 0.0}
        return {
            'entries': int(values.size),
            'mean': float(values.mean()),
            'rms': float(values.std()),
        }

    def write(self) -> Optional[Path]:
        """Write all buffered data. Returns the path written, if any."""
        if not self.enabled or self.output_file is None:
            return None
        path = Path(self.output_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        arrays = {f"hist/{k}": np.array(v) for k, v in self._histograms.items()}
        arrays.update({f"graph/{k}": np.array(v).reshape(-1, 2)
                       for k, v in self._graphs.items()})
        with open(path, 'wb') as f:
            np.savez(f, **arrays)
        logger.info("Diagnostics written to %s (%d objects)", path, len(arrays))
        return path


class TimingReport:
    """Accumulated wall-clock time per named block."""

    def __init__(self):
        self._totals: Dict[str, float] = defaultdict(float)
        self._calls: Dict[str, int] = defaultdict(int)

    @contextmanager
    def measure(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self._totals[name] += time.perf_counter() - start
            self._calls[name] += 1

    def total(self, name: str) -> float:
        return self._totals.get(name, 0.0)

    def calls(self, name: str) -> int:
        return self._calls.get(name, 0)

    def lines(self) -> List[str]:
        out = [f"{'block':<32s} {'calls':>8s} {'total [s]':>12s} {'mean [ms]':>12s}"]
        for name in sorted(self._totals):
            n = self._calls[name]
            total = self._totals[name]
            out.append(f"{name:<32s} {n:>8d} {total:>12.4f} {1e3 * total / max(n, 1):>12.4f}")
        return out

    def dump(self, stream: TextIO) -> None:
        for line in self.lines():
            stream.write(line + "\n")

    def write(self, path: str) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, 'w') as f:
            self.dump(f)
