#!/usr/bin/env python3
"""
KALIGN — diagnostic collector and timing report tests.

Run with: pytest tests/test_diagnostics.py -v
"""

import io
import os
import sys

import numpy as np
import pytest
from numpy.testing import assert_allclose

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kalign.kalign_diagnostics import DataCollector, TimingReport


class TestDataCollector:

    def test_fill_and_summary(self):
        dc = DataCollector()
        for v in (1.0, 2.0, 3.0):
            dc.fill_histogram("h", v)
        dc.fill_graph("g", 1, 10)
        dc.fill_graph("g", 2, 20)
        assert dc.summary("h") == {"entries": 3, "mean": 2.0,
                                   "rms": pytest.approx(np.std([1, 2, 3]))}
        assert_allclose(dc.graph("g"), [[1, 10], [2, 20]])
        assert dc.names() == ["h", "g"]
        assert dc.summary("missing")["entries"] == 0

    def test_disabled_collector_ignores_fills(self):
        dc = DataCollector(enabled=False)
        dc.fill_histogram("h", 1.0)
        assert dc.histogram("h").size == 0
        assert dc.write() is None

    def test_write_npz(self, tmp_path):
        dc = DataCollector()
        dc.configure(output_file=str(tmp_path / "sub" / "diag.npz"))
        dc.fill_histogram("Trajectory_RecHits", 6)
        dc.fill_graph("g", 0.5, 1.5)
        path = dc.write()
        with np.load(path) as data:
            assert_allclose(data["hist/Trajectory_RecHits"], [6.0])
            assert_allclose(data["graph/g"], [[0.5, 1.5]])

    def test_no_output_file(self):
        dc = DataCollector()
        dc.fill_histogram("h", 1.0)
        assert dc.write() is None


class TestTimingReport:

    def test_measure_accumulates(self, tmp_path):
        timing = TimingReport()
        for _ in range(3):
            with timing.measure("block"):
                pass
        assert timing.calls("block") == 3
        assert timing.total("block") >= 0.0
        assert timing.calls("other") == 0

        buf = io.StringIO()
        timing.dump(buf)
        lines = buf.getvalue().splitlines()
        assert lines[0].startswith("block")
        assert lines[1].split()[:2] == ["block", "3"]

        path = tmp_path / "timing.log"
        timing.write(str(path))
        assert path.read_text() == buf.getvalue()

    def test_measure_counts_on_error(self):
        timing = TimingReport()
        with pytest.raises(RuntimeError):
            with timing.measure("fail"):
                raise RuntimeError("boom")
        assert timing.calls("fail") == 1
