"""Unit tests for the build history file."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

from testflow.reliability.history import HistoryFile
from testflow.reliability.tracker import ReliabilityTracker


class TestHistoryFile:
    def test_round_trip_through_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            history = HistoryFile(Path(tmpdir) / "build-history.json")
            tracker = ReliabilityTracker()
            tracker.add_test_suite({"suiteName": "unit", "buildNumber": 3, "totalTests": 10, "passedTests": 9})
            assert history.save(tracker)

            loaded = ReliabilityTracker()
            assert history.load_into(loaded) is True
            assert loaded.test_suites[0].build_number == 3
            assert loaded.calculate_reliability().overall_reliability == 90.0

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            history = HistoryFile(Path(tmpdir) / "missing.json")
            assert history.load_into(ReliabilityTracker()) is False

    def test_wrong_shape_ignored(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "build-history.json"
            path.write_text("[1, 2, 3]")
            assert HistoryFile(path).load_into(ReliabilityTracker()) is False
            assert "not an object" in capsys.readouterr().err

    def test_non_list_sections_ignored(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "build-history.json"
            path.write_text(json.dumps({
                "testSuites": 3,
                "testRuns": [{"testName": "a_test.py", "status": "pass", "buildNumber": 4}],
            }))
            tracker = ReliabilityTracker()
            assert HistoryFile(path).load_into(tracker) is True
            assert tracker.test_suites == []
            assert [r.test_name for r in tracker.test_runs] == ["a_test.py"]
            assert "testSuites" in capsys.readouterr().err
