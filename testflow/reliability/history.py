"""Durable build history for the reliability tracker.

The history file holds the tracker's export: every retained test run and
suite record. It is rewritten after each pipeline run.
"""

from __future__ import annotations

import sys
from pathlib import Path

from testflow.reliability.tracker import ReliabilityTracker
from testflow.store import read_json, write_json

LABEL = "Build history"


class HistoryFile:
    """Reads and writes the build history file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load_into(self, tracker: ReliabilityTracker) -> bool:
        """Replace *tracker*'s data with the stored history.

        Returns:
            True if a history was loaded.
        """
        data = read_json(self.path, LABEL)
        if data is None:
            return False
        if not isinstance(data, dict):
            print(f"{LABEL}: {self.path} is not an object, ignoring it", file=sys.stderr)
            return False
        for key in ("testSuites", "testRuns"):
            if key in data and not isinstance(data[key], list):
                print(f"{LABEL}: {key} in {self.path} is not a list, ignoring it", file=sys.stderr)
        tracker.import_data(data)
        return True

    def save(self, tracker: ReliabilityTracker) -> bool:
        return write_json(self.path, tracker.export_data(), LABEL)
