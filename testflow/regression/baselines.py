"""Durable baseline store.

The store is a JSON array of baseline objects::

    [{"componentName": ..., "averageRenderTime": ..., "averageMemoryUsage": ...,
      "sampleCount": ..., "lastUpdated": ..., "version": ...}, ...]
"""

from __future__ import annotations

import sys
from pathlib import Path

from testflow.regression.detector import PerformanceBaseline
from testflow.store import read_json, write_json

LABEL = "Baseline store"


class BaselineFile:
    """Reads and writes the performance baseline store."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> list[PerformanceBaseline]:
        """Load stored baselines; malformed entries are skipped."""
        data = read_json(self.path, LABEL)
        if data is None:
            return []
        if not isinstance(data, list):
            print(f"{LABEL}: {self.path} is not a list, ignoring it", file=sys.stderr)
            return []

        baselines: list[PerformanceBaseline] = []
        for entry in data:
            try:
                baselines.append(PerformanceBaseline.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError):
                print(f"{LABEL}: skipping malformed baseline {entry!r}", file=sys.stderr)
        return baselines

    def save(self, baselines: list[PerformanceBaseline]) -> bool:
        return write_json(self.path, [b.to_dict() for b in baselines], LABEL)
