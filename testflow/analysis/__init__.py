"""Test output analysis: performance event parsing and measurement storage."""

from testflow.analysis.measurements import load_measurements, store_measurements, stored_components
from testflow.analysis.perf_output import parse_performance_events

__all__ = [
    "load_measurements",
    "parse_performance_events",
    "store_measurements",
    "stored_components",
]
