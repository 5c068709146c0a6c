"""Reliability tracking: rolling pass rates and flaky-test detection."""

from testflow.reliability.history import HistoryFile
from testflow.reliability.tracker import (
    FlakyTest,
    ReliabilityMetrics,
    ReliabilityTracker,
    TestRun,
    TestSuiteRecord,
    TrendValidation,
)

__all__ = [
    "FlakyTest",
    "HistoryFile",
    "ReliabilityMetrics",
    "ReliabilityTracker",
    "TestRun",
    "TestSuiteRecord",
    "TrendValidation",
]
