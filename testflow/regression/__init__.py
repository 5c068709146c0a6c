"""Performance regression detection against stored component baselines."""

from testflow.regression.baselines import BaselineFile
from testflow.regression.detector import (
    PerformanceBaseline,
    PerformanceResult,
    RegressionAlert,
    RegressionDetector,
    RegressionReport,
    classify_cache_severity,
    classify_ratio_severity,
    should_fail_build,
)

__all__ = [
    "BaselineFile",
    "PerformanceBaseline",
    "PerformanceResult",
    "RegressionAlert",
    "RegressionDetector",
    "RegressionReport",
    "classify_cache_severity",
    "classify_ratio_severity",
    "should_fail_build",
]
