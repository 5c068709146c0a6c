"""Performance regression detection against per-component baselines.

A baseline is the mean render time and mean memory usage of a component
over at least ``baseline_samples`` measurements. New measurements are
compared to it by ratio; a ratio above the regression threshold raises an
alert whose severity grows with the ratio. Cache hit rates are compared to
the minimum the benchmark expects, in percentage points.

Baselines are only ever written by :meth:`RegressionDetector.update_baseline`
(or its history-backed variant); detection never moves them.
"""

from __future__ import annotations

import datetime
import sys
from dataclasses import dataclass, field
from typing import Any


# Alert types
RENDER_TIME = "render_time"
MEMORY_USAGE = "memory_usage"
CACHE_PERFORMANCE = "cache_performance"

# Severity tiers, most severe first
SEVERITIES = ("critical", "high", "medium", "low")

# Ratio thresholds above which a measurement is a regression
DEFAULT_REGRESSION_THRESHOLD = 1.2
DEFAULT_MEMORY_REGRESSION_THRESHOLD = 1.5

# Minimum measurements required before a baseline can be built
DEFAULT_BASELINE_SAMPLES = 10

# Per-component measurement history kept for trends and future baselines
HISTORY_CAP = 50


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


def parse_timestamp(value: Any) -> datetime.datetime:
    """Coerce an ISO string, epoch millis or datetime to an aware datetime."""
    if isinstance(value, datetime.datetime):
        return value if value.tzinfo else value.replace(tzinfo=datetime.timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _now()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=datetime.timezone.utc)
    return _now()


@dataclass
class PerformanceResult:
    """One performance measurement of a component.

    ``render_time`` is in milliseconds, ``memory_usage`` in bytes, and the
    cache hit rates in percent. ``min_cache_hit_rate`` comes from the
    benchmark definition; when it is None no cache check is made.
    """

    component: str
    render_time: float
    memory_usage: float = 0.0
    cache_hit_rate: float | None = None
    min_cache_hit_rate: float | None = None
    name: str = ""
    timestamp: datetime.datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "component": self.component,
            "renderTime": self.render_time,
            "memoryUsage": self.memory_usage,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.name:
            data["name"] = self.name
        if self.cache_hit_rate is not None:
            data["cacheHitRate"] = self.cache_hit_rate
        if self.min_cache_hit_rate is not None:
            data["minCacheHitRate"] = self.min_cache_hit_rate
        return data


@dataclass
class PerformanceBaseline:
    """Stored historical averages for one component."""

    component_name: str
    average_render_time: float
    average_memory_usage: float
    sample_count: int
    last_updated: datetime.datetime
    version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "componentName": self.component_name,
            "averageRenderTime": self.average_render_time,
            "averageMemoryUsage": self.average_memory_usage,
            "sampleCount": self.sample_count,
            "lastUpdated": self.last_updated.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceBaseline:
        return cls(
            component_name=str(data["componentName"]),
            average_render_time=float(data.get("averageRenderTime", 0.0)),
            average_memory_usage=float(data.get("averageMemoryUsage", 0.0)),
            sample_count=int(data.get("sampleCount", 0)),
            last_updated=parse_timestamp(data.get("lastUpdated")),
            version=str(data.get("version", "unknown")),
        )


@dataclass
class RegressionAlert:
    """A single detected regression. Derived, never persisted."""

    type: str  # render_time, memory_usage, cache_performance
    severity: str  # low, medium, high, critical
    component_name: str
    current_value: float
    baseline_value: float
    degradation_percentage: float
    message: str
    timestamp: datetime.datetime = field(default_factory=_now)
    build_number: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "componentName": self.component_name,
            "currentValue": self.current_value,
            "baselineValue": self.baseline_value,
            "degradationPercentage": self.degradation_percentage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "buildNumber": self.build_number,
        }


@dataclass
class RegressionReport:
    """All regressions found for one build."""

    build_number: str
    timestamp: datetime.datetime
    total_tests: int
    regressions: list[RegressionAlert]
    summary: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "buildNumber": self.build_number,
            "timestamp": self.timestamp.isoformat(),
            "totalTests": self.total_tests,
            "regressions": [r.to_dict() for r in self.regressions],
            "summary": dict(self.summary),
        }


def classify_ratio_severity(ratio: float, threshold: float) -> str:
    """Severity of a ratio-based regression.

    ``>= 3x threshold`` is critical, ``>= 2x`` high, ``>= 1.5x`` medium,
    anything else low.
    """
    if ratio >= threshold * 3:
        return "critical"
    if ratio >= threshold * 2:
        return "high"
    if ratio >= threshold * 1.5:
        return "medium"
    return "low"


def classify_cache_severity(degradation_points: float) -> str:
    """Severity of a cache hit-rate drop measured in percentage points."""
    if degradation_points >= 30:
        return "critical"
    if degradation_points >= 20:
        return "high"
    if degradation_points >= 10:
        return "medium"
    return "low"


def summarize(alerts: list[RegressionAlert]) -> dict[str, int]:
    """Count alerts per severity tier."""
    summary = {severity: 0 for severity in SEVERITIES}
    for alert in alerts:
        summary[alert.severity] = summary.get(alert.severity, 0) + 1
    return summary


def should_fail_build(report: RegressionReport) -> bool:
    """A build fails on any critical regression or more than two high ones."""
    return report.summary.get("critical", 0) > 0 or report.summary.get("high", 0) > 2


class RegressionDetector:
    """Compares performance measurements with stored component baselines.

    Args:
        build_number: Identifier stamped on baselines and alerts.
        regression_threshold: Render-time ratio above which to alert.
        memory_regression_threshold: Memory ratio above which to alert.
        baseline_samples: Minimum measurements for a baseline.
    """

    def __init__(
        self,
        build_number: str = "unknown",
        regression_threshold: float = DEFAULT_REGRESSION_THRESHOLD,
        memory_regression_threshold: float = DEFAULT_MEMORY_REGRESSION_THRESHOLD,
        baseline_samples: int = DEFAULT_BASELINE_SAMPLES,
    ) -> None:
        self.build_number = build_number
        self.regression_threshold = regression_threshold
        self.memory_regression_threshold = memory_regression_threshold
        self.baseline_samples = baseline_samples
        self.baselines: dict[str, PerformanceBaseline] = {}
        self.history: dict[str, list[PerformanceResult]] = {}

    def load_baselines(self, baselines: list[PerformanceBaseline] | None) -> None:
        """Install previously stored baselines, replacing same-named ones."""
        for baseline in baselines or []:
            self.baselines[baseline.component_name] = baseline

    def export_baselines(self) -> list[PerformanceBaseline]:
        return list(self.baselines.values())

    def get_baseline(self, component: str) -> PerformanceBaseline | None:
        return self.baselines.get(component)

    def update_baseline(
        self, component: str, results: list[PerformanceResult]
    ) -> PerformanceBaseline | None:
        """Overwrite the baseline of *component* from *results*.

        Args:
            component: Component name.
            results: Measurements to average; at least ``baseline_samples``.

        Returns:
            The new baseline, or None (with a warning) when there are too
            few samples; the previous baseline is then left untouched.
        """
        if len(results) < self.baseline_samples:
            print(
                f"Regression detector: insufficient samples for {component} "
                f"baseline (need {self.baseline_samples}, got {len(results)})",
                file=sys.stderr,
            )
            return None

        average_render_time = sum(r.render_time for r in results) / len(results)
        average_memory_usage = sum(r.memory_usage for r in results) / len(results)

        baseline = PerformanceBaseline(
            component_name=component,
            average_render_time=average_render_time,
            average_memory_usage=average_memory_usage,
            sample_count=len(results),
            last_updated=_now(),
            version=self.build_number,
        )
        self.baselines[component] = baseline
        return baseline

    def update_baseline_from_history(self, component: str) -> PerformanceBaseline | None:
        """Build the baseline of *component* from its buffered measurements."""
        return self.update_baseline(component, list(self.history.get(component, [])))

    def detect_regressions(self, result: PerformanceResult) -> list[RegressionAlert]:
        """Evaluate one measurement against its component's baseline.

        Without a baseline the measurement is only buffered for a future
        baseline and no alert is produced.
        """
        alerts: list[RegressionAlert] = []
        baseline = self.baselines.get(result.component)

        if baseline is not None:
            for check in (
                self._check_render_time,
                self._check_memory,
                self._check_cache,
            ):
                alert = check(result, baseline)
                if alert is not None:
                    alerts.append(alert)

        self._add_history(result)
        return alerts

    def _check_render_time(
        self, result: PerformanceResult, baseline: PerformanceBaseline
    ) -> RegressionAlert | None:
        if baseline.average_render_time <= 0:
            return None
        ratio = result.render_time / baseline.average_render_time
        if ratio <= self.regression_threshold:
            return None

        degradation = (ratio - 1) * 100
        return RegressionAlert(
            type=RENDER_TIME,
            severity=classify_ratio_severity(ratio, self.regression_threshold),
            component_name=result.component,
            current_value=result.render_time,
            baseline_value=baseline.average_render_time,
            degradation_percentage=degradation,
            message=(
                f"Render time increased by {degradation:.1f}% "
                f"({result.render_time:.2f}ms vs "
                f"{baseline.average_render_time:.2f}ms baseline)"
            ),
            build_number=self.build_number,
        )

    def _check_memory(
        self, result: PerformanceResult, baseline: PerformanceBaseline
    ) -> RegressionAlert | None:
        if baseline.average_memory_usage <= 0:
            return None
        ratio = result.memory_usage / baseline.average_memory_usage
        if ratio <= self.memory_regression_threshold:
            return None

        degradation = (ratio - 1) * 100
        return RegressionAlert(
            type=MEMORY_USAGE,
            severity=classify_ratio_severity(ratio, self.memory_regression_threshold),
            component_name=result.component,
            current_value=result.memory_usage,
            baseline_value=baseline.average_memory_usage,
            degradation_percentage=degradation,
            message=(
                f"Memory usage increased by {degradation:.1f}% "
                f"({result.memory_usage / 1024:.2f}KB vs "
                f"{baseline.average_memory_usage / 1024:.2f}KB baseline)"
            ),
            build_number=self.build_number,
        )

    def _check_cache(
        self, result: PerformanceResult, baseline: PerformanceBaseline
    ) -> RegressionAlert | None:
        if not result.min_cache_hit_rate or result.cache_hit_rate is None:
            return None
        expected = result.min_cache_hit_rate
        current = result.cache_hit_rate
        if current >= expected:
            return None

        degradation = expected - current
        return RegressionAlert(
            type=CACHE_PERFORMANCE,
            severity=classify_cache_severity(degradation),
            component_name=result.component,
            current_value=current,
            baseline_value=expected,
            degradation_percentage=degradation,
            message=(
                f"Cache hit rate dropped by {degradation:.1f} points "
                f"({current:.1f}% vs {expected}% expected)"
            ),
            build_number=self.build_number,
        )

    def _add_history(self, result: PerformanceResult) -> None:
        entries = self.history.setdefault(result.component, [])
        entries.append(result)
        if len(entries) > HISTORY_CAP:
            del entries[: len(entries) - HISTORY_CAP]

    def generate_regression_report(
        self, results: list[PerformanceResult]
    ) -> RegressionReport:
        """Evaluate every result and summarize the alerts by severity."""
        alerts: list[RegressionAlert] = []
        for result in results:
            alerts.extend(self.detect_regressions(result))

        return RegressionReport(
            build_number=self.build_number,
            timestamp=_now(),
            total_tests=len(results),
            regressions=alerts,
            summary=summarize(alerts),
        )

    def should_fail_build(self, report: RegressionReport) -> bool:
        return should_fail_build(report)

    def get_performance_trends(self, component: str) -> dict[str, list[Any]]:
        """Render-time and memory series of the buffered measurements."""
        data = self.history.get(component, [])
        return {
            "renderTimeTrend": [r.render_time for r in data],
            "memoryUsageTrend": [r.memory_usage for r in data],
            "timestamps": [r.timestamp for r in data],
        }

    def get_regression_statistics(self) -> dict[str, Any]:
        baselines = list(self.baselines.values())
        count = len(baselines)
        return {
            "totalComponents": len(self.history),
            "componentsWithBaselines": count,
            "averageRenderTime": (
                sum(b.average_render_time for b in baselines) / count if count else 0.0
            ),
            "averageMemoryUsage": (
                sum(b.average_memory_usage for b in baselines) / count if count else 0.0
            ),
        }
