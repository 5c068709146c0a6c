"""Test reliability tracking over a rolling build window.

Ingests per-test runs and per-build suite records, then answers:

* overall reliability over the most recent builds (pass percentage);
* which tests are flaky, i.e. both pass and fail within the recent flaky
  window with a failure rate over the threshold, and what their failures
  look like (timing, intermittent, environment or unknown);
* summary statistics over a calendar period.

Ingestion never raises: a missing or malformed build number becomes one
above the highest seen, and a missing or malformed timestamp becomes now.
Only the most recent ``max_builds`` builds are retained.
"""

from __future__ import annotations

import datetime
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from testflow.regression.detector import parse_timestamp

# Flaky patterns, in classification order
TIMING = "timing"
INTERMITTENT = "intermittent"
ENVIRONMENT = "environment"
UNKNOWN = "unknown"

RUN_STATUSES = ("pass", "fail", "skip", "todo")
STATUS_ALIASES = {"passed": "pass", "failed": "fail", "skipped": "skip"}

MIN_FLAKY_RUNS = 5
TIMING_FACTOR = 2.0
INTERMITTENT_RATIO = 0.3
ENVIRONMENT_WINDOW = datetime.timedelta(hours=24)
ENVIRONMENT_SHARE = 0.5

# validate_trends: builds inspected and the drop (points) that warns
TREND_BUILDS = 5
TREND_DROP = 5.0
MAX_FLAKY_PERCENT = 1.0


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


def _pass_rate(passed: int, total: int) -> float:
    return passed / total * 100 if total > 0 else 0.0


@dataclass
class TestRun:
    """One execution of one test in one build."""

    __test__ = False  # prevent pytest collection

    test_name: str
    status: str  # pass, fail, skip, todo
    duration: float = 0.0
    build_number: int = 0
    timestamp: datetime.datetime = field(default_factory=_now)
    error: str | None = None
    retries: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "testName": self.test_name,
            "status": self.status,
            "duration": self.duration,
            "buildNumber": self.build_number,
            "timestamp": self.timestamp.isoformat(),
            "retries": self.retries,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class TestSuiteRecord:
    """Aggregate counts of one build."""

    __test__ = False  # prevent pytest collection

    suite_name: str
    build_number: int = 0
    timestamp: datetime.datetime = field(default_factory=_now)
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    duration: float = 0.0

    @property
    def pass_rate(self) -> float:
        return _pass_rate(self.passed_tests, self.total_tests)

    def to_dict(self) -> dict[str, Any]:
        return {
            "suiteName": self.suite_name,
            "buildNumber": self.build_number,
            "timestamp": self.timestamp.isoformat(),
            "totalTests": self.total_tests,
            "passedTests": self.passed_tests,
            "failedTests": self.failed_tests,
            "skippedTests": self.skipped_tests,
            "duration": self.duration,
        }


@dataclass
class FlakyTest:
    test_name: str
    failure_rate: float
    inconsistent_builds: int
    last_failure: datetime.datetime
    pattern: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "testName": self.test_name,
            "failureRate": self.failure_rate,
            "inconsistentBuilds": self.inconsistent_builds,
            "lastFailure": self.last_failure.isoformat(),
            "pattern": self.pattern,
        }


@dataclass
class ReliabilityMetrics:
    overall_reliability: float = 0.0
    trend: list[float] = field(default_factory=list)
    flaky_tests: list[FlakyTest] = field(default_factory=list)
    build_window: int = 0
    total_builds: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overallReliability": self.overall_reliability,
            "trend": list(self.trend),
            "flakyTests": [f.to_dict() for f in self.flaky_tests],
            "buildWindow": self.build_window,
            "totalBuilds": self.total_builds,
        }


@dataclass
class TrendValidation:
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ReliabilityTracker:
    """Rolling-window reliability and flaky-test analysis.

    Args:
        reliability_window: Builds used for overall reliability.
        flaky_window: Builds used for flaky detection.
        flaky_threshold: Failure rate a test must exceed to be flaky.
        max_builds: Builds retained; older data is pruned.
    """

    def __init__(
        self,
        reliability_window: int = 50,
        flaky_window: int = 20,
        flaky_threshold: float = 0.01,
        max_builds: int = 100,
    ) -> None:
        self.reliability_window = reliability_window
        self.flaky_window = flaky_window
        self.flaky_threshold = flaky_threshold
        self.max_builds = max_builds
        self.test_runs: list[TestRun] = []
        self.test_suites: list[TestSuiteRecord] = []

    # Ingestion

    def _max_build(self) -> int:
        builds = [s.build_number for s in self.test_suites]
        builds.extend(r.build_number for r in self.test_runs)
        return max(builds, default=0)

    def next_build_number(self) -> int:
        """One above the highest build number seen."""
        return self._max_build() + 1

    def _coerce_build(self, value: Any) -> int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        return self.next_build_number()

    @staticmethod
    def _coerce_timestamp(value: Any) -> datetime.datetime:
        try:
            return parse_timestamp(value)
        except (OverflowError, OSError, ValueError):
            return _now()

    @staticmethod
    def _coerce_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _coerce_int(value: Any) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    def add_test_run(self, run: TestRun | dict[str, Any]) -> TestRun:
        """Record one test run; malformed fields are defaulted."""
        if isinstance(run, TestRun):
            raw = {
                "testName": run.test_name,
                "status": run.status,
                "duration": run.duration,
                "buildNumber": run.build_number,
                "timestamp": run.timestamp,
                "error": run.error,
                "retries": run.retries,
            }
        else:
            raw = dict(run)

        status = str(raw.get("status", "skip"))
        status = STATUS_ALIASES.get(status, status)
        if status not in RUN_STATUSES:
            status = "skip"

        record = TestRun(
            test_name=str(raw.get("testName", "unknown")),
            status=status,
            duration=self._coerce_float(raw.get("duration")),
            build_number=self._coerce_build(raw.get("buildNumber")),
            timestamp=self._coerce_timestamp(raw.get("timestamp")),
            error=raw.get("error"),
            retries=self._coerce_int(raw.get("retries")),
        )
        self.test_runs.append(record)
        self._prune()
        return record

    def add_test_suite(self, suite: TestSuiteRecord | dict[str, Any]) -> TestSuiteRecord:
        """Record one build's suite counts; malformed fields are defaulted."""
        if isinstance(suite, TestSuiteRecord):
            raw = suite.to_dict()
            raw["timestamp"] = suite.timestamp
        else:
            raw = dict(suite)

        record = TestSuiteRecord(
            suite_name=str(raw.get("suiteName", "default")),
            build_number=self._coerce_build(raw.get("buildNumber")),
            timestamp=self._coerce_timestamp(raw.get("timestamp")),
            total_tests=self._coerce_int(raw.get("totalTests")),
            passed_tests=self._coerce_int(raw.get("passedTests")),
            failed_tests=self._coerce_int(raw.get("failedTests")),
            skipped_tests=self._coerce_int(raw.get("skippedTests")),
            duration=self._coerce_float(raw.get("duration")),
        )
        self.test_suites.append(record)
        self._prune()
        return record

    def _prune(self) -> None:
        builds = {s.build_number for s in self.test_suites}
        builds.update(r.build_number for r in self.test_runs)
        if len(builds) <= self.max_builds:
            return
        keep = set(sorted(builds, reverse=True)[: self.max_builds])
        self.test_suites = [s for s in self.test_suites if s.build_number in keep]
        self.test_runs = [r for r in self.test_runs if r.build_number in keep]

    # Analysis

    def _recent_suites(self, window: int) -> list[TestSuiteRecord]:
        """Most recent *window* suite records, newest first."""
        return sorted(self.test_suites, key=lambda s: s.build_number, reverse=True)[:window]

    def calculate_reliability(self) -> ReliabilityMetrics:
        recent = self._recent_suites(self.reliability_window)
        if not recent:
            return ReliabilityMetrics(
                flaky_tests=self.detect_flaky_tests(),
                total_builds=len(self.test_suites),
            )

        total = sum(s.total_tests for s in recent)
        passed = sum(s.passed_tests for s in recent)
        return ReliabilityMetrics(
            overall_reliability=_pass_rate(passed, total),
            trend=[s.pass_rate for s in reversed(recent)],
            flaky_tests=self.detect_flaky_tests(),
            build_window=len(recent),
            total_builds=len(self.test_suites),
        )

    def _flaky_window_runs(self) -> list[TestRun]:
        builds = {s.build_number for s in self.test_suites}
        builds.update(r.build_number for r in self.test_runs)
        recent = set(sorted(builds, reverse=True)[: self.flaky_window])
        return [r for r in self.test_runs if r.build_number in recent]

    def detect_flaky_tests(self) -> list[FlakyTest]:
        """Flaky tests of the recent flaky window, highest failure rate first."""
        groups: dict[str, list[TestRun]] = defaultdict(list)
        for run in self._flaky_window_runs():
            groups[run.test_name].append(run)

        flaky: list[FlakyTest] = []
        for name, runs in groups.items():
            result = self._analyze(name, sorted(runs, key=lambda r: (r.build_number, r.timestamp)))
            if result is not None:
                flaky.append(result)
        return sorted(flaky, key=lambda f: f.failure_rate, reverse=True)

    def _analyze(self, name: str, runs: list[TestRun]) -> FlakyTest | None:
        if len(runs) < MIN_FLAKY_RUNS:
            return None

        failures = [r for r in runs if r.status == "fail"]
        passes = [r for r in runs if r.status == "pass"]
        failure_rate = len(failures) / len(runs)
        if not failures or not passes or failure_rate <= self.flaky_threshold:
            return None

        return FlakyTest(
            test_name=name,
            failure_rate=failure_rate,
            inconsistent_builds=len(runs),
            last_failure=max(r.timestamp for r in failures),
            pattern=self.classify_pattern(runs, failures, passes),
        )

    @staticmethod
    def classify_pattern(
        runs: list[TestRun], failures: list[TestRun], passes: list[TestRun]
    ) -> str:
        """Classify how a flaky test fails; the first matching pattern wins."""
        mean_fail = sum(r.duration for r in failures) / len(failures)
        mean_pass = sum(r.duration for r in passes) / len(passes)
        if mean_fail > mean_pass * TIMING_FACTOR:
            return TIMING

        changes = sum(1 for prev, cur in zip(runs, runs[1:]) if cur.status != prev.status)
        if changes > len(runs) * INTERMITTENT_RATIO:
            return INTERMITTENT

        if len(failures) >= 2:
            times = sorted(r.timestamp for r in failures)
            start = 0
            for end, current in enumerate(times):
                while current - times[start] >= ENVIRONMENT_WINDOW:
                    start += 1
                if end - start + 1 >= len(failures) * ENVIRONMENT_SHARE:
                    return ENVIRONMENT

        return UNKNOWN

    def get_reliability_stats(self, days: int = 7) -> dict[str, Any]:
        """Per-build pass-rate statistics for suites of the last *days* days."""
        cutoff = _now() - datetime.timedelta(days=days)
        rates = [s.pass_rate for s in self.test_suites if s.timestamp >= cutoff]
        if not rates:
            return {
                "averageReliability": 0.0,
                "minReliability": 0.0,
                "maxReliability": 0.0,
                "totalBuilds": 0,
            }
        return {
            "averageReliability": sum(rates) / len(rates),
            "minReliability": min(rates),
            "maxReliability": max(rates),
            "totalBuilds": len(rates),
        }

    def meets_threshold(self, min_reliability: float = 99.0) -> bool:
        metrics = self.calculate_reliability()
        return metrics.build_window > 0 and metrics.overall_reliability >= min_reliability

    def validate_trends(self) -> TrendValidation:
        """Check the recent trend and the flaky-test share.

        Warns when the last few per-build pass rates never increase and
        drop by more than TREND_DROP points overall; errors when flaky
        tests exceed MAX_FLAKY_PERCENT of the tests seen in the flaky window.
        """
        result = TrendValidation()
        metrics = self.calculate_reliability()

        recent = metrics.trend[-TREND_BUILDS:]
        if len(recent) >= TREND_BUILDS:
            never_increasing = all(b <= a for a, b in zip(recent, recent[1:]))
            if never_increasing and recent[0] - recent[-1] > TREND_DROP:
                result.warnings.append(
                    f"Reliability trend is decreasing over last {TREND_BUILDS} builds "
                    f"({recent[0]:.1f}% -> {recent[-1]:.1f}%)"
                )

        tests_seen = {r.test_name for r in self._flaky_window_runs()}
        if tests_seen:
            flaky_percent = len(metrics.flaky_tests) / len(tests_seen) * 100
            if flaky_percent > MAX_FLAKY_PERCENT:
                result.errors.append(
                    f"Flaky test rate {flaky_percent:.1f}% exceeds "
                    f"{MAX_FLAKY_PERCENT:g}% threshold"
                )
        return result

    # Persistence helpers

    def export_data(self) -> dict[str, Any]:
        return {
            "testRuns": [r.to_dict() for r in self.test_runs],
            "testSuites": [s.to_dict() for s in self.test_suites],
            "exportedAt": _now().isoformat(),
        }

    def import_data(self, data: dict[str, Any]) -> None:
        """Replace all tracked data with an export produced by export_data.

        Sections that are not lists, and records that are not objects, are
        skipped.
        """
        self.clear_data()
        suites = data.get("testSuites")
        for suite in suites if isinstance(suites, list) else []:
            if isinstance(suite, dict):
                self.add_test_suite(suite)
        runs = data.get("testRuns")
        for run in runs if isinstance(runs, list) else []:
            if isinstance(run, dict):
                self.add_test_run(run)

    def clear_data(self) -> None:
        self.test_runs = []
        self.test_suites = []
