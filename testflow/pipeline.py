"""The test pipeline: cache, schedule, run, track and compare one build.

A Pipeline owns one result cache, scheduler configuration, reliability
tracker and regression detector, all built from a PipelineConfig. Each call
to :meth:`Pipeline.run` processes one build:

1. split the test units into cache hits and misses;
2. run the misses on the parallel scheduler;
3. refresh the cache from passing outcomes and drop entries of failing ones;
4. record every executed outcome as a test run and the build as a suite
   record (cache hits count as passes);
5. evaluate the performance measurements emitted by the tests;
6. persist the cache, build history, baselines and buffered measurements.

State files live in the cache directory next to the cache stores.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from testflow.analysis.measurements import load_measurements, store_measurements, stored_components
from testflow.caching.result_cache import CachedOutcome, CacheEntry, ResultCache
from testflow.config import PipelineConfig, ci_build_number, environment_tag
from testflow.execution.runner import JobRunner, TestOutcome
from testflow.execution.scheduler import ParallelizationMetrics, ParallelScheduler
from testflow.regression.baselines import BaselineFile
from testflow.regression.detector import (
    PerformanceBaseline,
    PerformanceResult,
    RegressionDetector,
    RegressionReport,
    should_fail_build,
)
from testflow.reliability.history import HistoryFile
from testflow.reliability.tracker import ReliabilityMetrics, ReliabilityTracker, TestRun, TestSuiteRecord
from testflow.reporting.reporter import Reporter

HISTORY_FILE = "build-history.json"
BASELINE_FILE = "performance-baselines.json"
MEASUREMENTS_DIR = "measurements"


@dataclass
class TestUnit:
    """A test file to run, optionally with explicit dependencies."""

    __test__ = False  # prevent pytest collection

    path: str
    dependencies: list[str] | None = None


@dataclass
class PipelineResult:
    """Everything one pipeline run produced."""

    build_number: int
    outcomes: dict[str, TestOutcome]
    cached: list[str]
    executed: list[str]
    scheduler_metrics: ParallelizationMetrics
    reliability: ReliabilityMetrics
    regression_report: RegressionReport
    cache_stats: dict[str, Any] = field(default_factory=dict)
    # Overall reliability is at least the configured min_reliability
    meets_reliability: bool = True

    @property
    def failed(self) -> list[str]:
        return [name for name, o in self.outcomes.items() if o.status == "failed"]

    @property
    def success(self) -> bool:
        """True when no test failed and the regressions do not fail the build."""
        return not self.failed and not should_fail_build(self.regression_report)

    def to_dict(self) -> dict[str, Any]:
        return {
            "buildNumber": self.build_number,
            "reliability": self.reliability.to_dict(),
            "regressions": self.regression_report.to_dict(),
            "scheduler": self.scheduler_metrics.to_dict(),
            "cache": dict(self.cache_stats),
        }

    def reporter(self) -> Reporter:
        """A Reporter populated with this run's results."""
        reporter = Reporter(build_number=self.build_number)
        cached = set(self.cached)
        for name, outcome in self.outcomes.items():
            reporter.add_outcome(outcome, cached=name in cached)
        reporter.set_cache_stats(dict(self.cache_stats))
        reporter.set_scheduler_metrics(self.scheduler_metrics)
        reporter.set_reliability(self.reliability)
        reporter.set_regression_report(self.regression_report)
        return reporter


def _cached_to_outcome(name: str, entry: CacheEntry) -> TestOutcome:
    return TestOutcome(
        name=name,
        status=entry.outcome.status,
        duration=entry.outcome.duration,
        test_count=entry.outcome.test_count,
        failure_count=entry.outcome.failure_count,
        details={**entry.outcome.details, "cached": True},
    )


def _outcome_to_cached(outcome: TestOutcome) -> CachedOutcome:
    return CachedOutcome(
        status=outcome.status,
        duration=outcome.duration,
        test_count=outcome.test_count,
        failure_count=outcome.failure_count,
        details=dict(outcome.details),
    )


class Pipeline:
    """Explicit context for running builds through the pipeline.

    Args:
        config: Pipeline configuration (defaults when None).
        root: Project root test paths are relative to (default: cwd).
        runner_factory: Builds one job runner per worker; default runs the
            configured test command.
        environment: Environment tag for cache entries; default is the
            configured tool's installed version and the running Python.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        root: str | Path | None = None,
        runner_factory: Callable[[], JobRunner] | None = None,
        environment: tuple[str, str] | None = None,
    ) -> None:
        self.config = config if config is not None else PipelineConfig()
        self.runner_factory = runner_factory

        self.cache = ResultCache(
            cache_dir=self.config.cache_dir,
            root=root,
            max_age_days=self.config.max_cache_age_days,
            max_entries=self.config.max_cache_entries,
            environment=environment or environment_tag(self.config.tool_name),
        )
        self.state_dir = self.cache.cache_dir

        self.tracker = ReliabilityTracker(
            reliability_window=self.config.reliability_window,
            flaky_window=self.config.flaky_window,
            flaky_threshold=self.config.flaky_threshold,
            max_builds=self.config.max_builds,
        )
        self.history = HistoryFile(self.state_dir / HISTORY_FILE)
        self.history.load_into(self.tracker)

        self.detector = RegressionDetector(
            regression_threshold=self.config.regression_threshold,
            memory_regression_threshold=self.config.memory_regression_threshold,
            baseline_samples=self.config.baseline_samples,
        )
        self.baselines = BaselineFile(self.state_dir / BASELINE_FILE)
        self.detector.load_baselines(self.baselines.load())
        self.measurements_dir = self.state_dir / MEASUREMENTS_DIR
        for component in stored_components(self.measurements_dir):
            self.detector.history[component] = load_measurements(component, self.measurements_dir)

    @classmethod
    def from_config_file(cls, path: Path, **kwargs: Any) -> Pipeline:
        """Build a pipeline from a .testflow_config file."""
        return cls(PipelineConfig(path), **kwargs)

    def _scheduler(self) -> ParallelScheduler:
        return ParallelScheduler.from_config(
            self.config, self.runner_factory, cwd=self.cache.resolver.root
        )

    def _job_dependencies(self, unit: TestUnit) -> list[str] | None:
        if unit.dependencies is not None:
            return list(unit.dependencies)
        node = self.cache.get_dependency_node(unit.path)
        return node.all if node is not None and node.all else None

    def run(
        self,
        units: list[TestUnit | str],
        build_number: int | None = None,
        suite_name: str = "tests",
    ) -> PipelineResult:
        """Process one build.

        Args:
            units: Test units (or bare paths), in input order.
            build_number: Build identifier; default is the CI build number,
                else one above the highest build seen.
            suite_name: Name stamped on the build's suite record.

        Returns:
            PipelineResult for the build.

        Raises:
            WorkerPoolError: If the scheduler's workers cannot start.
        """
        by_path: dict[str, TestUnit] = {}
        for unit in units:
            if not isinstance(unit, TestUnit):
                unit = TestUnit(path=str(unit))
            by_path.setdefault(unit.path, unit)
        units = list(by_path.values())

        if build_number is None:
            build_number = ci_build_number()
        if build_number is None:
            build_number = self.tracker.next_build_number()
        self.detector.build_number = str(build_number)

        hits, misses = self.cache.partition([unit.path for unit in units])

        outcomes: dict[str, TestOutcome] = {
            path: _cached_to_outcome(path, entry) for path, entry in hits.items()
        }

        metrics = ParallelizationMetrics()
        executed: list[str] = []
        performance: list[PerformanceResult] = []
        if misses:
            scheduler = self._scheduler()
            dependencies = {}
            for path in misses:
                deps = self._job_dependencies(by_path[path])
                if deps:
                    dependencies[path] = deps
            scheduler.add_test_jobs(misses, dependencies=dependencies)
            metrics = scheduler.execute_parallel()

            for result in scheduler.results:
                path = result.test_file
                outcome = result.outcome
                outcomes[path] = outcome
                executed.append(path)
                performance.extend(outcome.performance)
                self._record_outcome(by_path[path], outcome, build_number)

        self.tracker.add_test_suite(
            self._suite_record(suite_name, build_number, units, outcomes, metrics)
        )
        regression_report = self.detector.generate_regression_report(performance)
        reliability = self.tracker.calculate_reliability()
        self._persist()

        ordered = {unit.path: outcomes[unit.path] for unit in units if unit.path in outcomes}
        return PipelineResult(
            build_number=build_number,
            outcomes=ordered,
            cached=[unit.path for unit in units if unit.path in hits],
            executed=executed,
            scheduler_metrics=metrics,
            reliability=reliability,
            regression_report=regression_report,
            cache_stats=self.cache.get_stats().to_dict(),
            meets_reliability=self.tracker.meets_threshold(self.config.min_reliability),
        )

    def _record_outcome(self, unit: TestUnit, outcome: TestOutcome, build_number: int) -> None:
        if outcome.status == "passed":
            self.cache.cache_result(unit.path, _outcome_to_cached(outcome), unit.dependencies)
        elif outcome.status == "failed":
            self.cache.invalidate(unit.path)

        self.tracker.add_test_run(
            TestRun(
                test_name=unit.path,
                status=outcome.status,
                duration=outcome.duration,
                build_number=build_number,
                error=outcome.stderr if outcome.status == "failed" and outcome.stderr else None,
            )
        )

    @staticmethod
    def _suite_record(
        suite_name: str,
        build_number: int,
        units: list[TestUnit],
        outcomes: dict[str, TestOutcome],
        metrics: ParallelizationMetrics,
    ) -> TestSuiteRecord:
        statuses = [outcomes[u.path].status for u in units if u.path in outcomes]
        return TestSuiteRecord(
            suite_name=suite_name,
            build_number=build_number,
            total_tests=len(statuses),
            passed_tests=statuses.count("passed"),
            failed_tests=statuses.count("failed"),
            skipped_tests=statuses.count("skipped"),
            duration=metrics.total_time,
        )

    def update_baselines(self, components: list[str] | None = None) -> list[PerformanceBaseline]:
        """Rebuild baselines from buffered measurements and persist them.

        Args:
            components: Components to update (default: all with history).

        Returns:
            The baselines that were created; components with too few
            samples are skipped.
        """
        names = components if components is not None else sorted(self.detector.history)
        updated: list[PerformanceBaseline] = []
        for name in names:
            baseline = self.detector.update_baseline_from_history(name)
            if baseline is not None:
                updated.append(baseline)
        if updated:
            self.baselines.save(self.detector.export_baselines())
        return updated

    def _persist(self) -> None:
        self.cache.save()
        if not self.history.save(self.tracker):
            print("Pipeline: build history not saved", file=sys.stderr)
        self.baselines.save(self.detector.export_baselines())
        for component, results in self.detector.history.items():
            store_measurements(component, results, self.measurements_dir)
