"""Report generation for a pipeline run.

Collects the per-test outcomes of one build together with the cache,
scheduler, reliability and regression views, and renders them as one
document::

    {"report": {"generated_at": ..., "build_number": ..., "summary": {...},
                "tests": [...], "cache": {...}, "scheduler": {...},
                "reliability": {...}, "regressions": {...}}}

Sections that were never set are omitted.
"""

from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any

import yaml

from testflow.execution.runner import TestOutcome
from testflow.execution.scheduler import ParallelizationMetrics
from testflow.regression.detector import RegressionReport, should_fail_build
from testflow.reliability.tracker import ReliabilityMetrics

# Statuses counted in the summary
SUMMARY_STATUSES = ("passed", "failed", "skipped")


class Reporter:
    """Collects the results of one pipeline run and renders the report."""

    def __init__(self, build_number: int | str | None = None) -> None:
        self.build_number = build_number
        self.outcomes: list[tuple[TestOutcome, bool]] = []
        self.cache_stats: dict[str, Any] | None = None
        self.scheduler_metrics: ParallelizationMetrics | None = None
        self.reliability: ReliabilityMetrics | None = None
        self.regression_report: RegressionReport | None = None

    def add_outcome(self, outcome: TestOutcome, cached: bool = False) -> None:
        """Add one test outcome; *cached* marks outcomes served from cache."""
        self.outcomes.append((outcome, cached))

    def set_cache_stats(self, stats: dict[str, Any]) -> None:
        self.cache_stats = stats

    def set_scheduler_metrics(self, metrics: ParallelizationMetrics) -> None:
        self.scheduler_metrics = metrics

    def set_reliability(self, metrics: ReliabilityMetrics) -> None:
        self.reliability = metrics

    def set_regression_report(self, report: RegressionReport) -> None:
        self.regression_report = report

    def _compute_summary(self) -> dict[str, int]:
        summary = {"total": len(self.outcomes), "cached": 0}
        for status in SUMMARY_STATUSES:
            summary[status] = 0
        for outcome, cached in self.outcomes:
            if outcome.status in summary:
                summary[outcome.status] += 1
            if cached:
                summary["cached"] += 1
        return summary

    @staticmethod
    def _format_outcome(outcome: TestOutcome, cached: bool) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "name": outcome.name,
            "status": outcome.status,
            "duration": outcome.duration,
            "test_count": outcome.test_count,
            "failure_count": outcome.failure_count,
            "cached": cached,
        }
        if outcome.exit_code is not None:
            entry["exit_code"] = outcome.exit_code
        if outcome.status == "failed" and outcome.stderr:
            entry["stderr"] = outcome.stderr
        return entry

    def generate_report(self) -> dict[str, Any]:
        """Generate the report data structure.

        Returns:
            Dictionary representing the full report, suitable for JSON
            and YAML serialization.
        """
        report: dict[str, Any] = {
            "generated_at": datetime.datetime.now(tz=datetime.timezone.utc).isoformat(),
            "summary": self._compute_summary(),
            "tests": [self._format_outcome(o, cached) for o, cached in self.outcomes],
        }
        if self.build_number is not None:
            report["build_number"] = self.build_number

        if self.cache_stats is not None:
            report["cache"] = self.cache_stats

        if self.scheduler_metrics is not None:
            report["scheduler"] = self.scheduler_metrics.to_dict()

        if self.reliability is not None:
            report["reliability"] = self.reliability.to_dict()

        if self.regression_report is not None:
            regressions = self.regression_report.to_dict()
            regressions["shouldFailBuild"] = should_fail_build(self.regression_report)
            report["regressions"] = regressions

        return {"report": report}

    def write_json(self, path: Path) -> None:
        """Write the report as a JSON file."""
        report = self.generate_report()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(report, f, indent=2)

    def write_yaml(self, path: Path) -> None:
        """Write the report as a YAML file."""
        report = self.generate_report()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(
                report,
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )
