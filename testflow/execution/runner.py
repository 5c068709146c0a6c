"""Job runners: how a single test file becomes a TestOutcome.

The scheduler gives each worker its own runner instance and never shares
one between workers. A runner has two hooks:

* ``start(worker_id)`` runs once when the worker comes up; raising here
  means the worker pool cannot start and the run is aborted.
* ``run(job)`` executes one job and returns its outcome. Exceptions are
  caught by the worker and turned into a failed result.

CommandRunner is the default: it runs a configurable command with the test
file appended, in a subprocess.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from testflow.analysis.perf_output import parse_performance_events
from testflow.execution.jobs import Job
from testflow.regression.detector import PerformanceResult

# Outcome statuses
VALID_STATUSES = frozenset({"passed", "failed", "skipped"})

# pytest exits with 5 when it collected no tests
NO_TESTS_EXIT_CODES = frozenset({5})

_SUMMARY_PATTERN = re.compile(r"(\d+) (passed|failed|errors?|skipped|xfailed|xpassed)")


@dataclass
class TestOutcome:
    """Result of running one test unit."""

    __test__ = False  # prevent pytest collection

    name: str
    status: str  # passed, failed, skipped
    duration: float = 0.0
    test_count: int = 0
    failure_count: int = 0
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    performance: list[PerformanceResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == "passed"


class JobRunner(Protocol):
    def start(self, worker_id: int) -> None: ...

    def run(self, job: Job) -> TestOutcome: ...


def parse_summary_counts(output: str) -> tuple[int, int]:
    """Count tests and failures from a pytest-style summary line.

    Args:
        output: Captured test output.

    Returns:
        ``(test_count, failure_count)``; ``(0, 0)`` if no summary is found.
    """
    counts: dict[str, int] = {}
    for number, kind in _SUMMARY_PATTERN.findall(output):
        key = "error" if kind.startswith("error") else kind
        counts[key] = counts.get(key, 0) + int(number)
    failures = counts.get("failed", 0) + counts.get("error", 0)
    total = sum(counts.values())
    return total, failures


class CommandRunner:
    """Runs each test file as ``[*command, test_file]`` in a subprocess."""

    def __init__(
        self,
        command: list[str],
        timeout: float = 300.0,
        cwd: str | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandRunner needs a non-empty command")
        self.command = list(command)
        self.timeout = timeout
        self.cwd = cwd

    def start(self, worker_id: int) -> None:
        """Check that the command can be found before accepting jobs.

        Raises:
            FileNotFoundError: If the executable is not on PATH.
        """
        executable = self.command[0]
        if shutil.which(executable) is None:
            raise FileNotFoundError(f"Executable not found: {executable}")

    def run(self, job: Job) -> TestOutcome:
        """Run one job's test file.

        Returns:
            TestOutcome with status, counts, captured output and any
            performance events found on stdout.
        """
        start_time = time.monotonic()
        try:
            proc = subprocess.run(
                [*self.command, job.test_file],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired:
            return TestOutcome(
                name=job.test_file,
                status="failed",
                duration=time.monotonic() - start_time,
                failure_count=1,
                stderr=f"Test timed out after {self.timeout} seconds",
                exit_code=-1,
            )
        except FileNotFoundError:
            return TestOutcome(
                name=job.test_file,
                status="failed",
                duration=time.monotonic() - start_time,
                failure_count=1,
                stderr=f"Executable not found: {self.command[0]}",
                exit_code=-1,
            )
        except OSError as e:
            return TestOutcome(
                name=job.test_file,
                status="failed",
                duration=time.monotonic() - start_time,
                failure_count=1,
                stderr=f"OS error running test: {e}",
                exit_code=-1,
            )
        duration = time.monotonic() - start_time

        test_count, failure_count = parse_summary_counts(proc.stdout)
        if proc.returncode == 0:
            status = "passed"
        elif proc.returncode in NO_TESTS_EXIT_CODES:
            status = "skipped"
        else:
            status = "failed"
            failure_count = max(failure_count, 1)

        return TestOutcome(
            name=job.test_file,
            status=status,
            duration=duration,
            test_count=test_count,
            failure_count=failure_count,
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_code=proc.returncode,
            performance=parse_performance_events(proc.stdout),
        )
