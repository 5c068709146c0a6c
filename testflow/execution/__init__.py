"""Test execution: jobs, runners and the parallel scheduler."""

from testflow.execution.jobs import Job, WorkerLedger, calculate_priority, estimate_test_time, plan_lpt
from testflow.execution.runner import CommandRunner, TestOutcome
from testflow.execution.scheduler import (
    ParallelizationMetrics,
    ParallelScheduler,
    WorkerPoolError,
    WorkerResult,
)

__all__ = [
    "CommandRunner",
    "Job",
    "ParallelScheduler",
    "ParallelizationMetrics",
    "TestOutcome",
    "WorkerLedger",
    "WorkerPoolError",
    "WorkerResult",
    "calculate_priority",
    "estimate_test_time",
    "plan_lpt",
]
