"""Jobs and the load-balancing arithmetic behind the scheduler.

A Job is one queued test file. Its estimated time drives longest-
processing-time-first (LPT) ordering: the queue is sorted by priority tier,
then by estimate, and every assignment goes to the least-loaded worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Priority tiers, highest first
PRIORITY_RANK = {"high": 2, "medium": 1, "low": 0}

# Path hints and the multiplier they apply to the base estimate
COMPLEXITY_MULTIPLIERS = {"integration": 3.0}

HIGH_PRIORITY_HINTS = ("security", "critical")
MEDIUM_PRIORITY_HINTS = ("integration", "e2e")


@dataclass
class Job:
    """One queued test file."""

    id: str
    test_file: str
    estimated_time: float
    priority: str = "low"
    dependencies: list[str] = field(default_factory=list)


@dataclass
class WorkerLedger:
    """Load-balancing bookkeeping for one worker.

    ``cumulative_time`` is the sum of the estimates assigned to the worker and
    is what assignment decisions compare. ``busy_time`` is the measured time
    the worker actually spent running jobs.
    """

    worker_id: int
    assigned_jobs: list[str] = field(default_factory=list)
    cumulative_time: float = 0.0
    busy_time: float = 0.0

    def assign(self, job: Job) -> None:
        self.assigned_jobs.append(job.id)
        self.cumulative_time += job.estimated_time


def estimate_test_time(test_file: str, base_time: float = 0.05) -> float:
    """Estimated duration of a test file in seconds."""
    multiplier = 1.0
    for hint, factor in COMPLEXITY_MULTIPLIERS.items():
        if hint in test_file:
            multiplier *= factor
    return base_time * multiplier


def calculate_priority(test_file: str) -> str:
    if any(hint in test_file for hint in HIGH_PRIORITY_HINTS):
        return "high"
    if any(hint in test_file for hint in MEDIUM_PRIORITY_HINTS):
        return "medium"
    return "low"


def job_sort_key(job: Job) -> tuple[int, float]:
    """Sort key: priority descending, then estimate descending."""
    return (-PRIORITY_RANK.get(job.priority, 0), -job.estimated_time)


def sort_jobs(jobs: list[Job]) -> list[Job]:
    return sorted(jobs, key=job_sort_key)


def least_loaded(ledgers: list[WorkerLedger]) -> WorkerLedger:
    """The ledger with the smallest cumulative time (lowest id on ties)."""
    return min(ledgers, key=lambda ledger: (ledger.cumulative_time, ledger.worker_id))


def plan_lpt(jobs: list[Job], workers: int) -> list[WorkerLedger]:
    """Assign jobs offline with the LPT heuristic.

    Jobs are taken longest first and each goes to the worker with the
    smallest cumulative estimate so far. Priority is ignored here; the plan
    only balances load.

    Args:
        jobs: Jobs to distribute.
        workers: Number of workers, at least 1.

    Returns:
        One ledger per worker, indexed by worker id.

    Raises:
        ValueError: If workers is less than 1.
    """
    if workers < 1:
        raise ValueError(f"workers must be at least 1, got {workers}")
    ledgers = [WorkerLedger(worker_id=i) for i in range(workers)]
    for job in sorted(jobs, key=lambda j: -j.estimated_time):
        least_loaded(ledgers).assign(job)
    return ledgers
