"""Parallel job scheduler with LPT load balancing.

Runs queued test jobs on a bounded pool of asyncio worker tasks. Each worker
owns its runner and an inbox queue; results come back through one shared
outbox. Only the coordinator touches the worker ledgers, so workers share no
mutable state.

Assignment is greedy: the first wave goes out round-robin, then every
completion frees a worker and the next queued job goes to the idle worker
with the smallest cumulative assigned time.
"""

from __future__ import annotations

import asyncio
import collections
import math
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from testflow.config import PipelineConfig, default_max_workers
from testflow.execution.jobs import (
    Job,
    WorkerLedger,
    calculate_priority,
    estimate_test_time,
    sort_jobs,
)
from testflow.execution.runner import CommandRunner, JobRunner, TestOutcome

# Imbalance bottleneck: busiest worker over this multiple of the idlest
IMBALANCE_RATIO = 1.5

# Slow-job bottleneck: actual duration over this multiple of max_test_time
SLOW_JOB_FACTOR = 2


class WorkerPoolError(RuntimeError):
    """Raised when the worker pool cannot be started."""


@dataclass
class WorkerResult:
    """Outcome of one job as reported by the worker that ran it."""

    job_id: str
    test_file: str
    worker_id: int
    outcome: TestOutcome
    duration: float
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.outcome.status != "failed"


@dataclass
class ParallelizationMetrics:
    total_tests: int = 0
    total_time: float = 0.0
    average_test_time: float = 0.0
    worker_utilization: list[float] = field(default_factory=list)
    efficiency: float = 0.0
    bottlenecks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTests": self.total_tests,
            "totalTime": self.total_time,
            "averageTestTime": self.average_test_time,
            "workerUtilization": list(self.worker_utilization),
            "efficiency": self.efficiency,
            "bottlenecks": list(self.bottlenecks),
        }


class ParallelScheduler:
    """Distributes test jobs across a bounded pool of isolated workers.

    Args:
        runner_factory: Builds one JobRunner per worker.
        max_workers: Hard cap on workers (None = machine default).
        min_jobs_per_worker: Below this many jobs, use half the job count.
        base_test_time: Base estimate per test file, in seconds.
        max_test_time: Target per-test time; jobs over twice this are slow.
        max_suite_time: Target suite time used to size the pool.
        min_efficiency: Utilization below which monitoring recommends changes.
    """

    def __init__(
        self,
        runner_factory: Callable[[], JobRunner],
        max_workers: int | None = None,
        min_jobs_per_worker: int = 5,
        base_test_time: float = 0.05,
        max_test_time: float = 0.1,
        max_suite_time: float = 120.0,
        min_efficiency: float = 0.8,
    ) -> None:
        self.runner_factory = runner_factory
        self.max_workers = max(1, max_workers) if max_workers is not None else default_max_workers()
        self.min_jobs_per_worker = min_jobs_per_worker
        self.base_test_time = base_test_time
        self.max_test_time = max_test_time
        self.max_suite_time = max_suite_time
        self.min_efficiency = min_efficiency

        self.job_queue: list[Job] = []
        self.results: list[WorkerResult] = []
        self.ledgers: list[WorkerLedger] = []
        self._run_jobs: list[Job] = []
        self._active: dict[int, Job] = {}
        self._next_id = 0

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        runner_factory: Callable[[], JobRunner] | None = None,
        cwd: str | Path | None = None,
    ) -> ParallelScheduler:
        """Build a scheduler from pipeline configuration.

        Without a factory, each worker gets a CommandRunner for the
        configured test command, run from *cwd* (the project root test
        paths are relative to).
        """
        if runner_factory is None:
            command = config.test_command
            timeout = config.timeout
            workdir = str(cwd) if cwd is not None else None

            def runner_factory() -> JobRunner:
                return CommandRunner(command, timeout=timeout, cwd=workdir)

        return cls(
            runner_factory,
            max_workers=config.resolved_max_workers(),
            min_jobs_per_worker=config.min_jobs_per_worker,
            base_test_time=config.base_test_time,
            max_test_time=config.max_test_time,
            max_suite_time=config.max_suite_time,
            min_efficiency=config.min_efficiency,
        )

    def add_test_jobs(
        self,
        test_files: list[str],
        dependencies: dict[str, list[str]] | None = None,
    ) -> list[Job]:
        """Queue one job per test file.

        Args:
            test_files: Test files to run.
            dependencies: Optional dependency keys per file; a file without
                an entry depends only on itself.

        Returns:
            The newly created jobs.
        """
        dependencies = dependencies or {}
        created: list[Job] = []
        for test_file in test_files:
            job = Job(
                id=f"job-{self._next_id}",
                test_file=test_file,
                estimated_time=estimate_test_time(test_file, self.base_test_time),
                priority=calculate_priority(test_file),
                dependencies=list(dependencies.get(test_file) or [test_file]),
            )
            self._next_id += 1
            created.append(job)

        self.job_queue = sort_jobs(self.job_queue + created)
        return created

    def calculate_optimal_worker_count(self, jobs: list[Job] | None = None) -> int:
        """Number of workers to spawn for *jobs* (default: the queue)."""
        jobs = self.job_queue if jobs is None else jobs
        job_count = len(jobs)
        if job_count < self.min_jobs_per_worker:
            return min(self.max_workers, max(1, job_count // 2))

        estimated_total = sum(job.estimated_time for job in jobs)
        optimal = math.ceil(estimated_total / self.max_suite_time)
        return min(self.max_workers, max(1, optimal))

    def execute_parallel(self) -> ParallelizationMetrics:
        """Run every queued job and return the run's metrics.

        Raises:
            WorkerPoolError: If any worker's runner fails to start.
        """
        return asyncio.run(self._execute_async())

    async def _execute_async(self) -> ParallelizationMetrics:
        jobs = list(self.job_queue)
        self._run_jobs = jobs
        self.results = []
        self._active = {}
        start_time = time.monotonic()

        if not jobs:
            self.ledgers = []
            return ParallelizationMetrics()

        worker_count = self.calculate_optimal_worker_count(jobs)
        self.ledgers = [WorkerLedger(worker_id=i) for i in range(worker_count)]
        runners = [self.runner_factory() for _ in range(worker_count)]

        loop = asyncio.get_running_loop()
        try:
            await asyncio.gather(
                *(loop.run_in_executor(None, runner.start, i) for i, runner in enumerate(runners))
            )
        except Exception as e:
            raise WorkerPoolError(f"Worker pool failed to start: {e}") from e

        inboxes: list[asyncio.Queue[Job | None]] = [asyncio.Queue() for _ in range(worker_count)]
        outbox: asyncio.Queue[WorkerResult] = asyncio.Queue()
        tasks = [
            asyncio.create_task(self._worker(i, runners[i], inboxes[i], outbox))
            for i in range(worker_count)
        ]

        queued = collections.deque(jobs)
        self.job_queue = []

        def dispatch(worker_id: int) -> None:
            job = queued.popleft()
            self.ledgers[worker_id].assign(job)
            self._active[worker_id] = job
            inboxes[worker_id].put_nowait(job)

        try:
            # First wave: round-robin, one job per worker
            for worker_id in range(worker_count):
                if not queued:
                    break
                dispatch(worker_id)

            idle = {i for i in range(worker_count) if i not in self._active}
            while self._active:
                result = await outbox.get()
                self._active.pop(result.worker_id, None)
                self.ledgers[result.worker_id].busy_time += result.duration
                self.results.append(result)
                idle.add(result.worker_id)

                while queued and idle:
                    target = min(
                        idle,
                        key=lambda i: (self.ledgers[i].cumulative_time, i),
                    )
                    idle.discard(target)
                    dispatch(target)
        finally:
            for inbox in inboxes:
                inbox.put_nowait(None)
            await asyncio.gather(*tasks, return_exceptions=True)

        return self._calculate_metrics(time.monotonic() - start_time)

    async def _worker(
        self,
        worker_id: int,
        runner: JobRunner,
        inbox: asyncio.Queue[Job | None],
        outbox: asyncio.Queue[WorkerResult],
    ) -> None:
        """Run jobs from *inbox* until a None shutdown message arrives."""
        loop = asyncio.get_running_loop()
        while True:
            job = await inbox.get()
            if job is None:
                return

            start_time = time.monotonic()
            error: str | None = None
            try:
                outcome = await loop.run_in_executor(None, runner.run, job)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                print(
                    f"Scheduler: worker {worker_id} failed on {job.test_file}: {error}",
                    file=sys.stderr,
                )
                outcome = TestOutcome(
                    name=job.test_file,
                    status="failed",
                    duration=time.monotonic() - start_time,
                    failure_count=1,
                    stderr=error,
                )
            await outbox.put(
                WorkerResult(
                    job_id=job.id,
                    test_file=job.test_file,
                    worker_id=worker_id,
                    outcome=outcome,
                    duration=time.monotonic() - start_time,
                    error=error,
                )
            )

    def _calculate_metrics(self, total_time: float) -> ParallelizationMetrics:
        total_tests = len(self.results)
        average_test_time = (
            sum(r.duration for r in self.results) / total_tests if total_tests else 0.0
        )
        utilization = self._worker_utilization()
        efficiency = sum(utilization) / len(utilization) if utilization else 0.0

        return ParallelizationMetrics(
            total_tests=total_tests,
            total_time=total_time,
            average_test_time=average_test_time,
            worker_utilization=utilization,
            efficiency=efficiency,
            bottlenecks=self.identify_bottlenecks(),
        )

    def _worker_utilization(self) -> list[float]:
        """Ideal parallel time over each worker's busy time, capped at 1.0."""
        if not self.ledgers:
            return []
        busy = [ledger.busy_time for ledger in self.ledgers]
        ideal = sum(busy) / len(busy)
        return [min(1.0, ideal / b) if b > 0 else 0.0 for b in busy]

    def identify_bottlenecks(self) -> list[str]:
        bottlenecks: list[str] = []

        slow_limit = self.max_test_time * SLOW_JOB_FACTOR
        slow = [r for r in self.results if r.duration > slow_limit]
        if slow:
            bottlenecks.append(f"{len(slow)} slow tests detected (>{slow_limit:g}s)")

        if self.ledgers:
            busy = [ledger.busy_time for ledger in self.ledgers]
            if max(busy) > min(busy) * IMBALANCE_RATIO:
                bottlenecks.append("Uneven worker load distribution detected")

        conflicts = self.count_dependency_conflicts()
        if conflicts:
            bottlenecks.append(f"{conflicts} dependency conflicts causing serialization")

        return bottlenecks

    def count_dependency_conflicts(self) -> int:
        """Number of dependency keys shared by more than one job of the run."""
        jobs = self.job_queue or self._run_jobs
        usage = collections.Counter(dep for job in jobs for dep in set(job.dependencies))
        return sum(1 for count in usage.values() if count > 1)

    def monitor_performance(self) -> dict[str, Any]:
        """Snapshot of current utilization, bottlenecks and recommendations."""
        utilization = len(self._active) / len(self.ledgers) if self.ledgers else 0.0
        bottlenecks = self.identify_bottlenecks()
        return {
            "currentUtilization": utilization,
            "bottlenecks": bottlenecks,
            "recommendations": self._recommendations(utilization, bottlenecks),
        }

    def _recommendations(self, utilization: float, bottlenecks: list[str]) -> list[str]:
        recommendations: list[str] = []
        if utilization < self.min_efficiency:
            recommendations.append(
                "Consider reducing worker count or optimizing test distribution"
            )
        if any("slow tests" in b for b in bottlenecks):
            recommendations.append(
                "Optimize slow tests by improving mocking and reducing I/O operations"
            )
        if any("load distribution" in b for b in bottlenecks):
            recommendations.append(
                "Improve test estimation accuracy for better load balancing"
            )
        if any("dependency conflicts" in b for b in bottlenecks):
            recommendations.append(
                "Reduce shared dependencies or implement better test isolation"
            )
        return recommendations

    def optimize_test_order(self, jobs: list[Job]) -> list[Job]:
        """Group jobs by dependency key, longest estimate first within a group.

        Groups keep the order in which their first job appears.
        """
        groups: dict[str, list[Job]] = {}
        for job in jobs:
            key = "|".join(sorted(job.dependencies))
            groups.setdefault(key, []).append(job)

        ordered: list[Job] = []
        for group in groups.values():
            ordered.extend(sorted(group, key=lambda j: -j.estimated_time))
        return ordered
