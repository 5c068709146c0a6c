"""Unit tests for the parallel scheduler."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from testflow.config import PipelineConfig
from testflow.execution.jobs import Job
from testflow.execution.runner import CommandRunner, TestOutcome
from testflow.execution.scheduler import ParallelScheduler, WorkerPoolError


class RecordingRunner:
    """Runner that records which worker ran which job."""

    runs: list[tuple[int, str]] = []
    lock = threading.Lock()

    def __init__(self, fail_on: str | None = None, sleep: float = 0.0) -> None:
        self.worker_id: int | None = None
        self.fail_on = fail_on
        self.sleep = sleep

    def start(self, worker_id: int) -> None:
        self.worker_id = worker_id

    def run(self, job: Job) -> TestOutcome:
        if self.sleep:
            time.sleep(self.sleep)
        with self.lock:
            self.runs.append((self.worker_id, job.test_file))
        if job.test_file == self.fail_on:
            raise RuntimeError("runner crashed")
        return TestOutcome(name=job.test_file, status="passed", test_count=1)


class BrokenRunner(RecordingRunner):
    def start(self, worker_id: int) -> None:
        raise OSError("cannot start")


@pytest.fixture(autouse=True)
def _reset_runs():
    RecordingRunner.runs = []
    yield


def _files(count: int, prefix: str = "tests/unit/t") -> list[str]:
    return [f"{prefix}{i}_test.py" for i in range(count)]


class TestAddJobs:
    """Tests for queueing jobs."""

    def test_queue_sorted_by_priority_then_estimate(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        scheduler.add_test_jobs([
            "tests/unit/a_test.py",
            "tests/integration/b_test.py",
            "tests/security/c_test.py",
        ])
        assert [j.test_file for j in scheduler.job_queue] == [
            "tests/security/c_test.py",
            "tests/integration/b_test.py",
            "tests/unit/a_test.py",
        ]

    def test_dependencies_default_to_file(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        jobs = scheduler.add_test_jobs(
            ["a_test.py", "b_test.py"], dependencies={"b_test.py": ["src/b.py"]}
        )
        assert jobs[0].dependencies == ["a_test.py"]
        assert jobs[1].dependencies == ["src/b.py"]

    def test_job_ids_are_unique(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        scheduler.add_test_jobs(_files(3))
        scheduler.add_test_jobs(_files(3, prefix="more/t"))
        ids = [j.id for j in scheduler.job_queue]
        assert len(set(ids)) == 6


class TestWorkerCount:
    """Tests for sizing the worker pool."""

    def test_few_jobs_use_half(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=4)
        scheduler.add_test_jobs(_files(4))
        assert scheduler.calculate_optimal_worker_count() == 2

    def test_single_job_uses_one_worker(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=4)
        scheduler.add_test_jobs(_files(1))
        assert scheduler.calculate_optimal_worker_count() == 1

    def test_sized_by_suite_time(self):
        scheduler = ParallelScheduler(
            RecordingRunner, max_workers=8, base_test_time=10.0, max_suite_time=30.0
        )
        scheduler.add_test_jobs(_files(10))
        # 100s estimated / 30s target
        assert scheduler.calculate_optimal_worker_count() == 4

    def test_capped_by_max_workers(self):
        scheduler = ParallelScheduler(
            RecordingRunner, max_workers=2, base_test_time=10.0, max_suite_time=1.0
        )
        scheduler.add_test_jobs(_files(10))
        assert scheduler.calculate_optimal_worker_count() == 2

    def test_from_config(self):
        config = PipelineConfig()
        config.update(max_workers=3, max_suite_time=60.0)
        scheduler = ParallelScheduler.from_config(config)
        assert scheduler.max_workers == 3
        assert scheduler.max_suite_time == 60.0
        assert isinstance(scheduler.runner_factory(), CommandRunner)

    def test_from_config_runs_from_root(self):
        scheduler = ParallelScheduler.from_config(PipelineConfig(), cwd=Path("/srv/project"))
        assert scheduler.runner_factory().cwd == "/srv/project"
        assert ParallelScheduler.from_config(PipelineConfig()).runner_factory().cwd is None


class TestExecuteParallel:
    """Tests for running the worker pool."""

    def test_every_job_runs_once(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2, max_suite_time=0.1)
        scheduler.add_test_jobs(_files(10))

        metrics = scheduler.execute_parallel()

        assert metrics.total_tests == 10
        ran = sorted(test_file for _, test_file in RecordingRunner.runs)
        assert ran == sorted(_files(10))
        assert scheduler.job_queue == []
        assert len(metrics.worker_utilization) == 2

    def test_empty_queue(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        metrics = scheduler.execute_parallel()
        assert metrics.total_tests == 0
        assert metrics.worker_utilization == []

    def test_each_worker_gets_own_runner(self):
        created: list[RecordingRunner] = []

        def factory() -> RecordingRunner:
            runner = RecordingRunner(sleep=0.01)
            created.append(runner)
            return runner

        scheduler = ParallelScheduler(factory, max_workers=2, max_suite_time=0.1)
        scheduler.add_test_jobs(_files(10))
        scheduler.execute_parallel()

        assert len(created) == 2
        assert sorted(r.worker_id for r in created) == [0, 1]

    def test_job_failure_is_isolated(self):
        scheduler = ParallelScheduler(
            lambda: RecordingRunner(fail_on="tests/unit/t3_test.py"),
            max_workers=2,
            max_suite_time=0.1,
        )
        scheduler.add_test_jobs(_files(6))

        metrics = scheduler.execute_parallel()

        assert metrics.total_tests == 6
        failed = [r for r in scheduler.results if not r.success]
        assert [r.test_file for r in failed] == ["tests/unit/t3_test.py"]
        assert failed[0].outcome.status == "failed"
        assert "runner crashed" in failed[0].error

    def test_start_failure_aborts_run(self):
        scheduler = ParallelScheduler(BrokenRunner, max_workers=2)
        scheduler.add_test_jobs(_files(4))
        with pytest.raises(WorkerPoolError):
            scheduler.execute_parallel()
        assert RecordingRunner.runs == []

    def test_ledgers_cover_all_jobs(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2, max_suite_time=0.1)
        scheduler.add_test_jobs(_files(5) + _files(5, prefix="tests/integration/i"))
        scheduler.execute_parallel()

        assigned = [job_id for l in scheduler.ledgers for job_id in l.assigned_jobs]
        assert len(assigned) == 10
        total = sum(l.cumulative_time for l in scheduler.ledgers)
        assert total == pytest.approx(5 * 0.05 + 5 * 0.15)

    def test_metrics_dict_keys(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=1)
        scheduler.add_test_jobs(_files(2))
        data = scheduler.execute_parallel().to_dict()
        assert set(data) == {
            "totalTests",
            "totalTime",
            "averageTestTime",
            "workerUtilization",
            "efficiency",
            "bottlenecks",
        }


class TestBottlenecks:
    """Tests for bottleneck detection and monitoring."""

    def test_slow_jobs_reported(self):
        scheduler = ParallelScheduler(
            lambda: RecordingRunner(sleep=0.05), max_workers=1, max_test_time=0.01
        )
        scheduler.add_test_jobs(_files(2))
        metrics = scheduler.execute_parallel()
        assert any("slow tests" in b for b in metrics.bottlenecks)

    def test_shared_dependencies_counted(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        scheduler.add_test_jobs(
            ["a_test.py", "b_test.py", "c_test.py"],
            dependencies={
                "a_test.py": ["src/db.py", "src/a.py"],
                "b_test.py": ["src/db.py"],
                "c_test.py": ["src/a.py"],
            },
        )
        assert scheduler.count_dependency_conflicts() == 2
        scheduler.execute_parallel()
        assert scheduler.count_dependency_conflicts() == 2

    def test_monitor_recommendations(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        scheduler.add_test_jobs(
            ["a_test.py", "b_test.py"],
            dependencies={"a_test.py": ["src/db.py"], "b_test.py": ["src/db.py"]},
        )
        report = scheduler.monitor_performance()
        assert report["currentUtilization"] == 0.0
        assert any("dependency conflicts" in b for b in report["bottlenecks"])
        assert any("isolation" in r for r in report["recommendations"])


class TestOptimizeOrder:
    """Tests for dependency-grouped ordering."""

    def test_groups_by_dependencies(self):
        scheduler = ParallelScheduler(RecordingRunner, max_workers=2)
        jobs = [
            Job("1", "a", 1.0, dependencies=["x"]),
            Job("2", "b", 2.0, dependencies=["y"]),
            Job("3", "c", 3.0, dependencies=["x"]),
        ]
        assert [j.id for j in scheduler.optimize_test_order(jobs)] == ["3", "1", "2"]
