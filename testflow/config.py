"""Pipeline configuration file management.

Reads and writes the .testflow_config JSON file holding cache limits,
scheduler targets, reliability windows and regression thresholds. Also
discovers the ambient CI facts the pipeline needs: whether it runs in CI,
the current build number, and the environment tag stamped on cache entries.
"""

from __future__ import annotations

import json
import math
import os
import platform
from importlib import metadata
from pathlib import Path
from typing import Any

# Default configuration values
DEFAULT_CONFIG: dict[str, Any] = {
    "cache_dir": ".test-cache",
    "max_cache_age_days": 7,
    "max_cache_entries": 1000,
    "max_workers": None,
    "min_jobs_per_worker": 5,
    "base_test_time": 0.05,
    "max_test_time": 0.1,
    "max_suite_time": 120.0,
    "min_efficiency": 0.8,
    "reliability_window": 50,
    "flaky_window": 20,
    "flaky_threshold": 0.01,
    "max_builds": 100,
    "min_reliability": 99.0,
    "regression_threshold": 1.2,
    "memory_regression_threshold": 1.5,
    "baseline_samples": 10,
    "tool_name": "pytest",
    "test_command": ["python", "-m", "pytest", "-q"],
    "timeout": 300.0,
}

# Environment variables consulted for the CI build number, in order
BUILD_NUMBER_VARS = ("GITHUB_RUN_NUMBER", "BUILD_NUMBER", "CI_PIPELINE_ID")


def is_ci(environ: dict[str, str] | None = None) -> bool:
    """Return True when running under a CI system (``CI=true``)."""
    env = os.environ if environ is None else environ
    return env.get("CI", "").lower() == "true"


def ci_build_number(environ: dict[str, str] | None = None) -> int | None:
    """Read the build number from the CI environment.

    Returns:
        The first parseable value of BUILD_NUMBER_VARS, or None.
    """
    env = os.environ if environ is None else environ
    for var in BUILD_NUMBER_VARS:
        value = env.get(var)
        if not value:
            continue
        try:
            return int(value)
        except ValueError:
            continue
    return None


def default_max_workers(cpu_count: int | None = None, ci: bool | None = None) -> int:
    """Hard upper bound on scheduler workers for this machine.

    Conservative in CI (at most 2), otherwise three quarters of the CPUs
    clamped to [2, 4].
    """
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    if ci is None:
        ci = is_ci()
    if ci:
        return max(1, min(2, cpus))
    return min(4, max(2, math.floor(cpus * 0.75)))


def tool_version(tool_name: str) -> str:
    """Installed version of the test tool distribution, or "unknown"."""
    try:
        return metadata.version(tool_name)
    except metadata.PackageNotFoundError:
        return "unknown"


def environment_tag(tool_name: str = "pytest") -> tuple[str, str]:
    """The (tool version, runtime version) pair stamped on cache entries."""
    return tool_version(tool_name), platform.python_version()


class PipelineConfig:
    """Manages the .testflow_config JSON configuration file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        if path is not None and path.exists():
            self._load()

    def _load(self) -> None:
        """Load config from the file."""
        assert self.path is not None
        try:
            text = self.path.read_text()
            data = json.loads(text)
            if isinstance(data, dict):
                self._data = {**DEFAULT_CONFIG, **data}
        except (json.JSONDecodeError, OSError):
            self._data = dict(DEFAULT_CONFIG)

    def save(self) -> None:
        """Write config to the file."""
        if self.path is None:
            raise ValueError("No config file path specified")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(self._data, f, indent=2)
            f.write("\n")

    @property
    def config(self) -> dict[str, Any]:
        """Get the full configuration dict."""
        return dict(self._data)

    def update(self, **values: Any) -> None:
        """Override configuration values; unknown keys raise ValueError."""
        for key, value in values.items():
            if key not in DEFAULT_CONFIG:
                raise ValueError(f"Unknown config key '{key}'")
            self._data[key] = value

    def _get(self, key: str) -> Any:
        return self._data.get(key, DEFAULT_CONFIG[key])

    @property
    def cache_dir(self) -> Path:
        return Path(self._get("cache_dir"))

    @property
    def max_cache_age_days(self) -> float:
        return float(self._get("max_cache_age_days"))

    @property
    def max_cache_entries(self) -> int:
        return int(self._get("max_cache_entries"))

    @property
    def max_workers(self) -> int | None:
        """Get the configured worker cap (None = derive from the machine)."""
        val = self._get("max_workers")
        return int(val) if val is not None else None

    @property
    def min_jobs_per_worker(self) -> int:
        return int(self._get("min_jobs_per_worker"))

    @property
    def base_test_time(self) -> float:
        """Base per-test cost estimate in seconds."""
        return float(self._get("base_test_time"))

    @property
    def max_test_time(self) -> float:
        """Target per-test time in seconds; jobs over twice this are slow."""
        return float(self._get("max_test_time"))

    @property
    def max_suite_time(self) -> float:
        """Target suite duration in seconds, used to size the worker pool."""
        return float(self._get("max_suite_time"))

    @property
    def min_efficiency(self) -> float:
        return float(self._get("min_efficiency"))

    @property
    def reliability_window(self) -> int:
        return int(self._get("reliability_window"))

    @property
    def flaky_window(self) -> int:
        return int(self._get("flaky_window"))

    @property
    def flaky_threshold(self) -> float:
        return float(self._get("flaky_threshold"))

    @property
    def max_builds(self) -> int:
        return int(self._get("max_builds"))

    @property
    def min_reliability(self) -> float:
        """Minimum acceptable overall reliability, in percent."""
        return float(self._get("min_reliability"))

    @property
    def regression_threshold(self) -> float:
        return float(self._get("regression_threshold"))

    @property
    def memory_regression_threshold(self) -> float:
        return float(self._get("memory_regression_threshold"))

    @property
    def baseline_samples(self) -> int:
        return int(self._get("baseline_samples"))

    @property
    def tool_name(self) -> str:
        return str(self._get("tool_name"))

    @property
    def test_command(self) -> list[str]:
        return [str(part) for part in self._get("test_command")]

    @property
    def timeout(self) -> float:
        return float(self._get("timeout"))

    def resolved_max_workers(self) -> int:
        """The configured worker cap, or the machine default."""
        configured = self.max_workers
        if configured is not None:
            return max(1, configured)
        return default_max_workers()
