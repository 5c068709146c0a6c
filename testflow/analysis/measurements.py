"""Measurement storage for buffered performance results.

Stores and retrieves the per-component performance measurements that the
regression detector buffers for future baselines. Each component gets a
JSON file keyed by a sanitised version of its name, so buffered samples
survive across pipeline invocations.
"""

from __future__ import annotations

import re
import sys
from pathlib import Path

from testflow.analysis.perf_output import PERFORMANCE_EVENT
from testflow.regression.detector import PerformanceResult, parse_timestamp
from testflow.store import read_json, write_json

LABEL = "Measurements"


def _component_to_filename(component: str) -> str:
    """Convert a component name to a safe filename.

    Replaces non-alphanumeric characters (except hyphens and underscores)
    with underscores, then strips leading/trailing underscores.
    """
    safe = re.sub(r"[^a-zA-Z0-9_\-]", "_", component)
    return safe.strip("_") or "component"


def store_measurements(
    component: str,
    results: list[PerformanceResult],
    output_dir: str | Path,
) -> Path:
    """Store the measurements for a component as a JSON file.

    Overwrites any existing measurement file for the same component.

    Returns:
        Path to the measurement file (written on a best-effort basis).
    """
    file_path = Path(output_dir) / (_component_to_filename(component) + ".json")
    data = {
        "component": component,
        "measurements": [
            {"type": PERFORMANCE_EVENT, **r.to_dict()} for r in results
        ],
    }
    write_json(file_path, data, LABEL)
    return file_path


def load_measurements(
    component: str,
    output_dir: str | Path,
) -> list[PerformanceResult]:
    """Load stored measurements for a component.

    Returns:
        Stored results in recorded order; empty if there is no file.
    """
    file_path = Path(output_dir) / (_component_to_filename(component) + ".json")
    data = read_json(file_path, LABEL)
    if not isinstance(data, dict):
        return []

    results: list[PerformanceResult] = []
    for entry in data.get("measurements", []):
        try:
            results.append(
                PerformanceResult(
                    component=str(entry.get("component", component)),
                    render_time=float(entry["renderTime"]),
                    memory_usage=float(entry.get("memoryUsage", 0.0)),
                    cache_hit_rate=entry.get("cacheHitRate"),
                    min_cache_hit_rate=entry.get("minCacheHitRate"),
                    name=str(entry.get("name", "")),
                    timestamp=parse_timestamp(entry.get("timestamp")),
                )
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            print(f"{LABEL}: skipping malformed measurement {entry!r}", file=sys.stderr)
    return results


def stored_components(output_dir: str | Path) -> list[str]:
    """Component names with a measurement file in *output_dir*."""
    directory = Path(output_dir)
    if not directory.is_dir():
        return []
    components: list[str] = []
    for file_path in sorted(directory.glob("*.json")):
        data = read_json(file_path, LABEL)
        if isinstance(data, dict) and data.get("component"):
            components.append(str(data["component"]))
    return components
