"""Performance events in test output.

Tests report performance measurements by printing structured sentinel
lines on stdout, one JSON object per line::

    [TST] {"type": "performance", "component": "CartView",
           "render_time": 12.5, "memory_usage": 40960,
           "cache_hit_rate": 82.0, "min_cache_hit_rate": 80.0}

Only ``type == "performance"`` events are collected. Unknown types,
malformed JSON and events without a component or render time are skipped
for forward compatibility; parsing never raises.
"""

from __future__ import annotations

import json
from typing import Any

from testflow.regression.detector import PerformanceResult, parse_timestamp

# Sentinel prefix for structured log lines
SENTINEL = "[TST] "

PERFORMANCE_EVENT = "performance"


def _float_or_none(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _event_to_result(entry: dict[str, Any]) -> PerformanceResult | None:
    """Convert one performance event to a PerformanceResult.

    Returns:
        The result, or None if the event lacks a component or render time.
    """
    component = entry.get("component")
    render_time = _float_or_none(entry.get("render_time"))
    if not component or render_time is None:
        return None

    result = PerformanceResult(
        component=str(component),
        render_time=render_time,
        memory_usage=_float_or_none(entry.get("memory_usage")) or 0.0,
        cache_hit_rate=_float_or_none(entry.get("cache_hit_rate")),
        min_cache_hit_rate=_float_or_none(entry.get("min_cache_hit_rate")),
        name=str(entry.get("name", "")),
    )
    if "timestamp" in entry:
        result.timestamp = parse_timestamp(entry["timestamp"])
    return result


def parse_performance_events(stdout: str) -> list[PerformanceResult]:
    """Extract performance measurements from raw test stdout.

    Args:
        stdout: Captured standard output of a test process.

    Returns:
        PerformanceResult objects in output order.
    """
    results: list[PerformanceResult] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith(SENTINEL):
            continue
        try:
            entry = json.loads(line[len(SENTINEL):])
        except (json.JSONDecodeError, TypeError):
            continue
        if not isinstance(entry, dict) or entry.get("type") != PERFORMANCE_EVENT:
            continue
        result = _event_to_result(entry)
        if result is not None:
            results.append(result)
    return results
