"""Tests for performance event parsing."""

from __future__ import annotations

import json

from testflow.analysis.perf_output import SENTINEL, parse_performance_events


def _line(**event) -> str:
    return SENTINEL + json.dumps(event)


class TestParsePerformanceEvents:
    def test_extracts_performance_events(self):
        stdout = "\n".join(
            [
                "collecting ...",
                _line(type="performance", component="Cart", render_time=12.5,
                      memory_usage=4096, cache_hit_rate=82.0, min_cache_hit_rate=80.0),
                "1 passed",
            ]
        )
        results = parse_performance_events(stdout)
        assert len(results) == 1
        assert results[0].component == "Cart"
        assert results[0].render_time == 12.5
        assert results[0].memory_usage == 4096.0
        assert results[0].min_cache_hit_rate == 80.0

    def test_skips_other_event_types(self):
        stdout = _line(type="step_start", description="setup")
        assert parse_performance_events(stdout) == []

    def test_skips_malformed_lines(self):
        stdout = "\n".join(
            [
                SENTINEL + "{not json",
                SENTINEL + "[1, 2]",
                _line(type="performance", render_time=1.0),
                _line(type="performance", component="Cart", render_time="fast"),
            ]
        )
        assert parse_performance_events(stdout) == []

    def test_preserves_order_and_defaults(self):
        stdout = "\n".join(
            [
                _line(type="performance", component="A", render_time=1),
                "  " + _line(type="performance", component="B", render_time=2),
            ]
        )
        results = parse_performance_events(stdout)
        assert [r.component for r in results] == ["A", "B"]
        assert results[0].memory_usage == 0.0
        assert results[0].cache_hit_rate is None
