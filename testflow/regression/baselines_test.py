"""Tests for the baseline store."""

from __future__ import annotations

import datetime
import json
import tempfile
from pathlib import Path

from testflow.regression.baselines import BaselineFile
from testflow.regression.detector import PerformanceBaseline


def _baseline(name: str) -> PerformanceBaseline:
    return PerformanceBaseline(
        component_name=name,
        average_render_time=12.0,
        average_memory_usage=2048.0,
        sample_count=10,
        last_updated=datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc),
        version="3",
    )


class TestBaselineFile:
    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            assert BaselineFile(Path(tmpdir) / "b.json").load() == []

    def test_save_and_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = BaselineFile(Path(tmpdir) / "b.json")
            assert store.save([_baseline("Cart"), _baseline("Nav")])
            loaded = store.load()
            assert [b.component_name for b in loaded] == ["Cart", "Nav"]
            assert loaded[0] == _baseline("Cart")

    def test_non_list_ignored(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "b.json"
            path.write_text('{"componentName": "Cart"}')
            assert BaselineFile(path).load() == []
            assert "is not a list" in capsys.readouterr().err

    def test_malformed_entries_skipped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "b.json"
            path.write_text(json.dumps([{"averageRenderTime": 1}, _baseline("Cart").to_dict()]))
            assert [b.component_name for b in BaselineFile(path).load()] == ["Cart"]
