"""Unit tests for file fingerprints."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from testflow.caching.fingerprint import compute_fingerprint


class TestComputeFingerprint:
    """Tests for single-file fingerprints."""

    def test_stable_for_unchanged_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "a_test.py"
            path.write_text("assert True\n")
            assert compute_fingerprint(path) == compute_fingerprint(path)
            assert len(compute_fingerprint(path)) == 32

    def test_changes_with_content(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "a_test.py"
            path.write_text("assert True\n")
            before = compute_fingerprint(path)
            path.write_text("assert False\n")
            assert compute_fingerprint(path) != before

    def test_changes_with_mtime(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "a_test.py"
            path.write_text("assert True\n")
            os.utime(path, (1_000_000, 1_000_000))
            before = compute_fingerprint(path)
            os.utime(path, (2_000_000, 2_000_000))
            assert compute_fingerprint(path) != before

    def test_missing_file(self):
        assert compute_fingerprint("/nonexistent/a_test.py") is None

    def test_directory_has_no_fingerprint(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            assert compute_fingerprint(tmpdir) is None

