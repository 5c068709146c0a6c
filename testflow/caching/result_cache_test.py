"""Unit tests for the dependency-aware result cache."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import pytest

from testflow.caching.result_cache import DAY_MS, CachedOutcome, ResultCache

ENV = ("8.0.0", "3.12.1")


class FakeClock:
    """Deterministic millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def _write(root: Path, rel: str, text: str = "") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def _bump_mtime(path: Path) -> None:
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def _outcome(duration: float = 1.5) -> CachedOutcome:
    return CachedOutcome(status="passed", duration=duration, test_count=3)


def _cache(root: Path, clock: FakeClock | None = None, **kwargs) -> ResultCache:
    return ResultCache(
        cache_dir=kwargs.pop("cache_dir", ".test-cache"),
        root=root,
        environment=kwargs.pop("environment", ENV),
        clock=clock or FakeClock(),
        **kwargs,
    )


class TestHitAndMiss:
    """Tests for lookups against unchanged and changed files."""

    def test_unchanged_file_hits_with_same_outcome(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "cart_test.py", "assert True\n")
            cache = _cache(root)

            cache.cache_result("cart_test.py", _outcome())
            first = cache.get_cached_result("cart_test.py")
            second = cache.get_cached_result("cart_test.py")

            assert first is not None and second is not None
            assert first.outcome == _outcome()
            assert second.outcome == first.outcome

    def test_content_change_misses_and_deletes(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            test = _write(root, "cart_test.py", "assert True\n")
            cache = _cache(root)
            cache.cache_result("cart_test.py", _outcome())

            test.write_text("assert 1 == 1\n")
            _bump_mtime(test)

            assert cache.get_cached_result("cart_test.py") is None
            assert "cart_test.py" not in cache.entries

    def test_unknown_unit_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = _cache(Path(tmpdir).resolve())
            assert cache.get_cached_result("missing_test.py") is None

    def test_dependency_change_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            dep = _write(root, "cart.py", "TOTAL = 1\n")
            _write(root, "cart_test.py", "import cart\n")
            cache = _cache(root)
            entry = cache.cache_result("cart_test.py", _outcome())
            assert list(entry.dependency_hashes) == ["cart.py"]

            dep.write_text("TOTAL = 2\n")
            _bump_mtime(dep)

            assert cache.get_cached_result("cart_test.py") is None

    def test_transitive_dependency_change_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            deep = _write(root, "prices.py", "RATE = 1\n")
            _write(root, "cart.py", "import prices\n")
            _write(root, "cart_test.py", "import cart\n")
            cache = _cache(root)
            cache.cache_result("cart_test.py", _outcome())

            deep.write_text("RATE = 2\n")
            _bump_mtime(deep)

            assert cache.get_cached_result("cart_test.py") is None

    def test_deleted_dependency_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            dep = _write(root, "fixture.json", "{}")
            _write(root, "cart_test.py", "assert True\n")
            cache = _cache(root)
            cache.cache_result("cart_test.py", _outcome(), dependencies=["fixture.json"])

            dep.unlink()

            assert cache.get_cached_result("cart_test.py") is None

    def test_expired_entry_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "cart_test.py", "assert True\n")
            clock = FakeClock()
            cache = _cache(root, clock)
            cache.cache_result("cart_test.py", _outcome())

            clock.advance(7 * DAY_MS + 1)

            assert cache.get_cached_result("cart_test.py") is None

    def test_environment_change_misses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "cart_test.py", "assert True\n")
            _cache(root).cache_result("cart_test.py", _outcome())

            reloaded = _cache(root, environment=("8.1.0", "3.12.1"))
            assert reloaded.get_cached_result("cart_test.py") is None

    def test_uncacheable_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = _cache(Path(tmpdir).resolve())
            assert cache.cache_result("gone_test.py", _outcome()) is None


class TestEviction:
    """Tests for size-bounded eviction."""

    def test_evicts_exactly_the_oldest(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            clock = FakeClock()
            cache = _cache(root, clock, cache_dir=None, max_entries=100)
            names = [f"t{i:03d}_test.py" for i in range(150)]
            for name in names:
                _write(root, name, f"# {name}\n")

            for name in names:
                clock.advance(1)
                cache.cache_result(name, _outcome())

            assert cache.get_stats().evictions == 50
            assert len(cache.entries) == 100
            assert set(cache.entries) == set(names[50:])

    def test_optimize_without_excess(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = _cache(Path(tmpdir).resolve(), cache_dir=None)
            assert cache.optimize() == 0


class TestInvalidation:
    """Tests for explicit invalidation."""

    def test_reverse_dependency_invalidation(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "db.py", "")
            _write(root, "a_test.py", "import db\n")
            _write(root, "b_test.py", "import db\n")
            _write(root, "c_test.py", "assert True\n")
            cache = _cache(root)
            for name in ("a_test.py", "b_test.py", "c_test.py"):
                cache.cache_result(name, _outcome())

            assert cache.invalidate_changed_files(["db.py"]) == 2
            assert set(cache.entries) == {"c_test.py"}

    def test_direct_invalidation(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "c_test.py", "assert True\n")
            cache = _cache(root)
            cache.cache_result("c_test.py", _outcome())

            assert cache.invalidate_changed_files([root / "c_test.py"]) == 1
            assert cache.invalidate("c_test.py") is False


class TestStatsAndPersistence:
    """Tests for counters, reports and the JSON stores."""

    def test_hit_rate_and_time_saved(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "a_test.py", "assert True\n")
            cache = _cache(root)
            cache.cache_result("a_test.py", _outcome(duration=2.0))

            hits, misses = cache.partition(["a_test.py", "b_test.py"])

            assert list(hits) == ["a_test.py"]
            assert misses == ["b_test.py"]
            stats = cache.get_stats()
            assert stats.total_tests == 2
            assert stats.cached_tests == 1
            assert stats.hit_rate == pytest.approx(0.5)
            assert stats.time_saved == pytest.approx(2.0)
            assert stats.cache_size == 1

    def test_performance_report(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = _cache(Path(tmpdir).resolve(), cache_dir=None)
            report = cache.performance_report()
            assert report["projectedSavings"] == 0.0
            assert any("Low cache hit rate" in r for r in report["recommendations"])

    def test_stores_written_and_reloaded(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "lib.py", "")
            _write(root, "a_test.py", "import lib\n")
            _cache(root).cache_result("a_test.py", _outcome())

            results = json.loads((root / ".test-cache" / "test-results.json").read_text())
            entry = results["entries"][0]
            assert entry["identity"] == "a_test.py"
            assert entry["dependencyHashes"][0][0] == "lib.py"
            assert entry["toolVersion"] == ENV[0]
            assert entry["runtimeVersion"] == ENV[1]
            assert set(results["stats"]) >= {"totalTests", "cachedTests", "timeSaved"}

            graph = json.loads((root / ".test-cache" / "dependency-graph.json").read_text())
            assert graph["a_test.py"]["directDependencies"] == ["lib.py"]

            reloaded = _cache(root)
            assert reloaded.get_cached_result("a_test.py") is not None
            assert reloaded.get_dependency_node("a_test.py").direct == ["lib.py"]

    def test_corrupt_store_resets(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, ".test-cache/test-results.json", "{not json")
            cache = _cache(root)
            assert cache.entries == {}
            assert "corrupt" in capsys.readouterr().err

    def test_undecodable_store_resets(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            path = root / ".test-cache" / "test-results.json"
            path.parent.mkdir(parents=True)
            path.write_bytes(b"\xff\xfe\x00garbage")
            cache = _cache(root)
            assert cache.entries == {}
            assert "corrupt" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "results",
        [
            {"entries": 5},
            ["not", "an", "object"],
            {"entries": [5, {"identity": "a_test.py"}]},
            {"entries": [], "stats": {"totalTests": "many"}},
            {"entries": [], "stats": 7},
        ],
    )
    def test_wrong_shape_store_resets(self, results):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, ".test-cache/test-results.json", json.dumps(results))
            _write(root, ".test-cache/dependency-graph.json", json.dumps({"a_test.py": 3}))
            cache = _cache(root)
            assert cache.entries == {}
            assert cache.graph == {}
            assert cache.get_stats().total_tests == 0

    def test_wrong_shape_graph_ignored(self, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, ".test-cache/dependency-graph.json", "[1, 2]")
            assert _cache(root).graph == {}
            assert "not an object" in capsys.readouterr().err

    def test_clear(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir).resolve()
            _write(root, "a_test.py", "assert True\n")
            cache = _cache(root)
            cache.cache_result("a_test.py", _outcome())
            cache.clear()
            assert cache.entries == {}
            assert cache.graph == {}
            assert _cache(root).entries == {}
