"""Dependency-aware cache of test results.

An entry records a passing outcome together with everything that could
invalidate it: the unit's own fingerprint, the fingerprints of every local
file it depends on (direct and transitive), and the environment tag (test
tool version, Python version). A lookup is a hit only when all of those
still match and the entry is younger than the maximum age. Any mismatch
deletes the entry and reports a miss; nothing here blocks test execution.

Two JSON stores live in the cache directory:

* ``test-results.json``: ``{"entries": [...], "stats": {...}}``
* ``dependency-graph.json``: identity -> direct/transitive dependencies

Eviction is by insertion time only: beyond ``max_entries`` the oldest
entries go first.
"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from testflow.caching.dependencies import DependencyNode, DependencyResolver
from testflow.caching.fingerprint import compute_fingerprint
from testflow.config import environment_tag
from testflow.store import read_json, write_json

LABEL = "Result cache"

RESULTS_FILE = "test-results.json"
GRAPH_FILE = "dependency-graph.json"

DAY_MS = 24 * 60 * 60 * 1000

# Assumed cost of a test when projecting savings (seconds) and suite size
PROJECTION_TEST_TIME = 0.1
PROJECTION_SUITE_SIZE = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CachedOutcome:
    """The stored part of a test outcome."""

    status: str
    duration: float = 0.0
    test_count: int = 0
    failure_count: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "duration": self.duration,
            "testCount": self.test_count,
            "failureCount": self.failure_count,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedOutcome:
        return cls(
            status=str(data["status"]),
            duration=float(data.get("duration", 0.0)),
            test_count=int(data.get("testCount", 0)),
            failure_count=int(data.get("failureCount", 0)),
            details=dict(data.get("details") or {}),
        )


@dataclass
class CacheEntry:
    identity: str
    content_hash: str
    dependency_hashes: dict[str, str]
    outcome: CachedOutcome
    timestamp: int  # epoch millis
    tool_version: str
    runtime_version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "contentHash": self.content_hash,
            "dependencyHashes": [[p, h] for p, h in self.dependency_hashes.items()],
            "outcome": self.outcome.to_dict(),
            "timestamp": self.timestamp,
            "toolVersion": self.tool_version,
            "runtimeVersion": self.runtime_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            identity=str(data["identity"]),
            content_hash=str(data["contentHash"]),
            dependency_hashes={str(p): str(h) for p, h in data.get("dependencyHashes", [])},
            outcome=CachedOutcome.from_dict(data["outcome"]),
            timestamp=int(data["timestamp"]),
            tool_version=str(data.get("toolVersion", "unknown")),
            runtime_version=str(data.get("runtimeVersion", "unknown")),
        )


@dataclass
class CacheStats:
    total_tests: int = 0
    cached_tests: int = 0
    hit_rate: float = 0.0
    time_saved: float = 0.0
    cache_size: int = 0
    evictions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTests": self.total_tests,
            "cachedTests": self.cached_tests,
            "hitRate": self.hit_rate,
            "timeSaved": self.time_saved,
            "cacheSize": self.cache_size,
            "evictions": self.evictions,
        }


class ResultCache:
    """Caches passing test outcomes keyed by normalized test path.

    Args:
        cache_dir: Directory for the JSON stores; None keeps the cache in
            memory only.
        root: Project root that identities are relative to.
        max_age_days: Entries older than this are expired.
        max_entries: Entries beyond this are evicted, oldest first.
        resolver: Dependency resolver (default: one rooted at *root*).
        environment: (tool version, runtime version); default is the
            installed pytest and the running Python.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        cache_dir: str | Path | None = ".test-cache",
        root: str | Path | None = None,
        max_age_days: float = 7,
        max_entries: int = 1000,
        resolver: DependencyResolver | None = None,
        environment: tuple[str, str] | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.resolver = resolver if resolver is not None else DependencyResolver(root)
        if cache_dir is not None:
            cache_dir = Path(cache_dir)
            if not cache_dir.is_absolute():
                cache_dir = self.resolver.root / cache_dir
        self.cache_dir: Path | None = cache_dir
        self.max_age_ms = int(max_age_days * DAY_MS)
        self.max_entries = max_entries
        self.environment = environment if environment is not None else environment_tag()
        self.clock = clock

        self.entries: dict[str, CacheEntry] = {}
        self.graph: dict[str, DependencyNode] = {}
        self.stats = CacheStats()
        self._load()

    # Persistence

    @property
    def results_path(self) -> Path | None:
        return self.cache_dir / RESULTS_FILE if self.cache_dir else None

    @property
    def graph_path(self) -> Path | None:
        return self.cache_dir / GRAPH_FILE if self.cache_dir else None

    def _load(self) -> None:
        if self.cache_dir is None:
            return

        data = read_json(self.results_path, LABEL)
        if data is not None:
            self._load_results(data)

        graph = read_json(self.graph_path, LABEL)
        if graph is None:
            return
        if not isinstance(graph, dict):
            print(f"{LABEL}: {self.graph_path} is not an object, ignoring it", file=sys.stderr)
            return
        for identity, node in graph.items():
            try:
                self.graph[identity] = DependencyNode.from_dict(node)
            except (AttributeError, KeyError, TypeError, ValueError):
                print(f"{LABEL}: skipping malformed graph node {identity!r}", file=sys.stderr)

    def _load_results(self, data: Any) -> None:
        entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            print(f"{LABEL}: {self.results_path} has no entry list, ignoring it", file=sys.stderr)
            return

        for raw in entries:
            try:
                entry = CacheEntry.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError):
                print(f"{LABEL}: skipping malformed entry", file=sys.stderr)
                continue
            self.entries[entry.identity] = entry

        stats = data.get("stats")
        if not isinstance(stats, dict):
            return
        try:
            total_tests = int(stats.get("totalTests", 0))
            cached_tests = int(stats.get("cachedTests", 0))
            time_saved = float(stats.get("timeSaved", 0.0))
            evictions = int(stats.get("evictions", 0))
        except (TypeError, ValueError):
            print(f"{LABEL}: malformed stats, resetting counters", file=sys.stderr)
            return
        self.stats.total_tests = total_tests
        self.stats.cached_tests = cached_tests
        self.stats.time_saved = time_saved
        self.stats.evictions = evictions

    def save(self) -> None:
        """Persist both stores (best effort)."""
        self._save_results()
        self._save_graph()

    def _save_results(self) -> None:
        if self.cache_dir is None:
            return
        data = {
            "entries": [entry.to_dict() for entry in self.entries.values()],
            "stats": {
                "totalTests": self.stats.total_tests,
                "cachedTests": self.stats.cached_tests,
                "timeSaved": self.stats.time_saved,
                "evictions": self.stats.evictions,
            },
        }
        write_json(self.results_path, data, LABEL)

    def _save_graph(self) -> None:
        if self.cache_dir is None:
            return
        data = {identity: node.to_dict() for identity, node in self.graph.items()}
        write_json(self.graph_path, data, LABEL)

    # Lookups

    def get_cached_result(self, path: str | Path) -> CacheEntry | None:
        """Return the valid cache entry for *path*, or None on a miss.

        Invalid entries (expired, changed content, changed or missing
        dependency, different environment) are deleted.
        """
        identity = self.resolver.normalize(path)
        self.stats.total_tests += 1
        entry = self.entries.get(identity)
        if entry is None:
            return None

        reason = self._invalid_reason(entry)
        if reason is not None:
            del self.entries[identity]
            return None

        self.stats.cached_tests += 1
        self.stats.time_saved += entry.outcome.duration
        return entry

    def _invalid_reason(self, entry: CacheEntry) -> str | None:
        if self.clock() - entry.timestamp > self.max_age_ms:
            return "expired"

        current = compute_fingerprint(self.resolver.absolute(entry.identity))
        if current is None or current != entry.content_hash:
            return "content changed"

        for dep, cached_hash in entry.dependency_hashes.items():
            if compute_fingerprint(self.resolver.absolute(dep)) != cached_hash:
                return f"dependency {dep} changed"

        if (entry.tool_version, entry.runtime_version) != tuple(self.environment):
            return "environment changed"
        return None

    def partition(
        self, paths: list[str | Path]
    ) -> tuple[dict[str, CacheEntry], list[str]]:
        """Split *paths* into cache hits and misses.

        Returns:
            ``(hits, misses)``: hits maps each path (as given) to its entry,
            misses keeps input order.
        """
        hits: dict[str, CacheEntry] = {}
        misses: list[str] = []
        for path in paths:
            entry = self.get_cached_result(path)
            if entry is None:
                misses.append(str(path))
            else:
                hits[str(path)] = entry
        return hits, misses

    def get_dependency_node(self, path: str | Path) -> DependencyNode | None:
        return self.graph.get(self.resolver.normalize(path))

    # Updates

    def cache_result(
        self,
        path: str | Path,
        outcome: CachedOutcome,
        dependencies: list[str] | None = None,
    ) -> CacheEntry | None:
        """Store *outcome* for *path* and persist.

        Args:
            path: The test file.
            outcome: Outcome to cache.
            dependencies: Explicit dependencies; default scans the file.

        Returns:
            The stored entry, or None if the test file cannot be read.
        """
        identity = self.resolver.normalize(path)
        content_hash = compute_fingerprint(self.resolver.absolute(identity))
        if content_hash is None:
            print(f"{LABEL}: cannot fingerprint {identity}, not caching", file=sys.stderr)
            return None

        node = self.resolver.resolve(identity, explicit=dependencies)
        dependency_hashes: dict[str, str] = {}
        for dep in node.all:
            fingerprint = compute_fingerprint(self.resolver.absolute(dep))
            if fingerprint is not None:
                dependency_hashes[dep] = fingerprint

        now = self.clock()
        tool_version, runtime_version = self.environment
        entry = CacheEntry(
            identity=identity,
            content_hash=content_hash,
            dependency_hashes=dependency_hashes,
            outcome=outcome,
            timestamp=now,
            tool_version=tool_version,
            runtime_version=runtime_version,
        )
        # Reinsert so dict order follows insertion time
        self.entries.pop(identity, None)
        self.entries[identity] = entry

        node.last_modified = now
        self.graph[identity] = node

        self._cleanup()
        self.save()
        return entry

    def invalidate(self, path: str | Path) -> bool:
        """Delete the entry for *path*; True if there was one."""
        identity = self.resolver.normalize(path)
        if self.entries.pop(identity, None) is None:
            return False
        self._save_results()
        return True

    def invalidate_changed_files(self, paths: list[str | Path]) -> int:
        """Delete entries for changed files and every entry depending on them.

        Returns:
            Number of entries deleted.
        """
        count = 0
        for path in paths:
            identity = self.resolver.normalize(path)
            if self.entries.pop(identity, None) is not None:
                count += 1
            dependents = [
                key for key, entry in self.entries.items()
                if identity in entry.dependency_hashes
            ]
            for key in dependents:
                del self.entries[key]
                count += 1

        if count:
            self._save_results()
        return count

    def _cleanup(self) -> None:
        now = self.clock()
        expired = [
            key for key, entry in self.entries.items()
            if now - entry.timestamp > self.max_age_ms
        ]
        for key in expired:
            del self.entries[key]
        self._evict()

    def _evict(self) -> int:
        excess = len(self.entries) - self.max_entries
        if excess <= 0:
            return 0
        oldest = sorted(self.entries.values(), key=lambda e: e.timestamp)[:excess]
        for entry in oldest:
            del self.entries[entry.identity]
        self.stats.evictions += excess
        return excess

    def optimize(self) -> int:
        """Evict oldest entries beyond the size limit.

        Returns:
            Number of entries evicted.
        """
        evicted = self._evict()
        if evicted:
            self._save_results()
        return evicted

    def clear(self) -> None:
        """Drop every entry, the dependency graph and the statistics."""
        self.entries.clear()
        self.graph.clear()
        self.stats = CacheStats()
        self.save()

    # Reporting

    def get_stats(self) -> CacheStats:
        """Snapshot of the counters; hit rate is hits over lookups."""
        total = self.stats.total_tests
        return CacheStats(
            total_tests=total,
            cached_tests=self.stats.cached_tests,
            hit_rate=self.stats.cached_tests / total if total else 0.0,
            time_saved=self.stats.time_saved,
            cache_size=len(self.entries),
            evictions=self.stats.evictions,
        )

    def performance_report(self) -> dict[str, Any]:
        stats = self.get_stats()
        recommendations: list[str] = []
        if stats.hit_rate < 0.3:
            recommendations.append("Low cache hit rate - consider improving test stability")
        if stats.hit_rate > 0.7:
            recommendations.append("Good cache performance - consider increasing cache size")
        if stats.cache_size > self.max_entries * 0.9:
            recommendations.append("Cache approaching size limit - consider cleanup")

        return {
            "stats": stats.to_dict(),
            "recommendations": recommendations,
            "projectedSavings": PROJECTION_SUITE_SIZE * stats.hit_rate * PROJECTION_TEST_TIME,
        }
