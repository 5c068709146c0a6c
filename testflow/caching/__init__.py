"""Result caching: fingerprints, dependency resolution and the result cache."""

from testflow.caching.dependencies import DependencyNode, DependencyResolver
from testflow.caching.fingerprint import compute_fingerprint
from testflow.caching.result_cache import CachedOutcome, CacheEntry, CacheStats, ResultCache

__all__ = [
    "CacheEntry",
    "CacheStats",
    "CachedOutcome",
    "DependencyNode",
    "DependencyResolver",
    "ResultCache",
    "compute_fingerprint",
]
