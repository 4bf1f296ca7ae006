"""In-memory metrics for topickeys.

Three kinds of numbers are kept, all exposed at GET /metrics:

- timings: request latency per endpoint (API middleware) and the
  reconciler's hot queries (timed_db_operation)
- cache hits and misses for the client-side caches
- counters: topic key unwraps, identity fetches, reconciliation repairs
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# DB operations slower than this are logged
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    count: int = 0
    total_ms: float = 0.0

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {"count": self.count, "avg_ms": round(avg, 2)}


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0

    def to_dict(self) -> dict:
        return {"hits": self.hits, "misses": self.misses}


@dataclass
class Metrics:
    """Process-wide collector; every method is thread-safe."""

    _lock: Lock = field(default_factory=Lock)
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    cache_stats: dict[str, CacheStats] = field(default_factory=lambda: defaultdict(CacheStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            stats = self.db_operations[operation]
            stats.count += 1
            stats.total_ms += duration_ms

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            stats = self.request_stats[endpoint]
            stats.count += 1
            stats.total_ms += duration_ms

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].hits += 1

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].misses += 1

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "cache": {k: v.to_dict() for k, v in self.cache_stats.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        with self._lock:
            self.db_operations.clear()
            self.request_stats.clear()
            self.cache_stats.clear()
            self.counters.clear()


metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str):
    """Time a database operation and warn when it is slow.

    Usage:
        with timed_db_operation("keys_for_topic"):
            cursor = conn.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")
