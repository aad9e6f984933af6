"""Performance monitoring utilities for readiness recomputes and cache reads."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("asc-readiness.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for async functions.

    Usage::

        @timed_async
        async def my_async_function():
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                "async function timed",
                extra={
                    "timed_function": f"{func.__module__}.{func.__qualname__}",
                    "duration_ms": duration_ms,
                },
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for readiness metrics.

    Tracks:
    - Recomputes completed, cumulative and average duration, slowest recompute
    - Cases evaluated across all recomputes
    - Recompute failures broken down by exception type
    - Cache reads split into hits and read-through misses
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._recomputes: int = 0
        self._total_recompute_ms: float = 0.0
        self._cases_evaluated: int = 0
        self._slowest_recompute_ms: float = 0.0
        self._slowest_scope: Optional[str] = None
        self._failures: Dict[str, int] = {}
        self._cache_hits: int = 0
        self._cache_misses: int = 0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_recompute(self, scope: str, duration_ms: float, case_count: int) -> None:
        """Call once when a recompute has replaced its cache rows."""
        with self._lock:
            self._recomputes += 1
            self._total_recompute_ms += duration_ms
            self._cases_evaluated += case_count
            if duration_ms > self._slowest_recompute_ms:
                self._slowest_recompute_ms = duration_ms
                self._slowest_scope = scope

    def record_recompute_failure(self, error_type: str) -> None:
        with self._lock:
            self._failures[error_type] = self._failures.get(error_type, 0) + 1

    def record_cache_read(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._cache_hits += 1
            else:
                self._cache_misses += 1

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            recomputes_completed      : int
            avg_recompute_duration_ms : float  (0 if none completed)
            slowest_recompute_ms      : float
            slowest_recompute_scope   : str | None   ("<facility>/<date>")
            cases_evaluated           : int
            recompute_failures        : int
            failures_by_type          : dict  {exception name: count}
            cache_hits / cache_misses : int
        """
        with self._lock:
            avg = (
                round(self._total_recompute_ms / self._recomputes, 2)
                if self._recomputes > 0
                else 0.0
            )
            return {
                "recomputes_completed": self._recomputes,
                "avg_recompute_duration_ms": avg,
                "slowest_recompute_ms": round(self._slowest_recompute_ms, 2),
                "slowest_recompute_scope": self._slowest_scope,
                "cases_evaluated": self._cases_evaluated,
                "recompute_failures": sum(self._failures.values()),
                "failures_by_type": dict(self._failures),
                "cache_hits": self._cache_hits,
                "cache_misses": self._cache_misses,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._recomputes = 0
            self._total_recompute_ms = 0.0
            self._cases_evaluated = 0
            self._slowest_recompute_ms = 0.0
            self._slowest_scope = None
            self._failures.clear()
            self._cache_hits = 0
            self._cache_misses = 0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()
