"""
Time-based cache with stale-while-revalidate refresh.

Weight tables and thresholds are read on every match but change rarely.
Entries live for a TTL; once expired, readers still get the stale value
immediately while a single background refresh recomputes it. Only a
cold miss computes synchronously.
"""

import time
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class TTLCache:
    """
    Thread-safe TTL cache.

    Args:
        ttl_seconds: Age after which an entry is refreshed.
        executor: Executor for background refreshes. A single-worker
            pool is created on first use when omitted.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._executor = executor
        self._owns_executor = executor is None
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._refreshing = set()
        # Bumped on invalidation so in-flight refreshes don't resurrect old data
        self._generation = 0

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1,
                                                thread_name_prefix="ttl-cache-refresh")
        return self._executor

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for key, computing it on a cold miss.

        Expired entries are returned as-is and refreshed in the background.
        """
        with self._lock:
            entry = self._entries.get(key)
            generation = self._generation

        if entry is None:
            value = compute()
            with self._lock:
                if generation == self._generation:
                    self._entries[key] = (value, self._clock())
            return value

        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._schedule_refresh(key, compute, generation)
        return value

    def _schedule_refresh(self, key: Hashable, compute: Callable[[], Any],
                          generation: int) -> None:
        with self._lock:
            if key in self._refreshing:
                return
            self._refreshing.add(key)
        try:
            self._get_executor().submit(self._refresh, key, compute, generation)
        except RuntimeError as e:
            logger.warning(f"Could not schedule cache refresh for {key!r}: {e}")
            with self._lock:
                self._refreshing.discard(key)

    def _refresh(self, key: Hashable, compute: Callable[[], Any], generation: int) -> None:
        try:
            value = compute()
            with self._lock:
                if generation == self._generation:
                    self._entries[key] = (value, self._clock())
            logger.debug(f"Refreshed cache entry {key!r}")
        except Exception as e:
            logger.warning(f"Cache refresh failed for {key!r}, keeping stale value: {e}")
        finally:
            with self._lock:
                self._refreshing.discard(key)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._generation += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation += 1

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the background refresh pool if this cache created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
