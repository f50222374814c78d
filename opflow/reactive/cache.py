"""Cache of query results.

Entries are keyed by ``(query, host, canonical args)`` and live for the
query's ``cache_interval``. Concurrent requests for the same missing key
share one computation: the first caller computes, the others wait on its
future. A failed computation stores nothing and raises
CacheComputationError to every waiter.
"""

import json
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from opflow.exceptions import CacheComputationError

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


@dataclass
class _Entry:
    value: Any
    expires: float


class QueryCache:
    """TTL cache with per-key in-flight deduplication.

    Args:
        clock: Monotonic time source, injectable for tests

    Example:
        cache = QueryCache()
        cache.get('hosts.kernel', 'zeus', {}, 60.0, lambda: run_query())
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}
        self._inflight: Dict[CacheKey, Future] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(query: str, host: str, args: Optional[Dict[str, Any]] = None) -> CacheKey:
        return (query, host, json.dumps(args or {}, sort_keys=True, default=str))

    def get(self, query: str, host: str, args: Optional[Dict[str, Any]],
            ttl: float, compute: Callable[[], Any]) -> Any:
        """Return the cached value or compute it.

        Args:
            query: Qualified query name
            host: Host the query runs for
            args: Query arguments (plain data)
            ttl: Seconds a computed value stays valid
            compute: Callable producing the value

        Raises:
            CacheComputationError: If the computation failed (here or in
                the caller it was waiting on)
        """
        key = self.key(query, host, args)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock() < entry.expires:
                self.hits += 1
                return entry.value
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
                self.misses += 1

        if not owner:
            logger.debug("Waiting for in-flight query '%s' on '%s'", query, host)
            return future.result()

        try:
            value = compute()
        except Exception as e:
            error = e if isinstance(e, CacheComputationError) else \
                CacheComputationError(query, host, e)
            with self._lock:
                self._inflight.pop(key, None)
                self._entries.pop(key, None)
            future.set_exception(error)
            if error is e:
                raise
            raise error from e

        with self._lock:
            self._entries[key] = _Entry(value, self.clock() + ttl)
            self._inflight.pop(key, None)
        future.set_result(value)
        logger.debug("Cached query '%s' on '%s' for %.1fs", query, host, ttl)
        return value

    def invalidate(self, query: Optional[str] = None,
                   host: Optional[str] = None) -> int:
        """Drop entries matching ``query`` and/or ``host``; return how many."""
        with self._lock:
            doomed = [k for k in self._entries
                      if (query is None or k[0] == query)
                      and (host is None or k[1] == host)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
