from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable


_MISSING = object()


class TTLCache:
    """
    In-memory cache with a fixed time-to-live per entry:
    - entries expire ttl_seconds after they were stored (no sliding refresh)
    - clock is injectable so tests can move time forward
    - thread-safe; store reads run in worker threads
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at)
        self._items: dict[Hashable, tuple[Any, float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        value = self.lookup(key)
        return default if value is _MISSING else value

    def lookup(self, key: Hashable) -> Any:
        """Return the cached value or the module-level `_MISSING` sentinel.

        Lets callers cache `None` as a real value (e.g. "author has no section").
        """

        now = self._clock()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                self.misses += 1
                return _MISSING
            value, expires_at = item
            if expires_at <= now:
                del self._items[key]
                self.misses += 1
                return _MISSING
            self.hits += 1
            return value

    def put(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._items[key] = (value, self._clock() + self.ttl_seconds)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [key for key in self._items if predicate(key)]
            for key in doomed:
                del self._items[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def sweep_expired(self) -> int:
        """
        Delete expired entries. Returns how many were removed.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._items.items() if expires_at <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def is_missing(value: Any) -> bool:
    return value is _MISSING
