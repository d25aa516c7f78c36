"""
cache.py
Small in-process TTL cache for read-heavy billing dashboards (statistics,
analytics). Stale reads for up to ``ttl_seconds`` are acceptable; writers call
``invalidate`` for the keys they affect.
"""

from __future__ import annotations

import time
from threading import RLock
from typing import Any, Callable


class TTLCache:
    def __init__(self, ttl_seconds: float = 180, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = RLock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at >= self.ttl_seconds

    def get(self, key: str, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry[0]):
                self._entries.pop(key, None)
                self.misses += 1
                return default
            self.hits += 1
            return entry[1]

    def set(self, key: str, value) -> None:
        with self._lock:
            # expired entries are only otherwise dropped when their own key is read
            self.purge_expired()
            self._entries[key] = (self._clock(), value)

    def get_or_set(self, key: str, factory: Callable[[], Any]):
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            value = factory()
            self.set(key, value)
        return value

    def invalidate(self, prefix: str | None = None) -> int:
        """Drop every key starting with ``prefix`` (all keys when omitted)."""
        with self._lock:
            if prefix is None:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def purge_expired(self) -> int:
        with self._lock:
            keys = [k for k, (stored_at, _) in self._entries.items() if self._expired(stored_at)]
            for k in keys:
                del self._entries[k]
            return len(keys)
