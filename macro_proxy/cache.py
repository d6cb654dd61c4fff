"""
In-memory TTL cache for upstream JSON payloads.

Freshness is evaluated lazily on read: an entry is served only while
``now - stored_at < ttl``. Stale entries stay in the store until the next
successful fetch for the same key overwrites them; the key space is the
small set of valid indicator/country combinations, so nothing sweeps them.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: float


class TTLCache:
    """Async-safe in-memory cache with a single TTL."""

    def __init__(self, ttl: float = 21_600, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self.ttl = ttl

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at < self.ttl

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None or not self._is_fresh(entry):
                return None
            return entry

    async def put(self, key: str, payload: Any) -> CacheEntry:
        async with self._lock:
            entry = CacheEntry(key=key, payload=payload, stored_at=self._clock())
            self._store[key] = entry
            return entry

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        """Whether ``key`` is stored at all, fresh or stale."""
        return key in self._store
