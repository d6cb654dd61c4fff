"""
Cache-then-coalesce-then-fetch orchestration for one upstream profile.

    cache hit      → payload, no upstream traffic
    fetch running  → await the running fetch, share its outcome
    otherwise      → own the fetch: retrying GET, cache on success

Failures are never cached and never overwrite an existing entry.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any

from macro_proxy.cache import TTLCache
from macro_proxy.coalescer import Coalescer
from macro_proxy.fetcher import RetryingFetcher, UpstreamTimeoutError
from macro_proxy.upstreams import UpstreamProfile

logger = logging.getLogger("macro_proxy.proxy")


class CacheStatus(str, enum.Enum):
    HIT = "HIT"
    MISS = "MISS"
    COALESCED = "COALESCED"


@dataclass(frozen=True)
class ProxyResult:
    key: str
    payload: Any
    status: CacheStatus


class ProxyHandler:
    """Serves one upstream profile through a TTL cache and a coalescer."""

    def __init__(
        self,
        profile: UpstreamProfile,
        fetcher: RetryingFetcher,
        cache: TTLCache,
        coalescer: Coalescer,
        *,
        wait_timeout: float | None = None,
    ) -> None:
        self.profile = profile
        self.cache = cache
        self._fetcher = fetcher
        self._coalescer = coalescer
        self._wait_timeout = wait_timeout

    async def fetch(self, key: str, url: str) -> ProxyResult:
        """Return the payload for ``key``, fetching ``url`` on a miss.

        Raises the owning fetch's ``UpstreamError`` on failure; every caller
        coalesced onto that fetch receives the same exception.
        """
        entry = await self.cache.get(key)
        if entry is not None:
            return self._hit(key, entry.payload)

        task, owner = await self._coalescer.claim(
            key, lambda: self._fetch_and_store(key, url)
        )
        if not owner:
            logger.info(
                "Coalesced onto in-flight fetch for %s", key,
                extra={"cache_key": key, "cache_status": CacheStatus.COALESCED.value},
            )

        payload, from_cache = await self._wait(task, key)
        if not owner:
            return ProxyResult(key, payload, CacheStatus.COALESCED)
        if from_cache:
            return self._hit(key, payload)
        return ProxyResult(key, payload, CacheStatus.MISS)

    @staticmethod
    def _hit(key: str, payload: Any) -> ProxyResult:
        logger.info(
            "Cache HIT for %s", key,
            extra={"cache_key": key, "cache_status": CacheStatus.HIT.value},
        )
        return ProxyResult(key, payload, CacheStatus.HIT)

    async def _wait(self, task: asyncio.Task, key: str) -> tuple[Any, bool]:
        # shield: a caller giving up must not cancel the fetch others await
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._wait_timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(
                f"Gave up waiting {self._wait_timeout:g}s for in-flight fetch of {key}"
            ) from exc

    async def _fetch_and_store(self, key: str, url: str) -> tuple[Any, bool]:
        """Run the owned fetch; the flag is True when the cache answered."""
        try:
            # A previous owner may have stored the key between our miss and claim
            entry = await self.cache.get(key)
            if entry is not None:
                return entry.payload, True

            logger.info(
                "Cache MISS for %s → %s", key, url,
                extra={
                    "cache_key": key,
                    "cache_status": CacheStatus.MISS.value,
                    "upstream": url,
                },
            )
            payload = await self._fetcher.get_json(
                url, self.profile.retry, headers=self.profile.headers
            )
            await self.cache.put(key, payload)
            return payload, False
        finally:
            await self._coalescer.finish(key)
