"""Tests for macro_proxy.proxy — cache, coalescing and failure handling together."""

import asyncio

import httpx
import pytest

from macro_proxy.cache import TTLCache
from macro_proxy.coalescer import Coalescer
from macro_proxy.fetcher import RetryingFetcher, RetryPolicy, UpstreamExhaustedError, UpstreamTimeoutError
from macro_proxy.proxy import CacheStatus, ProxyHandler
from macro_proxy.upstreams import UpstreamProfile

KEY = "sdmx:WEO/A.EC.NGDP_RPCH"
URL = "https://dataservices.imf.org/REST/SDMX_JSON.svc/CompactData/WEO/A.EC.NGDP_RPCH"
PAYLOAD = {"CompactData": {"DataSet": {"Series": {"Obs": [{"@TIME_PERIOD": "2024", "@OBS_VALUE": "1.2"}]}}}}


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeUpstream:
    """Async MockTransport handler with a per-call delay and a scripted status."""

    def __init__(self, *, delay: float = 0.05, status: int = 200, payload=PAYLOAD) -> None:
        self.calls = 0
        self.delay = delay
        self.status = status
        self.payload = payload

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.status != 200:
            return httpx.Response(self.status, text="upstream broke")
        return httpx.Response(200, json=self.payload)


def _profile(max_retries: int = 1) -> UpstreamProfile:
    return UpstreamProfile(
        name="sdmx",
        base_url="https://dataservices.imf.org/REST/SDMX_JSON.svc/CompactData",
        retry=RetryPolicy(max_retries=max_retries, timeout=2.0, backoff_base=0.0, jitter_max=0.0),
        ttl=60,
        headers={"Accept": "application/json"},
    )


def _handler(
    client: httpx.AsyncClient,
    *,
    max_retries: int = 1,
    cache: TTLCache | None = None,
    coalescer: Coalescer | None = None,
    **kwargs,
) -> ProxyHandler:
    # empty caches and coalescers are falsy; compare against None
    return ProxyHandler(
        _profile(max_retries),
        RetryingFetcher(client, sleep=_no_sleep),
        cache if cache is not None else TTLCache(ttl=60),
        coalescer if coalescer is not None else Coalescer(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_miss_then_hit():
    upstream = FakeUpstream(delay=0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc)
        first = await handler.fetch(KEY, URL)
        second = await handler.fetch(KEY, URL)

    assert first.status is CacheStatus.MISS
    assert second.status is CacheStatus.HIT
    assert first.payload == second.payload == PAYLOAD
    assert upstream.calls == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_upstream_call():
    upstream = FakeUpstream(delay=0.05)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc)
        results = await asyncio.gather(*(handler.fetch(KEY, URL) for _ in range(8)))

    assert upstream.calls == 1
    assert all(r.payload == PAYLOAD for r in results)
    statuses = [r.status for r in results]
    assert statuses.count(CacheStatus.MISS) == 1
    assert statuses.count(CacheStatus.COALESCED) == 7


@pytest.mark.asyncio
async def test_staggered_arrivals_still_coalesce():
    upstream = FakeUpstream(delay=0.1)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc)

        async def late():
            await asyncio.sleep(0.01)
            return await handler.fetch(KEY, URL)

        a, b = await asyncio.gather(handler.fetch(KEY, URL), late())

    assert upstream.calls == 1
    assert a.payload == b.payload


@pytest.mark.asyncio
async def test_joiners_share_the_owners_failure():
    upstream = FakeUpstream(delay=0.02, status=500)
    coalescer = Coalescer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, max_retries=2, coalescer=coalescer)
        results = await asyncio.gather(
            *(handler.fetch(KEY, URL) for _ in range(4)), return_exceptions=True
        )

    # one owner did all the retrying; nobody retried on their own
    assert upstream.calls == 3
    assert all(isinstance(r, UpstreamExhaustedError) for r in results)
    assert len({id(r) for r in results}) == 1
    assert "HTTP 500" in results[0].detail
    assert len(coalescer) == 0


@pytest.mark.asyncio
async def test_failure_does_not_poison_cache():
    upstream = FakeUpstream(delay=0, status=503)
    cache = TTLCache(ttl=60)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, cache=cache)
        with pytest.raises(UpstreamExhaustedError):
            await handler.fetch(KEY, URL)

        assert await cache.get(KEY) is None
        assert KEY not in cache

        # the key is not left blocked; a later request fetches again
        upstream.status = 200
        result = await handler.fetch(KEY, URL)

    assert result.status is CacheStatus.MISS
    assert result.payload == PAYLOAD
    assert upstream.calls == 3


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_entry():
    clock_now = [0.0]
    cache = TTLCache(ttl=60, clock=lambda: clock_now[0])
    upstream = FakeUpstream(delay=0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, cache=cache)
        await handler.fetch(KEY, URL)

        clock_now[0] = 100.0
        upstream.status = 500
        with pytest.raises(UpstreamExhaustedError):
            await handler.fetch(KEY, URL)

    # the stale entry is neither served nor replaced
    assert await cache.get(KEY) is None
    clock_now[0] = 0.0
    entry = await cache.get(KEY)
    assert entry is not None and entry.payload == PAYLOAD


@pytest.mark.asyncio
async def test_different_keys_are_not_coalesced():
    upstream = FakeUpstream(delay=0.02)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc)
        await asyncio.gather(
            handler.fetch("sdmx:A", URL + "?a"),
            handler.fetch("sdmx:B", URL + "?b"),
        )

    assert upstream.calls == 2


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch():
    upstream = FakeUpstream(delay=0.05)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc)
        impatient = asyncio.ensure_future(handler.fetch(KEY, URL))
        await asyncio.sleep(0.01)
        patient = asyncio.ensure_future(handler.fetch(KEY, URL))
        await asyncio.sleep(0)
        impatient.cancel()

        result = await patient

    assert result.payload == PAYLOAD
    assert result.status is CacheStatus.COALESCED
    assert upstream.calls == 1


@pytest.mark.asyncio
async def test_joiner_wait_is_bounded():
    upstream = FakeUpstream(delay=0.3)
    coalescer = Coalescer()
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, wait_timeout=0.05, coalescer=coalescer)
        with pytest.raises(UpstreamTimeoutError):
            await handler.fetch(KEY, URL)

        # the fetch itself keeps running and still fills the cache
        task = await coalescer.join(KEY)
        assert task is not None
        assert await task == (PAYLOAD, False)

    assert (await handler.cache.get(KEY)).payload == PAYLOAD


@pytest.mark.asyncio
async def test_handler_uses_the_injected_empty_cache_and_coalescer():
    cache = TTLCache(ttl=60)
    coalescer = Coalescer()
    assert not cache and not coalescer

    upstream = FakeUpstream(delay=0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, cache=cache, coalescer=coalescer)
        await handler.fetch(KEY, URL)

    assert handler.cache is cache
    assert handler._coalescer is coalescer
    assert (await cache.get(KEY)).payload == PAYLOAD


class StoreOnFirstMissCache(TTLCache):
    """Simulates another owner storing the key between the miss and the claim."""

    def __init__(self, payload, **kwargs) -> None:
        super().__init__(**kwargs)
        self._pending = payload

    async def get(self, key):
        if self._pending is not None:
            payload, self._pending = self._pending, None
            await self.put(key, payload)
            return None
        return await super().get(key)


@pytest.mark.asyncio
async def test_owner_recheck_hit_is_reported_as_hit():
    upstream = FakeUpstream(delay=0)
    cache = StoreOnFirstMissCache({"v": 0}, ttl=60)
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as hc:
        handler = _handler(hc, cache=cache)
        result = await handler.fetch(KEY, URL)

    assert result.status is CacheStatus.HIT
    assert result.payload == {"v": 0}
    assert upstream.calls == 0
