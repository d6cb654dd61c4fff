"""
FastAPI application — IMF macro indicator caching proxy.

Endpoints:
    GET /health                  → HealthResponse
    GET /api/imf/dm/indicator    → DataMapper indicator JSON (SDMX fallback)
    GET /api/imf/sdmx            → SDMX CompactData JSON
    GET /api/imf/countries       → DataMapper country list JSON
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from macro_proxy.cache import TTLCache
from macro_proxy.coalescer import Coalescer
from macro_proxy.fetcher import RetryingFetcher, UpstreamError, UpstreamExhaustedError
from macro_proxy.logging_config import new_request_id, request_id_ctx, setup_logging
from macro_proxy.models import ErrorResponse, HealthResponse
from macro_proxy.params import (
    IndicatorQuery,
    InvalidRequestError,
    parse_indicator_query,
    parse_sdmx_path,
)
from macro_proxy.proxy import CacheStatus, ProxyHandler
from macro_proxy.sdmx import fallback_paths, sdmx_to_datamapper
from macro_proxy.settings import settings
from macro_proxy.upstreams import (
    COUNTRIES_CACHE_KEY,
    UpstreamProfile,
    build_profiles,
    countries_url,
    indicator_url,
    sdmx_url,
)

logger = logging.getLogger("macro_proxy.main")


# ── Shared state ───────────────────────────────────────────────
class _State:
    """Mutable container so lifespan and endpoints share instances."""
    http_client: httpx.AsyncClient | None = None
    coalescer: Coalescer | None = None
    datamapper: ProxyHandler | None = None
    sdmx: ProxyHandler | None = None
    countries: ProxyHandler | None = None


state = _State()


def _init_state(client: httpx.AsyncClient | None = None) -> None:
    profiles = build_profiles(settings)
    state.http_client = client if client is not None else httpx.AsyncClient(follow_redirects=True)
    state.coalescer = Coalescer()
    fetcher = RetryingFetcher(state.http_client)

    def handler(profile: UpstreamProfile) -> ProxyHandler:
        return ProxyHandler(
            profile,
            fetcher,
            TTLCache(ttl=profile.ttl),
            state.coalescer,
            wait_timeout=settings.coalesce_wait_timeout,
        )

    state.datamapper = handler(profiles.datamapper)
    state.sdmx = handler(profiles.sdmx)
    state.countries = handler(profiles.countries)


def _ensure_state() -> _State:
    """Lazily initialise the client, caches and coalescer for TestClient compatibility."""
    if state.datamapper is None:
        _init_state()
    return state


def _reset_state() -> None:
    state.http_client = None
    state.coalescer = None
    state.datamapper = None
    state.sdmx = None
    state.countries = None


def _handlers() -> tuple[ProxyHandler, ...]:
    return tuple(h for h in (state.datamapper, state.sdmx, state.countries) if h is not None)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage client, cache and coalescer lifetime."""
    setup_logging(settings.log_level)
    # reuse state a request may already have created lazily
    st = _ensure_state()

    logger.info(
        "Application started (ttl=%ss, countries_ttl=%ss, dm_retries=%d)",
        settings.cache_ttl_seconds,
        settings.countries_cache_ttl_seconds,
        settings.dm_max_retries,
    )
    yield

    if st.http_client is not None:
        await st.http_client.aclose()
    _reset_state()
    logger.info("Application shutdown")


app = FastAPI(
    title="IMF Indicator Proxy",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


# ── Middleware: request_id + timing ────────────────────────────
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    rid = new_request_id()
    request_id_ctx.set(rid)
    t0 = time.perf_counter()
    response = await call_next(request)
    elapsed = round((time.perf_counter() - t0) * 1000, 1)
    response.headers["X-Request-Id"] = rid
    logger.info(
        "%s %s → %s (%.1f ms)",
        request.method, request.url.path, response.status_code, elapsed,
    )
    return response


@app.exception_handler(Exception)
async def unhandled_error(_request: Request, exc: Exception):
    logger.exception("Unhandled error", exc_info=exc)
    return _error_response(500, "Internal server error")


# ── Response helpers ───────────────────────────────────────────
def _error_response(
    status: int,
    error: str,
    *,
    detail: str | None = None,
    upstream: str | None = None,
) -> JSONResponse:
    """Return {"error": ..., "detail"?: ..., "upstream"?: ...}."""
    body = ErrorResponse(error=error, detail=detail, upstream=upstream)
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))


def _json_response(
    payload: Any,
    status: CacheStatus,
    ttl: int,
    *,
    source: str | None = None,
) -> JSONResponse:
    headers = {
        "Cache-Control": f"public, max-age=0, s-maxage={ttl}",
        "X-Cache": status.value,
    }
    if source:
        headers["X-Data-Source"] = source
    return JSONResponse(status_code=200, content=payload, headers=headers)


def _detail(exc: UpstreamError) -> str:
    if isinstance(exc, UpstreamExhaustedError):
        return exc.detail
    return str(exc)


# ── Endpoints ──────────────────────────────────────────────────
@app.get("/health", response_model=HealthResponse)
async def health():
    _ensure_state()
    return HealthResponse(
        cache_entries=sum(len(h.cache) for h in _handlers()),
        in_flight=len(state.coalescer),
    )


@app.get("/api/imf/dm/indicator")
async def dm_indicator(indicator: str | None = None, countries: str | None = None):
    st = _ensure_state()

    # 1. Validate + normalise
    try:
        query = parse_indicator_query(indicator, countries)
    except InvalidRequestError as exc:
        return _error_response(400, str(exc))

    # 2. Cache / coalesce / fetch
    profile = st.datamapper.profile
    upstream = indicator_url(profile, query)
    try:
        result = await st.datamapper.fetch(query.cache_key, upstream)
    except UpstreamError as exc:
        # 3. SDMX fallback for single-country requests
        fallback = await _sdmx_fallback(st, query)
        if fallback is not None:
            return fallback
        return _error_response(
            502,
            "Failed to fetch IMF DataMapper indicator",
            detail=_detail(exc),
            upstream=upstream,
        )

    return _json_response(result.payload, result.status, profile.ttl)


async def _sdmx_fallback(st: _State, query: IndicatorQuery) -> JSONResponse | None:
    """Serve ``query`` from SDMX when DataMapper is unavailable, if eligible."""
    eligible = {i.strip().upper() for i in settings.sdmx_fallback_indicators}
    if len(query.countries) != 1 or query.indicator not in eligible:
        return None

    country = query.countries[0]
    profile = st.sdmx.profile
    for path in fallback_paths(query.indicator, country):
        sdmx_query = parse_sdmx_path(path)
        try:
            result = await st.sdmx.fetch(sdmx_query.cache_key, sdmx_url(profile, sdmx_query))
        except UpstreamError as exc:
            logger.warning("SDMX fallback %s failed: %s", path, _detail(exc))
            continue

        logger.info("Served %s from SDMX fallback %s", query.cache_key, path)
        return _json_response(
            sdmx_to_datamapper(result.payload, country),
            result.status,
            profile.ttl,
            source="sdmx-fallback",
        )
    return None


@app.get("/api/imf/sdmx")
async def sdmx_data(path: str | None = None):
    st = _ensure_state()

    try:
        query = parse_sdmx_path(path)
    except InvalidRequestError as exc:
        return _error_response(400, str(exc))

    profile = st.sdmx.profile
    upstream = sdmx_url(profile, query)
    try:
        result = await st.sdmx.fetch(query.cache_key, upstream)
    except UpstreamError as exc:
        return _error_response(
            502, "Failed to fetch IMF SDMX data", detail=_detail(exc), upstream=upstream
        )

    return _json_response(result.payload, result.status, profile.ttl)


@app.get("/api/imf/countries")
async def imf_countries():
    st = _ensure_state()

    profile = st.countries.profile
    upstream = countries_url(profile)
    try:
        result = await st.countries.fetch(COUNTRIES_CACHE_KEY, upstream)
    except UpstreamError as exc:
        return _error_response(
            502, "Failed to fetch IMF countries", detail=_detail(exc), upstream=upstream
        )

    return _json_response(result.payload, result.status, profile.ttl)


def serve() -> None:
    """Console entry point: run the app under uvicorn."""
    import uvicorn

    uvicorn.run(
        "macro_proxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
