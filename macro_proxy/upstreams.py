"""
Upstream profiles: where each family of requests goes, which headers it
sends, how hard it retries and how long its results stay cached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import quote

from macro_proxy.fetcher import RetryPolicy
from macro_proxy.params import IndicatorQuery, SDMXQuery
from macro_proxy.settings import Settings

COUNTRIES_CACHE_KEY = "dm:countries"

_ACCEPT = "application/json, text/plain, */*"


@dataclass(frozen=True)
class UpstreamProfile:
    name: str
    base_url: str
    retry: RetryPolicy
    ttl: int
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Profiles:
    datamapper: UpstreamProfile
    sdmx: UpstreamProfile
    countries: UpstreamProfile


def _browser_headers(settings: Settings, referer: str, origin: str) -> dict[str, str]:
    # IMF front ends reject requests that do not look like a browser
    return {
        "Accept": _ACCEPT,
        "User-Agent": settings.browser_user_agent,
        "Referer": referer,
        "Origin": origin,
    }


def build_profiles(settings: Settings) -> Profiles:
    datamapper = UpstreamProfile(
        name="datamapper",
        base_url=settings.dm_base_url.rstrip("/"),
        retry=RetryPolicy(
            max_retries=settings.dm_max_retries,
            timeout=settings.dm_timeout_seconds,
            backoff_base=settings.dm_backoff_base,
            jitter_max=settings.backoff_jitter_max,
        ),
        ttl=settings.cache_ttl_seconds,
        headers=_browser_headers(
            settings, "https://www.imf.org/external/datamapper/", "https://www.imf.org"
        ),
    )
    sdmx = UpstreamProfile(
        name="sdmx",
        base_url=settings.sdmx_base_url.rstrip("/"),
        retry=RetryPolicy(
            max_retries=settings.sdmx_max_retries,
            timeout=settings.sdmx_timeout_seconds,
            backoff_base=settings.sdmx_backoff_base,
            jitter_max=settings.backoff_jitter_max,
        ),
        ttl=settings.cache_ttl_seconds,
        headers=_browser_headers(
            settings,
            "https://dataservices.imf.org/REST/SDMX_JSON.svc/",
            "https://dataservices.imf.org",
        ),
    )
    countries = UpstreamProfile(
        name="countries",
        base_url=settings.dm_base_url.rstrip("/"),
        retry=RetryPolicy(
            max_retries=settings.countries_max_retries,
            timeout=settings.countries_timeout_seconds,
            backoff_base=settings.countries_backoff_base,
            jitter_max=settings.backoff_jitter_max,
        ),
        ttl=settings.countries_cache_ttl_seconds,
        headers={"Accept": "application/json"},
    )
    return Profiles(datamapper=datamapper, sdmx=sdmx, countries=countries)


def indicator_url(profile: UpstreamProfile, query: IndicatorQuery) -> str:
    countries = quote(",".join(query.countries), safe="")
    return f"{profile.base_url}/{quote(query.indicator, safe='')}?countries={countries}"


def sdmx_url(profile: UpstreamProfile, query: SDMXQuery) -> str:
    url = f"{profile.base_url}/{quote(query.path, safe='/.+-_')}"
    if query.query:
        url += f"?{query.query_string}"
    return url


def countries_url(profile: UpstreamProfile) -> str:
    return f"{profile.base_url}/countries"
