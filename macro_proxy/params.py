"""
Validation and canonicalisation of caller-supplied query parameters.

Two requests that mean the same thing must produce the same cache key:
case, surrounding whitespace, country order and duplicate countries are
normalised away. Invalid input raises ``InvalidRequestError`` before the
cache or any upstream is touched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode

_INDICATOR_RE = re.compile(r"^[A-Z0-9_.]+$")
_COUNTRY_RE = re.compile(r"^[A-Z0-9]+$")
_SDMX_PATH_RE = re.compile(r"^[A-Z0-9_.+\-]+(?:/[A-Z0-9_.+\-]+)*$")


class InvalidRequestError(ValueError):
    """Caller supplied missing or malformed parameters."""


@dataclass(frozen=True)
class IndicatorQuery:
    indicator: str
    countries: tuple[str, ...]

    @property
    def cache_key(self) -> str:
        return f"dm:{self.indicator}:{','.join(self.countries)}"


@dataclass(frozen=True)
class SDMXQuery:
    path: str
    query: tuple[tuple[str, str], ...] = ()

    @property
    def query_string(self) -> str:
        return urlencode(self.query)

    @property
    def cache_key(self) -> str:
        key = f"sdmx:{self.path}"
        if self.query:
            key += f"?{self.query_string}"
        return key


def parse_indicator_query(indicator: str | None, countries: str | None) -> IndicatorQuery:
    """Validate ``indicator`` + comma-separated ``countries``."""
    if not indicator or not indicator.strip() or not countries or not countries.strip():
        raise InvalidRequestError("Missing indicator or countries")

    code = indicator.strip().upper()
    if not _INDICATOR_RE.match(code):
        raise InvalidRequestError(f"Invalid indicator: '{indicator.strip()}'")

    cleaned = {c.strip().upper() for c in countries.split(",") if c.strip()}
    if not cleaned:
        raise InvalidRequestError("Missing indicator or countries")
    bad = sorted(c for c in cleaned if not _COUNTRY_RE.match(c))
    if bad:
        raise InvalidRequestError(f"Invalid country code(s): {', '.join(bad)}")

    return IndicatorQuery(indicator=code, countries=tuple(sorted(cleaned)))


def parse_sdmx_path(path: str | None) -> SDMXQuery:
    """Validate an SDMX CompactData path such as ``WEO/A.EC.NGDP_RPCH``.

    A trailing ``?startPeriod=..&endPeriod=..`` is accepted; its parameters
    are sorted so reordering them does not change the key.
    """
    if not path or not path.strip():
        raise InvalidRequestError("Missing path")

    raw_path, _, raw_query = path.strip().partition("?")
    canonical = raw_path.strip().strip("/").upper()
    segments = canonical.split("/")
    if not _SDMX_PATH_RE.match(canonical) or any(not seg.strip(".") for seg in segments):
        raise InvalidRequestError(f"Invalid path: '{raw_path.strip()}'")

    query = tuple(sorted(
        (k.strip(), v.strip()) for k, v in parse_qsl(raw_query, keep_blank_values=False)
    ))
    return SDMXQuery(path=canonical, query=query)
