"""
Reshape SDMX CompactData responses into the DataMapper layout.

SDMX JSON nests observations as
``CompactData.DataSet.Series[.Obs[{"@TIME_PERIOD", "@OBS_VALUE"}]]`` where
``Series`` is a single object for one series and a list otherwise.
"""

from __future__ import annotations

import math
from typing import Any


def _first_series(payload: Any) -> dict:
    if not isinstance(payload, dict):
        return {}
    dataset = (payload.get("CompactData") or {}).get("DataSet") or {}
    series = dataset.get("Series") if isinstance(dataset, dict) else None
    if isinstance(series, list):
        series = series[0] if series else None
    return series if isinstance(series, dict) else {}


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def series_observations(payload: Any) -> dict[str, float]:
    """Return ``{period: value}`` for the first series, skipping gaps."""
    obs = _first_series(payload).get("Obs") or []
    if isinstance(obs, dict):
        obs = [obs]

    values: dict[str, float] = {}
    for o in obs:
        if not isinstance(o, dict):
            continue
        period = o.get("@TIME_PERIOD")
        value = _as_number(o.get("@OBS_VALUE"))
        if period and value is not None:
            values[str(period)] = value
    return values


def sdmx_to_datamapper(payload: Any, country: str) -> dict[str, Any]:
    """Wrap the first series as ``{"data": {country: {year: value}}}``."""
    return {"data": {country: series_observations(payload)}}


def fallback_paths(indicator: str, country: str) -> list[str]:
    """SDMX paths to try for a DataMapper ``indicator``/``country`` pair.

    Only the WEO annual series keyed by the caller's own code is tried;
    there is no reliable way to derive an ISO2 code from an ISO3 one here.
    """
    return [f"WEO/A.{country}.{indicator}"]
