"""
JSON-lines logging for the proxy.

Call ``setup_logging()`` once at startup. The middleware in ``main.py``
binds a request id in ``contextvars``. A coalesced fetch task copies the
owner's context, so its upstream lines carry the owner's request id.

Proxy and fetcher log calls pass ``extra={"cache_key": ..., ...}``; the
formatter lifts those fields into the JSON object so lines can be
filtered by key, cache outcome or upstream URL.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime, timezone

request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default="-"
)

# LogRecord attributes promoted to top-level JSON fields when present
CONTEXT_FIELDS = ("cache_key", "cache_status", "upstream", "attempt")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, tagged with the request id."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_ctx.get(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Send JSON lines to stdout, replacing any handlers already installed."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    # httpx logs every request at INFO; the fetcher logs its own attempts
    logging.getLogger("httpx").setLevel(logging.WARNING)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]
