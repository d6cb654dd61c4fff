"""
Pydantic models for response payloads.

  Error:  {"error": "...", "detail": "...", "upstream": "..."}
  Health: {"status": "ok", "cache_entries": n, "in_flight": n}
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Short description of what failed")
    detail: str | None = Field(None, description="Last upstream error, verbatim")
    upstream: str | None = Field(None, description="Upstream URL that was tried")


class HealthResponse(BaseModel):
    status: str = "ok"
    cache_entries: int
    in_flight: int
