"""
Centralised application settings loaded from environment variables.
Uses pydantic-settings so every value can be overridden via env vars or a .env file.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration."""

    # ── IMF upstreams ───────────────────────────────────────
    dm_base_url: str = "https://www.imf.org/external/datamapper/api/v1"
    sdmx_base_url: str = "https://dataservices.imf.org/REST/SDMX_JSON.svc/CompactData"
    browser_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )

    # ── Retry profiles ──────────────────────────────────────
    dm_max_retries: int = Field(default=3, ge=0)
    dm_timeout_seconds: float = Field(default=15.0, gt=0)
    dm_backoff_base: float = Field(default=0.5, ge=0)

    sdmx_max_retries: int = Field(default=2, ge=0)
    sdmx_timeout_seconds: float = Field(default=12.0, gt=0)
    sdmx_backoff_base: float = Field(default=0.5, ge=0)

    countries_max_retries: int = Field(default=2, ge=0)
    countries_timeout_seconds: float = Field(default=8.0, gt=0)
    countries_backoff_base: float = Field(default=0.3, ge=0)

    backoff_jitter_max: float = Field(default=0.2, ge=0)

    # ── Cache / coalescing ──────────────────────────────────
    cache_ttl_seconds: int = 21_600
    countries_cache_ttl_seconds: int = 86_400
    coalesce_wait_timeout: float = Field(default=120.0, gt=0)

    # Indicators that may be served from SDMX when DataMapper fails
    sdmx_fallback_indicators: list[str] = ["NGDP_RPCH"]

    # ── Server ──────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    model_config = {"env_prefix": "", "env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton used across the app
settings = Settings()
