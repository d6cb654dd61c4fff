"""
Async upstream fetcher for the IMF JSON APIs.

Features:
- Single-attempt GET with a hard per-attempt deadline; the in-flight
  request is cancelled (connection released) when the deadline elapses.
- Bounded retries with exponential backoff plus uniform jitter.
- Any non-2xx status, non-JSON content type or undecodable body counts
  as a failed attempt (IMF hosts answer some errors with HTML and 200).
- Exhaustion raises ``UpstreamExhaustedError`` carrying the last error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import httpx

logger = logging.getLogger("macro_proxy.fetcher")

SNIPPET_CHARS = 200


# ── Custom exceptions ──────────────────────────────────────────
class UpstreamError(Exception):
    """Base for failures talking to an upstream API."""


class UpstreamTimeoutError(UpstreamError):
    """No response arrived before the per-attempt deadline."""


class NetworkError(UpstreamError):
    """Transport-level failure (DNS, connect, reset, protocol)."""


class UpstreamStatusError(UpstreamError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class UnexpectedContentTypeError(UpstreamError):
    """2xx response whose body is not JSON."""


class MalformedPayloadError(UpstreamError):
    """2xx JSON response whose body could not be decoded."""


class UpstreamExhaustedError(UpstreamError):
    """Every attempt failed; terminal."""

    def __init__(self, attempts: int, last_error: UpstreamError):
        super().__init__(f"Upstream failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.detail = str(last_error)


# ── Retry policy ───────────────────────────────────────────────
@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff shape for one upstream."""

    max_retries: int = 2
    timeout: float = 10.0
    backoff_base: float = 0.5
    jitter_max: float = 0.2

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.backoff_base < 0 or self.jitter_max < 0:
            raise ValueError("backoff_base and jitter_max must be >= 0")

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int, jitter: float) -> float:
        """Delay before attempt ``attempt + 1`` (0-indexed ``attempt``)."""
        return self.backoff_base * (2 ** attempt) + jitter


def _is_json(content_type: str) -> bool:
    media = content_type.split(";", 1)[0].strip().lower()
    return media == "application/json" or media.endswith("+json")


# ── Timed fetch ────────────────────────────────────────────────
async def fetch_with_timeout(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    timeout: float,
) -> httpx.Response:
    """Issue one GET and return the fully read response.

    ``asyncio.wait_for`` cancels the request task on expiry, which makes
    httpx close the underlying connection instead of leaving it to finish
    in the background.
    """
    try:
        return await asyncio.wait_for(
            client.get(url, headers=headers, timeout=timeout),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise UpstreamTimeoutError(f"Timed out after {timeout:g}s: {url}") from exc
    except httpx.TransportError as exc:
        raise NetworkError(f"{type(exc).__name__}: {exc}") from exc


# ── Retrying fetcher ───────────────────────────────────────────
class RetryingFetcher:
    """Wraps a shared ``httpx.AsyncClient`` with retry + backoff."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float], float] | None = None,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._jitter = jitter or (lambda upper: random.uniform(0.0, upper))

    async def get_json(
        self,
        url: str,
        policy: RetryPolicy,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Fetch ``url`` and return the decoded JSON body.

        Raises ``UpstreamExhaustedError`` once ``policy.attempts`` attempts
        have failed. Errors that are not ``UpstreamError`` propagate at once.
        """
        for attempt in range(policy.attempts):
            try:
                resp = await fetch_with_timeout(
                    self._client, url, headers=headers, timeout=policy.timeout
                )
                return self._decode(resp)
            except UpstreamError as exc:
                logger.warning(
                    "Upstream request failed (attempt %d/%d) %s: %s",
                    attempt + 1, policy.attempts, url, exc,
                    extra={"upstream": url, "attempt": attempt + 1},
                )
                if attempt == policy.max_retries:
                    logger.error(
                        "Upstream exhausted after %d attempt(s): %s",
                        policy.attempts, url,
                        extra={"upstream": url, "attempt": attempt + 1},
                    )
                    raise UpstreamExhaustedError(policy.attempts, exc) from exc
                await self._backoff(policy, attempt)

    async def _backoff(self, policy: RetryPolicy, attempt: int) -> None:
        wait = policy.backoff(attempt, self._jitter(policy.jitter_max))
        await self._sleep(wait)

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.is_success:
            raise UpstreamStatusError(resp.status_code)

        content_type = resp.headers.get("content-type", "")
        if not _is_json(content_type):
            snippet = resp.text[:SNIPPET_CHARS]
            raise UnexpectedContentTypeError(
                f"Unexpected content-type: {content_type or '<none>'}. Snippet: {snippet}"
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedPayloadError(f"Invalid JSON body: {exc}") from exc
