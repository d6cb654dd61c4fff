"""
In-flight registry that collapses concurrent fetches of the same key.

Each key is either absent (no fetch running) or maps to the one
``asyncio.Task`` currently fetching it. ``claim`` performs the
join-or-begin check and the insert under one lock acquisition, so two
callers can never both start a fetch for the same key.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger("macro_proxy.coalescer")


class AlreadyInFlightError(RuntimeError):
    """A second fetch was registered for a key that already has one."""


def _consume_result(task: asyncio.Task) -> None:
    # Every caller may have gone away (client disconnects); mark the
    # outcome as retrieved so asyncio does not log it as lost.
    if not task.cancelled():
        task.exception()


class Coalescer:
    """Registry of upstream fetches currently in progress."""

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def join(self, key: str) -> asyncio.Task | None:
        """Return the running fetch for ``key``, or ``None``."""
        async with self._lock:
            return self._in_flight.get(key)

    async def begin(self, key: str, task: asyncio.Task) -> None:
        """Register ``task`` as the single owner of ``key``."""
        async with self._lock:
            self._begin_locked(key, task)

    async def finish(self, key: str) -> None:
        """Drop the in-flight record for ``key``; safe if already gone."""
        async with self._lock:
            self._in_flight.pop(key, None)

    async def claim(
        self,
        key: str,
        start: Callable[[], Awaitable[Any]],
    ) -> tuple[asyncio.Task, bool]:
        """Join the running fetch for ``key`` or start one with ``start()``.

        Returns ``(task, owner)``; ``owner`` is True when this call created
        the task. The task runs independently of the caller, so a caller
        that is cancelled does not cancel the fetch other callers await.
        """
        async with self._lock:
            task = self._in_flight.get(key)
            if task is not None:
                logger.debug("Joining in-flight fetch for %s", key)
                return task, False
            task = asyncio.ensure_future(start())
            task.add_done_callback(_consume_result)
            self._begin_locked(key, task)
            return task, True

    def _begin_locked(self, key: str, task: asyncio.Task) -> None:
        existing = self._in_flight.get(key)
        if existing is not None and existing is not task:
            raise AlreadyInFlightError(f"Fetch already in flight for {key}")
        self._in_flight[key] = task

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)
