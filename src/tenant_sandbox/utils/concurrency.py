"""Async concurrency primitives used by the sandbox service."""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class RunCapacity:
    """Global cap on concurrent sandbox runs.

    Counts both callers holding a slot (``running``) and callers queued for one
    (``waiting``) so the service can report back-pressure.
    """

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("max concurrent runs must be > 0")
        self._limit = limit
        self._slots = asyncio.Semaphore(limit)
        self._running = 0
        self._waiting = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return self._waiting

    def is_saturated(self) -> bool:
        return self._running >= self._limit

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            await self._slots.acquire()
        finally:
            self._waiting -= 1
        self._running += 1
        try:
            yield
        finally:
            self._running -= 1
            self._slots.release()

    def snapshot(self) -> dict[str, int]:
        return {"limit": self._limit, "running": self._running, "waiting": self._waiting}


class TenantLockRegistry:
    """One ``asyncio.Lock`` per key, so same-tenant invocations run one at a time."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: defaultdict[str, int] = defaultdict(int)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        self._waiters[key] += 1
        lock = self._locks[key]
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody else references this lock; drop it so keys do not accumulate.
                del self._waiters[key]
                self._locks.pop(key, None)


async def run_with_timeout(coroutine: Awaitable[T], timeout_seconds: float) -> T:
    """Run ``coroutine`` with a deadline, cancelling it and raising ``TimeoutError`` on expiry."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    task: asyncio.Task[T] = asyncio.ensure_future(coroutine)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects rejected before scheduling so CPython does not
    # emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "RunCapacity",
    "TenantLockRegistry",
    "run_with_timeout",
]
