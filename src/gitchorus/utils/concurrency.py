"""Async primitives shared by the job runner and the analysis collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager


class CancellationToken:
    """Cooperative stop signal handed to a running analysis.

    The first ``cancel`` wins; its reason is what ``raise_if_cancelled`` reports.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled.is_set():
            return
        self._reason = reason
        self._cancelled.set()

    async def wait(self) -> None:
        await self._cancelled.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "operation cancelled")


class JobSlots:
    """Caps how many analyses run at once and counts who is running or waiting."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._gate = asyncio.Semaphore(limit)
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

    @property
    def free(self) -> int:
        return self._limit - self._running

    async def acquire(self) -> None:
        self._waiting += 1
        try:
            await self._gate.acquire()
        finally:
            self._waiting -= 1
        self._running += 1

    def release(self) -> None:
        if self._running == 0:
            raise RuntimeError("release called more times than acquire")
        self._running -= 1
        self._gate.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


async def cancel_and_wait(tasks: Iterable[asyncio.Task[object]]) -> None:
    """Cancel every unfinished task and wait until all of them have settled."""

    unfinished = [task for task in tasks if not task.done()]
    for task in unfinished:
        task.cancel()
    if unfinished:
        await asyncio.gather(*unfinished, return_exceptions=True)


__all__ = ["CancellationToken", "JobSlots", "cancel_and_wait"]
