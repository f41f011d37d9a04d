"""Async concurrency primitives used across orchestration planes."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class BoundedSemaphore:
    """Small wrapper over ``asyncio.Semaphore`` with usage diagnostics."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    @property
    def peak(self) -> int:
        """Highest number of permits held at the same time."""
        return self._peak

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
            "peak": self._peak,
        }


async def gather_all(
    coroutines: Iterable[Awaitable[T]],
    *,
    semaphore: BoundedSemaphore | None = None,
) -> list[T]:
    """Run every coroutine concurrently and join them, preserving input order.

    All branches are awaited before the first failure is re-raised, so no task
    is left running in the background once this returns.
    """

    pending = list(coroutines)
    if not pending:
        return []

    tasks = [asyncio.create_task(_run_one(coroutine, semaphore)) for coroutine in pending]
    await asyncio.gather(*tasks, return_exceptions=True)

    # Exception objects a branch returns are ordinary results.
    for task in tasks:
        error = task.exception()
        if error is not None:
            raise error
    return [task.result() for task in tasks]


async def _run_one(coroutine: Awaitable[T], semaphore: BoundedSemaphore | None) -> T:
    if semaphore is None:
        return await coroutine
    async with semaphore.permit():
        return await coroutine


__all__ = [
    "BoundedSemaphore",
    "gather_all",
]
