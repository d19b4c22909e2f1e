"""Single-flight guard for lazily initialized shared resources.

At most one run of the wrapped coroutine is in progress; every concurrent
caller awaits that same run and sees its result or exception. The slot
clears once the run settles, so the next call after a failure starts over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    def __init__(self, name: str = "single-flight") -> None:
        self._name = name
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._settle(factory), name=self._name)
            self._task = task
        # A cancelled waiter must not cancel the shared run for everyone else.
        return await asyncio.shield(task)

    async def _settle(self, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            self._task = None
