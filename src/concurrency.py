from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits on it.

    Callers that mutate the same id acquire ``lock(id)`` so their operations
    apply in issuance order instead of interleaving.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lk = self._locks.get(key)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[key] = lk
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lk:
                yield
        finally:
            remaining = self._users[key] - 1
            if remaining <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._users[key] = remaining

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


class PeriodicTask:
    """Run an async callback every ``interval_s`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval_s: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = float(interval_s)
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting %s timer (every %.0fs)", self.name, self.interval_s)
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("%s timer stopped", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self._callback()
            except Exception:
                # A failed sweep must not kill the timer.
                logger.error("Scheduled %s run failed", self.name, exc_info=True)
