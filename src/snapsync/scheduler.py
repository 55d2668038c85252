"""Debounced sync scheduling and per-dataset sync locks.

One ``SyncScheduler`` serves a whole process and is passed to every data
manager that should share its timers. It keeps one timer per name
(normally the dataset): each ``trigger`` cancels the pending timer and arms
a new one, so a burst of N triggers inside the delay produces one run,
started no earlier than the delay after the last trigger. Every caller
coalesced into that run gets the same result from its future.

Cancelling only stops a run that has not started yet; an in-flight run is
left alone except by ``shutdown()``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SyncFunc = Callable[[], Awaitable[Any]]


@dataclass
class SchedulerStats:
    triggers: int = 0
    runs: int = 0
    cancelled: int = 0
    failures: int = 0


class SyncScheduler:
    """Per-process registry of debounce timers and dataset locks."""

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._running: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self.stats = SchedulerStats()

    def lock(self, name: str) -> asyncio.Lock:
        """Mutual exclusion for the sync critical section of ``name``."""
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def trigger(
        self, name: str, delay: float, func: SyncFunc
    ) -> asyncio.Future:
        """(Re)arm the timer for ``name``; resolves with ``func``'s result.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()
            logger.debug("reset debounce timer for %s", name)

        future = loop.create_future()
        self._waiters.setdefault(name, []).append(future)
        self._timers[name] = loop.call_later(
            max(0.0, delay), self._fire, name, func
        )
        self.stats.triggers += 1
        return future

    def pending(self, name: str) -> bool:
        return name in self._timers

    def cancel(self, name: str) -> bool:
        """Cancel a pending timer without firing it."""
        handle = self._timers.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        for future in self._waiters.pop(name, []):
            future.cancel()
        self.stats.cancelled += 1
        logger.debug("cancelled debounce timer for %s", name)
        return True

    def cancel_all(self) -> int:
        names = list(self._timers)
        for name in names:
            self.cancel(name)
        return len(names)

    async def shutdown(self) -> None:
        """Cancel pending timers and in-flight runs, then wait for them."""
        self.cancel_all()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()

    def _fire(self, name: str, func: SyncFunc) -> None:
        self._timers.pop(name, None)
        waiters = self._waiters.pop(name, [])
        task = asyncio.ensure_future(self._run(name, func, waiters))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(
        self, name: str, func: SyncFunc, waiters: list[asyncio.Future]
    ) -> None:
        logger.debug("running debounced sync for %s", name)
        self.stats.runs += 1
        try:
            result = await func()
        except asyncio.CancelledError:
            for future in waiters:
                future.cancel()
            raise
        except Exception as e:
            self.stats.failures += 1
            logger.exception("debounced sync for %s failed", name)
            for future in waiters:
                if not future.done():
                    future.set_exception(e)
            return
        for future in waiters:
            if not future.done():
                future.set_result(result)
