"""Delayed task scheduling for retry re-publishes.

``RetryScheduler`` replaces ad hoc timers with tracked asyncio tasks: each
``call_later`` sleeps for the requested delay and then awaits the callback.
The sleep function is injectable, so tests can record delays and skip the
wall clock entirely, and shutdown can drain or cancel whatever is pending.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from payment_queue.metrics import PENDING_RETRIES


logger = logging.getLogger(__name__)


class RetryScheduler:
    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def call_later(self, delay_s: float, fn: Callable[..., Awaitable[Any]], *args: Any) -> asyncio.Task:
        """Run ``await fn(*args)`` after ``delay_s`` seconds; returns the tracking task."""

        async def _run() -> Any:
            await self._sleep(delay_s)
            return await fn(*args)

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        PENDING_RETRIES.inc()
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        PENDING_RETRIES.dec()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled task failed: %r", exc)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for pending tasks; cancel whatever is still pending after ``timeout``.

        Returns the number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0
        pending = set(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
        return len(still_pending)

    def cancel_all(self) -> int:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return len(tasks)
