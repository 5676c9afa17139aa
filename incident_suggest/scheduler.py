"""
Periodic background work (cache cleanup, index resync).

PeriodicTask wraps one job in an asyncio task with an explicit lifecycle.
The sleep function is injectable so tests can drive time deterministically.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

SleepFunc = Callable[[float], Awaitable[Any]]


class PeriodicTask:
    """
    Run a job every `interval_seconds` until stopped.

    A failing run is logged and counted; the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Any],
        sleep: SleepFunc = asyncio.sleep,
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.run_immediately = run_immediately
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.runs = 0
        self.failures = 0
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.is_running:
            logger.warning(f"Periodic task '{self.name}' already running")
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Periodic task '{self.name}' started (every {self.interval_seconds:.0f}s)")

    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        if self._task is None:
            return
        self._stopping = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info(f"Periodic task '{self.name}' stopped after {self.runs} runs")

    def cancel(self) -> None:
        """Request cancellation without waiting (for synchronous shutdown paths)."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()

    async def run_once(self) -> None:
        try:
            result = self.job()
            if inspect.isawaitable(result):
                await result
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"Periodic task '{self.name}' failed")

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while not self._stopping:
            await self._sleep(self.interval_seconds)
            if self._stopping:
                break
            await self.run_once()
