"""Cancellable fixed-interval background task."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger


class PeriodicTask:
    """Run ``func`` every ``interval_seconds`` until stopped.

    A tick that raises is logged and the loop keeps going. ``stop()`` wakes
    the sleeping loop immediately instead of waiting out the interval.
    """

    def __init__(
        self,
        interval_seconds: float,
        func: Callable[[], Awaitable[object]],
        name: str = "periodic_task",
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.name = name
        self._func = func
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self.tick_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"{self.name} is already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"{self.name} started (every {self.interval_seconds}s)")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} did not stop in time, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"{self.name} stopped after {self.tick_count} ticks")

    async def run_once(self) -> None:
        self.tick_count += 1
        try:
            await self._func()
        except Exception as e:
            self.error_count += 1
            logger.error(f"{self.name} tick {self.tick_count} failed: {e}")

    async def _loop(self) -> None:
        if self._run_immediately:
            await self.run_once()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.run_once()
