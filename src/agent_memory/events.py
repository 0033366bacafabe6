"""Bounded event channel between the agent loop and the memory subsystem.

The agent loop publishes events without waiting; a background worker feeds
them to the manager (extraction), the sleep pipeline (context pressure) and
working memory (scope end). Sleep runs as its own task so a long
consolidation does not hold up extraction of later messages. A full queue
drops the event with a warning rather than block the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Union

from loguru import logger

from .models import utcnow

if TYPE_CHECKING:
    from .consolidation import SleepPipeline
    from .manager import UnifiedMemoryManager


@dataclass(frozen=True)
class NewMessageEvent:
    message: str
    scope_id: str | None = None
    recent_context: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ContextPressureEvent:
    scope_id: str
    tokens_used: int
    context_window: int
    message_count: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ScopeEndedEvent:
    scope_id: str
    created_at: datetime = field(default_factory=utcnow)


MemoryEvent = Union[NewMessageEvent, ContextPressureEvent, ScopeEndedEvent]


class MemoryEventChannel:
    """Queue plus worker dispatching memory events.

    Context-pressure events are handed to tracked sleep tasks; every other
    event is handled in order by the worker itself.
    """

    def __init__(
        self,
        manager: "UnifiedMemoryManager",
        sleep_pipeline: "SleepPipeline | None" = None,
        max_queue_size: int | None = None,
    ):
        self.manager = manager
        self.sleep_pipeline = sleep_pipeline
        size = max_queue_size or manager.config.events.max_queue_size
        self._queue: asyncio.Queue[MemoryEvent] = asyncio.Queue(maxsize=size)
        self._worker: asyncio.Task | None = None
        self._sleep_tasks: set[asyncio.Task] = set()
        self._running = False
        self._stats = {"published": 0, "dropped": 0, "processed": 0, "failed": 0}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> dict[str, int]:
        return {
            **self._stats,
            "pending": self._queue.qsize(),
            "sleeping": len(self._sleep_tasks),
        }

    def publish(self, event: MemoryEvent) -> bool:
        """Enqueue ``event`` without blocking.

        Returns:
            False when the queue was full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            logger.warning(f"Memory event queue full, dropping {type(event).__name__}")
            return False
        self._stats["published"] += 1
        return True

    def start(self) -> None:
        if self._running:
            logger.warning("MemoryEventChannel is already running")
            return
        self._running = True
        self._worker = asyncio.create_task(self._run(), name="memory_event_worker")
        logger.info(f"MemoryEventChannel started (max_queue_size={self._queue.maxsize})")

    async def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop the worker, by default after processing queued events."""
        if not self._running:
            return
        self._running = False
        worker, self._worker = self._worker, None
        if drain:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"MemoryEventChannel drain timed out with {self.pending} events left")
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        sleep_tasks = list(self._sleep_tasks)
        for task in sleep_tasks:
            task.cancel()
        if sleep_tasks:
            await asyncio.gather(*sleep_tasks, return_exceptions=True)
        if not drain:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
        logger.info(f"MemoryEventChannel stopped ({self._stats['processed']} processed)")

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            if isinstance(event, ContextPressureEvent) and self.sleep_pipeline is not None:
                task = asyncio.create_task(
                    self._handle(event), name=f"memory_sleep_{event.scope_id}"
                )
                self._sleep_tasks.add(task)
                task.add_done_callback(self._sleep_tasks.discard)
                continue
            await self._handle(event)

    async def _handle(self, event: MemoryEvent) -> None:
        try:
            await self.dispatch(event)
            self._stats["processed"] += 1
        except Exception as e:
            self._stats["failed"] += 1
            logger.error(f"Memory event {type(event).__name__} failed: {e}")
        finally:
            self._queue.task_done()

    async def dispatch(self, event: MemoryEvent) -> None:
        if isinstance(event, NewMessageEvent):
            await self.manager.on_new_message(
                event.message, scope_id=event.scope_id, recent_context=event.recent_context
            )
        elif isinstance(event, ContextPressureEvent):
            if self.sleep_pipeline is None:
                logger.debug("Context pressure event ignored: no sleep pipeline")
                return
            await self.sleep_pipeline.maybe_sleep(
                event.scope_id,
                event.tokens_used,
                event.context_window,
                message_count=event.message_count,
            )
        elif isinstance(event, ScopeEndedEvent):
            self.manager.end_scope(event.scope_id)
        else:
            raise TypeError(f"Unknown memory event: {event!r}")
