"""Debounced file watching for the memory workspace.

watchdog delivers events on its observer thread; the handler forwards them
into the asyncio loop with ``call_soon_threadsafe`` and a ``Debouncer``
collapses a burst of writes into a single callback.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from loguru import logger
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

WATCHED_SUFFIXES = (".md", ".json", ".jsonl")

ChangeCallback = Callable[[set[str]], Awaitable[None]]


class Debouncer:
    """Collapse bursts of change events into one callback.

    Each ``push_event`` restarts the quiet-period timer. When ``debounce_ms``
    passes without a new event the accumulated paths are handed to
    ``on_flush`` in one call. New events never cancel a flush that is
    already running; the next flush waits for it to finish.
    """

    def __init__(self, debounce_ms: int, on_flush: ChangeCallback):
        self.debounce_ms = debounce_ms
        self._on_flush = on_flush
        self._pending: set[str] = set()
        self._timer: asyncio.Task | None = None
        self._flushing: asyncio.Task | None = None
        self.flush_count = 0

    def push_event(self, path: str) -> None:
        self._pending.add(path)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(
            self._wait_then_flush(), name="memory_watch_debounce"
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _wait_then_flush(self) -> None:
        await asyncio.sleep(self.debounce_ms / 1000)
        # the callback runs outside the cancellable timer task
        self._flushing = asyncio.get_running_loop().create_task(
            self._flush_after(self._flushing), name="memory_watch_flush"
        )

    async def _flush_after(self, previous: asyncio.Task | None) -> None:
        if previous is not None and not previous.done():
            await previous
        await self.flush()

    async def flush(self) -> None:
        if not self._pending:
            return
        paths, self._pending = self._pending, set()
        self.flush_count += 1
        try:
            await self._on_flush(paths)
        except Exception as e:
            logger.error(f"Watch callback failed for {len(paths)} paths: {e}")

    async def stop(self, flush: bool = True) -> None:
        """Cancel the pending timer, optionally flushing what is queued.

        A flush that is already running is allowed to finish.
        """
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
        flushing, self._flushing = self._flushing, None
        if flushing is not None and not flushing.done():
            await flushing
        if flush:
            await self.flush()
        else:
            self._pending.clear()


class _MemoryEventHandler(FileSystemEventHandler):
    """Forward relevant file events to the debouncer on the loop thread."""

    def __init__(
        self,
        debouncer: Debouncer,
        loop: asyncio.AbstractEventLoop,
        suffixes: Iterable[str] = WATCHED_SUFFIXES,
    ):
        super().__init__()
        self._debouncer = debouncer
        self._loop = loop
        self._suffixes = tuple(suffixes)

    def _relevant(self, path: str) -> bool:
        return path.endswith(self._suffixes)

    def _push(self, path: str) -> None:
        if self._relevant(path):
            self._loop.call_soon_threadsafe(self._debouncer.push_event, path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if isinstance(
            event, (DirCreatedEvent, DirModifiedEvent, DirDeletedEvent, DirMovedEvent)
        ):
            return
        if event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        self._push(str(event.src_path))
        dest = getattr(event, "dest_path", "")
        if dest:
            self._push(str(dest))


class FileWatcher:
    """Watch workspace paths and report debounced change sets.

    Example:
        watcher = FileWatcher([root], on_changes=engine.handle_changes)
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        paths: Iterable[str | Path],
        on_changes: ChangeCallback,
        debounce_ms: int = 1500,
        suffixes: Iterable[str] = WATCHED_SUFFIXES,
    ):
        self.paths = [Path(p) for p in paths]
        self.debouncer = Debouncer(debounce_ms, on_changes)
        self._suffixes = tuple(suffixes)
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    async def start(self) -> None:
        if self._observer is not None:
            logger.warning("FileWatcher already running")
            return
        handler = _MemoryEventHandler(
            self.debouncer, asyncio.get_running_loop(), self._suffixes
        )
        observer = Observer()
        scheduled = 0
        for path in self.paths:
            if path.is_dir():
                observer.schedule(handler, str(path), recursive=True)
                scheduled += 1
            elif path.is_file():
                observer.schedule(handler, str(path.parent), recursive=False)
                scheduled += 1
        if not scheduled:
            logger.warning("FileWatcher has no existing paths to watch")
            return
        observer.start()
        self._observer = observer
        logger.info(f"FileWatcher started on {scheduled} paths")

    async def stop(self) -> None:
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)
        await self.debouncer.stop(flush=False)
        logger.info("FileWatcher stopped")
