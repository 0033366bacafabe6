"""Sync engine: keeps the hybrid index current with the on-disk sources.

Sources
    ``memory``         MEMORY.md, memory/*.md daily logs, typed-store JSON
                       files (rendered to text) and configured extra paths
    ``conversations``  conversations/*.jsonl transcripts

A pass discovers every source file, re-indexes the ones whose content
changed and removes index entries whose file disappeared. One failing file
is logged and skipped; the rest of the pass continues.

Transcripts grow on every turn, so once indexed they are only re-indexed
after ``delta_bytes`` new bytes or ``delta_messages`` new lines. A zero
threshold disables that gate.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from loguru import logger

from .config import MemorySearchConfig
from .hybrid_index import HybridIndex
from .memory_log import DAILY_DIRNAME, LONG_TERM_FILENAME
from .scheduler import PeriodicTask
from .stores.base import JsonCollectionStore
from .transcripts import TRANSCRIPT_SUFFIX, count_messages, read_transcript, render_transcript
from .watcher import FileWatcher


@dataclass
class SyncReport:
    reason: str = "manual"
    indexed: int = 0
    skipped: int = 0
    removed: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0


@dataclass
class _SourceFile:
    path: Path
    source: str
    store: JsonCollectionStore | None = None


@dataclass
class _TranscriptMark:
    size: int
    messages: int | None


class SyncEngine:
    """Drives ``HybridIndex.upsert_file`` from the workspace files."""

    def __init__(
        self,
        index: HybridIndex,
        config: MemorySearchConfig,
        workspace_root: str | Path,
        conversations_dir: str | Path | None = None,
        stores: Iterable[JsonCollectionStore] = (),
    ):
        self.index = index
        self.config = config
        self.workspace_root = Path(workspace_root)
        self.conversations_dir = (
            Path(conversations_dir) if conversations_dir else self.workspace_root / "conversations"
        )
        self.stores = list(stores)

        self._task: asyncio.Task | None = None
        self._rerun = False
        self._force_next = False
        self._dirty = True
        self._background: set[asyncio.Task] = set()
        self._transcript_marks: dict[str, _TranscriptMark] = {}

        self._watcher: FileWatcher | None = None
        self._interval: PeriodicTask | None = None
        self.last_report: SyncReport | None = None
        self.pass_count = 0

    @property
    def is_syncing(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        self._dirty = True

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    def _memory_sources(self) -> list[_SourceFile]:
        found: list[_SourceFile] = []
        long_term = self.workspace_root / LONG_TERM_FILENAME
        if long_term.is_file():
            found.append(_SourceFile(long_term, "memory"))
        daily_dir = self.workspace_root / DAILY_DIRNAME
        if daily_dir.is_dir():
            found.extend(_SourceFile(p, "memory") for p in sorted(daily_dir.glob("*.md")))
        for store in self.stores:
            if store.path.is_file():
                found.append(_SourceFile(store.path, "memory", store))
        for raw in self.config.extra_paths:
            extra = Path(raw)
            if not extra.is_absolute():
                extra = self.workspace_root / extra
            if extra.is_dir():
                found.extend(_SourceFile(p, "memory") for p in sorted(extra.rglob("*.md")))
            elif extra.is_file() and extra.suffix == ".md":
                found.append(_SourceFile(extra, "memory"))
            else:
                logger.debug(f"Extra memory path not found: {extra}")
        return found

    def _conversation_sources(self) -> list[_SourceFile]:
        if not self.conversations_dir.is_dir():
            return []
        return [
            _SourceFile(p, "conversations")
            for p in sorted(self.conversations_dir.glob(f"*{TRANSCRIPT_SUFFIX}"))
        ]

    def discover(self) -> list[_SourceFile]:
        """Source files for every enabled source, de-duplicated by path."""
        found: list[_SourceFile] = []
        if "memory" in self.config.sources:
            found.extend(self._memory_sources())
        if "conversations" in self.config.sources:
            found.extend(self._conversation_sources())
        seen: set[Path] = set()
        unique: list[_SourceFile] = []
        for item in found:
            resolved = item.path.resolve()
            if resolved not in seen:
                seen.add(resolved)
                unique.append(item)
        return unique

    # ------------------------------------------------------------------
    # transcript gating
    # ------------------------------------------------------------------

    def transcript_due(self, key: str, size: int, messages: int, indexed_size: int | None) -> bool:
        """Whether a transcript grew enough since it was last indexed."""
        if indexed_size is None:
            return True
        deltas = self.config.sync.conversations
        if deltas.delta_bytes == 0 and deltas.delta_messages == 0:
            return True
        mark = self._transcript_marks.get(key)
        if mark is None:
            mark = self._transcript_marks[key] = _TranscriptMark(indexed_size, None)
        if size < mark.size:
            # rewritten or truncated
            return True
        if deltas.delta_bytes and size - mark.size >= deltas.delta_bytes:
            return True
        if deltas.delta_messages and mark.messages is not None:
            return messages - mark.messages >= deltas.delta_messages
        return False

    # ------------------------------------------------------------------
    # sync passes
    # ------------------------------------------------------------------

    async def sync(self, reason: str = "manual", force: bool = False) -> SyncReport:
        """Run a sync pass, or join the one in progress.

        A request that arrives while a pass is running schedules exactly one
        follow-up pass; every caller waiting on it gets the final report.
        """
        self._force_next = self._force_next or force
        if self.is_syncing:
            self._rerun = True
            return await asyncio.shield(self._task)
        self._task = asyncio.create_task(self._run_passes(reason), name="memory_sync")
        return await asyncio.shield(self._task)

    async def _run_passes(self, reason: str) -> SyncReport:
        while True:
            self._rerun = False
            force, self._force_next = self._force_next, False
            report = await self._pass(reason, force)
            if not self._rerun:
                return report
            reason = "coalesced"

    async def _pass(self, reason: str, force: bool) -> SyncReport:
        started = time.perf_counter()
        report = SyncReport(reason=reason)
        self._dirty = False
        self.pass_count += 1

        sources = self.discover()
        indexed = await self.index.indexed_paths()
        seen_keys: set[str] = set()

        for item in sources:
            key = self.index.relative_path(item.path)
            seen_keys.add(key)
            try:
                if await self._sync_file(item, key, indexed.get(key), force):
                    report.indexed += 1
                else:
                    report.skipped += 1
            except Exception as e:
                report.failed += 1
                report.errors[key] = str(e)
                logger.warning(f"Sync failed for {key}: {e}")

        for key in indexed.keys() - seen_keys:
            try:
                if await self.index.remove_file(key):
                    report.removed += 1
                self._transcript_marks.pop(key, None)
            except Exception as e:
                report.failed += 1
                report.errors[key] = str(e)
                logger.warning(f"Failed to drop deleted file {key} from index: {e}")

        report.duration_seconds = time.perf_counter() - started
        self.last_report = report
        logger.info(
            f"Memory sync ({reason}) finished: indexed={report.indexed}, "
            f"skipped={report.skipped}, removed={report.removed}, "
            f"failed={report.failed} in {report.duration_seconds:.2f}s"
        )
        return report

    async def _sync_file(self, item: _SourceFile, key: str, record, force: bool) -> bool:
        if item.source == "conversations":
            return await self._sync_transcript(item, key, record, force)
        text = None
        if item.store is not None:
            text = item.store.render_text(await item.store.all())
        return await self.index.upsert_file(item.path, source=item.source, text=text, force=force)

    async def _sync_transcript(self, item: _SourceFile, key: str, record, force: bool) -> bool:
        size = item.path.stat().st_size
        messages = count_messages(item.path)
        indexed_size = record.size if record is not None else None
        if not force and not self.transcript_due(key, size, messages, indexed_size):
            logger.debug(f"Transcript below delta threshold: {key}")
            return False
        text = render_transcript(read_transcript(item.path))
        changed = await self.index.upsert_file(
            item.path, source="conversations", text=text, force=force
        )
        self._transcript_marks[key] = _TranscriptMark(size, messages)
        return changed

    # ------------------------------------------------------------------
    # triggers
    # ------------------------------------------------------------------

    def _spawn(self, reason: str) -> asyncio.Task:
        task = asyncio.create_task(self.sync(reason), name=f"memory_sync_{reason}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background memory sync failed: {error}")

    async def on_conversation_start(self) -> SyncReport | None:
        if not self.config.sync.on_conversation_start:
            return None
        return await self.sync("conversation_start")

    def on_search(self) -> asyncio.Task | None:
        """Fire-and-forget sync before a search when sources changed."""
        if not self.config.sync.on_search or not self._dirty or self.is_syncing:
            return None
        return self._spawn("search")

    async def handle_changes(self, paths: set[str]) -> None:
        logger.debug(f"Watcher reported {len(paths)} changed paths")
        self.mark_dirty()
        await self.sync("watch")

    def _watch_roots(self) -> list[Path]:
        roots = [self.workspace_root]
        for raw in self.config.extra_paths:
            extra = Path(raw)
            if extra.is_absolute() and not extra.resolve().is_relative_to(
                self.workspace_root.resolve()
            ):
                roots.append(extra)
        return roots

    async def start(self) -> None:
        """Start the file watcher and interval task as configured."""
        sync_config = self.config.sync
        if sync_config.watch and self._watcher is None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
            self._watcher = FileWatcher(
                self._watch_roots(),
                on_changes=self.handle_changes,
                debounce_ms=sync_config.watch_debounce_ms,
            )
            await self._watcher.start()
        if sync_config.interval_minutes > 0 and self._interval is None:
            self._interval = PeriodicTask(
                sync_config.interval_minutes * 60,
                lambda: self.sync("interval"),
                name="memory_sync_interval",
            )
            self._interval.start()

    async def stop(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._interval is not None:
            await self._interval.stop()
            self._interval = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._task is not None and not self._task.done():
            try:
                await self._task
            except Exception as e:
                logger.warning(f"Sync pass failed during shutdown: {e}")
