"""Episodic memory store."""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from ..memory_log import MemoryLog
from ..models import EmotionTag, EpisodicMemory, MemoryType, as_utc
from .base import JsonCollectionStore


class EpisodicMemoryStore(JsonCollectionStore[EpisodicMemory]):
    """Timestamped events; each add is mirrored into today's daily log."""

    memory_type = MemoryType.EPISODIC
    model = EpisodicMemory

    def __init__(self, *args, memory_log: MemoryLog | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._memory_log = memory_log

    async def _after_add(self, record: EpisodicMemory) -> None:
        if self._memory_log is not None:
            self._memory_log.append_daily(f"Event: {record.event}")

    async def query(
        self,
        scope_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[EpisodicMemory]:
        """Episodes matching the filters, newest ``timestamp`` first."""
        start_time = as_utc(start_time) if start_time is not None else None
        end_time = as_utc(end_time) if end_time is not None else None
        results = [
            m
            for m in self._load()
            if (scope_id is None or m.scope_id == scope_id)
            and (start_time is None or m.timestamp >= start_time)
            and (end_time is None or m.timestamp <= end_time)
            and self._matches_text(m, text)
        ]
        results.sort(key=lambda m: m.timestamp, reverse=True)
        return results[:limit] if limit else results

    async def add_emotional_tag(self, memory_id: str, tag: EmotionTag) -> bool:
        def _tag(record: EpisodicMemory) -> EpisodicMemory:
            return self._apply(record, {"emotional_tag": tag})

        return await self._mutate(memory_id, _tag) is not None

    async def link(self, first_id: str, second_id: str) -> bool:
        """Record a bidirectional relation between two episodes."""
        if first_id == second_id:
            return False
        async with self.lock:
            records = self._load()
            by_id = {r.id: i for i, r in enumerate(records)}
            if first_id not in by_id or second_id not in by_id:
                logger.debug(f"Cannot link missing episodes {first_id} / {second_id}")
                return False
            for source, target in ((first_id, second_id), (second_id, first_id)):
                index = by_id[source]
                record = records[index]
                if target not in record.related_memories:
                    records[index] = self._apply(
                        record, {"related_memories": [*record.related_memories, target]}
                    )
            self._save(records)
        return True

    def _render_record(self, record: EpisodicMemory) -> str:
        line = f"[{record.timestamp.isoformat()}] {record.event}"
        if record.context.why:
            line += f" ({record.context.why})"
        return line
