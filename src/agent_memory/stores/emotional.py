"""Emotional memory store: emotion tags attached to other memories.

Entries whose target was removed are kept; nothing here prunes orphans.
"""

from __future__ import annotations

from ..models import EmotionalMemory, EmotionIntensity, EmotionKind, MemoryType
from .base import JsonCollectionStore


class EmotionalMemoryStore(JsonCollectionStore[EmotionalMemory]):
    memory_type = MemoryType.EMOTIONAL
    model = EmotionalMemory

    @staticmethod
    def _strongest_first(records: list[EmotionalMemory]) -> list[EmotionalMemory]:
        return sorted(
            records,
            key=lambda m: (m.emotion.intensity.rank, m.emotion.timestamp),
            reverse=True,
        )

    async def get_by_target(self, target_memory_id: str) -> list[EmotionalMemory]:
        return self._strongest_first(
            [m for m in self._load() if m.target_memory_id == target_memory_id]
        )

    async def get_by_emotion(self, kind: EmotionKind | str) -> list[EmotionalMemory]:
        kind = EmotionKind(kind)
        return self._strongest_first([m for m in self._load() if m.emotion.kind == kind])

    async def query(
        self,
        target_memory_id: str | None = None,
        emotion: EmotionKind | str | None = None,
        min_intensity: EmotionIntensity | str | None = None,
        scope_id: str | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[EmotionalMemory]:
        kind = EmotionKind(emotion) if emotion is not None else None
        floor = EmotionIntensity(min_intensity).rank if min_intensity is not None else 0
        results = [
            m
            for m in self._load()
            if (target_memory_id is None or m.target_memory_id == target_memory_id)
            and (kind is None or m.emotion.kind == kind)
            and m.emotion.intensity.rank >= floor
            and (scope_id is None or m.scope_id == scope_id)
            and self._matches_text(m, text)
        ]
        results = self._strongest_first(results)
        return results[:limit] if limit else results

    def _render_record(self, record: EmotionalMemory) -> str:
        line = (
            f"{record.emotion.kind.value} ({record.emotion.intensity.value}) about "
            f"{record.target_memory_type.value} {record.target_memory_id}"
        )
        return f"{line}: {record.context}" if record.context else line
