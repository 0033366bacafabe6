"""Semantic memory store."""

from __future__ import annotations

from ..memory_log import MemoryLog
from ..models import MemoryType, SemanticMemory
from .base import JsonCollectionStore


class SemanticMemoryStore(JsonCollectionStore[SemanticMemory]):
    """Durable facts; each add is mirrored into the long-term file."""

    memory_type = MemoryType.SEMANTIC
    model = SemanticMemory

    def __init__(self, *args, memory_log: MemoryLog | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._memory_log = memory_log

    async def _after_add(self, record: SemanticMemory) -> None:
        if self._memory_log is not None:
            self._memory_log.append_long_term(self._render_record(record))

    async def query(
        self,
        scope_id: str | None = None,
        category: str | None = None,
        text: str | None = None,
        min_confidence: float | None = None,
        limit: int | None = None,
    ) -> list[SemanticMemory]:
        results = [
            m
            for m in self._load()
            if (scope_id is None or m.scope_id == scope_id)
            and (category is None or m.category == category)
            and (min_confidence is None or m.confidence >= min_confidence)
            and self._matches_text(m, text)
        ]
        return self._recent_first(results, limit)

    def _render_record(self, record: SemanticMemory) -> str:
        prefix = f"[{record.category}] " if record.category else ""
        return f"{prefix}{record.fact}"
