"""Procedural memory store: trigger -> action patterns with success tracking."""

from __future__ import annotations

from difflib import SequenceMatcher

from ..models import MemoryType, ProceduralMemory
from .base import JsonCollectionStore

FUZZY_MATCH_THRESHOLD = 0.75


def trigger_matches(trigger: str, text: str, threshold: float = FUZZY_MATCH_THRESHOLD) -> bool:
    """Case-insensitive substring match in either direction, else fuzzy ratio."""
    a = trigger.lower().strip()
    b = text.lower().strip()
    if not a or not b:
        return False
    if a in b or b in a:
        return True
    return SequenceMatcher(None, a, b).ratio() >= threshold


class ProceduralMemoryStore(JsonCollectionStore[ProceduralMemory]):
    memory_type = MemoryType.PROCEDURAL
    model = ProceduralMemory

    async def record_use(self, memory_id: str, success: bool) -> ProceduralMemory | None:
        """Count one use of a procedure.

        Returns:
            The updated memory, or None when ``memory_id`` is unknown.
        """

        def _count(record: ProceduralMemory) -> ProceduralMemory:
            field = "success_count" if success else "failure_count"
            return self._apply(
                record,
                {field: getattr(record, field) + 1, "last_used": self._clock()},
            )

        return await self._mutate(memory_id, _count)

    async def find_matching(self, trigger_text: str) -> list[ProceduralMemory]:
        """Procedures whose trigger matches ``trigger_text``, best success rate first."""
        results = [m for m in self._load() if trigger_matches(m.trigger, trigger_text)]
        results.sort(key=lambda m: (m.success_rate, m.updated_at), reverse=True)
        return results

    async def query(
        self,
        scope_id: str | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[ProceduralMemory]:
        results = [
            m
            for m in self._load()
            if (scope_id is None or m.scope_id == scope_id) and self._matches_text(m, text)
        ]
        return self._recent_first(results, limit)

    def _render_record(self, record: ProceduralMemory) -> str:
        return (
            f"When {record.trigger}: {record.action} "
            f"(pattern: {record.pattern}, success rate {record.success_rate:.0%})"
        )
