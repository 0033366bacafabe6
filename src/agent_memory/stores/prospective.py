"""Prospective memory store: future intentions with a one-way lifecycle.

Status only moves forward: ``pending -> triggered -> completed``.
"""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from ..exceptions import InvalidTransitionError
from ..models import MemoryType, ProspectiveMemory, ProspectiveStatus, as_utc
from .base import JsonCollectionStore

_NEXT_STATUS = {
    ProspectiveStatus.PENDING: ProspectiveStatus.TRIGGERED,
    ProspectiveStatus.TRIGGERED: ProspectiveStatus.COMPLETED,
}


class ProspectiveMemoryStore(JsonCollectionStore[ProspectiveMemory]):
    memory_type = MemoryType.PROSPECTIVE
    model = ProspectiveMemory

    def _check_update(self, current: ProspectiveMemory, updated: ProspectiveMemory) -> None:
        if updated.status.rank < current.status.rank:
            raise InvalidTransitionError(current.id, current.status.value, updated.status.value)

    async def _transition(self, memory_id: str, expected: ProspectiveStatus) -> bool:
        target = _NEXT_STATUS[expected]
        refused: list[ProspectiveStatus] = []

        def _advance(record: ProspectiveMemory) -> ProspectiveMemory | None:
            if record.status != expected:
                refused.append(record.status)
                return None
            return self._apply(record, {"status": target})

        if await self._mutate(memory_id, _advance) is not None:
            return True
        if refused:
            logger.debug(
                f"Refused {memory_id}: {refused[0].value} -> {target.value}"
            )
        return False

    async def trigger(self, memory_id: str) -> bool:
        """pending -> triggered. False for unknown ids and any other status."""
        return await self._transition(memory_id, ProspectiveStatus.PENDING)

    async def complete(self, memory_id: str) -> bool:
        """triggered -> completed. False for unknown ids and any other status."""
        return await self._transition(memory_id, ProspectiveStatus.TRIGGERED)

    async def get_due(self, now: datetime | None = None) -> list[ProspectiveMemory]:
        """Pending intentions whose ``trigger_time`` has passed.

        Ordered by trigger time, then priority (highest first).
        """
        now = as_utc(now or self._clock())
        due = [
            m
            for m in self._load()
            if m.status == ProspectiveStatus.PENDING
            and m.trigger_time is not None
            and m.trigger_time <= now
        ]
        due.sort(key=lambda m: (m.trigger_time, -m.priority))
        return due

    async def get_by_context(self, context: str) -> list[ProspectiveMemory]:
        """Pending intentions whose trigger context overlaps ``context``."""
        if not context:
            return []
        ctx = context.lower()
        results = [
            m
            for m in self._load()
            if m.status == ProspectiveStatus.PENDING
            and m.trigger_context
            and (m.trigger_context.lower() in ctx or ctx in m.trigger_context.lower())
        ]
        results.sort(key=lambda m: m.priority, reverse=True)
        return results

    async def query(
        self,
        status: ProspectiveStatus | str | None = None,
        scope_id: str | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[ProspectiveMemory]:
        """Filter by status/scope; highest priority first, then newest."""
        if status is not None:
            status = ProspectiveStatus(status)
        results = [
            m
            for m in self._load()
            if (status is None or m.status == status)
            and (scope_id is None or m.scope_id == scope_id)
            and self._matches_text(m, text)
        ]
        results.sort(key=lambda m: (m.priority, m.created_at), reverse=True)
        return results[:limit] if limit else results

    def _render_record(self, record: ProspectiveMemory) -> str:
        when = f" at {record.trigger_time.isoformat()}" if record.trigger_time else ""
        ctx = f" when {record.trigger_context}" if record.trigger_context else ""
        return f"[{record.status.value}] {record.intention}{when}{ctx}"
