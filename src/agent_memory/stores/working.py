"""Working memory: scope-local scratch entries kept only in process memory."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger

from ..models import WorkingMemory, utcnow
from .base import IMMUTABLE_FIELDS, text_matches


class WorkingMemoryStore:
    """One working-memory entry per scope, with optional expiry.

    Not persisted; cleared when a scope ends or on an expiry sweep.
    """

    def __init__(
        self,
        default_ttl_seconds: float | None = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._by_id: dict[str, WorkingMemory] = {}
        self._by_scope: dict[str, str] = {}

    def _expired(self, memory: WorkingMemory, now: datetime) -> bool:
        return memory.expires_at is not None and memory.expires_at <= now

    def add(
        self,
        scope_id: str,
        content: str,
        context: dict[str, Any] | None = None,
        ttl_seconds: float | None = None,
    ) -> str:
        """Set the scope's working memory, replacing any previous entry."""
        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        memory = WorkingMemory(
            scope_id=scope_id,
            content=content,
            context=dict(context or {}),
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl else None,
        )
        previous = self._by_scope.get(scope_id)
        if previous is not None:
            self._by_id.pop(previous, None)
        self._by_id[memory.id] = memory
        self._by_scope[scope_id] = memory.id
        return memory.id

    def get(self, memory_id: str) -> WorkingMemory | None:
        memory = self._by_id.get(memory_id)
        if memory is None or self._expired(memory, self._clock()):
            return None
        return memory

    def get_scope(self, scope_id: str) -> WorkingMemory | None:
        memory_id = self._by_scope.get(scope_id)
        return self.get(memory_id) if memory_id else None

    def query(self, scope_id: str | None = None, text: str | None = None) -> list[WorkingMemory]:
        now = self._clock()
        results = [
            m
            for m in self._by_id.values()
            if not self._expired(m, now)
            and (scope_id is None or m.scope_id == scope_id)
            and text_matches(m.content, text)
        ]
        results.sort(key=lambda m: m.updated_at, reverse=True)
        return results

    def update(self, memory_id: str, **partial) -> bool:
        memory = self.get(memory_id)
        if memory is None:
            return False
        data = memory.model_dump()
        for key, value in partial.items():
            if key in IMMUTABLE_FIELDS or key in ("updated_at", "scope_id"):
                continue
            data[key] = value
        data["updated_at"] = max(self._clock(), memory.created_at)
        self._by_id[memory_id] = WorkingMemory.model_validate(data)
        return True

    def remove(self, memory_id: str) -> bool:
        memory = self._by_id.pop(memory_id, None)
        if memory is None:
            return False
        if self._by_scope.get(memory.scope_id) == memory_id:
            del self._by_scope[memory.scope_id]
        return True

    def clear_scope(self, scope_id: str) -> bool:
        memory_id = self._by_scope.pop(scope_id, None)
        if memory_id is None:
            return False
        self._by_id.pop(memory_id, None)
        return True

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [m.id for m in self._by_id.values() if self._expired(m, now)]
        for memory_id in expired:
            self.remove(memory_id)
        if expired:
            logger.debug(f"Cleared {len(expired)} expired working memories")
        return len(expired)

    def clear_all(self) -> int:
        count = len(self._by_id)
        self._by_id.clear()
        self._by_scope.clear()
        return count

    def __len__(self) -> int:
        return len(self._by_id)
