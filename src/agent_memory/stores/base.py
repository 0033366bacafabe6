"""
JSON-file collection store

Each store persists one collection file::

    {"version": 1, "memories": [ {...}, ... ]}

Every mutation runs load -> modify -> save while holding the per-path lock
from a shared ``PathLockRegistry``. Saves are atomic (temp file + replace)
and keep the previous file as ``.bak``.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, TypeVar

from loguru import logger
from pydantic import ValidationError

from ..exceptions import StoreIOError
from ..models import BaseMemory, MemoryType, utcnow
from .cache import CollectionCache

T = TypeVar("T", bound=BaseMemory)

STORE_FORMAT_VERSION = 1
IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at"})

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def text_matches(text: str, query: str | None) -> bool:
    """Free-text filter shared by the stores.

    Matches the whole query as a substring, or at least half of its words
    longer than two characters as whole words.
    """
    if not query or not query.strip():
        return True
    haystack = text.lower()
    needle = query.strip().lower()
    if needle in haystack:
        return True
    words = {w for w in _WORD_RE.findall(needle) if len(w) > 2}
    if not words:
        return False
    present = words & set(_WORD_RE.findall(haystack))
    return len(present) * 2 >= len(words)


class PathLockRegistry:
    """One ``asyncio.Lock`` per resolved file path."""

    def __init__(self):
        self._locks: dict[Path, asyncio.Lock] = {}

    def lock_for(self, path: str | Path) -> asyncio.Lock:
        key = Path(path).resolve()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


def _parse_collection(text: str) -> dict:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # hand-edited files often carry trailing commas
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", text))


class JsonCollectionStore(Generic[T]):
    """Persisted collection of one memory type."""

    memory_type: MemoryType
    model: type[T]

    def __init__(
        self,
        path: str | Path,
        locks: PathLockRegistry | None = None,
        cache: CollectionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.path = Path(path)
        self._locks = locks if locks is not None else PathLockRegistry()
        self._cache = cache
        self._clock = clock

    @property
    def backup_path(self) -> Path:
        return self.path.with_suffix(".json.bak")

    @property
    def lock(self) -> asyncio.Lock:
        return self._locks.lock_for(self.path)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _decode(self, data: Any) -> list[T]:
        items = data.get("memories", []) if isinstance(data, dict) else []
        records: list[T] = []
        for item in items:
            if not isinstance(item, dict) or item.get("type") != self.memory_type.value:
                continue
            try:
                records.append(self.model.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid {self.memory_type.value} record in {self.path}: {e}")
        return records

    def _read_file(self, path: Path) -> list[T]:
        with open(path, "r", encoding="utf-8") as f:
            return self._decode(_parse_collection(f.read()))

    def _load_from_disk(self) -> list[T]:
        """Load the collection; never raises.

        A corrupt file falls back to its ``.bak`` copy, then to an empty
        collection.
        """
        if not self.path.exists():
            return []
        try:
            return self._read_file(self.path)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable store file {self.path}: {e}")

        if self.backup_path.exists():
            try:
                records = self._read_file(self.backup_path)
                logger.info(f"Loaded {self.memory_type.value} store from backup: {self.backup_path}")
                return records
            except (OSError, ValueError) as e:
                logger.warning(f"Backup also unreadable {self.backup_path}: {e}")
        return []

    def _load(self) -> list[T]:
        if self._cache is not None:
            cached = self._cache.get(self.path)
            if cached is not None:
                return [r.model_copy(deep=True) for r in cached]
        records = self._load_from_disk()
        if self._cache is not None:
            self._cache.put(self.path, [r.model_copy(deep=True) for r in records])
        return records

    def _save(self, records: list[T]) -> None:
        """Atomically write the collection.

        Raises:
            StoreIOError: The write failed; the previous file is untouched.
        """
        temp_path = self.path.with_suffix(".json.tmp")
        data = {
            "version": STORE_FORMAT_VERSION,
            "memories": [r.model_dump(mode="json") for r in records],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            if self._cache is not None:
                self._cache.invalidate(self.path)
            raise StoreIOError(
                f"Failed to save {self.memory_type.value} store: {e}",
                path=str(self.path),
            ) from e
        finally:
            temp_path.unlink(missing_ok=True)

        if self._cache is not None:
            self._cache.put(self.path, [r.model_copy(deep=True) for r in records])
        logger.debug(f"Saved {len(records)} {self.memory_type.value} memories to {self.path}")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def _new_record(self, fields: dict[str, Any]) -> T:
        now = self._clock()
        fields = {k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS | {"updated_at"}}
        return self.model.model_validate(
            {**fields, "type": self.memory_type, "created_at": now, "updated_at": now}
        )

    async def add(self, **fields) -> str:
        """Create a record and return its id.

        Raises:
            StoreIOError: The collection could not be saved.
        """
        record = self._new_record(fields)
        async with self.lock:
            records = self._load()
            records.append(record)
            self._save(records)
        await self._after_add(record)
        return record.id

    async def add_many(self, items: Iterable[dict[str, Any]]) -> list[str]:
        """Create several records under one lock and one save."""
        new = [self._new_record(dict(item)) for item in items]
        if not new:
            return []
        async with self.lock:
            records = self._load()
            records.extend(new)
            self._save(records)
        for record in new:
            await self._after_add(record)
        return [r.id for r in new]

    async def _after_add(self, record: T) -> None:
        """Hook for best-effort side effects such as log mirroring."""

    async def get(self, memory_id: str) -> T | None:
        for record in self._load():
            if record.id == memory_id:
                return record
        return None

    async def all(self) -> list[T]:
        return self._load()

    def _apply(self, record: T, partial: dict[str, Any]) -> T:
        data = record.model_dump()
        for key, value in partial.items():
            if key in IMMUTABLE_FIELDS or key == "updated_at":
                continue
            data[key] = value
        data["updated_at"] = max(self._clock(), record.created_at)
        updated = self.model.model_validate(data)
        self._check_update(record, updated)
        return updated

    def _check_update(self, current: T, updated: T) -> None:
        """Raise to refuse an update; subclasses enforce domain rules."""

    async def update(self, memory_id: str, **partial) -> bool:
        """Apply ``partial`` to a record.

        ``id``, ``type`` and ``created_at`` are immutable and ignored;
        ``updated_at`` is bumped.

        Returns:
            False when no record has ``memory_id``.
        """
        return await self._mutate(memory_id, lambda r: self._apply(r, partial)) is not None

    async def _mutate(self, memory_id: str, fn: Callable[[T], T | None]) -> T | None:
        """Replace one record with ``fn(record)`` under the store lock.

        ``fn`` returning None leaves the collection unchanged.
        """
        async with self.lock:
            records = self._load()
            for i, record in enumerate(records):
                if record.id == memory_id:
                    updated = fn(record)
                    if updated is None:
                        return None
                    records[i] = updated
                    self._save(records)
                    return updated
        return None

    async def remove(self, memory_id: str) -> bool:
        async with self.lock:
            records = self._load()
            kept = [r for r in records if r.id != memory_id]
            if len(kept) == len(records):
                return False
            self._save(kept)
            return True

    @staticmethod
    def _recent_first(records: list[T], limit: int | None = None) -> list[T]:
        records = sorted(records, key=lambda r: r.updated_at, reverse=True)
        return records[:limit] if limit else records

    @staticmethod
    def _matches_text(record: BaseMemory, text: str | None) -> bool:
        return text_matches(record.primary_text(), text)

    def render_text(self, records: list[T]) -> str:
        """Searchable plain-text rendering of the collection."""
        lines = [f"# {self.memory_type.value.capitalize()} memories", ""]
        for record in records:
            lines.append(f"- {self._render_record(record)}")
        return "\n".join(lines) + "\n"

    def _render_record(self, record: T) -> str:
        return record.primary_text()
