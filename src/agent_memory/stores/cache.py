"""
Typed-store read cache

Each cached collection is a ``VersionedResource`` recording the file's
``mtime_ns`` and size at load time. A cached value is served only while it is
younger than the TTL and the file on disk still has the same version.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable


@dataclass(frozen=True)
class FileVersion:
    mtime_ns: int
    size: int

    @classmethod
    def of(cls, path: Path) -> "FileVersion | None":
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return cls(mtime_ns=st.st_mtime_ns, size=st.st_size)


@dataclass(frozen=True)
class VersionedResource:
    path: Path
    version: FileVersion | None  # None: file did not exist when loaded
    value: Any
    loaded_at: float


def is_stale(
    resource: VersionedResource,
    current: FileVersion | None,
    now: float,
    ttl_seconds: float,
) -> bool:
    """Whether a cached resource must be reloaded.

    Stale when older than ``ttl_seconds`` or when the on-disk version
    (existence, mtime, size) differs from the one it was loaded from.
    """
    if now - resource.loaded_at > ttl_seconds:
        return True
    return resource.version != current


class CollectionCache:
    """
    TTL cache of parsed store files, keyed by resolved path.

    Owned by one manager instance; ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Path, VersionedResource] = {}
        self._lock = Lock()
        self._stats = {"hits": 0, "misses": 0, "stale": 0}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, path: Path) -> Any | None:
        key = Path(path).resolve()
        current = FileVersion.of(key)
        with self._lock:
            resource = self._entries.get(key)
            if resource is None:
                self._stats["misses"] += 1
                return None
            if is_stale(resource, current, self._clock(), self._ttl_seconds):
                del self._entries[key]
                self._stats["stale"] += 1
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            return resource.value

    def put(self, path: Path, value: Any) -> VersionedResource:
        key = Path(path).resolve()
        resource = VersionedResource(
            path=key,
            version=FileVersion.of(key),
            value=value,
            loaded_at=self._clock(),
        )
        with self._lock:
            self._entries[key] = resource
        return resource

    def invalidate(self, path: Path) -> bool:
        with self._lock:
            return self._entries.pop(Path(path).resolve(), None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {**self._stats, "size": len(self._entries), "ttl_seconds": self._ttl_seconds}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
