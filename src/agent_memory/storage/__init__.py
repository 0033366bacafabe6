"""Storage backends for the memory index."""

from __future__ import annotations

from .sqlite_index import SQLiteIndexStore, build_fts_query

__all__ = ["SQLiteIndexStore", "build_fts_query"]
