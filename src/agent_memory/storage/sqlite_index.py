"""SQLite backend for the hybrid search index.

Holds four structures in one database file:

- ``files``: one row per indexed source file (hash, mtime, size)
- ``chunks``: chunk text and its hash, offsets and the serialized embedding
- ``chunks_fts``: FTS5 index over chunk text, kept in sync by triggers
- ``embedding_cache``: persistent second-level embedding cache

Uses WAL mode so readers proceed while the single writer holds the lock.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
from loguru import logger

from ..embedding import deserialize_embedding, serialize_embedding
from ..exceptions import IndexInitError
from ..models import Chunk, FileRecord

_FTS_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def build_fts_query(text: str) -> str | None:
    """Turn free text into an FTS5 OR-query of quoted words.

    Returns None when the text contains no searchable words.
    """
    words = _FTS_WORD_RE.findall(text.lower())
    if not words:
        return None
    seen: list[str] = []
    for word in words:
        if word not in seen:
            seen.append(word)
    return " OR ".join(f'"{w}"' for w in seen)


class SQLiteIndexStore:
    """Async SQLite storage for files, chunks and cached embeddings.

    All writes are serialized through one ``asyncio.Lock``; queries do not
    take the lock and may miss a write that is in progress.
    """

    def __init__(self, db_path: str | Path, embedding_cache_max_entries: int | None = None):
        """Initialize index store.

        Args:
            db_path: Path to SQLite database file
            embedding_cache_max_entries: Row bound for the persistent
                embedding cache; None keeps every row
        """
        self.db_path = str(db_path)
        self.embedding_cache_max_entries = embedding_cache_max_entries
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self.fts_available = False

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create tables if they don't exist.

        Raises:
            IndexInitError: The database could not be opened or migrated.
        """
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._create_tables()
            await self._db.commit()
        except Exception as e:
            if self._db is not None:
                await self._db.close()
                self._db = None
            raise IndexInitError(f"Failed to open index database: {e}", self.db_path) from e
        logger.info(f"Index database ready: {self.db_path} (fts={self.fts_available})")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS files (
                path TEXT PRIMARY KEY,
                source TEXT NOT NULL DEFAULT 'memory',
                hash TEXT NOT NULL,
                mtime REAL NOT NULL,
                size INTEGER NOT NULL DEFAULT 0,
                last_indexed_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                source TEXT NOT NULL DEFAULT 'memory',
                ordinal INTEGER NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                offset_start INTEGER NOT NULL,
                offset_end INTEGER NOT NULL,
                token_count INTEGER NOT NULL,
                hash TEXT NOT NULL,
                model TEXT,
                text TEXT NOT NULL,
                embedding BLOB,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)"
        )

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS embedding_cache (
                key TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                embedding BLOB NOT NULL,
                dims INTEGER NOT NULL,
                last_used_at TEXT NOT NULL
            )
        """)

        try:
            await self._create_fts()
            self.fts_available = True
        except aiosqlite.OperationalError as e:
            # SQLite built without FTS5
            logger.warning(f"FTS5 unavailable, text search disabled: {e}")
            self.fts_available = False

    async def _create_fts(self) -> None:
        await self._db.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts
            USING fts5(text, content=chunks, content_rowid=rowid)
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS chunks_ai AFTER INSERT ON chunks BEGIN
                INSERT INTO chunks_fts(rowid, text) VALUES (new.rowid, new.text);
            END
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS chunks_ad AFTER DELETE ON chunks BEGIN
                INSERT INTO chunks_fts(chunks_fts, rowid, text)
                VALUES('delete', old.rowid, old.text);
            END
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS chunks_au AFTER UPDATE ON chunks BEGIN
                INSERT INTO chunks_fts(chunks_fts, rowid, text)
                VALUES('delete', old.rowid, old.text);
                INSERT INTO chunks_fts(rowid, text) VALUES (new.rowid, new.text);
            END
        """)

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Index database connection closed")

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    # ------------------------------------------------------------------
    # files
    # ------------------------------------------------------------------

    async def get_file(self, path: str) -> FileRecord | None:
        db = self._require_db()
        async with db.execute(
            "SELECT path, source, hash, mtime, size, last_indexed_at FROM files WHERE path = ?",
            (path,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return FileRecord(
            path=row[0],
            source=row[1],
            content_hash=row[2],
            mtime=row[3],
            size=row[4],
            last_indexed_at=datetime.fromisoformat(row[5]),
        )

    async def list_files(self, source: str | None = None) -> list[FileRecord]:
        db = self._require_db()
        sql = "SELECT path, source, hash, mtime, size, last_indexed_at FROM files"
        params: tuple = ()
        if source:
            sql += " WHERE source = ?"
            params = (source,)
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [
            FileRecord(
                path=r[0],
                source=r[1],
                content_hash=r[2],
                mtime=r[3],
                size=r[4],
                last_indexed_at=datetime.fromisoformat(r[5]),
            )
            for r in rows
        ]

    async def replace_file(
        self,
        record: FileRecord,
        chunks: list[Chunk],
        model: str | None,
    ) -> None:
        """Replace every chunk of ``record.path`` and update its file row.

        Runs as one transaction under the writer lock.
        """
        db = self._require_db()
        now = _utcnow_iso()
        async with self._write_lock:
            try:
                await db.execute("DELETE FROM chunks WHERE path = ?", (record.path,))
                await db.executemany(
                    """
                    INSERT INTO chunks (
                        id, path, source, ordinal, start_line, end_line,
                        offset_start, offset_end, token_count, hash, model, text,
                        embedding, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            c.id or f"{record.path}#{c.ordinal}",
                            record.path,
                            record.source,
                            c.ordinal,
                            c.start_line,
                            c.end_line,
                            c.offset_start,
                            c.offset_end,
                            c.token_count,
                            hashlib.sha256(c.text.encode("utf-8")).hexdigest(),
                            model,
                            c.text,
                            serialize_embedding(c.embedding) if c.embedding else None,
                            now,
                        )
                        for c in chunks
                    ],
                )
                await db.execute(
                    """
                    INSERT INTO files (path, source, hash, mtime, size, last_indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        source = excluded.source,
                        hash = excluded.hash,
                        mtime = excluded.mtime,
                        size = excluded.size,
                        last_indexed_at = excluded.last_indexed_at
                    """,
                    (
                        record.path,
                        record.source,
                        record.content_hash,
                        record.mtime,
                        record.size,
                        record.last_indexed_at.isoformat(),
                    ),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def delete_file(self, path: str) -> bool:
        db = self._require_db()
        async with self._write_lock:
            await db.execute("DELETE FROM chunks WHERE path = ?", (path,))
            cursor = await db.execute("DELETE FROM files WHERE path = ?", (path,))
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # chunks
    # ------------------------------------------------------------------

    async def count_chunks(self) -> int:
        db = self._require_db()
        async with db.execute("SELECT COUNT(*) FROM chunks") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def count_files(self) -> int:
        db = self._require_db()
        async with db.execute("SELECT COUNT(*) FROM files") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_chunks_with_embeddings(
        self,
        model: str | None = None,
        sources: list[str] | None = None,
    ) -> list[dict]:
        """All chunks that carry an embedding, for vector search."""
        db = self._require_db()
        sql = """
            SELECT c.id, c.path, c.source, c.ordinal, c.start_line, c.end_line,
                   c.offset_start, c.offset_end, c.token_count, c.text,
                   c.embedding, COALESCE(f.mtime, 0)
            FROM chunks c LEFT JOIN files f ON f.path = c.path
            WHERE c.embedding IS NOT NULL
        """
        params: list = []
        if model:
            sql += " AND c.model = ?"
            params.append(model)
        if sources:
            sql += f" AND c.source IN ({','.join('?' for _ in sources)})"
            params.extend(sources)
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_dict(r, embedding=deserialize_embedding(r[10])) for r in rows]

    async def search_fts(
        self,
        query: str,
        limit: int = 20,
        sources: list[str] | None = None,
    ) -> list[dict]:
        """Full-text search over chunk text.

        Args:
            query: Free text; converted to an FTS5 query of quoted words
            limit: Maximum results
            sources: Optional source filter

        Returns:
            Chunk dicts with ``fts_rank`` (bm25, lower is better)
        """
        db = self._require_db()
        if not self.fts_available:
            return []
        fts_query = build_fts_query(query)
        if fts_query is None:
            return []
        sql = """
            SELECT c.id, c.path, c.source, c.ordinal, c.start_line, c.end_line,
                   c.offset_start, c.offset_end, c.token_count, c.text,
                   bm25(chunks_fts), COALESCE(f.mtime, 0)
            FROM chunks_fts
            JOIN chunks c ON c.rowid = chunks_fts.rowid
            LEFT JOIN files f ON f.path = c.path
            WHERE chunks_fts MATCH ?
        """
        params: list = [fts_query]
        if sources:
            sql += f" AND c.source IN ({','.join('?' for _ in sources)})"
            params.extend(sources)
        sql += " ORDER BY bm25(chunks_fts) LIMIT ?"
        params.append(limit)
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_dict(r, fts_rank=r[10]) for r in rows]

    async def search_substring(
        self,
        query: str,
        limit: int = 20,
        sources: list[str] | None = None,
    ) -> list[dict]:
        """LIKE-based fallback when neither vectors nor FTS are usable."""
        db = self._require_db()
        words = [w for w in _FTS_WORD_RE.findall(query.lower()) if w]
        if not words:
            return []
        clauses = " OR ".join("LOWER(c.text) LIKE ?" for _ in words)
        sql = f"""
            SELECT c.id, c.path, c.source, c.ordinal, c.start_line, c.end_line,
                   c.offset_start, c.offset_end, c.token_count, c.text,
                   NULL, COALESCE(f.mtime, 0)
            FROM chunks c LEFT JOIN files f ON f.path = c.path
            WHERE ({clauses})
        """
        params: list = [f"%{w}%" for w in words]
        if sources:
            sql += f" AND c.source IN ({','.join('?' for _ in sources)})"
            params.extend(sources)
        sql += " LIMIT ?"
        params.append(limit)
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        results = []
        for r in rows:
            text = r[9].lower()
            hits = sum(1 for w in words if w in text)
            results.append(self._row_to_dict(r, match_ratio=hits / len(words)))
        return results

    @staticmethod
    def _row_to_dict(row, **extra) -> dict:
        return {
            "id": row[0],
            "path": row[1],
            "source": row[2],
            "ordinal": row[3],
            "start_line": row[4],
            "end_line": row[5],
            "offset_start": row[6],
            "offset_end": row[7],
            "token_count": row[8],
            "text": row[9],
            "mtime": row[11],
            **extra,
        }

    # ------------------------------------------------------------------
    # embedding cache
    # ------------------------------------------------------------------

    async def get_cached_embedding(self, key: str) -> list[float] | None:
        """Cached vector for ``key``; a hit refreshes its ``last_used_at``."""
        db = self._require_db()
        async with db.execute(
            "SELECT embedding FROM embedding_cache WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        async with self._write_lock:
            await db.execute(
                "UPDATE embedding_cache SET last_used_at = ? WHERE key = ?",
                (_utcnow_iso(), key),
            )
            await db.commit()
        return deserialize_embedding(row[0])

    async def put_cached_embedding(self, key: str, model: str, vector: list[float]) -> None:
        db = self._require_db()
        async with self._write_lock:
            await db.execute(
                """
                INSERT INTO embedding_cache (key, model, embedding, dims, last_used_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    embedding = excluded.embedding,
                    dims = excluded.dims,
                    last_used_at = excluded.last_used_at
                """,
                (key, model, serialize_embedding(vector), len(vector), _utcnow_iso()),
            )
            if self.embedding_cache_max_entries is not None:
                await self._prune_embedding_cache(db, self.embedding_cache_max_entries)
            await db.commit()

    async def prune_embedding_cache(self, max_entries: int) -> int:
        """Drop least-recently-used persistent cache rows beyond ``max_entries``."""
        db = self._require_db()
        async with self._write_lock:
            removed = await self._prune_embedding_cache(db, max_entries)
            await db.commit()
            return removed

    @staticmethod
    async def _prune_embedding_cache(db: aiosqlite.Connection, max_entries: int) -> int:
        cursor = await db.execute(
            """
            DELETE FROM embedding_cache WHERE key NOT IN (
                SELECT key FROM embedding_cache
                ORDER BY last_used_at DESC, rowid DESC LIMIT ?
            )
            """,
            (max(0, max_entries),),
        )
        if cursor.rowcount > 0:
            logger.debug(f"Pruned {cursor.rowcount} persistent embedding cache rows")
        return cursor.rowcount

    async def count_cached_embeddings(self) -> int:
        db = self._require_db()
        async with db.execute("SELECT COUNT(*) FROM embedding_cache") as cursor:
            row = await cursor.fetchone()
        return row[0]
