"""Hybrid (vector + full-text) search index.

Scoring pipeline for a query:

1. embed the query through the cached embedder
2. fetch ``max_results * candidate_multiplier`` candidates from each active
   leg (cosine similarity, FTS5 bm25)
3. min-max normalize each leg's scores over its candidate set
4. ``score = vector_weight * vector + text_weight * text``
5. drop results below ``min_score``
6. sort by score desc, file mtime desc, path asc
7. keep the top ``max_results``

When only one leg produces candidates (hybrid disabled, embedding failure,
no FTS match) that leg carries the full weight.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable

import numpy as np
from loguru import logger

from .chunker import chunk_text
from .config import HybridConfig, MemorySearchConfig, normalize_weights
from .embedding import cosine_similarity_matrix
from .embedding_cache import CachedEmbedder
from .exceptions import EmbeddingProviderError
from .models import Chunk, FileRecord, SearchResult, utcnow
from .storage.sqlite_index import SQLiteIndexStore

__all__ = [
    "HybridIndex",
    "normalize_weights",
    "min_max_normalize",
    "combine_scores",
    "rank_results",
    "extract_snippet",
]


def min_max_normalize(scores: dict[str, float]) -> dict[str, float]:
    """Scale scores to [0, 1]. A set whose scores are all equal maps to 1.0."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high - low <= 1e-12:
        return {key: 1.0 for key in scores}
    span = high - low
    return {key: (value - low) / span for key, value in scores.items()}


def combine_scores(
    vector_score: float,
    text_score: float,
    vector_weight: float,
    text_weight: float,
) -> float:
    return vector_weight * vector_score + text_weight * text_score


def rank_results(
    results: Iterable[SearchResult],
    min_score: float,
    max_results: int,
) -> list[SearchResult]:
    """Filter by ``min_score``, sort and truncate.

    Ties break by most recent file mtime, then path, then chunk ordinal.
    """
    kept = [r for r in results if r.score >= min_score]
    kept.sort(key=lambda r: (-r.score, -r.mtime, r.path, r.chunk.ordinal))
    return kept[:max_results]


def extract_snippet(text: str, query: str, max_length: int = 200) -> str:
    """Window of ``text`` around the first occurrence of ``query``."""
    index = text.lower().find(query.lower()) if query else -1
    if index == -1:
        return text[:max_length] + ("..." if len(text) > max_length else "")
    start = max(0, index - 50)
    end = min(len(text), index + len(query) + 50)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class HybridIndex:
    """Persistent chunk index answering fused vector/text queries."""

    def __init__(
        self,
        store: SQLiteIndexStore,
        config: MemorySearchConfig,
        workspace_root: str | Path,
        embedder: CachedEmbedder | None = None,
    ):
        self.store = store
        self.config = config
        self.workspace_root = Path(workspace_root).resolve()
        self.embedder = embedder
        self.last_error: str | None = None

    @property
    def vector_enabled(self) -> bool:
        return self.embedder is not None and self.config.store.vector_enabled

    @property
    def model(self) -> str | None:
        return self.embedder.model if self.embedder else None

    def relative_path(self, path: str | Path) -> str:
        """Index key for ``path``: workspace-relative when inside the workspace."""
        resolved = Path(path).resolve()
        try:
            return resolved.relative_to(self.workspace_root).as_posix()
        except ValueError:
            return resolved.as_posix()

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def upsert_file(
        self,
        path: str | Path,
        source: str = "memory",
        text: str | None = None,
        force: bool = False,
    ) -> bool:
        """Index ``path`` if its content changed since the last pass.

        Args:
            path: Source file on disk
            source: ``memory`` or ``conversations``
            text: Pre-rendered content to index instead of the raw file
            force: Re-index even when the hash is unchanged

        Returns:
            True when the file was (re)indexed, False when unchanged
        """
        file_path = Path(path)
        stat = file_path.stat()
        if text is None:
            text = file_path.read_text(encoding="utf-8")
        key = self.relative_path(file_path)
        digest = content_hash(text)

        existing = await self.store.get_file(key)
        if not force and existing is not None and existing.content_hash == digest:
            logger.debug(f"Index unchanged: {key}")
            return False

        chunks = chunk_text(text, self.config.chunking.tokens, self.config.chunking.overlap)
        for chunk in chunks:
            chunk.id = f"{key}#{chunk.ordinal}"
            chunk.file_id = key
        await self._embed_chunks(key, chunks)

        record = FileRecord(
            path=key,
            source=source,
            content_hash=digest,
            mtime=stat.st_mtime,
            size=stat.st_size,
            last_indexed_at=utcnow(),
        )
        await self.store.replace_file(record, chunks, self.model)
        logger.debug(f"Indexed {key}: {len(chunks)} chunks")
        return True

    async def _embed_chunks(self, key: str, chunks: list[Chunk]) -> None:
        if not self.vector_enabled or not chunks:
            return
        try:
            vectors = await self.embedder.get_embeddings([c.text for c in chunks])
            for chunk, vector in zip(chunks, vectors):
                chunk.embedding = vector
            return
        except EmbeddingProviderError as e:
            logger.warning(f"Batch embedding failed for {key}, retrying per chunk: {e}")

        for chunk in chunks:
            try:
                chunk.embedding = await self.embedder.get_embedding(chunk.text)
            except EmbeddingProviderError as e:
                # chunk stays text-searchable without a vector
                logger.warning(f"Skipping embedding for {key}#{chunk.ordinal}: {e}")
                self.last_error = str(e)

    async def remove_file(self, path: str | Path) -> bool:
        key = path if isinstance(path, str) and not Path(path).is_absolute() else self.relative_path(path)
        removed = await self.store.delete_file(key)
        if removed:
            logger.debug(f"Removed from index: {key}")
        return removed

    async def indexed_paths(self, source: str | None = None) -> dict[str, FileRecord]:
        records = await self.store.list_files(source)
        return {r.path: r for r in records}

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def query(
        self,
        text: str,
        max_results: int | None = None,
        min_score: float | None = None,
        hybrid: HybridConfig | None = None,
    ) -> list[SearchResult]:
        """Ranked chunks for ``text``. Never raises for a failed leg."""
        if not text or not text.strip():
            return []
        max_results = max(1, max_results or self.config.query.max_results)
        if min_score is None:
            min_score = self.config.query.min_score
        hybrid = hybrid or self.config.query.hybrid
        fetch = max_results * hybrid.candidate_multiplier
        sources = list(self.config.sources)

        vector_hits = await self._vector_leg(text, fetch, sources)
        text_hits: dict[str, tuple[dict, float]] | None = None
        if hybrid.enabled or not vector_hits:
            text_hits = await self._text_leg(text, fetch, sources)

        if not vector_hits and not text_hits:
            # no embedded chunks and no full-text hits
            return await self._substring_fallback(text, max_results, min_score, sources)

        vector_weight, text_weight = hybrid.vector_weight, hybrid.text_weight
        if not text_hits:
            vector_weight, text_weight = 1.0, 0.0
        elif not vector_hits:
            vector_weight, text_weight = 0.0, 1.0

        vector_norm = min_max_normalize({k: s for k, (_, s) in (vector_hits or {}).items()})
        text_norm = min_max_normalize({k: s for k, (_, s) in (text_hits or {}).items()})

        rows: dict[str, dict] = {}
        for hits in (vector_hits or {}, text_hits or {}):
            for key, (row, _) in hits.items():
                rows.setdefault(key, row)

        results = []
        for key, row in rows.items():
            v = vector_norm.get(key, 0.0)
            t = text_norm.get(key, 0.0)
            results.append(
                self._to_result(
                    row,
                    text,
                    score=combine_scores(v, t, vector_weight, text_weight),
                    vector_score=v,
                    text_score=t,
                )
            )
        return rank_results(results, min_score, max_results)

    async def _vector_leg(
        self, text: str, limit: int, sources: list[str]
    ) -> dict[str, tuple[dict, float]] | None:
        if not self.vector_enabled:
            return None
        try:
            query_vector = await self.embedder.get_embedding(text)
        except EmbeddingProviderError as e:
            logger.warning(f"Query embedding failed, using text search only: {e}")
            self.last_error = str(e)
            return None

        rows = await self.store.get_chunks_with_embeddings(self.model, sources)
        rows = [r for r in rows if len(r["embedding"]) == len(query_vector)]
        if not rows:
            return {}
        matrix = np.asarray([r["embedding"] for r in rows], dtype=np.float32)
        sims = cosine_similarity_matrix(query_vector, matrix)
        top = np.argsort(-sims, kind="stable")[:limit]
        return {rows[i]["id"]: (rows[i], float(sims[i])) for i in top}

    async def _text_leg(
        self, text: str, limit: int, sources: list[str]
    ) -> dict[str, tuple[dict, float]] | None:
        if not self.store.fts_available:
            return None
        try:
            rows = await self.store.search_fts(text, limit=limit, sources=sources)
        except Exception as e:
            logger.warning(f"FTS search failed for query '{text}': {e}")
            return None
        # bm25 is lower-is-better
        return {r["id"]: (r, -float(r["fts_rank"])) for r in rows}

    async def _substring_fallback(
        self, text: str, max_results: int, min_score: float, sources: list[str]
    ) -> list[SearchResult]:
        try:
            rows = await self.store.search_substring(text, limit=max_results * 2, sources=sources)
        except Exception as e:
            logger.warning(f"Substring search failed: {e}")
            return []
        results = [
            self._to_result(r, text, score=r["match_ratio"], text_score=r["match_ratio"])
            for r in rows
        ]
        return rank_results(results, min_score, max_results)

    @staticmethod
    def _to_result(row: dict, query: str, score: float, vector_score: float = 0.0, text_score: float = 0.0) -> SearchResult:
        chunk = Chunk(
            id=row["id"],
            file_id=row["path"],
            ordinal=row["ordinal"],
            text=row["text"],
            token_count=row["token_count"],
            offset_start=row["offset_start"],
            offset_end=row["offset_end"],
            start_line=row["start_line"],
            end_line=row["end_line"],
        )
        return SearchResult(
            chunk=chunk,
            path=row["path"],
            source=row["source"],
            score=score,
            vector_score=vector_score,
            text_score=text_score,
            mtime=row["mtime"],
            snippet=extract_snippet(row["text"], query),
        )

    # ------------------------------------------------------------------
    # inspection
    # ------------------------------------------------------------------

    async def status(self) -> dict:
        info = {
            "files": 0,
            "chunks": 0,
            "workspace_dir": str(self.workspace_root),
            "db_path": self.store.db_path,
            "provider": self.config.provider,
            "model": self.model or self.config.model,
            "sources": list(self.config.sources),
            "db_initialized": self.store.is_open,
            "fts_available": self.store.fts_available,
            "last_error": self.last_error,
        }
        if self.store.is_open:
            info["files"] = await self.store.count_files()
            info["chunks"] = await self.store.count_chunks()
        return info

    def read_file(
        self,
        rel_path: str,
        start_line: int | None = None,
        lines: int | None = None,
    ) -> dict:
        """Read a line window of a workspace file.

        Raises:
            ValueError: ``rel_path`` escapes the workspace.
            FileNotFoundError: The file does not exist.
        """
        target = (self.workspace_root / rel_path).resolve()
        if not target.is_relative_to(self.workspace_root):
            raise ValueError(f"Path escapes workspace: {rel_path}")
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {rel_path}")
        all_lines = target.read_text(encoding="utf-8").split("\n")
        start = max(1, start_line or 1)
        end = min(len(all_lines), start + lines - 1) if lines else len(all_lines)
        return {"text": "\n".join(all_lines[start - 1 : end]), "path": rel_path}
