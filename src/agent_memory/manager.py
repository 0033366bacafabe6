"""Unified memory manager - facade over the typed stores and the search index.

This is the surface the agent loop talks to. It provides:
- typed add/get accessors for the six memory stores
- merged retrieval across stores and the hybrid index
- real-time extraction of durable memories from incoming messages
- persistence of consolidated summaries produced by the sleep pipeline

Every component failure is caught here and downgraded to a warning with a
safe fallback, so a memory problem never aborts a conversation turn. The one
exception is an explicit ``add_*`` call whose store write fails: that caller
gets the ``StoreIOError``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from .config import MemoryConfig
from .embedding import EmbeddingProvider, create_embedding_provider
from .embedding_cache import CachedEmbedder, EmbeddingCache
from .exceptions import IndexInitError
from .hybrid_index import HybridIndex
from .llm_port import MemoryClassifier
from .memory_log import MemoryLog
from .models import (
    EPISODIC_KINDS,
    SEMANTIC_KINDS,
    BaseMemory,
    ConsolidatedSummary,
    EmotionIntensity,
    EmotionKind,
    EmotionTag,
    EpisodicMemory,
    ExtractedMemory,
    ExtractedMemoryKind,
    IndexedSnippet,
    MemoryRetrievalResult,
    MemoryType,
    ProspectiveMemory,
    SearchResult,
    SemanticMemory,
    WorkingMemory,
    utcnow,
)
from .storage.sqlite_index import SQLiteIndexStore
from .stores import (
    CollectionCache,
    EmotionalMemoryStore,
    EpisodicMemoryStore,
    JsonCollectionStore,
    PathLockRegistry,
    ProceduralMemoryStore,
    ProspectiveMemoryStore,
    SemanticMemoryStore,
    WorkingMemoryStore,
)
from .sync import SyncEngine, SyncReport

DEFAULT_RETRIEVAL_TYPES = (MemoryType.SEMANTIC, MemoryType.EPISODIC, MemoryType.PROCEDURAL)
INDEX_SOURCE_PREFIX = "index:"

_ENTRY_NOISE_RE = re.compile(r"^(-{3,}|\[[^\]]*\]|#.*)$")
_LIST_MARK_RE = re.compile(r"^[-*]\s+")


def _content_lines(text: str) -> list[str]:
    """Lowercased entry lines of a log chunk, without separators and timestamps."""
    lines = []
    for raw in text.splitlines():
        line = _LIST_MARK_RE.sub("", raw.strip())
        if line and not _ENTRY_NOISE_RE.match(line):
            lines.append(line.lower())
    return lines


def snippet_is_covered(text: str, known_texts: Iterable[str]) -> bool:
    """True when every entry line of ``text`` ends with one of ``known_texts``.

    Log mirrors prefix each record (``[category] fact``, ``Event: ...``).
    """
    known = {" ".join(k.lower().split()) for k in known_texts if k and k.strip()}
    lines = _content_lines(text)
    return bool(lines) and all(
        any(" ".join(line.split()).endswith(k) for k in known) for line in lines
    )


def structured_fact(memory: ExtractedMemory) -> str:
    """Normalized fact text: ``"k: v, ..."`` from structured data, else content."""
    if not memory.structured_data:
        return memory.content
    parts = [f"{k}: {v}" for k, v in memory.structured_data.items() if k != "field"]
    return ", ".join(parts) or memory.content


class UnifiedMemoryManager:
    """Coordinates the typed memory stores and the hybrid search index.

    Components that touch the search index are created by ``initialize()``;
    the typed stores work without it.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        classifier: MemoryClassifier | None = None,
        cache: CollectionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the manager.

        Args:
            config: Memory configuration (defaults if not provided)
            embedding_provider: Provider for index embeddings; built from
                ``config.search`` when omitted
            classifier: LLM port used by ``on_new_message``
            cache: Read cache for store files, owned by this manager
            clock: Source of "now" for records and logs
        """
        self.config = config or MemoryConfig()
        self.classifier = classifier
        self._embedding_provider = embedding_provider
        self._clock = clock

        root = self.config.root_path
        store_dir = self.config.store_dir
        self.locks = PathLockRegistry()
        self.cache = (
            cache if cache is not None else CollectionCache(ttl_seconds=self.config.stores.ttl_seconds)
        )
        self.memory_log = MemoryLog(root, clock=clock)

        shared = {"locks": self.locks, "cache": self.cache, "clock": clock}
        self.working = WorkingMemoryStore(
            default_ttl_seconds=self.config.working.default_ttl_seconds, clock=clock
        )
        self.episodic = EpisodicMemoryStore(
            store_dir / "episodic.json", memory_log=self.memory_log, **shared
        )
        self.semantic = SemanticMemoryStore(
            store_dir / "semantic.json", memory_log=self.memory_log, **shared
        )
        self.procedural = ProceduralMemoryStore(store_dir / "procedural.json", **shared)
        self.prospective = ProspectiveMemoryStore(store_dir / "prospective.json", **shared)
        self.emotional = EmotionalMemoryStore(store_dir / "emotional.json", **shared)

        self.index_store: SQLiteIndexStore | None = None
        self.index: HybridIndex | None = None
        self.sync_engine: SyncEngine | None = None
        self.search_available = False
        self._initialized = False

        logger.info(
            f"UnifiedMemoryManager created: agent={self.config.agent_id}, "
            f"root={root}, search_enabled={self.config.search.enabled}"
        )

    @property
    def persistent_stores(self) -> list[JsonCollectionStore]:
        return [self.episodic, self.semantic, self.procedural, self.prospective, self.emotional]

    def _store_for(self, memory_type: MemoryType):
        return {
            MemoryType.WORKING: self.working,
            MemoryType.EPISODIC: self.episodic,
            MemoryType.SEMANTIC: self.semantic,
            MemoryType.PROCEDURAL: self.procedural,
            MemoryType.PROSPECTIVE: self.prospective,
            MemoryType.EMOTIONAL: self.emotional,
        }[memory_type]

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the search index and start background sync.

        An index that fails to open leaves ``search_available`` False; the
        typed stores keep working.
        """
        if self._initialized:
            return
        self._initialized = True
        search = self.config.search
        if not search.enabled:
            logger.info("Memory search disabled; typed stores only")
            return

        store = SQLiteIndexStore(
            self.config.index_db_path,
            embedding_cache_max_entries=search.cache.max_entries,
        )
        try:
            await store.initialize()
        except IndexInitError as e:
            logger.warning(f"Memory search unavailable: {e}")
            return
        self.index_store = store

        embedder = None
        provider = self._embedding_provider
        if provider is None and search.store.vector_enabled:
            try:
                provider = create_embedding_provider(search)
            except Exception as e:
                logger.warning(f"Embedding provider unavailable, text search only: {e}")
            self._embedding_provider = provider
        if provider is not None:
            embedder = CachedEmbedder(
                provider,
                cache=EmbeddingCache(search.cache.max_entries),
                backend=store if search.cache.enabled else None,
                enabled=search.cache.enabled,
            )

        self.index = HybridIndex(store, search, self.config.root_path, embedder)
        self.sync_engine = SyncEngine(
            self.index,
            search,
            self.config.root_path,
            conversations_dir=self.config.conversations_dir,
            stores=self.persistent_stores,
        )
        self.search_available = True
        logger.info(
            f"Memory search ready: db={self.config.index_db_path}, "
            f"provider={provider.provider_id if provider else 'none'}"
        )

        await self.on_conversation_start()
        try:
            await self.sync_engine.start()
        except Exception as e:
            logger.warning(f"Failed to start memory sync triggers: {e}")

    async def close(self) -> None:
        """Stop background sync and close the index connection."""
        if self.sync_engine is not None:
            await self.sync_engine.stop()
        close_provider = getattr(self._embedding_provider, "close", None)
        if close_provider is not None:
            try:
                await close_provider()
            except Exception as e:
                logger.warning(f"Failed to close embedding provider: {e}")
        if self.index_store is not None:
            await self.index_store.close()
            logger.info("UnifiedMemoryManager: index closed")
        self.search_available = False
        self._initialized = False

    async def on_conversation_start(self) -> SyncReport | None:
        if self.sync_engine is None:
            return None
        try:
            return await self.sync_engine.on_conversation_start()
        except Exception as e:
            logger.warning(f"Conversation-start sync failed: {e}")
            return None

    async def sync(self, reason: str = "manual", force: bool = False) -> SyncReport | None:
        if self.sync_engine is None:
            return None
        try:
            return await self.sync_engine.sync(reason, force=force)
        except Exception as e:
            logger.warning(f"Memory sync failed: {e}")
            return None

    def _mark_dirty(self) -> None:
        if self.sync_engine is not None:
            self.sync_engine.mark_dirty()

    # ------------------------------------------------------------------
    # typed accessors
    # ------------------------------------------------------------------

    async def add_semantic_memory(
        self,
        fact: str,
        category: str | None = None,
        confidence: float = 1.0,
        source: str | None = None,
        scope_id: str | None = None,
    ) -> str:
        memory_id = await self.semantic.add(
            fact=fact, category=category, confidence=confidence, source=source, scope_id=scope_id
        )
        self._mark_dirty()
        return memory_id

    async def get_semantic_memories(
        self,
        category: str | None = None,
        scope_id: str | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[SemanticMemory]:
        return await self.semantic.query(
            scope_id=scope_id, category=category, text=text, limit=limit
        )

    async def add_episodic_memory(
        self,
        event: str,
        context: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
        scope_id: str | None = None,
        related_memories: Iterable[str] = (),
    ) -> str:
        memory_id = await self.episodic.add(
            event=event,
            timestamp=timestamp or self._clock(),
            context=context or {"what": event},
            scope_id=scope_id,
            related_memories=list(related_memories),
        )
        self._mark_dirty()
        return memory_id

    async def get_episodic_memories(
        self,
        scope_id: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        text: str | None = None,
        limit: int | None = None,
    ) -> list[EpisodicMemory]:
        return await self.episodic.query(
            scope_id=scope_id, start_time=start_time, end_time=end_time, text=text, limit=limit
        )

    async def add_procedural_memory(
        self,
        pattern: str,
        trigger: str,
        action: str,
        scope_id: str | None = None,
    ) -> str:
        memory_id = await self.procedural.add(
            pattern=pattern, trigger=trigger, action=action, scope_id=scope_id
        )
        self._mark_dirty()
        return memory_id

    async def add_prospective_memory(
        self,
        intention: str,
        trigger_time: datetime | None = None,
        trigger_context: str | None = None,
        priority: float = 0.5,
        scope_id: str | None = None,
    ) -> str:
        memory_id = await self.prospective.add(
            intention=intention,
            trigger_time=trigger_time,
            trigger_context=trigger_context,
            priority=priority,
            scope_id=scope_id,
        )
        self._mark_dirty()
        return memory_id

    async def add_emotional_memory(
        self,
        target_memory_id: str,
        target_memory_type: MemoryType | str,
        kind: EmotionKind | str,
        intensity: EmotionIntensity | str = EmotionIntensity.MEDIUM,
        context: str | None = None,
        scope_id: str | None = None,
    ) -> str:
        memory_id = await self.emotional.add(
            target_memory_id=target_memory_id,
            target_memory_type=MemoryType(target_memory_type),
            emotion=EmotionTag(kind=kind, intensity=intensity, timestamp=self._clock()),
            context=context,
            scope_id=scope_id,
        )
        self._mark_dirty()
        return memory_id

    def set_working_memory(
        self,
        scope_id: str,
        content: str,
        context: dict[str, Any] | None = None,
        ttl_seconds: float | None = None,
    ) -> str:
        return self.working.add(scope_id, content, context=context, ttl_seconds=ttl_seconds)

    def get_working_memory(self, scope_id: str) -> WorkingMemory | None:
        return self.working.get_scope(scope_id)

    def end_scope(self, scope_id: str) -> bool:
        """Drop the scope's working memory. Expired entries are swept too."""
        cleared = self.working.clear_scope(scope_id)
        self.working.clear_expired()
        return cleared

    # ------------------------------------------------------------------
    # retrieval
    # ------------------------------------------------------------------

    async def _query_store(
        self, memory_type: MemoryType, query: str | None, scope_id: str | None
    ) -> list[BaseMemory]:
        store = self._store_for(memory_type)
        if memory_type == MemoryType.WORKING:
            return list(store.query(scope_id=scope_id, text=query))
        return list(await store.query(scope_id=scope_id, text=query))

    @staticmethod
    def _snippet_memory(result: SearchResult) -> IndexedSnippet:
        indexed_at = datetime.fromtimestamp(result.mtime, tz=timezone.utc)
        return IndexedSnippet(
            id=f"{INDEX_SOURCE_PREFIX}{result.chunk.id}",
            fact=result.snippet or result.chunk.text,
            category=result.source,
            confidence=result.score,
            source=f"{INDEX_SOURCE_PREFIX}{result.path}",
            created_at=indexed_at,
            updated_at=indexed_at,
            path=result.path,
            score=result.score,
            start_line=result.chunk.start_line,
            end_line=result.chunk.end_line,
        )

    async def _index_hits(self, results: list[SearchResult]) -> list[IndexedSnippet]:
        """Index hits that add something beyond the typed records.

        Rendered store files are skipped, as are chunks whose entries all
        repeat a semantic fact or episodic event (the MEMORY.md and
        daily-log mirrors). Identical chunk texts are kept once.
        """
        store_prefix = self.index.relative_path(self.config.store_dir) + "/"
        known: list[str] = []
        try:
            known.extend(m.fact for m in await self.semantic.all())
            known.extend(m.event for m in await self.episodic.all())
        except Exception as e:
            logger.warning(f"Cannot load mirrored records for dedup: {e}")
        seen_texts: set[str] = set()
        hits: list[IndexedSnippet] = []
        for result in results:
            if result.path.startswith(store_prefix):
                continue
            normalized = " ".join(result.chunk.text.lower().split())
            if normalized in seen_texts or snippet_is_covered(result.chunk.text, known):
                continue
            seen_texts.add(normalized)
            hits.append(self._snippet_memory(result))
        return hits

    async def retrieve_memories(
        self,
        query: str | None = None,
        types: Iterable[MemoryType | str] | None = None,
        scope_id: str | None = None,
        limit: int = 20,
    ) -> MemoryRetrievalResult:
        """Merged memories from the typed stores and the search index.

        Args:
            query: Free-text filter on each store's primary text; also runs
                a hybrid index query when search is available
            types: Memory types to include (semantic, episodic, procedural
                by default)
            scope_id: Only records belonging to this scope
            limit: Maximum number of memories returned

        Returns:
            Memories sorted by ``updated_at`` (newest first) and truncated
            to ``limit``; ``total`` counts them before truncation
        """
        wanted = [MemoryType(t) for t in types] if types else list(DEFAULT_RETRIEVAL_TYPES)
        candidates: list[BaseMemory] = []

        for memory_type in dict.fromkeys(wanted):
            try:
                candidates.extend(await self._query_store(memory_type, query, scope_id))
            except Exception as e:
                logger.warning(f"Skipping {memory_type.value} memories in retrieval: {e}")

        if query and self.search_available and self.index is not None:
            if self.sync_engine is not None:
                self.sync_engine.on_search()
            try:
                results = await self.index.query(query)
            except Exception as e:
                logger.warning(f"Hybrid index query failed during retrieval: {e}")
                results = []
            candidates.extend(await self._index_hits(results))

        unique: dict[str, BaseMemory] = {}
        for memory in candidates:
            unique.setdefault(memory.id, memory)
        merged = sorted(unique.values(), key=lambda m: m.updated_at, reverse=True)

        limit = max(0, limit)
        logger.debug(
            f"retrieve_memories: {len(merged)} candidates, returning {min(limit, len(merged))}"
        )
        return MemoryRetrievalResult(memories=merged[:limit], total=len(merged))

    async def search(
        self,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Ranked hybrid-index chunks; empty when search is unavailable."""
        if not self.search_available or self.index is None:
            return []
        if self.sync_engine is not None:
            self.sync_engine.on_search()
        try:
            return await self.index.query(query, max_results=max_results, min_score=min_score)
        except Exception as e:
            logger.warning(f"Memory search failed for '{query[:50]}': {e}")
            return []

    async def check_prospective(
        self, now: datetime | None = None, context: str | None = None
    ) -> list[ProspectiveMemory]:
        """Pending intentions that are due or whose trigger context matches."""
        try:
            due = await self.prospective.get_due(now or self._clock())
            matched = await self.prospective.get_by_context(context) if context else []
        except Exception as e:
            logger.warning(f"Prospective memory check failed: {e}")
            return []
        seen = {m.id for m in due}
        return due + [m for m in matched if m.id not in seen]

    # ------------------------------------------------------------------
    # extraction / consolidation
    # ------------------------------------------------------------------

    async def on_new_message(
        self,
        message: str,
        scope_id: str | None = None,
        recent_context: str | None = None,
    ) -> list[str]:
        """Extract durable memories from an incoming message.

        facts, preferences and learnings go to the semantic store; decisions
        and events go to the episodic store. Never raises.

        Returns:
            Ids of the memories that were saved
        """
        if not self.config.extraction.enabled or self.classifier is None or not message.strip():
            return []

        max_chars = self.config.extraction.recent_context_chars
        if recent_context and max_chars:
            recent_context = recent_context[-max_chars:]
        elif not max_chars:
            recent_context = None

        try:
            result = await self.classifier.classify(message, recent_context)
        except Exception as e:
            logger.warning(f"Memory extraction skipped for message: {e}")
            return []

        if not result.has_important_info or not result.memories:
            return []

        saved: list[str] = []
        now = self._clock()
        for item in result.memories:
            if item.importance < self.config.extraction.min_importance:
                logger.debug(f"Dropping low-importance {item.type.value}: {item.importance:.2f}")
                continue
            try:
                if item.type in SEMANTIC_KINDS:
                    saved.append(
                        await self.semantic.add(
                            fact=structured_fact(item),
                            category=item.type.value,
                            confidence=item.importance,
                            source=scope_id,
                            scope_id=scope_id,
                        )
                    )
                elif item.type in EPISODIC_KINDS:
                    event = (
                        item.content
                        if item.type == ExtractedMemoryKind.EVENT
                        else f"{item.type.value}: {item.content}"
                    )
                    saved.append(
                        await self.episodic.add(
                            event=event,
                            timestamp=now,
                            context={
                                "what": item.content,
                                "when": now,
                                "why": f"Importance: {item.importance:.2f}, Type: {item.type.value}",
                            },
                            scope_id=scope_id,
                        )
                    )
            except Exception as e:
                logger.warning(f"Failed to save extracted {item.type.value} memory: {e}")

        if saved:
            self._mark_dirty()
            logger.info(f"Extracted {len(saved)} memories from message (scope={scope_id})")
        return saved

    async def on_sleep_ended(
        self, summaries: list[ConsolidatedSummary], scope_id: str | None = None
    ) -> list[str]:
        """Persist consolidated summaries as semantic memories.

        ``category`` is the summary type and ``confidence`` its importance.
        """
        if not summaries:
            return []
        try:
            ids = await self.semantic.add_many(
                {
                    "fact": s.content,
                    "category": s.type.value,
                    "confidence": s.importance,
                    "source": scope_id,
                    "scope_id": scope_id,
                }
                for s in summaries
            )
        except Exception as e:
            logger.warning(f"Failed to save {len(summaries)} consolidated memories: {e}")
            return []
        self._mark_dirty()
        logger.info(f"Saved {len(ids)} consolidated memories (scope={scope_id})")
        return ids

    async def status(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "agent_id": self.config.agent_id,
            "root_dir": str(Path(self.config.root_dir)),
            "search_available": self.search_available,
            "working": len(self.working),
            "store_cache": self.cache.get_stats(),
        }
        for store in self.persistent_stores:
            info[store.memory_type.value] = len(await store.all())
        if self.index is not None:
            try:
                info["index"] = await self.index.status()
            except Exception as e:
                logger.warning(f"Index status unavailable: {e}")
        return info
