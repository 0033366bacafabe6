"""
Embedding cache

Bounded LRU cache of text -> vector plus a ``CachedEmbedder`` that sits in
front of an embedding provider. Misses fall through to an optional persistent
backend (the index database) and then to the provider.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import OrderedDict
from threading import Lock
from typing import Any, Protocol

from loguru import logger

from .embedding import EmbeddingProvider
from .exceptions import EmbeddingProviderError


def cache_key(text: str, model: str) -> str:
    """Stable key for a (text, model) pair."""
    return hashlib.sha256(f"{model}\0{text}".encode("utf-8")).hexdigest()


class EmbeddingCache:
    """
    Thread-safe LRU cache of embedding vectors.

    - ``max_entries=None`` means unbounded
    - eviction happens under the same lock as insertion
    - keeps hit/miss/eviction statistics
    """

    def __init__(self, max_entries: int | None = None):
        self._max_entries = max_entries
        self._cache: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._lock = Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    @property
    def max_entries(self) -> int | None:
        return self._max_entries

    def get(self, key: str) -> list[float] | None:
        with self._lock:
            vector = self._cache.get(key)
            if vector is None:
                self._stats["misses"] += 1
                return None
            self._cache.move_to_end(key)
            self._stats["hits"] += 1
            return list(vector)

    def put(self, key: str, vector: list[float]) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = tuple(vector)
            if self._max_entries is not None:
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)
                    self._stats["evictions"] += 1

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def keys(self) -> list[str]:
        """Keys ordered from least to most recently used."""
        with self._lock:
            return list(self._cache.keys())

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = self._stats["hits"] / total if total > 0 else 0
            return {
                **self._stats,
                "hit_rate": f"{hit_rate:.1%}",
                "size": len(self._cache),
                "max_entries": self._max_entries,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache


class PersistentEmbeddingBackend(Protocol):
    """Second-level embedding store, e.g. the index database."""

    async def get_cached_embedding(self, key: str) -> list[float] | None: ...

    async def put_cached_embedding(self, key: str, model: str, vector: list[float]) -> None: ...


class CachedEmbedder:
    """Embeds text through a cache, calling the provider only on misses.

    Concurrent requests for the same key share a single provider call.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        backend: PersistentEmbeddingBackend | None = None,
        enabled: bool = True,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else EmbeddingCache()
        self.backend = backend
        self.enabled = enabled
        self._inflight: dict[str, asyncio.Future] = {}
        self._dimensions: dict[tuple[str, str], int] = {}

    @property
    def model(self) -> str:
        return self.provider.model

    def _check_dimension(self, model: str, vector: list[float]) -> None:
        slot = (self.provider.provider_id, model)
        expected = self._dimensions.setdefault(slot, len(vector))
        if len(vector) != expected:
            raise EmbeddingProviderError(
                f"dimension mismatch for {model}: expected {expected}, got {len(vector)}",
                provider=self.provider.provider_id,
            )

    async def _lookup(self, key: str) -> list[float] | None:
        if not self.enabled:
            return None
        vector = self.cache.get(key)
        if vector is not None:
            return vector
        if self.backend is not None:
            try:
                vector = await self.backend.get_cached_embedding(key)
            except Exception as e:
                logger.warning(f"Persistent embedding cache read failed: {e}")
                vector = None
            if vector is not None:
                self.cache.put(key, vector)
                return vector
        return None

    async def _store(self, key: str, model: str, vector: list[float]) -> None:
        if not self.enabled:
            return
        self.cache.put(key, vector)
        if self.backend is not None:
            try:
                await self.backend.put_cached_embedding(key, model, vector)
            except Exception as e:
                logger.warning(f"Persistent embedding cache write failed: {e}")

    async def get_embedding(self, text: str, model: str | None = None) -> list[float]:
        """Return the embedding for ``text``.

        Raises:
            EmbeddingProviderError: The provider failed or returned a vector
                of the wrong dimension.
        """
        model = model or self.provider.model
        key = cache_key(text, model)

        vector = await self._lookup(key)
        if vector is not None:
            return vector

        pending = self._inflight.get(key)
        if pending is not None:
            return list(await asyncio.shield(pending))

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            vector = await self.provider.embed_one(text)
            self._check_dimension(model, vector)
            await self._store(key, model, vector)
            future.set_result(vector)
            return list(vector)
        except Exception as e:
            future.set_exception(e)
            # mark retrieved so an unawaited future does not warn
            future.exception()
            if isinstance(e, EmbeddingProviderError):
                raise
            raise EmbeddingProviderError(str(e), provider=self.provider.provider_id) from e
        finally:
            self._inflight.pop(key, None)

    async def get_embeddings(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed many texts, sending all cache misses in one provider call."""
        model = model or self.provider.model
        keys = [cache_key(t, model) for t in texts]
        results: list[list[float] | None] = [await self._lookup(k) for k in keys]

        missing: dict[str, list[int]] = {}
        for i, (key, vector) in enumerate(zip(keys, results)):
            if vector is None:
                missing.setdefault(key, []).append(i)
        if missing:
            order = list(missing)
            batch = [texts[missing[k][0]] for k in order]
            logger.debug(f"Embedding {len(batch)} uncached texts ({len(texts)} requested)")
            try:
                vectors = await self.provider.embed(batch)
            except EmbeddingProviderError:
                raise
            except Exception as e:
                raise EmbeddingProviderError(str(e), provider=self.provider.provider_id) from e
            if len(vectors) != len(batch):
                raise EmbeddingProviderError(
                    f"expected {len(batch)} vectors, got {len(vectors)}",
                    provider=self.provider.provider_id,
                )
            for key, vector in zip(order, vectors):
                self._check_dimension(model, vector)
                await self._store(key, model, vector)
                for i in missing[key]:
                    results[i] = list(vector)
        return [r for r in results if r is not None]
