"""Tests for the embedding LRU cache and the cached embedder."""

from __future__ import annotations

import asyncio

import pytest

from agent_memory.embedding_cache import CachedEmbedder, EmbeddingCache, cache_key
from agent_memory.exceptions import EmbeddingProviderError


class SlowProvider:
    """Provider that yields to the loop before answering."""

    provider_id = "slow"
    model = "model-x"

    def __init__(self):
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        await asyncio.sleep(0.01)
        return [[float(len(t)), 1.0] for t in texts]

    async def embed_one(self, text):
        return (await self.embed([text]))[0]


class ShiftingProvider:
    """Returns vectors whose length grows on every call."""

    provider_id = "shifting"
    model = "model-x"

    def __init__(self):
        self.width = 2

    async def embed(self, texts):
        self.width += 1
        return [[0.5] * self.width for _ in texts]

    async def embed_one(self, text):
        return (await self.embed([text]))[0]


class MemoryBackend:
    def __init__(self):
        self.rows = {}

    async def get_cached_embedding(self, key):
        return self.rows.get(key)

    async def put_cached_embedding(self, key, model, vector):
        self.rows[key] = list(vector)


# ---------------------------------------------------------------------------
# EmbeddingCache
# ---------------------------------------------------------------------------


class TestEmbeddingCache:
    def test_key_depends_on_model(self):
        assert cache_key("hello", "model-x") == cache_key("hello", "model-x")
        assert cache_key("hello", "model-x") != cache_key("hello", "model-y")

    def test_get_put(self):
        cache = EmbeddingCache()
        assert cache.get("k") is None
        cache.put("k", [1.0, 2.0])
        assert cache.get("k") == [1.0, 2.0]
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_lru_eviction(self):
        cache = EmbeddingCache(max_entries=2)
        cache.put("a", [1.0])
        cache.put("b", [2.0])
        cache.get("a")
        cache.put("c", [3.0])
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2
        assert cache.get_stats()["evictions"] == 1

    def test_unbounded(self):
        cache = EmbeddingCache(max_entries=None)
        for i in range(500):
            cache.put(str(i), [float(i)])
        assert len(cache) == 500

    def test_returned_vector_is_a_copy(self):
        cache = EmbeddingCache()
        cache.put("k", [1.0])
        cache.get("k").append(9.0)
        assert cache.get("k") == [1.0]


# ---------------------------------------------------------------------------
# CachedEmbedder
# ---------------------------------------------------------------------------


class TestCachedEmbedder:
    @pytest.mark.asyncio
    async def test_empty_injected_cache_bounds_entries(self, fake_provider):
        cache = EmbeddingCache(max_entries=2)
        embedder = CachedEmbedder(fake_provider, cache=cache)
        assert embedder.cache is cache

        for word in ["one", "two", "three", "four", "five"]:
            await embedder.get_embedding(word)

        assert len(cache) == 2
        assert cache.get_stats()["evictions"] == 3

    @pytest.mark.asyncio
    async def test_same_text_calls_provider_once(self, fake_provider):
        embedder = CachedEmbedder(fake_provider)
        first = await embedder.get_embedding("hello", "model-x")
        second = await embedder.get_embedding("hello", "model-x")
        assert first == second
        assert fake_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_different_model_misses(self, fake_provider):
        embedder = CachedEmbedder(fake_provider)
        await embedder.get_embedding("hello", "model-x")
        await embedder.get_embedding("hello", "model-y")
        assert fake_provider.call_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_call(self):
        provider = SlowProvider()
        embedder = CachedEmbedder(provider)
        results = await asyncio.gather(
            *[embedder.get_embedding("hello") for _ in range(5)]
        )
        assert provider.calls == 1
        assert all(r == results[0] for r in results)

    @pytest.mark.asyncio
    async def test_batch_sends_only_misses(self, fake_provider):
        embedder = CachedEmbedder(fake_provider)
        await embedder.get_embedding("alpha")
        vectors = await embedder.get_embeddings(["alpha", "beta", "gamma", "beta"])
        assert len(vectors) == 4
        assert vectors[1] == vectors[3]
        assert fake_provider.calls[-1] == ["beta", "gamma"]

    @pytest.mark.asyncio
    async def test_disabled_cache_always_calls_provider(self, fake_provider):
        embedder = CachedEmbedder(fake_provider, enabled=False)
        await embedder.get_embedding("hello")
        await embedder.get_embedding("hello")
        assert fake_provider.call_count == 2

    @pytest.mark.asyncio
    async def test_persistent_backend_survives_new_cache(self, fake_provider):
        backend = MemoryBackend()
        await CachedEmbedder(fake_provider, backend=backend).get_embedding("hello")
        assert len(backend.rows) == 1

        fresh = CachedEmbedder(fake_provider, backend=backend)
        await fresh.get_embedding("hello")
        assert fake_provider.call_count == 1

    @pytest.mark.asyncio
    async def test_provider_failure_is_wrapped(self, fake_provider):
        fake_provider.fail = True
        embedder = CachedEmbedder(fake_provider)
        with pytest.raises(EmbeddingProviderError):
            await embedder.get_embedding("hello")
        assert len(embedder.cache) == 0

    @pytest.mark.asyncio
    async def test_dimension_mismatch_raises(self):
        embedder = CachedEmbedder(ShiftingProvider())
        await embedder.get_embedding("one")
        with pytest.raises(EmbeddingProviderError, match="dimension mismatch"):
            await embedder.get_embedding("two")
