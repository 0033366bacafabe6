"""Tests for embedding providers and vector helpers."""

from __future__ import annotations

import asyncio
import json

import httpx
import numpy as np
import pytest

from agent_memory.config import BatchConfig, MemorySearchConfig
from agent_memory.embedding import (
    GeminiEmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
    cosine_similarity_matrix,
    create_embedding_provider,
    deserialize_embedding,
    serialize_embedding,
)
from agent_memory.exceptions import EmbeddingProviderError

NO_WAIT = BatchConfig(poll_interval_ms=0)


def _openai_handler(requests: list[httpx.Request], statuses: list[int] | None = None):
    statuses = list(statuses or [])

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if statuses:
            status = statuses.pop(0)
            if status != 200:
                return httpx.Response(status, text="upstream error")
        body = json.loads(request.content)
        data = [
            {"index": i, "embedding": [float(len(text)), 1.0]}
            for i, text in enumerate(body["input"])
        ]
        # out of order on purpose
        return httpx.Response(200, json={"data": list(reversed(data))})

    return handler


class TestVectorHelpers:
    def test_serialize_round_trip(self):
        vector = [0.5, -1.25, 3.0]
        assert deserialize_embedding(serialize_embedding(vector)) == vector

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([0, 0], [1, 0]) == 0.0
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0

    def test_cosine_matrix(self):
        matrix = np.asarray([[1, 0], [0, 1], [0, 0]], dtype=np.float32)
        sims = cosine_similarity_matrix([1, 0], matrix)
        assert sims.tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_embed_orders_by_index(self):
        requests: list[httpx.Request] = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(_openai_handler(requests)))
        provider = OpenAIEmbeddingProvider("sk-test", client=client, batch=NO_WAIT)

        vectors = await provider.embed(["a", "bbb"])
        assert vectors == [[1.0, 1.0], [3.0, 1.0]]
        assert requests[0].headers["Authorization"] == "Bearer sk-test"
        assert json.loads(requests[0].content)["model"] == "text-embedding-3-small"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_batches_split(self):
        requests: list[httpx.Request] = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(_openai_handler(requests)))
        provider = OpenAIEmbeddingProvider("k", client=client, batch=NO_WAIT, batch_size=2)

        vectors = await provider.embed(["a", "b", "c", "d", "e"])
        assert len(vectors) == 5
        assert len(requests) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        requests: list[httpx.Request] = []
        handler = _openai_handler(requests, statuses=[503, 429, 200])
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAIEmbeddingProvider("k", client=client, batch=NO_WAIT)

        assert await provider.embed_one("hi") == [2.0, 1.0]
        assert len(requests) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        requests: list[httpx.Request] = []
        handler = _openai_handler(requests, statuses=[500, 500, 500])
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAIEmbeddingProvider("k", client=client, batch=NO_WAIT)

        with pytest.raises(EmbeddingProviderError, match="giving up"):
            await provider.embed(["x"])
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        requests: list[httpx.Request] = []
        handler = _openai_handler(requests, statuses=[401])
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAIEmbeddingProvider("bad", client=client, batch=NO_WAIT)

        with pytest.raises(EmbeddingProviderError, match="HTTP 401"):
            await provider.embed(["x"])
        assert len(requests) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_input(self):
        provider = OpenAIEmbeddingProvider("k", batch=NO_WAIT)
        assert await provider.embed([]) == []

    def test_request_timeout_separate_from_batch_deadline(self):
        provider = OpenAIEmbeddingProvider("k")
        assert provider._timeout.read == 30.0
        assert provider._timeout.connect == 30.0
        assert provider._batch_deadline == 3600

    @pytest.mark.asyncio
    async def test_timeout_sent_with_each_request(self):
        requests: list[httpx.Request] = []
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(_openai_handler(requests)), timeout=600.0
        )
        provider = OpenAIEmbeddingProvider(
            "k", client=client, batch=NO_WAIT, batch_size=1, request_timeout=5.0
        )

        await provider.embed(["a", "b"])
        assert [r.extensions["timeout"]["read"] for r in requests] == [5.0, 5.0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_batch_deadline_bounds_slow_endpoint(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"data": []})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        batch = BatchConfig(poll_interval_ms=0, timeout_minutes=0.001)
        provider = OpenAIEmbeddingProvider("k", client=client, batch=batch)

        with pytest.raises(EmbeddingProviderError, match="timed out"):
            await provider.embed(["x"])
        await client.aclose()


class TestGeminiProvider:
    @pytest.mark.asyncio
    async def test_batch_embed_contents(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"embeddings": [{"values": [0.1, 0.2]} for _ in body["requests"]]}
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = GeminiEmbeddingProvider("g-key", client=client, batch=NO_WAIT)
        vectors = await provider.embed(["one", "two"])

        assert vectors == [[0.1, 0.2], [0.1, 0.2]]
        assert seen[0].url.path.endswith("/models/gemini-embedding-001:batchEmbedContents")
        assert seen[0].url.params["key"] == "g-key"
        await client.aclose()


class TestProviderFactory:
    def test_auto_prefers_openai_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        provider = create_embedding_provider(MemorySearchConfig(provider="auto"))
        assert isinstance(provider, OpenAIEmbeddingProvider)

    def test_auto_uses_gemini_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setenv("GEMINI_API_KEY", "g")
        provider = create_embedding_provider(MemorySearchConfig(provider="auto"))
        assert isinstance(provider, GeminiEmbeddingProvider)

    def test_auto_falls_back_to_local(self, monkeypatch):
        for name in ("OPENAI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        provider = create_embedding_provider(MemorySearchConfig(provider="auto"))
        assert isinstance(provider, LocalEmbeddingProvider)

    def test_missing_key_uses_fallback(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = MemorySearchConfig(provider="openai", fallback="local")
        assert isinstance(create_embedding_provider(config), LocalEmbeddingProvider)

    def test_missing_key_without_fallback(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert create_embedding_provider(MemorySearchConfig(provider="openai")) is None

    def test_disabled(self):
        assert create_embedding_provider(MemorySearchConfig(enabled=False)) is None

    def test_config_key_wins(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = MemorySearchConfig(provider="openai", remote={"api_key": "from-config"})
        provider = create_embedding_provider(config)
        assert provider._api_key == "from-config"

    def test_request_timeout_from_config(self):
        config = MemorySearchConfig(
            provider="openai", remote={"api_key": "k", "request_timeout_seconds": 7}
        )
        provider = create_embedding_provider(config)
        assert provider._timeout.read == 7.0
