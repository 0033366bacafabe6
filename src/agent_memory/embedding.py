"""Embedding providers and vector helpers.

Three providers are available: a local sentence-transformers model (lazy
loaded on first use), the OpenAI embeddings API and the Gemini
``batchEmbedContents`` API. Remote providers batch requests, bound every call
with a timeout and retry a few times before giving up with
:class:`EmbeddingProviderError`.
"""

from __future__ import annotations

import asyncio
import os
import struct
from typing import Protocol, runtime_checkable

import httpx
import numpy as np
from loguru import logger

from .config import BatchConfig, MemorySearchConfig, default_model_for
from .exceptions import EmbeddingProviderError

OPENAI_BASE_URL = "https://api.openai.com/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_BATCH_SIZE = 64
MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 30.0


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into fixed-dimension vectors."""

    provider_id: str
    model: str

    async def embed(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_one(self, text: str) -> list[float]: ...


class LocalEmbeddingProvider:
    """Embedding provider using sentence-transformers.

    The model is loaded lazily and encoding runs in a worker thread so the
    event loop is never blocked.
    """

    provider_id = "local"

    def __init__(
        self,
        model: str | None = None,
        cache_dir: str | None = None,
        trust_remote_code: bool = False,
        batch_size: int = 32,
    ):
        self.model = model or default_model_for("local")
        self._cache_dir = cache_dir
        self._trust_remote_code = trust_remote_code
        self._batch_size = batch_size
        self._model = None
        self._load_lock = asyncio.Lock()

    def _load(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingProviderError(
                "sentence-transformers is required for local embeddings. "
                "Install with: pip install sentence-transformers",
                provider=self.provider_id,
            ) from e

        logger.info(f"Loading embedding model: {self.model}")
        model = SentenceTransformer(
            self.model,
            cache_folder=self._cache_dir,
            trust_remote_code=self._trust_remote_code,
        )
        logger.info(
            f"Embedding model loaded: dim={model.get_sentence_embedding_dimension()}"
        )
        return model

    async def _ensure_model(self) -> None:
        if self._model is not None:
            return
        async with self._load_lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        await self._ensure_model()
        try:
            vectors = await asyncio.to_thread(
                self._model.encode,
                texts,
                batch_size=self._batch_size,
                show_progress_bar=False,
                normalize_embeddings=True,
            )
        except Exception as e:
            raise EmbeddingProviderError(str(e), provider=self.provider_id) from e
        return np.asarray(vectors, dtype=np.float32).tolist()

    async def embed_one(self, text: str) -> list[float]:
        results = await self.embed([text])
        return results[0]


class _RemoteEmbeddingProvider:
    """Shared batching, timeout and retry logic for HTTP providers."""

    provider_id = "remote"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        batch: BatchConfig | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        client: httpx.AsyncClient | None = None,
        request_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._batch = batch or BatchConfig()
        self._batch_size = batch_size if self._batch.enabled else 1
        self._timeout = httpx.Timeout(request_timeout)
        # deadline for one batch across all of its retries
        self._batch_deadline = (
            self._batch.timeout_minutes * 60
            if self._batch.wait and self._batch.timeout_minutes > 0
            else None
        )
        self._client = client
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(self._batch.concurrency)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        batches = [
            texts[i : i + self._batch_size]
            for i in range(0, len(texts), self._batch_size)
        ]
        results = await asyncio.gather(*(self._embed_batch(b) for b in batches))
        vectors = [v for batch in results for v in batch]
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"expected {len(texts)} vectors, got {len(vectors)}",
                provider=self.provider_id,
            )
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        results = await self.embed([text])
        return results[0]

    async def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        async with self._semaphore:
            if self._batch_deadline is None:
                return await self._embed_with_retries(texts)
            try:
                return await asyncio.wait_for(
                    self._embed_with_retries(texts), timeout=self._batch_deadline
                )
            except asyncio.TimeoutError as e:
                raise EmbeddingProviderError(
                    f"batch timed out after {self._batch_deadline:.0f}s",
                    provider=self.provider_id,
                ) from e

    async def _embed_with_retries(self, texts: list[str]) -> list[list[float]]:
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return await self._request(texts)
            except EmbeddingProviderError:
                raise
            except (ValueError, KeyError, TypeError) as e:
                raise EmbeddingProviderError(
                    f"invalid response from embedding API: {e}",
                    provider=self.provider_id,
                ) from e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status != 429 and status < 500:
                    raise EmbeddingProviderError(
                        f"HTTP {status}: {e.response.text[:200]}",
                        provider=self.provider_id,
                    ) from e
                last_error = e
            logger.debug(
                f"[{self.provider_id}] embedding attempt {attempt} failed: {last_error}"
            )
            if attempt < MAX_RETRIES:
                await asyncio.sleep(self._batch.poll_interval_ms / 1000 * attempt)
        raise EmbeddingProviderError(
            f"giving up after {MAX_RETRIES} attempts: {last_error}",
            provider=self.provider_id,
        )

    async def _request(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError


class OpenAIEmbeddingProvider(_RemoteEmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    provider_id = "openai"

    def __init__(self, api_key: str, model: str | None = None, base_url: str | None = None, **kwargs):
        super().__init__(
            api_key,
            model or default_model_for("openai"),
            base_url or OPENAI_BASE_URL,
            **kwargs,
        )

    async def _request(self, texts: list[str]) -> list[list[float]]:
        response = await self._get_client().post(
            f"{self._base_url}/embeddings",
            json={"input": texts, "model": self.model},
            headers={"Authorization": f"Bearer {self._api_key}", **self._headers},
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json()
        items = data.get("data")
        if not isinstance(items, list):
            raise EmbeddingProviderError(
                "invalid response from embedding API", provider=self.provider_id
            )
        items = sorted(items, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


class GeminiEmbeddingProvider(_RemoteEmbeddingProvider):
    """Gemini ``batchEmbedContents`` endpoint."""

    provider_id = "gemini"

    def __init__(self, api_key: str, model: str | None = None, base_url: str | None = None, **kwargs):
        super().__init__(
            api_key,
            model or default_model_for("gemini"),
            base_url or GEMINI_BASE_URL,
            **kwargs,
        )

    async def _request(self, texts: list[str]) -> list[list[float]]:
        requests = [
            {"model": f"models/{self.model}", "content": {"parts": [{"text": t}]}}
            for t in texts
        ]
        response = await self._get_client().post(
            f"{self._base_url}/models/{self.model}:batchEmbedContents",
            params={"key": self._api_key},
            json={"requests": requests},
            headers=self._headers,
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json()
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise EmbeddingProviderError(
                "invalid response from embedding API", provider=self.provider_id
            )
        return [item["values"] for item in embeddings]


def _api_key_for(provider: str, config: MemorySearchConfig) -> str | None:
    if config.remote.api_key:
        return config.remote.api_key
    if provider == "openai":
        return os.environ.get("OPENAI_API_KEY")
    if provider == "gemini":
        return os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    return None


def _build(provider: str, config: MemorySearchConfig, model: str) -> EmbeddingProvider | None:
    if provider == "local":
        return LocalEmbeddingProvider(
            model=config.local.model_path or model,
            cache_dir=config.local.model_cache_dir,
            trust_remote_code=config.local.trust_remote_code,
        )
    api_key = _api_key_for(provider, config)
    if not api_key:
        return None
    cls = OpenAIEmbeddingProvider if provider == "openai" else GeminiEmbeddingProvider
    return cls(
        api_key,
        model=model,
        base_url=config.remote.base_url,
        headers=config.remote.headers,
        batch=config.remote.batch,
        request_timeout=config.remote.request_timeout_seconds,
    )


def create_embedding_provider(config: MemorySearchConfig) -> EmbeddingProvider | None:
    """Create the embedding provider described by ``config``.

    ``auto`` picks OpenAI when an API key is available, then Gemini, then the
    local model. When the requested provider cannot be built the configured
    ``fallback`` is tried. Returns ``None`` when search is disabled or nothing
    could be built.
    """
    if not config.enabled:
        return None

    if config.provider == "auto":
        for candidate in ("openai", "gemini"):
            if _api_key_for(candidate, config):
                provider = _build(candidate, config, default_model_for(candidate))
                logger.info(f"Auto-selected embedding provider: {candidate}")
                return provider
        return _build("local", config, default_model_for("local"))

    provider = _build(config.provider, config, config.model)
    if provider is not None:
        return provider

    logger.warning(f"Embedding provider '{config.provider}' unavailable (missing API key?)")
    if config.fallback != "none" and config.fallback != config.provider:
        logger.info(f"Falling back to embedding provider '{config.fallback}'")
        return _build(config.fallback, config, default_model_for(config.fallback))
    return None


def serialize_embedding(embedding: list[float]) -> bytes:
    """Pack a vector as little-endian float32 for BLOB storage."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    count = len(blob) // 4  # float32 = 4 bytes
    return list(struct.unpack(f"<{count}f", blob))


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm or
    the dimensions differ."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def cosine_similarity_matrix(query, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    q = np.asarray(query, dtype=np.float32)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims.astype(np.float32)
