"""
agent_memory test fixtures
Deterministic embedding provider, canned classifier and config helpers.
"""

from __future__ import annotations

import hashlib
import math
import re
from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.config import MemoryConfig
from agent_memory.llm_port import StaticMemoryClassifier

FAKE_DIMENSIONS = 32
_WORD_RE = re.compile(r"\w+")


def _bucket(word: str) -> int:
    digest = hashlib.md5(word.encode("utf-8")).digest()
    return digest[0] % FAKE_DIMENSIONS


class FakeEmbeddingProvider:
    """Bag-of-words hashing embedder; texts sharing words score as similar."""

    provider_id = "fake"

    def __init__(self, model: str = "fake-model", fail: bool = False):
        self.model = model
        self.fail = fail
        self.calls: list[list[str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * FAKE_DIMENSIONS
        for word in _WORD_RE.findall(text.lower()):
            vec[_bucket(word)] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("provider offline")
        return [self.vector(t) for t in texts]

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]


class FixedClock:
    """Settable clock returning timezone-aware datetimes."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def static_classifier():
    return StaticMemoryClassifier()


@pytest.fixture
def memory_config(tmp_path):
    """MemoryConfig rooted in a temp dir with background triggers off."""
    return MemoryConfig(
        agent_id="tester",
        root_dir=str(tmp_path / "workspace"),
        search={
            "provider": "local",
            "sync": {"watch": False, "on_search": False, "interval_minutes": 0},
            "query": {"min_score": 0.0},
        },
    )
