"""Memory subsystem configuration models.

Out-of-range values are clamped into their valid ranges while the models are
validated, so a constructed config is always a resolved config.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

MemorySource = Literal["memory", "conversations"]
ProviderName = Literal["auto", "openai", "gemini", "local"]
FallbackName = Literal["openai", "gemini", "local", "none"]
StrategyName = Literal["sliding_window", "progressive", "importance", "hybrid"]

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_LOCAL_MODEL = "nomic-ai/nomic-embed-text-v2-moe"

DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
DEFAULT_SOURCES: list[MemorySource] = ["memory"]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class BatchConfig(BaseModel):
    """Remote embedding batching and polling."""

    enabled: bool = True
    wait: bool = True
    concurrency: int = 2
    poll_interval_ms: int = 2000
    timeout_minutes: float = 60

    @model_validator(mode="after")
    def _clamp_values(self) -> "BatchConfig":
        self.concurrency = max(1, self.concurrency)
        self.poll_interval_ms = max(0, self.poll_interval_ms)
        self.timeout_minutes = max(0.0, self.timeout_minutes)
        return self


class RemoteConfig(BaseModel):
    """Remote embedding endpoint settings."""

    base_url: str | None = None
    api_key: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    batch: BatchConfig = Field(default_factory=BatchConfig)


class LocalModelConfig(BaseModel):
    model_path: str | None = None
    model_cache_dir: str | None = None
    trust_remote_code: bool = False


class StoreConfig(BaseModel):
    """Search index database location."""

    driver: Literal["sqlite"] = "sqlite"
    path: str | None = None  # None -> <root_dir>/memory/<agent_id>.sqlite
    vector_enabled: bool = True


class ChunkingConfig(BaseModel):
    tokens: int = 400
    overlap: int = 80

    @model_validator(mode="after")
    def _clamp_overlap(self) -> "ChunkingConfig":
        self.tokens = max(1, self.tokens)
        self.overlap = max(0, min(self.overlap, self.tokens - 1))
        return self


class ConversationSyncConfig(BaseModel):
    """Delta thresholds gating transcript re-indexing."""

    delta_bytes: int = 100_000
    delta_messages: int = 50

    @model_validator(mode="after")
    def _clamp_deltas(self) -> "ConversationSyncConfig":
        self.delta_bytes = max(0, self.delta_bytes)
        self.delta_messages = max(0, self.delta_messages)
        return self


class SyncConfig(BaseModel):
    on_conversation_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = 1500
    interval_minutes: float = 0
    conversations: ConversationSyncConfig = Field(
        default_factory=ConversationSyncConfig
    )

    @model_validator(mode="after")
    def _clamp_timers(self) -> "SyncConfig":
        self.watch_debounce_ms = max(0, self.watch_debounce_ms)
        self.interval_minutes = max(0.0, self.interval_minutes)
        return self


class HybridConfig(BaseModel):
    """Vector/text score fusion weights.

    Weights are clamped to [0, 1] and normalized to sum to 1. When both are
    zero the defaults (0.7, 0.3) apply.
    """

    enabled: bool = True
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    text_weight: float = DEFAULT_TEXT_WEIGHT
    candidate_multiplier: int = 4

    @model_validator(mode="after")
    def _normalize(self) -> "HybridConfig":
        self.vector_weight, self.text_weight = normalize_weights(
            self.vector_weight, self.text_weight
        )
        self.candidate_multiplier = int(_clamp(self.candidate_multiplier, 1, 20))
        return self


class QueryConfig(BaseModel):
    max_results: int = 6
    min_score: float = 0.35
    hybrid: HybridConfig = Field(default_factory=HybridConfig)

    @model_validator(mode="after")
    def _clamp_values(self) -> "QueryConfig":
        self.max_results = max(1, self.max_results)
        self.min_score = _clamp(self.min_score, 0.0, 1.0)
        return self


class CacheConfig(BaseModel):
    enabled: bool = True
    max_entries: int | None = None

    @field_validator("max_entries", mode="before")
    @classmethod
    def _floor_max_entries(cls, value):
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        return max(1, int(number))


class MemorySearchConfig(BaseModel):
    """Hybrid search configuration (index, embeddings, sync, query)."""

    enabled: bool = True
    sources: list[MemorySource] = Field(default_factory=lambda: list(DEFAULT_SOURCES))
    extra_paths: list[str] = Field(default_factory=list)
    provider: ProviderName = "auto"
    fallback: FallbackName = "none"
    model: str = ""
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    local: LocalModelConfig = Field(default_factory=LocalModelConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @field_validator("sources", mode="before")
    @classmethod
    def _normalize_sources(cls, value):
        if not value:
            return list(DEFAULT_SOURCES)
        normalized: list[str] = []
        for source in value:
            if source in ("memory", "conversations") and source not in normalized:
                normalized.append(source)
        return normalized or list(DEFAULT_SOURCES)

    @field_validator("extra_paths", mode="before")
    @classmethod
    def _normalize_extra_paths(cls, value):
        paths: list[str] = []
        for raw in value or []:
            path = str(raw).strip()
            if path and path not in paths:
                paths.append(path)
        return paths

    @model_validator(mode="after")
    def _default_model(self) -> "MemorySearchConfig":
        if not self.model:
            self.model = default_model_for(self.provider)
        return self


class StoreCacheConfig(BaseModel):
    """Read cache for typed-store JSON files."""

    ttl_seconds: float = 30.0

    @model_validator(mode="after")
    def _clamp_ttl(self) -> "StoreCacheConfig":
        self.ttl_seconds = max(0.0, self.ttl_seconds)
        return self


class WorkingMemoryConfig(BaseModel):
    default_ttl_seconds: float = 3600.0


class ExtractionConfig(BaseModel):
    """Real-time extraction from incoming messages."""

    enabled: bool = True
    recent_context_chars: int = 2000
    min_importance: float = 0.0

    @model_validator(mode="after")
    def _clamp_values(self) -> "ExtractionConfig":
        self.recent_context_chars = max(0, self.recent_context_chars)
        self.min_importance = _clamp(self.min_importance, 0.0, 1.0)
        return self


class SleepConfig(BaseModel):
    """Consolidation ("sleep") pipeline configuration."""

    enabled: bool = True
    threshold: float = 0.8
    cooldown_minutes: float = 5.0
    min_messages_to_sleep: int = 10
    strategy: StrategyName = "hybrid"
    keep_recent_messages: int = 6
    max_summaries: int = 8

    @model_validator(mode="after")
    def _clamp_values(self) -> "SleepConfig":
        self.threshold = _clamp(self.threshold, 0.0, 1.0)
        self.cooldown_minutes = max(0.0, self.cooldown_minutes)
        self.min_messages_to_sleep = max(0, self.min_messages_to_sleep)
        self.keep_recent_messages = max(0, self.keep_recent_messages)
        self.max_summaries = max(1, self.max_summaries)
        return self


class EventChannelConfig(BaseModel):
    max_queue_size: int = 256

    @model_validator(mode="after")
    def _clamp_size(self) -> "EventChannelConfig":
        self.max_queue_size = max(1, self.max_queue_size)
        return self


class MemoryConfig(BaseModel):
    """Top-level memory configuration for one agent identity."""

    agent_id: str = "default"
    root_dir: str = "./memory_workspace"
    search: MemorySearchConfig = Field(default_factory=MemorySearchConfig)
    stores: StoreCacheConfig = Field(default_factory=StoreCacheConfig)
    working: WorkingMemoryConfig = Field(default_factory=WorkingMemoryConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    sleep: SleepConfig = Field(default_factory=SleepConfig)
    events: EventChannelConfig = Field(default_factory=EventChannelConfig)

    @model_validator(mode="after")
    def _validate_agent_id(self) -> "MemoryConfig":
        if not self.agent_id or any(c in self.agent_id for c in "/\\") or ".." in self.agent_id:
            raise ValueError(f"agent_id must be a plain name: {self.agent_id!r}")
        return self

    @property
    def root_path(self) -> Path:
        return Path(self.root_dir)

    @property
    def store_dir(self) -> Path:
        return self.root_path / "stores"

    @property
    def conversations_dir(self) -> Path:
        return self.root_path / "conversations"

    @property
    def index_db_path(self) -> Path:
        if self.search.store.path:
            return Path(self.search.store.path)
        return self.root_path / "memory" / f"{self.agent_id}.sqlite"


def default_model_for(provider: str) -> str:
    if provider == "openai":
        return DEFAULT_OPENAI_MODEL
    if provider == "gemini":
        return DEFAULT_GEMINI_MODEL
    if provider == "local":
        return DEFAULT_LOCAL_MODEL
    return ""


def normalize_weights(vector_weight: float, text_weight: float) -> tuple[float, float]:
    """Clamp both weights to [0, 1] and scale them to sum to 1.

    Returns the defaults when both clamp to zero.
    """
    vector = _clamp(float(vector_weight), 0.0, 1.0)
    text = _clamp(float(text_weight), 0.0, 1.0)
    total = vector + text
    if total <= 0:
        return DEFAULT_VECTOR_WEIGHT, DEFAULT_TEXT_WEIGHT
    return vector / total, text / total
