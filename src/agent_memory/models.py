"""Core data models for the memory subsystem."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def new_id() -> str:
    return str(uuid4())


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class MemoryType(str, Enum):
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"
    PROSPECTIVE = "prospective"
    EMOTIONAL = "emotional"


class BaseMemory(BaseModel):
    """Fields shared by every memory record."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_id)
    type: MemoryType
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    scope_id: str | None = None

    @model_validator(mode="after")
    def _check_timestamps(self) -> "BaseMemory":
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, datetime) and value.tzinfo is None:
                setattr(self, name, as_utc(value))
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at
        return self

    def primary_text(self) -> str:
        """Text used for free-text filtering of this record."""
        return ""


class WorkingMemory(BaseMemory):
    """Scope-local scratch buffer; never persisted."""

    type: MemoryType = MemoryType.WORKING
    content: str
    context: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None

    def primary_text(self) -> str:
        return self.content


class EpisodicContext(BaseModel):
    """who / what / when / where / why of an episode."""

    model_config = ConfigDict(extra="allow")

    who: str | None = None
    what: str = ""
    when: datetime | None = None
    where: str | None = None
    why: str | None = None


class EmotionKind(str, Enum):
    JOY = "joy"
    SATISFACTION = "satisfaction"
    FRUSTRATION = "frustration"
    FEAR = "fear"
    NEUTRAL = "neutral"
    POSITIVE = "positive"
    NEGATIVE = "negative"


class EmotionIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high"].index(self.value)


class EmotionTag(BaseModel):
    kind: EmotionKind
    intensity: EmotionIntensity = EmotionIntensity.MEDIUM
    timestamp: datetime = Field(default_factory=utcnow)


class EpisodicMemory(BaseMemory):
    type: MemoryType = MemoryType.EPISODIC
    event: str
    timestamp: datetime = Field(default_factory=utcnow)
    context: EpisodicContext = Field(default_factory=EpisodicContext)
    related_memories: list[str] = Field(default_factory=list)
    emotional_tag: EmotionTag | None = None

    def primary_text(self) -> str:
        parts = [self.event, self.context.what or "", self.context.why or ""]
        return " ".join(p for p in parts if p)


class SemanticMemory(BaseMemory):
    type: MemoryType = MemoryType.SEMANTIC
    fact: str
    category: str | None = None
    confidence: float = 1.0
    source: str | None = None

    @model_validator(mode="after")
    def _clamp_confidence(self) -> "SemanticMemory":
        self.confidence = _clamp_unit(self.confidence)
        return self

    def primary_text(self) -> str:
        return self.fact


class IndexedSnippet(SemanticMemory):
    """A hybrid-index hit surfaced through memory retrieval."""

    path: str
    score: float = 0.0
    start_line: int = 1
    end_line: int = 1


class ProceduralMemory(BaseMemory):
    type: MemoryType = MemoryType.PROCEDURAL
    pattern: str
    trigger: str
    action: str
    success_count: int = 0
    failure_count: int = 0
    last_used: datetime | None = None

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 0.0
        return self.success_count / total

    def primary_text(self) -> str:
        return f"{self.pattern} {self.trigger} {self.action}"


class ProspectiveStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return ["pending", "triggered", "completed"].index(self.value)


class ProspectiveMemory(BaseMemory):
    type: MemoryType = MemoryType.PROSPECTIVE
    intention: str
    trigger_time: datetime | None = None
    trigger_context: str | None = None
    status: ProspectiveStatus = ProspectiveStatus.PENDING
    priority: float = 0.5

    @model_validator(mode="after")
    def _clamp_priority(self) -> "ProspectiveMemory":
        self.priority = _clamp_unit(self.priority)
        return self

    def primary_text(self) -> str:
        return self.intention


class EmotionalMemory(BaseMemory):
    type: MemoryType = MemoryType.EMOTIONAL
    target_memory_id: str
    target_memory_type: MemoryType
    emotion: EmotionTag
    context: str | None = None

    def primary_text(self) -> str:
        return f"{self.emotion.kind.value} {self.context or ''}".strip()


MEMORY_MODELS: dict[MemoryType, type[BaseMemory]] = {
    MemoryType.WORKING: WorkingMemory,
    MemoryType.EPISODIC: EpisodicMemory,
    MemoryType.SEMANTIC: SemanticMemory,
    MemoryType.PROCEDURAL: ProceduralMemory,
    MemoryType.PROSPECTIVE: ProspectiveMemory,
    MemoryType.EMOTIONAL: EmotionalMemory,
}


# ---------------------------------------------------------------------------
# Search index entities
# ---------------------------------------------------------------------------


class FileRecord(BaseModel):
    """Bookkeeping for one indexed source file."""

    path: str
    source: str = "memory"
    content_hash: str
    mtime: float
    size: int = 0
    last_indexed_at: datetime = Field(default_factory=utcnow)


class Chunk(BaseModel):
    """A bounded window of text produced for indexing."""

    id: str | None = None
    file_id: str | None = None
    ordinal: int
    text: str
    token_count: int
    embedding: list[float] | None = None
    offset_start: int
    offset_end: int
    start_line: int = 1
    end_line: int = 1


class SearchResult(BaseModel):
    """A ranked chunk returned by the hybrid index."""

    chunk: Chunk
    path: str
    source: str = "memory"
    score: float = 0.0
    vector_score: float = 0.0
    text_score: float = 0.0
    mtime: float = 0.0
    snippet: str = ""


# ---------------------------------------------------------------------------
# Extraction / consolidation
# ---------------------------------------------------------------------------


class ExtractedMemoryKind(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    DECISION = "decision"
    EVENT = "event"
    LEARNING = "learning"


SEMANTIC_KINDS = frozenset(
    {ExtractedMemoryKind.FACT, ExtractedMemoryKind.PREFERENCE, ExtractedMemoryKind.LEARNING}
)
EPISODIC_KINDS = frozenset({ExtractedMemoryKind.DECISION, ExtractedMemoryKind.EVENT})


class ExtractedMemory(BaseModel):
    """One candidate memory returned by the classifier port."""

    type: ExtractedMemoryKind
    content: str
    importance: float = 0.5
    structured_data: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _clamp_importance(self) -> "ExtractedMemory":
        self.importance = _clamp_unit(self.importance)
        return self


class ClassificationResult(BaseModel):
    has_important_info: bool = False
    memories: list[ExtractedMemory] = Field(default_factory=list)


class ConsolidatedSummary(BaseModel):
    """Output of the consolidation phase of a sleep cycle."""

    content: str
    type: ExtractedMemoryKind = ExtractedMemoryKind.FACT
    importance: float = 0.5

    @model_validator(mode="after")
    def _clamp_importance(self) -> "ConsolidatedSummary":
        self.importance = _clamp_unit(self.importance)
        return self


class ConversationMessage(BaseModel):
    """A single conversation message."""

    role: str  # "user", "assistant", "system", "tool"
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    importance: float | None = None

    def token_estimate(self) -> int:
        from .token_counter import estimate_tokens

        return estimate_tokens(self.content) + 4  # +4 for role/overhead


class MemoryRetrievalResult(BaseModel):
    memories: list[SerializeAsAny[BaseMemory]] = Field(default_factory=list)
    total: int = 0
