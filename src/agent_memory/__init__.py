"""
agent_memory - persistent multi-typed memory for an assistant agent

Six typed memory stores (working, episodic, semantic, procedural,
prospective, emotional), a hybrid vector + full-text search index kept in
sync with the workspace files, real-time extraction through an LLM port and
a background consolidation ("sleep") pipeline.
"""

from .config import MemoryConfig, MemorySearchConfig, SleepConfig
from .consolidation import SleepPipeline, SleepResult, TranscriptActivitySource, should_sleep
from .embedding import EmbeddingProvider, create_embedding_provider
from .embedding_cache import CachedEmbedder, EmbeddingCache
from .events import (
    ContextPressureEvent,
    MemoryEventChannel,
    NewMessageEvent,
    ScopeEndedEvent,
)
from .exceptions import (
    ClassificationError,
    ConfigError,
    EmbeddingProviderError,
    IndexInitError,
    InvalidTransitionError,
    MemorySystemError,
    StoreIOError,
)
from .hybrid_index import HybridIndex
from .llm_port import LLMMemoryClassifier, LLMSummarizer, MemoryClassifier, StaticMemoryClassifier
from .manager import UnifiedMemoryManager
from .models import (
    ConsolidatedSummary,
    ConversationMessage,
    EmotionalMemory,
    EpisodicMemory,
    IndexedSnippet,
    MemoryRetrievalResult,
    MemoryType,
    ProceduralMemory,
    ProspectiveMemory,
    SearchResult,
    SemanticMemory,
    WorkingMemory,
)
from .sync import SyncEngine, SyncReport

__all__ = [
    "MemoryConfig",
    "MemorySearchConfig",
    "SleepConfig",
    "SleepPipeline",
    "SleepResult",
    "TranscriptActivitySource",
    "should_sleep",
    "EmbeddingProvider",
    "create_embedding_provider",
    "CachedEmbedder",
    "EmbeddingCache",
    "ContextPressureEvent",
    "MemoryEventChannel",
    "NewMessageEvent",
    "ScopeEndedEvent",
    "ClassificationError",
    "ConfigError",
    "EmbeddingProviderError",
    "IndexInitError",
    "InvalidTransitionError",
    "MemorySystemError",
    "StoreIOError",
    "HybridIndex",
    "LLMMemoryClassifier",
    "LLMSummarizer",
    "MemoryClassifier",
    "StaticMemoryClassifier",
    "UnifiedMemoryManager",
    "ConsolidatedSummary",
    "ConversationMessage",
    "EmotionalMemory",
    "EpisodicMemory",
    "IndexedSnippet",
    "MemoryRetrievalResult",
    "MemoryType",
    "ProceduralMemory",
    "ProspectiveMemory",
    "SearchResult",
    "SemanticMemory",
    "WorkingMemory",
    "SyncEngine",
    "SyncReport",
]
