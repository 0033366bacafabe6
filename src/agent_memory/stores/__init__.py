"""Typed memory stores."""

from __future__ import annotations

from .base import JsonCollectionStore, PathLockRegistry, text_matches
from .cache import CollectionCache, FileVersion, VersionedResource, is_stale
from .emotional import EmotionalMemoryStore
from .episodic import EpisodicMemoryStore
from .procedural import ProceduralMemoryStore, trigger_matches
from .prospective import ProspectiveMemoryStore
from .semantic import SemanticMemoryStore
from .working import WorkingMemoryStore

__all__ = [
    "CollectionCache",
    "EmotionalMemoryStore",
    "EpisodicMemoryStore",
    "FileVersion",
    "JsonCollectionStore",
    "PathLockRegistry",
    "ProceduralMemoryStore",
    "ProspectiveMemoryStore",
    "SemanticMemoryStore",
    "VersionedResource",
    "WorkingMemoryStore",
    "is_stale",
    "text_matches",
    "trigger_matches",
]
