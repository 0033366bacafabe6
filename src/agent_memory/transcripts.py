"""Conversation transcripts stored as JSON lines.

One file per scope, ``conversations/<scope_id>.jsonl``, each line a
``{"role", "content", "timestamp"}`` object.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .models import ConversationMessage

TRANSCRIPT_SUFFIX = ".jsonl"


def transcript_path(conversations_dir: str | Path, scope_id: str) -> Path:
    return Path(conversations_dir) / f"{scope_id}{TRANSCRIPT_SUFFIX}"


def read_transcript(path: str | Path) -> list[ConversationMessage]:
    """Parse a transcript file; unreadable lines are skipped."""
    path = Path(path)
    if not path.exists():
        return []
    messages: list[ConversationMessage] = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                messages.append(ConversationMessage.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.debug(f"Skipping transcript line {path.name}:{line_no}: {e}")
    return messages


def append_transcript(path: str | Path, message: ConversationMessage) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(message.model_dump_json(exclude_none=True) + "\n")


def render_transcript(messages: list[ConversationMessage]) -> str:
    """Plain-text form of a transcript used for indexing."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages if m.content.strip())


def count_messages(path: str | Path) -> int:
    path = Path(path)
    if not path.exists():
        return 0
    with open(path, "r", encoding="utf-8") as f:
        return sum(1 for line in f if line.strip())
