"""Consolidation ("sleep") pipeline.

When a scope's context window fills past ``sleep.threshold`` the pipeline
reads the scope's recent activity, compresses it with the configured
strategy and persists the result as semantic memories plus a daily-log
entry. Phases run in order::

    PROCESS -> SUMMARIZE -> CONSOLIDATE -> SAVE -> DONE

A failing phase is recorded in ``SleepResult.errors`` and ends the run;
whatever earlier phases produced stays on the result. Nothing here raises
to the caller.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

from loguru import logger

from .config import SleepConfig
from .llm_port import Summarizer
from .models import (
    ConsolidatedSummary,
    ConversationMessage,
    ExtractedMemoryKind,
    as_utc,
    utcnow,
)
from .token_counter import TokenCounter, estimate_tokens
from .transcripts import read_transcript, transcript_path

if TYPE_CHECKING:
    from .manager import UnifiedMemoryManager


def should_sleep(
    tokens_used: int,
    context_window: int,
    last_sleep_at: datetime | None,
    now: datetime,
    config: SleepConfig,
    message_count: int | None = None,
) -> bool:
    """Whether a scope should enter sleep mode now.

    Requires the context ratio to reach ``config.threshold``, the cooldown
    since the last sleep to have elapsed and, when ``message_count`` is
    given, at least ``min_messages_to_sleep`` messages.
    """
    if not config.enabled or context_window <= 0 or tokens_used <= 0:
        return False
    if message_count is not None and message_count < config.min_messages_to_sleep:
        return False
    if tokens_used / context_window < config.threshold:
        return False
    if last_sleep_at is not None:
        if as_utc(now) - as_utc(last_sleep_at) < timedelta(minutes=config.cooldown_minutes):
            return False
    return True


# ---------------------------------------------------------------------------
# Importance heuristics
# ---------------------------------------------------------------------------

_IMPORTANT_MARKERS = (
    "remember",
    "important",
    "always",
    "never",
    "must",
    "deadline",
    "my name",
    "don't forget",
    "prefer",
    "decided",
)

_KIND_PATTERNS: list[tuple[ExtractedMemoryKind, re.Pattern[str]]] = [
    (ExtractedMemoryKind.DECISION, re.compile(r"\b(decided|decision|we'll go with|agreed to)\b", re.I)),
    (ExtractedMemoryKind.PREFERENCE, re.compile(r"\b(prefer|like|love|hate|favou?rite|dislike)\b", re.I)),
    (ExtractedMemoryKind.LEARNING, re.compile(r"\b(learned|lesson|turns out|mistake|realized)\b", re.I)),
    (ExtractedMemoryKind.EVENT, re.compile(r"\b(happened|yesterday|today|met|went|visited)\b", re.I)),
]

_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


def score_importance(message: ConversationMessage) -> float:
    """Heuristic importance in [0, 1]; an explicit ``importance`` wins."""
    if message.importance is not None:
        return max(0.0, min(1.0, message.importance))
    text = message.content.lower()
    score = 0.3
    if message.role == "user":
        score += 0.1
    elif message.role == "system":
        score -= 0.1
    hits = sum(1 for marker in _IMPORTANT_MARKERS if marker in text)
    score += min(0.45, 0.15 * hits)
    tokens = estimate_tokens(message.content)
    if tokens > 40:
        score += 0.1
    elif tokens < 4:
        score -= 0.2
    return max(0.0, min(1.0, score))


def guess_kind(text: str) -> ExtractedMemoryKind:
    for kind, pattern in _KIND_PATTERNS:
        if pattern.search(text):
            return kind
    return ExtractedMemoryKind.FACT


def first_sentence(text: str, max_chars: int = 240) -> str:
    sentence = _SENTENCE_END_RE.split(text.strip(), maxsplit=1)[0]
    if len(sentence) > max_chars:
        sentence = sentence[: max_chars - 3].rstrip() + "..."
    return sentence


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@runtime_checkable
class SummarizationStrategy(Protocol):
    name: str

    async def compress(
        self, messages: list[ConversationMessage]
    ) -> list[ConversationMessage]: ...


class SlidingWindowStrategy:
    """Keep only the most recent ``keep_recent`` messages."""

    name = "sliding_window"

    def __init__(self, keep_recent: int = 6):
        self.keep_recent = keep_recent

    async def compress(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        if self.keep_recent <= 0:
            return []
        return list(messages[-self.keep_recent :])


class ImportanceStrategy:
    """Keep the ``max_messages`` highest-scoring messages in original order."""

    name = "importance"

    def __init__(self, max_messages: int = 8, min_importance: float = 0.0):
        self.max_messages = max_messages
        self.min_importance = min_importance

    async def compress(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        scored = [
            (score_importance(m), i, m)
            for i, m in enumerate(messages)
            if m.content.strip()
        ]
        scored = [item for item in scored if item[0] >= self.min_importance]
        scored.sort(key=lambda item: (-item[0], -item[1]))
        kept = sorted(scored[: self.max_messages], key=lambda item: item[1])
        return [
            m.model_copy(update={"importance": score}) for score, _, m in kept
        ]


class ProgressiveStrategy:
    """Fold older messages into one summary message, keep the recent tail.

    With a ``Summarizer`` the older part is summarized by the model;
    otherwise each older message contributes its first sentence.
    """

    name = "progressive"

    def __init__(self, keep_recent: int = 6, summarizer: Summarizer | None = None):
        self.keep_recent = keep_recent
        self.summarizer = summarizer

    async def _fold(self, older: list[ConversationMessage]) -> str:
        if self.summarizer is not None:
            summaries = await self.summarizer.summarize(older)
            if summaries:
                return "\n".join(f"- {s.content}" for s in summaries)
        lines = [
            f"- {m.role}: {first_sentence(m.content)}" for m in older if m.content.strip()
        ]
        return "\n".join(lines)

    async def compress(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        split = max(0, len(messages) - self.keep_recent)
        older, recent = messages[:split], messages[split:]
        if not older:
            return list(recent)
        folded = await self._fold(older)
        if not folded:
            return list(recent)
        summary = ConversationMessage(
            role="system",
            content=f"Summary of earlier conversation:\n{folded}",
            timestamp=older[-1].timestamp,
            importance=0.6,
        )
        return [summary, *recent]


class HybridStrategy:
    """Important messages from the older part plus a sliding recent tail."""

    name = "hybrid"

    def __init__(self, keep_recent: int = 6, max_important: int = 8):
        self.window = SlidingWindowStrategy(keep_recent)
        self.importance = ImportanceStrategy(max_important, min_importance=0.5)
        self.keep_recent = keep_recent

    async def compress(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        split = max(0, len(messages) - self.keep_recent)
        important = await self.importance.compress(messages[:split])
        recent = await self.window.compress(messages[split:])
        return important + recent


def create_strategy(config: SleepConfig, summarizer: Summarizer | None = None) -> SummarizationStrategy:
    if config.strategy == "sliding_window":
        return SlidingWindowStrategy(config.keep_recent_messages)
    if config.strategy == "progressive":
        return ProgressiveStrategy(config.keep_recent_messages, summarizer)
    if config.strategy == "importance":
        return ImportanceStrategy(config.max_summaries)
    return HybridStrategy(config.keep_recent_messages, config.max_summaries)


# ---------------------------------------------------------------------------
# Activity sources
# ---------------------------------------------------------------------------


@runtime_checkable
class ActivitySource(Protocol):
    async def recent_messages(self, scope_id: str) -> list[ConversationMessage]: ...


class TranscriptActivitySource:
    """Reads ``conversations/<scope_id>.jsonl``."""

    def __init__(self, conversations_dir: str | Path, max_messages: int | None = 200):
        self.conversations_dir = Path(conversations_dir)
        self.max_messages = max_messages

    async def recent_messages(self, scope_id: str) -> list[ConversationMessage]:
        path = transcript_path(self.conversations_dir, scope_id)
        messages = await asyncio.to_thread(read_transcript, path)
        if self.max_messages:
            messages = messages[-self.max_messages :]
        return messages


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SleepPhase(str, Enum):
    IDLE = "idle"
    PROCESS = "process"
    SUMMARIZE = "summarize"
    CONSOLIDATE = "consolidate"
    SAVE = "save"
    DONE = "done"


@dataclass
class SleepResult:
    scope_id: str
    phase_reached: SleepPhase = SleepPhase.IDLE
    messages: list[ConversationMessage] = field(default_factory=list)
    compressed: list[ConversationMessage] = field(default_factory=list)
    summaries: list[ConsolidatedSummary] = field(default_factory=list)
    saved_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    tokens_before: int = 0
    tokens_after: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.phase_reached == SleepPhase.DONE and not self.errors


class SleepPipeline:
    """Runs sleep cycles for conversation scopes."""

    def __init__(
        self,
        manager: "UnifiedMemoryManager",
        config: SleepConfig | None = None,
        activity_source: ActivitySource | None = None,
        summarizer: Summarizer | None = None,
        clock: Callable[[], datetime] = utcnow,
        token_counter: TokenCounter | None = None,
    ):
        self.manager = manager
        self.config = config or manager.config.sleep
        self.activity_source = activity_source or TranscriptActivitySource(
            manager.config.conversations_dir
        )
        self.summarizer = summarizer
        self.strategy = create_strategy(self.config, summarizer)
        self._clock = clock
        self._token_counter = token_counter if token_counter is not None else TokenCounter()
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_sleep: dict[str, datetime] = {}

    def last_sleep_at(self, scope_id: str) -> datetime | None:
        return self._last_sleep.get(scope_id)

    def _lock_for(self, scope_id: str) -> asyncio.Lock:
        lock = self._locks.get(scope_id)
        if lock is None:
            lock = self._locks[scope_id] = asyncio.Lock()
        return lock

    def is_sleeping(self, scope_id: str) -> bool:
        lock = self._locks.get(scope_id)
        return lock is not None and lock.locked()

    async def maybe_sleep(
        self,
        scope_id: str,
        tokens_used: int,
        context_window: int,
        message_count: int | None = None,
    ) -> SleepResult | None:
        """Run a sleep cycle when the scope is under context pressure.

        Returns None when no cycle ran (below threshold, cooling down, or a
        cycle for the scope is already running).
        """
        if not should_sleep(
            tokens_used,
            context_window,
            self._last_sleep.get(scope_id),
            self._clock(),
            self.config,
            message_count,
        ):
            return None
        if self.is_sleeping(scope_id):
            logger.debug(f"Sleep already running for scope {scope_id}")
            return None
        return await self.run(scope_id)

    async def run(self, scope_id: str) -> SleepResult:
        async with self._lock_for(scope_id):
            result = SleepResult(scope_id=scope_id, started_at=self._clock())
            try:
                await self._run_phases(result)
            finally:
                self._last_sleep[scope_id] = self._clock()
                result.finished_at = self._clock()
            logger.info(
                f"Sleep cycle for {scope_id} reached {result.phase_reached.value}: "
                f"{len(result.messages)} messages, {len(result.summaries)} summaries, "
                f"{len(result.saved_ids)} saved, tokens {result.tokens_before}"
                f"->{result.tokens_after}"
            )
            return result

    async def _run_phases(self, result: SleepResult) -> None:
        scope_id = result.scope_id

        try:
            result.messages = await self.activity_source.recent_messages(scope_id)
            result.tokens_before = self._token_counter.count_messages(result.messages)
        except Exception as e:
            self._fail(result, SleepPhase.PROCESS, e)
            return
        result.phase_reached = SleepPhase.PROCESS
        if not result.messages:
            result.phase_reached = SleepPhase.DONE
            return

        try:
            result.compressed = await self.strategy.compress(result.messages)
            result.tokens_after = self._token_counter.count_messages(result.compressed)
        except Exception as e:
            self._fail(result, SleepPhase.SUMMARIZE, e)
            return
        result.phase_reached = SleepPhase.SUMMARIZE

        try:
            result.summaries = await self._consolidate(result.compressed)
        except Exception as e:
            self._fail(result, SleepPhase.CONSOLIDATE, e)
            return
        result.phase_reached = SleepPhase.CONSOLIDATE

        try:
            await self._save(result)
        except Exception as e:
            self._fail(result, SleepPhase.SAVE, e)
            return
        result.phase_reached = SleepPhase.DONE

    @staticmethod
    def _fail(result: SleepResult, phase: SleepPhase, error: Exception) -> None:
        result.errors[phase.value] = str(error)
        logger.warning(f"Sleep phase {phase.value} failed for {result.scope_id}: {error}")

    async def _consolidate(self, messages: list[ConversationMessage]) -> list[ConsolidatedSummary]:
        if self.summarizer is not None and not isinstance(self.strategy, ProgressiveStrategy):
            summaries = await self.summarizer.summarize(messages)
        else:
            summaries = self._heuristic_summaries(messages)
        summaries.sort(key=lambda s: s.importance, reverse=True)
        return summaries[: self.config.max_summaries]

    @staticmethod
    def _heuristic_summaries(messages: list[ConversationMessage]) -> list[ConsolidatedSummary]:
        summaries: list[ConsolidatedSummary] = []
        seen: set[str] = set()
        for message in messages:
            if message.role not in ("user", "system") or not message.content.strip():
                continue
            if message.content.startswith("Summary of earlier conversation:"):
                lines = [
                    line[2:].split(": ", 1)[-1]
                    for line in message.content.splitlines()
                    if line.startswith("- ")
                ]
            else:
                lines = [first_sentence(message.content)]
            importance = score_importance(message)
            for line in lines:
                key = line.lower()
                if not line or key in seen:
                    continue
                seen.add(key)
                summaries.append(
                    ConsolidatedSummary(content=line, type=guess_kind(line), importance=importance)
                )
        return summaries

    async def _save(self, result: SleepResult) -> None:
        if not result.summaries:
            return
        lines = "\n".join(
            f"- [{s.type.value}] {s.content} (importance {s.importance:.2f})"
            for s in result.summaries
        )
        self.manager.memory_log.append_daily(
            f"Sleep consolidation for {result.scope_id}:\n{lines}"
        )
        result.saved_ids = await self.manager.on_sleep_ended(
            result.summaries, scope_id=result.scope_id
        )
        if not result.saved_ids:
            raise RuntimeError("no summaries were persisted")
