"""Token counting with tiktoken and a CJK-aware fallback."""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from .models import ConversationMessage

MESSAGE_OVERHEAD_TOKENS = 4


class TokenCounter:
    """Counts tokens for context-budget decisions.

    Uses tiktoken when the encoder can be loaded; otherwise estimates from
    character counts.
    """

    def __init__(self, model: str = "gpt-4o"):
        self._encoder = None
        self._model = model
        try:
            import tiktoken

            self._encoder = tiktoken.encoding_for_model(model)
        except Exception:
            logger.debug(
                f"tiktoken encoder for {model} unavailable, "
                "using character-based estimation"
            )

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoder:
            return len(self._encoder.encode(text))
        return estimate_tokens(text)

    def count_messages(self, messages: Iterable[ConversationMessage]) -> int:
        """Total tokens of a message list including per-message overhead."""
        total = 0
        for msg in messages:
            total += MESSAGE_OVERHEAD_TOKENS + self.count(msg.content)
        return total


def _is_cjk(c: str) -> bool:
    return (
        "\u4e00" <= c <= "\u9fff"  # CJK Unified
        or "\uac00" <= c <= "\ud7af"  # Hangul
        or "\u3040" <= c <= "\u309f"  # Hiragana
        or "\u30a0" <= c <= "\u30ff"  # Katakana
    )


def estimate_tokens(text: str) -> int:
    """~4 characters per token, ~2 for CJK scripts."""
    if not text:
        return 0
    cjk_count = sum(1 for c in text if _is_cjk(c))
    non_cjk = len(text) - cjk_count
    return max(1, (non_cjk // 4) + (cjk_count // 2))
