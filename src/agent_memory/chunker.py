"""Token-window chunking of source text for indexing.

A token is a maximal run of non-whitespace characters together with the
whitespace that follows it. Leading whitespace of the text belongs to the
first token, so joining every token reproduces the input exactly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import Chunk

_TOKEN_RE = re.compile(r"\S+\s*")


@dataclass(frozen=True)
class Token:
    text: str
    start: int
    end: int


def tokenize(text: str) -> list[Token]:
    tokens = [Token(m.group(), m.start(), m.end()) for m in _TOKEN_RE.finditer(text)]
    if tokens and tokens[0].start > 0:
        first = tokens[0]
        tokens[0] = Token(text[: first.end], 0, first.end)
    return tokens


def clamp_overlap(tokens_per_chunk: int, overlap_tokens: int) -> tuple[int, int]:
    size = max(1, int(tokens_per_chunk))
    overlap = max(0, min(int(overlap_tokens), size - 1))
    return size, overlap


def chunk_text(text: str, tokens_per_chunk: int, overlap_tokens: int) -> list[Chunk]:
    """Split ``text`` into overlapping token windows.

    Args:
        text: Source text.
        tokens_per_chunk: Maximum tokens per chunk (at least 1).
        overlap_tokens: Tokens shared by consecutive chunks; clamped to
            ``[0, tokens_per_chunk - 1]``.

    Returns:
        Chunks in order, without ids or embeddings. The last chunk may be
        shorter than ``tokens_per_chunk``. Empty input yields ``[]``.
    """
    tokens = tokenize(text)
    if not tokens:
        return []

    size, overlap = clamp_overlap(tokens_per_chunk, overlap_tokens)
    stride = size - overlap

    chunks: list[Chunk] = []
    start = 0
    total = len(tokens)
    while True:
        end = min(start + size, total)
        window = tokens[start:end]
        offset_start = window[0].start
        offset_end = window[-1].end
        start_line = text.count("\n", 0, offset_start) + 1
        body = text[offset_start:offset_end]
        end_line = start_line + body.rstrip().count("\n")
        chunks.append(
            Chunk(
                ordinal=len(chunks),
                text=body,
                token_count=len(window),
                offset_start=offset_start,
                offset_end=offset_end,
                start_line=start_line,
                end_line=end_line,
            )
        )
        if end >= total:
            break
        start += stride
    return chunks


def reassemble(chunks: list[Chunk], overlap_tokens: int) -> list[str]:
    """Rebuild the token sequence by dropping each later chunk's overlap."""
    if not chunks:
        return []
    size = max(c.token_count for c in chunks)
    _, overlap = clamp_overlap(size, overlap_tokens)
    result = [t.text for t in tokenize(chunks[0].text)]
    for chunk in chunks[1:]:
        result.extend(t.text for t in tokenize(chunk.text)[overlap:])
    return result
