from __future__ import annotations

import logging
import math
import re
from bisect import bisect_left, bisect_right
from collections.abc import Iterable

from doctranslate.core.settings import get_settings
from doctranslate.services.placeholders import PLACEHOLDER_PREFIX, PLACEHOLDER_SUFFIX
from doctranslate.services.spans import Chunk

# Kana, CJK ideographs and Hangul are roughly one token per character.
WIDE_CHAR_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff\uff00-\uffef]")
BLOCK_BREAK_RE = re.compile(r"\n[ \t]*\n\s*")
CANONICAL_PLACEHOLDER_RE = re.compile(
    rf"\[\[{PLACEHOLDER_PREFIX}:\d+:[A-Za-z0-9_.]+:{PLACEHOLDER_SUFFIX}\]\]"
)
NARROW_CHAR_COST = 0.25
logger = logging.getLogger(__name__)


def _char_cost(ch: str) -> float:
    return 1.0 if WIDE_CHAR_RE.match(ch) else NARROW_CHAR_COST


def estimate_cost(text: str) -> int:
    return math.ceil(sum(_char_cost(ch) for ch in text))


def find_block_boundaries(text: str) -> list[int]:
    return [m.end() for m in BLOCK_BREAK_RE.finditer(text) if 0 < m.end() < len(text)]


def find_placeholder_spans(text: str, tokens: Iterable[str] | None = None) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    if tokens is None:
        spans = [(m.start(), m.end()) for m in CANONICAL_PLACEHOLDER_RE.finditer(text)]
    else:
        for token in set(tokens):
            if not token:
                continue
            pos = text.find(token)
            while pos != -1:
                spans.append((pos, pos + len(token)))
                pos = text.find(token, pos + len(token))
    spans.sort()
    return spans


class _PlaceholderIndex:
    def __init__(self, spans: list[tuple[int, int]]) -> None:
        self.spans = spans
        self.starts = [start for start, _ in spans]

    def containing(self, pos: int) -> tuple[int, int] | None:
        """Placeholder span strictly containing the split position ``pos``."""
        idx = bisect_left(self.starts, pos) - 1
        if idx >= 0:
            start, end = self.spans[idx]
            if start < pos < end:
                return start, end
        return None

    def within(self, start: int, end: int) -> list[tuple[int, int]]:
        lo = bisect_left(self.starts, start)
        hi = bisect_left(self.starts, end)
        return [span for span in self.spans[lo:hi] if span[1] <= end]


def _choose_split(
    text: str,
    start: int,
    limit: int,
    boundaries: list[int],
    placeholders: _PlaceholderIndex,
) -> int:
    idx = bisect_right(boundaries, limit) - 1
    while idx >= 0 and boundaries[idx] > start:
        candidate = boundaries[idx]
        if placeholders.containing(candidate) is None:
            return candidate
        idx -= 1

    for pos in range(limit, start, -1):
        if text[pos - 1].isspace() and placeholders.containing(pos) is None:
            return pos

    for pos in range(limit, start, -1):
        if placeholders.containing(pos) is None:
            return pos

    # The budget ends inside a placeholder that starts at the chunk start.
    enclosing = placeholders.containing(limit)
    return enclosing[1] if enclosing is not None else limit


def plan_chunks(
    text: str,
    *,
    budget: int | None = None,
    placeholder_tokens: Iterable[str] | None = None,
) -> list[Chunk]:
    if budget is None:
        budget = get_settings().chunk_token_budget
    if budget <= 0:
        raise ValueError("chunk budget must be positive")
    if not text:
        return []

    placeholders = _PlaceholderIndex(find_placeholder_spans(text, placeholder_tokens))
    boundaries = find_block_boundaries(text)
    prefix = [0.0]
    for ch in text:
        prefix.append(prefix[-1] + _char_cost(ch))

    total = len(text)
    chunks: list[Chunk] = []
    start = 0
    while start < total:
        limit = bisect_right(prefix, prefix[start] + budget) - 1
        limit = max(start + 1, min(limit, total))
        end = total if limit >= total else _choose_split(text, start, limit, boundaries, placeholders)
        tokens = frozenset(text[ps:pe] for ps, pe in placeholders.within(start, end))
        chunks.append(Chunk(index=len(chunks), text=text[start:end], placeholder_tokens=tokens))
        start = end

    logger.info(
        "chunk plan: chars=%s est_tokens=%s budget=%s chunks=%s placeholders=%s",
        total,
        math.ceil(prefix[-1]),
        budget,
        len(chunks),
        len(placeholders.spans),
    )
    return chunks
