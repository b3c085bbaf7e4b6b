from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

SpanKind = Literal["paragraph", "heading", "table-cell", "list-item"]
ChunkStatus = Literal["ok", "failed"]
BBox = tuple[float, float, float, float]

SPAN_KINDS: frozenset[str] = frozenset({"paragraph", "heading", "table-cell", "list-item"})
FIGURE_ID_RE = re.compile(r"^[A-Za-z0-9_]+(?:\.[A-Za-z0-9_]+)*$")
_NATURAL_PART_RE = re.compile(r"(\d+)")


def figure_sort_key(figure_id: str) -> tuple[tuple[int, int | str], ...]:
    """Natural ordering for figure ids, so "1.2" sorts before "1.10"."""
    parts: list[tuple[int, int | str]] = []
    for piece in _NATURAL_PART_RE.split(figure_id):
        if not piece:
            continue
        if piece.isdigit():
            parts.append((0, int(piece)))
        else:
            parts.append((1, piece.lower()))
    return tuple(parts)


@dataclass(frozen=True)
class ContentSpan:
    offset: int
    length: int
    kind: SpanKind
    page_number: int
    bbox: BBox

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class FigureRegion:
    figure_id: str
    page_number: int
    bbox: BBox
    asset_ref: str
    anchor_offset: int


@dataclass(frozen=True)
class ExtractedDocument:
    text: str
    spans: tuple[ContentSpan, ...]
    figures: tuple[FigureRegion, ...]
    source_format: str = "unknown"


@dataclass(frozen=True)
class RemovalInterval:
    start: int
    end: int
    figure_ids: frozenset[str]

    @property
    def is_anchor(self) -> bool:
        return self.start == self.end


@dataclass(frozen=True)
class Placeholder:
    token: str
    figure_id: str
    sequence: int


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str
    placeholder_tokens: frozenset[str] = field(default_factory=frozenset)


@dataclass
class ChunkResult:
    index: int
    translated_text: str
    status: ChunkStatus
    error: str | None = None
    attempts: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ResolutionOutcome:
    token: str
    figure_id: str
    resolved: bool
    reason: str | None = None
