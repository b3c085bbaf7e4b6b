from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

from doctranslate.services.errors import StructuralInconsistency
from doctranslate.services.spans import Placeholder, RemovalInterval, figure_sort_key

PLACEHOLDER_PREFIX = "FIGSEG"
PLACEHOLDER_SUFFIX = "ENDFIG"
logger = logging.getLogger(__name__)


def make_placeholder_token(sequence: int, figure_id: str) -> str:
    return f"[[{PLACEHOLDER_PREFIX}:{sequence}:{figure_id}:{PLACEHOLDER_SUFFIX}]]"


class PlaceholderMapping:
    """Token <-> figure table for a single translation job."""

    def __init__(self) -> None:
        self._placeholders: list[Placeholder] = []
        self._by_figure: dict[str, Placeholder] = {}
        self._by_figure_folded: dict[str, Placeholder] = {}
        self._by_sequence: dict[int, Placeholder] = {}

    def add(self, figure_id: str) -> Placeholder:
        if figure_id in self._by_figure:
            raise StructuralInconsistency(f"figure {figure_id!r} already has a placeholder")
        sequence = len(self._placeholders) + 1
        placeholder = Placeholder(
            token=make_placeholder_token(sequence, figure_id),
            figure_id=figure_id,
            sequence=sequence,
        )
        self._placeholders.append(placeholder)
        self._by_figure[figure_id] = placeholder
        self._by_figure_folded.setdefault(figure_id.casefold(), placeholder)
        self._by_sequence[sequence] = placeholder
        return placeholder

    def __len__(self) -> int:
        return len(self._placeholders)

    def __iter__(self) -> Iterator[Placeholder]:
        return iter(self._placeholders)

    def __contains__(self, figure_id: object) -> bool:
        return figure_id in self._by_figure

    @property
    def tokens(self) -> list[str]:
        return [item.token for item in self._placeholders]

    def for_figure(self, figure_id: str) -> Placeholder | None:
        found = self._by_figure.get(figure_id)
        if found is None:
            found = self._by_figure_folded.get(figure_id.casefold())
        return found

    def for_sequence(self, sequence: int) -> Placeholder | None:
        return self._by_sequence.get(sequence)


def substitute_placeholders(
    text: str,
    intervals: Sequence[RemovalInterval],
) -> tuple[str, PlaceholderMapping]:
    mapping = PlaceholderMapping()
    parts: list[str] = []
    cursor = 0

    for interval in intervals:
        if interval.start < cursor:
            raise StructuralInconsistency(
                f"removal intervals must be sorted and disjoint: [{interval.start}, {interval.end}) "
                f"follows position {cursor}"
            )
        if interval.end < interval.start or interval.end > len(text):
            raise StructuralInconsistency(
                f"removal interval [{interval.start}, {interval.end}) outside text of length {len(text)}"
            )
        parts.append(text[cursor : interval.start])
        for figure_id in sorted(interval.figure_ids, key=figure_sort_key):
            # A figure whose OCR text was split across several intervals keeps
            # only its first placeholder.
            if figure_id in mapping:
                continue
            parts.append(mapping.add(figure_id).token)
        cursor = interval.end

    parts.append(text[cursor:])
    processed = "".join(parts)
    logger.info(
        "placeholder substitution: intervals=%s placeholders=%s chars %s -> %s",
        len(intervals),
        len(mapping),
        len(text),
        len(processed),
    )
    return processed, mapping
