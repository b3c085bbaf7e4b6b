from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from doctranslate.core.settings import get_settings
from doctranslate.services.errors import StructuralInconsistency
from doctranslate.services.spans import (
    FIGURE_ID_RE,
    SPAN_KINDS,
    BBox,
    ContentSpan,
    ExtractedDocument,
    FigureRegion,
    RemovalInterval,
)

logger = logging.getLogger(__name__)


def _rect_intersection(a: BBox, b: BBox) -> tuple[float, float, float]:
    ax0, ay0, ax1, ay1 = a
    bx0, by0, bx1, by1 = b
    ix0, iy0 = max(ax0, bx0), max(ay0, by0)
    ix1, iy1 = min(ax1, bx1), min(ay1, by1)
    iw = max(0.0, ix1 - ix0)
    ih = max(0.0, iy1 - iy0)
    return iw, ih, iw * ih


def _rect_area(rect: BBox) -> float:
    x0, y0, x1, y1 = rect
    return max(0.0, x1 - x0) * max(0.0, y1 - y0)


def _check_bbox(bbox: BBox, what: str) -> None:
    if len(bbox) != 4:
        raise StructuralInconsistency(f"{what}: bounding box must have 4 coordinates, got {len(bbox)}")
    x0, y0, x1, y1 = bbox
    if x1 < x0 or y1 < y0:
        raise StructuralInconsistency(f"{what}: inverted bounding box {tuple(bbox)}")


def validate_document(document: ExtractedDocument) -> None:
    text_len = len(document.text)
    for idx, span in enumerate(document.spans):
        what = f"span #{idx}"
        if span.kind not in SPAN_KINDS:
            raise StructuralInconsistency(f"{what}: unknown kind {span.kind!r}")
        if span.offset < 0 or span.length < 0 or span.end > text_len:
            raise StructuralInconsistency(
                f"{what}: range [{span.offset}, {span.end}) outside text of length {text_len}"
            )
        if span.page_number < 1:
            raise StructuralInconsistency(f"{what}: invalid page number {span.page_number}")
        _check_bbox(span.bbox, what)

    seen: set[str] = set()
    for figure in document.figures:
        what = f"figure {figure.figure_id!r}"
        if not FIGURE_ID_RE.match(figure.figure_id):
            raise StructuralInconsistency(f"{what}: malformed figure id")
        if figure.figure_id in seen:
            raise StructuralInconsistency(f"{what}: duplicate figure id")
        seen.add(figure.figure_id)
        if not 0 <= figure.anchor_offset <= text_len:
            raise StructuralInconsistency(
                f"{what}: anchor offset {figure.anchor_offset} outside text of length {text_len}"
            )
        if figure.page_number < 1:
            raise StructuralInconsistency(f"{what}: invalid page number {figure.page_number}")
        _check_bbox(figure.bbox, what)


def spans_overlapping_figure(
    figure: FigureRegion,
    spans: Iterable[ContentSpan],
    min_overlap_fraction: float = 0.0,
) -> list[ContentSpan]:
    """Spans on the figure's page that intersect it with non-zero area.

    ``min_overlap_fraction`` is the share of the span's own area that must be
    covered by the figure; 0.0 accepts any positive intersection.
    """
    selected: list[ContentSpan] = []
    for span in spans:
        if span.page_number != figure.page_number:
            continue
        _, _, inter_area = _rect_intersection(span.bbox, figure.bbox)
        if inter_area <= 0:
            continue
        if inter_area / _rect_area(span.bbox) >= min_overlap_fraction:
            selected.append(span)
    return selected


def collect_candidate_ranges(
    spans: Sequence[ContentSpan],
    figures: Sequence[FigureRegion],
    min_overlap_fraction: float = 0.0,
) -> list[RemovalInterval]:
    candidates: list[RemovalInterval] = []
    spans_by_page: dict[int, list[ContentSpan]] = {}
    for span in spans:
        spans_by_page.setdefault(span.page_number, []).append(span)

    for figure in figures:
        page_spans = spans_by_page.get(figure.page_number, [])
        hits = spans_overlapping_figure(figure, page_spans, min_overlap_fraction)
        tag = frozenset({figure.figure_id})
        if not hits:
            candidates.append(RemovalInterval(figure.anchor_offset, figure.anchor_offset, tag))
            continue
        for span in hits:
            candidates.append(RemovalInterval(span.offset, span.end, tag))
    return candidates


def merge_removal_ranges(
    candidates: Iterable[RemovalInterval],
    text: str,
    adjacency_tolerance: int = 0,
) -> list[RemovalInterval]:
    ordered = sorted(candidates, key=lambda item: (item.start, item.end, sorted(item.figure_ids)))
    merged: list[RemovalInterval] = []
    if not ordered:
        return merged

    run_start, run_end, run_ids = ordered[0].start, ordered[0].end, set(ordered[0].figure_ids)
    for cand in ordered[1:]:
        joins = cand.start <= run_end
        if not joins and cand.start - run_end <= adjacency_tolerance:
            joins = not text[run_end : cand.start].strip()
        if joins:
            run_end = max(run_end, cand.end)
            run_ids.update(cand.figure_ids)
            continue
        merged.append(RemovalInterval(run_start, run_end, frozenset(run_ids)))
        run_start, run_end, run_ids = cand.start, cand.end, set(cand.figure_ids)
    merged.append(RemovalInterval(run_start, run_end, frozenset(run_ids)))
    return merged


def resolve_overlaps(
    document: ExtractedDocument,
    *,
    min_overlap_fraction: float | None = None,
    adjacency_tolerance: int | None = None,
) -> list[RemovalInterval]:
    if min_overlap_fraction is None or adjacency_tolerance is None:
        settings = get_settings()
        if min_overlap_fraction is None:
            min_overlap_fraction = settings.min_overlap_fraction
        if adjacency_tolerance is None:
            adjacency_tolerance = settings.adjacency_tolerance

    validate_document(document)
    candidates = collect_candidate_ranges(document.spans, document.figures, min_overlap_fraction)
    intervals = merge_removal_ranges(candidates, document.text, adjacency_tolerance)
    anchors = sum(1 for item in intervals if item.is_anchor)
    logger.info(
        "overlap summary: figures=%s candidates=%s intervals=%s anchors=%s removed_chars=%s",
        len(document.figures),
        len(candidates),
        len(intervals),
        anchors,
        sum(item.end - item.start for item in intervals),
    )
    return intervals
