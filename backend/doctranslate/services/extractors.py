from __future__ import annotations

import io
import logging
import re
import statistics
import unicodedata
import zipfile
from dataclasses import dataclass, field
from typing import Any, Protocol

import docx
import fitz
from docx.table import Table
from docx.text.paragraph import Paragraph

from doctranslate.services.asset_store import AssetStore
from doctranslate.services.errors import UnsupportedDocument
from doctranslate.services.spans import BBox, ContentSpan, ExtractedDocument, FigureRegion, SpanKind

CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
LIST_MARKER_RE = re.compile(r"^\s*(?:[•●▪◦‣–*-]|\(?\d{1,3}[.)])\s+")
HEADING_SIZE_RATIO = 1.25
HEADING_MAX_CHARS = 120
BLOCK_SEPARATOR = "\n\n"

# Synthetic layout used for Word files, which carry no page geometry.
FLOW_PAGE_WIDTH = 612.0
FLOW_LINE_HEIGHT = 14.0
FLOW_FIGURE_HEIGHT = 200.0

logger = logging.getLogger(__name__)


class StructuralExtractor(Protocol):
    source_format: str

    def extract(self, content: bytes, asset_store: AssetStore, job_id: str) -> ExtractedDocument: ...


def clean_extracted_text(text: str) -> str:
    if not text:
        return text
    cleaned = CONTROL_CHAR_RE.sub("", text)
    cleaned = unicodedata.normalize("NFKC", cleaned)
    # Some PDF extractions contain replacement boxes that break readability.
    cleaned = cleaned.replace("□", "")
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    return cleaned.strip()


def sniff_format(content: bytes, filename: str | None = None) -> str:
    if content[:5] == b"%PDF-":
        return "pdf"
    if content[:2] == b"PK":
        try:
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                if "word/document.xml" in archive.namelist():
                    return "docx"
        except zipfile.BadZipFile as exc:
            raise UnsupportedDocument(f"corrupt archive: {exc}") from exc
    suffix = filename.rsplit(".", 1)[-1].lower() if filename and "." in filename else "unknown"
    raise UnsupportedDocument(f"unsupported document format: {suffix}")


@dataclass
class _DocumentBuilder:
    """Accumulates blocks of text and keeps span offsets aligned with them."""

    parts: list[str] = field(default_factory=list)
    spans: list[ContentSpan] = field(default_factory=list)
    figures: list[FigureRegion] = field(default_factory=list)
    length: int = 0
    after_figure: bool = False

    def _separate(self) -> None:
        self.parts.append(BLOCK_SEPARATOR)
        self.length += len(BLOCK_SEPARATOR)

    def start_block(self) -> None:
        if self.parts or self.after_figure:
            self._separate()
        self.after_figure = False

    def append(self, text: str, kind: SpanKind | None, page_number: int, bbox: BBox) -> None:
        if not text:
            return
        if kind is not None:
            self.spans.append(
                ContentSpan(offset=self.length, length=len(text), kind=kind, page_number=page_number, bbox=bbox)
            )
        self.parts.append(text)
        self.length += len(text)

    def add_figure(self, figure_id: str, page_number: int, bbox: BBox, asset_ref: str) -> None:
        # Figures anchor on a block of their own; consecutive figures share it.
        if self.parts and not self.after_figure:
            self._separate()
        self.after_figure = True
        self.figures.append(
            FigureRegion(
                figure_id=figure_id,
                page_number=page_number,
                bbox=bbox,
                asset_ref=asset_ref,
                anchor_offset=self.length,
            )
        )

    def build(self, source_format: str) -> ExtractedDocument:
        return ExtractedDocument(
            text="".join(self.parts),
            spans=tuple(self.spans),
            figures=tuple(self.figures),
            source_format=source_format,
        )


def _as_bbox(raw: Any) -> BBox:
    x0, y0, x1, y1 = (float(v) for v in raw)
    return (min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))


def _inside(inner: BBox, outer: BBox) -> bool:
    cx = (inner[0] + inner[2]) / 2
    cy = (inner[1] + inner[3]) / 2
    return outer[0] <= cx <= outer[2] and outer[1] <= cy <= outer[3]


def _block_lines(block: dict[str, Any]) -> list[tuple[str, BBox, float]]:
    lines: list[tuple[str, BBox, float]] = []
    for line in block.get("lines", []):
        text = clean_extracted_text("".join(span.get("text", "") for span in line.get("spans", [])))
        if not text:
            continue
        sizes = [float(span["size"]) for span in line.get("spans", []) if span.get("size")]
        lines.append((text, _as_bbox(line.get("bbox", block.get("bbox", (0, 0, 0, 0)))), max(sizes) if sizes else 11.0))
    return lines


def _find_table_boxes(page: fitz.Page) -> list[BBox]:
    try:
        finder = page.find_tables()
    except Exception as exc:  # noqa: BLE001
        logger.debug("table detection unavailable on page %s: %s", page.number + 1, exc)
        return []
    boxes: list[BBox] = []
    for table in getattr(finder, "tables", None) or []:
        bbox = getattr(table, "bbox", None)
        if bbox and len(bbox) == 4:
            boxes.append(_as_bbox(bbox))
    return boxes


class PdfExtractor:
    source_format = "pdf"

    def extract(self, content: bytes, asset_store: AssetStore, job_id: str) -> ExtractedDocument:
        builder = _DocumentBuilder()
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except Exception as exc:  # noqa: BLE001
            raise UnsupportedDocument(f"Invalid PDF: {exc}") from exc

        with doc:
            for page in doc:
                self._extract_page(page, builder, asset_store, job_id)
            page_count = doc.page_count

        document = builder.build(self.source_format)
        logger.info(
            "pdf extracted: pages=%s chars=%s spans=%s figures=%s",
            page_count,
            len(document.text),
            len(document.spans),
            len(document.figures),
        )
        return document

    def _extract_page(self, page: fitz.Page, builder: _DocumentBuilder, asset_store: AssetStore, job_id: str) -> None:
        page_no = page.number + 1
        blocks = page.get_text("dict", sort=True).get("blocks", [])
        table_boxes = _find_table_boxes(page)
        sizes = [size for block in blocks if block.get("type", -1) == 0 for _, _, size in _block_lines(block)]
        median_size = statistics.median(sizes) if sizes else 11.0
        image_no = 0

        for block in blocks:
            block_type = block.get("type", -1)
            if block_type == 1:
                data = block.get("image")
                if not data:
                    continue
                image_no += 1
                figure_id = f"{page_no}.{image_no}"
                asset_ref = asset_store.put(job_id, figure_id, data, block.get("ext") or "png")
                builder.add_figure(figure_id, page_no, _as_bbox(block["bbox"]), asset_ref)
                continue
            if block_type != 0:
                continue

            lines = _block_lines(block)
            if not lines:
                continue
            block_text = "\n".join(text for text, _, _ in lines)
            block_size = max(size for _, _, size in lines)
            is_heading = (
                block_size >= median_size * HEADING_SIZE_RATIO
                and len(block_text) <= HEADING_MAX_CHARS
                and len(lines) <= 2
            )

            builder.start_block()
            if is_heading:
                builder.append("# ", None, page_no, _as_bbox(block["bbox"]))
            for idx, (text, bbox, _) in enumerate(lines):
                if idx:
                    builder.append("\n", None, page_no, bbox)
                builder.append(text, self._line_kind(text, bbox, is_heading, table_boxes), page_no, bbox)

    @staticmethod
    def _line_kind(text: str, bbox: BBox, is_heading: bool, table_boxes: list[BBox]) -> SpanKind:
        if is_heading:
            return "heading"
        if any(_inside(bbox, box) for box in table_boxes):
            return "table-cell"
        if LIST_MARKER_RE.match(text):
            return "list-item"
        return "paragraph"


def _heading_level(style_name: str) -> int | None:
    if style_name == "Title":
        return 1
    match = re.match(r"Heading\s+(\d)", style_name)
    if match:
        return max(1, min(6, int(match.group(1))))
    return None


def _is_list_paragraph(paragraph: Paragraph, style_name: str) -> bool:
    if style_name.startswith("List"):
        return True
    p_pr = paragraph._p.pPr
    return p_pr is not None and p_pr.numPr is not None


class _DocxFlow:
    """Walks a Word body in order, laying blocks out on a synthetic single page."""

    def __init__(self, document: Any, asset_store: AssetStore, job_id: str) -> None:
        self.document = document
        self.asset_store = asset_store
        self.job_id = job_id
        self.builder = _DocumentBuilder()
        self.y = 0.0
        self.figure_no = 0

    def walk(self) -> _DocumentBuilder:
        for child in self.document.element.body.iterchildren():
            tag = child.tag.rsplit("}", 1)[-1]
            if tag == "p":
                self.paragraph(Paragraph(child, self.document))
            elif tag == "tbl":
                self.table(Table(child, self.document))
        return self.builder

    def _row_bbox(self, height: float = FLOW_LINE_HEIGHT) -> BBox:
        bbox = (0.0, self.y, FLOW_PAGE_WIDTH, self.y + height)
        self.y += height
        return bbox

    def paragraph(self, paragraph: Paragraph) -> None:
        text = clean_extracted_text(paragraph.text)
        style_name = paragraph.style.name if paragraph.style is not None and paragraph.style.name else ""
        if text:
            self.builder.start_block()
            bbox = self._row_bbox()
            level = _heading_level(style_name)
            if level is not None:
                self.builder.append("#" * level + " ", None, 1, bbox)
                self.builder.append(text, "heading", 1, bbox)
            elif _is_list_paragraph(paragraph, style_name):
                self.builder.append(text, "list-item", 1, bbox)
            else:
                self.builder.append(text, "paragraph", 1, bbox)
        self.pictures(paragraph._p.xpath(".//a:blip/@r:embed"))

    def table(self, table: Table) -> None:
        for row in table.rows:
            cells: list[str] = []
            for cell in row.cells:
                value = clean_extracted_text(" ".join(cell.text.split()))
                # Merged cells repeat the same text across the span.
                if value and (not cells or cells[-1] != value):
                    cells.append(value)
            if not cells:
                continue
            self.builder.start_block()
            bbox = self._row_bbox()
            for idx, value in enumerate(cells):
                if idx:
                    self.builder.append(" | ", None, 1, bbox)
                self.builder.append(value, "table-cell", 1, bbox)
        self.pictures(table._tbl.xpath(".//a:blip/@r:embed"))

    def pictures(self, rel_ids: list[str]) -> None:
        related = self.document.part.related_parts
        for rel_id in rel_ids:
            part = related.get(rel_id)
            blob = getattr(part, "blob", None)
            if not blob:
                continue
            self.figure_no += 1
            figure_id = f"1.{self.figure_no}"
            asset_ref = self.asset_store.put(self.job_id, figure_id, blob, part.partname.ext)
            self.builder.add_figure(figure_id, 1, self._row_bbox(FLOW_FIGURE_HEIGHT), asset_ref)


class DocxExtractor:
    source_format = "docx"

    def extract(self, content: bytes, asset_store: AssetStore, job_id: str) -> ExtractedDocument:
        try:
            document = docx.Document(io.BytesIO(content))
        except Exception as exc:  # noqa: BLE001
            raise UnsupportedDocument(f"Invalid Word document: {exc}") from exc

        result = _DocxFlow(document, asset_store, job_id).walk().build(self.source_format)
        logger.info(
            "docx extracted: chars=%s spans=%s figures=%s",
            len(result.text),
            len(result.spans),
            len(result.figures),
        )
        return result


EXTRACTORS: dict[str, type[PdfExtractor] | type[DocxExtractor]] = {
    "pdf": PdfExtractor,
    "docx": DocxExtractor,
}


def extract_document(
    content: bytes,
    asset_store: AssetStore,
    job_id: str,
    filename: str | None = None,
) -> ExtractedDocument:
    if not content:
        raise UnsupportedDocument("empty document")
    source_format = sniff_format(content, filename)
    return EXTRACTORS[source_format]().extract(content, asset_store, job_id)

