from __future__ import annotations

import io
import zipfile

import docx
import pytest

from conftest import png_bytes
from doctranslate.services.asset_store import LocalAssetStore, figure_file_name
from doctranslate.services.errors import UnsupportedDocument
from doctranslate.services.extractors import (
    DocxExtractor,
    PdfExtractor,
    clean_extracted_text,
    extract_document,
    sniff_format,
)
from doctranslate.services.overlap import resolve_overlaps
from doctranslate.services.pipeline import translate_document_bytes
from doctranslate.services.spans import RemovalInterval


def _span_texts(document, kind: str) -> list[str]:
    return [document.text[span.offset : span.end] for span in document.spans if span.kind == kind]


def _build_docx() -> bytes:
    document = docx.Document()
    document.add_heading("Quarterly Report", level=1)
    document.add_paragraph("Revenue grew steadily this quarter.")
    document.add_paragraph("first point", style="List Bullet")
    document.add_picture(io.BytesIO(png_bytes()))
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Region"
    table.cell(0, 1).text = "Sales"
    table.cell(1, 0).text = "North"
    table.cell(1, 1).text = "42"
    document.add_paragraph("Closing note.")
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


class TestSniffFormat:
    def test_pdf_and_docx(self, sample_pdf):
        assert sniff_format(sample_pdf) == "pdf"
        assert sniff_format(_build_docx()) == "docx"

    def test_plain_zip_is_rejected(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as archive:
            archive.writestr("readme.txt", "hello")
        with pytest.raises(UnsupportedDocument):
            sniff_format(buf.getvalue(), "notes.docx")

    def test_unknown_bytes_are_rejected(self):
        with pytest.raises(UnsupportedDocument):
            sniff_format(b"just some text", "notes.txt")

    def test_empty_document(self, tmp_path):
        with pytest.raises(UnsupportedDocument):
            extract_document(b"", LocalAssetStore(tmp_path), "job-1")


class TestPdfExtractor:
    def test_text_spans_and_figures(self, sample_pdf, tmp_path):
        store = LocalAssetStore(tmp_path)
        document = PdfExtractor().extract(sample_pdf, store, "job-1")

        assert document.source_format == "pdf"
        assert [figure.figure_id for figure in document.figures] == ["1.1"]
        figure = document.figures[0]
        assert figure.page_number == 1
        assert figure.bbox == pytest.approx((72.0, 200.0, 272.0, 400.0), abs=1.0)
        assert list((tmp_path / "job-1" / "figures").glob("1-1.*"))

        assert any("Results Overview" in text for text in _span_texts(document, "heading"))
        assert any("first bullet item" in text for text in _span_texts(document, "list-item"))
        assert "The experiment shows a clear trend." in document.text

    def test_label_on_figure_is_selected_for_removal(self, sample_pdf, tmp_path):
        document = PdfExtractor().extract(sample_pdf, LocalAssetStore(tmp_path), "job-1")
        intervals = resolve_overlaps(document, min_overlap_fraction=0.0, adjacency_tolerance=2)

        removed = [document.text[item.start : item.end] for item in intervals]
        assert any("AXIS 42" in text for text in removed)
        assert all("Closing remarks" not in text for text in removed)

    def test_end_to_end_translation(self, sample_pdf, tmp_path, settings, upper_engine):
        result = translate_document_bytes(
            sample_pdf,
            "fr",
            upper_engine,
            LocalAssetStore(tmp_path),
            "job-1",
            filename="report.pdf",
            settings=settings,
        )
        assert result.text.count("![Figure 1.1](") == 1
        assert "AXIS" not in result.text
        assert "RESULTS OVERVIEW" in result.text
        assert all(item.resolved for item in result.outcomes)


class TestDocxExtractor:
    def test_structure_and_pictures(self, tmp_path):
        document = DocxExtractor().extract(_build_docx(), LocalAssetStore(tmp_path), "job-2")

        assert document.text.startswith("# Quarterly Report")
        assert _span_texts(document, "heading") == ["Quarterly Report"]
        assert _span_texts(document, "list-item") == ["first point"]
        assert _span_texts(document, "table-cell") == ["Region", "Sales", "North", "42"]
        assert "Region | Sales" in document.text
        assert {span.page_number for span in document.spans} == {1}

        assert [figure.figure_id for figure in document.figures] == ["1.1"]
        figure = document.figures[0]
        assert figure.anchor_offset == document.text.index("first point") + len("first point\n\n")
        assert document.text[figure.anchor_offset :].startswith("\n\nRegion | Sales")
        assert (tmp_path / "job-2" / "figures" / "1-1.png").exists()

    def test_pictures_become_anchors(self, tmp_path):
        document = DocxExtractor().extract(_build_docx(), LocalAssetStore(tmp_path), "job-2")
        anchor = document.figures[0].anchor_offset

        intervals = resolve_overlaps(document, min_overlap_fraction=0.0, adjacency_tolerance=2)
        assert intervals == [RemovalInterval(anchor, anchor, frozenset({"1.1"}))]


def test_clean_extracted_text():
    assert clean_extracted_text("a\x00b   c\t\t d ") == "ab c d"
    assert clean_extracted_text("") == ""


def test_asset_store_public_url(tmp_path):
    store = LocalAssetStore(tmp_path, public_base_url="https://cdn.example/v1/jobs/")
    ref = store.put("job-3", "2.10", b"\x89PNG", ".PNG")

    assert ref == "https://cdn.example/v1/jobs/job-3/figures/2-10.png"
    assert (tmp_path / "job-3" / "figures" / "2-10.png").read_bytes() == b"\x89PNG"


def test_asset_names_keep_distinct_ids_apart(tmp_path):
    store = LocalAssetStore(tmp_path)
    dotted = store.put("job-4", "1.2", b"dotted", "png")
    underscored = store.put("job-4", "1_2", b"underscored", "png")

    assert dotted != underscored
    assert figure_file_name("1.2", "png") == "1-2.png"
    assert figure_file_name("1_2", ".PNG") == "1_2.png"
    figures = tmp_path / "job-4" / "figures"
    assert (figures / "1-2.png").read_bytes() == b"dotted"
    assert (figures / "1_2.png").read_bytes() == b"underscored"


@pytest.mark.parametrize("figure_id", ["../escape", "1..2", ""])
def test_asset_names_reject_malformed_ids(figure_id):
    with pytest.raises(ValueError):
        figure_file_name(figure_id, "png")
