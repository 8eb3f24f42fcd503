"""Tests for the evidence normalizer: format parsers, OCR fallback, sentinels."""
from __future__ import annotations

import io
import zipfile
from unittest.mock import MagicMock

import docx
import openpyxl
import pytest
from pypdf import PdfWriter

from dealdesk.errors import UnsupportedFormat
from dealdesk.parser import (
    DOCX_EMPTY,
    IMAGE_NO_TEXT,
    PDF_MINIMAL_TEXT,
    PPTX_EMPTY,
    is_unreadable,
    mime_type_for,
    parse_document,
)

_SLIDE = (
    '<p:sld xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main" '
    'xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main">'
    "<p:cSld><p:spTree>{runs}</p:spTree></p:cSld></p:sld>"
)


def _pptx(slides: dict[int, list[str]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("[Content_Types].xml", "<Types/>")
        for n, texts in slides.items():
            runs = "".join(f"<a:r><a:t>{t}</a:t></a:r>" for t in texts)
            zf.writestr(f"ppt/slides/slide{n}.xml", _SLIDE.format(runs=runs))
    return buf.getvalue()


def _blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestOfficeFormats:
    def test_pptx_slides_in_order(self):
        text = parse_document(_pptx({2: ["Traction"], 1: ["Acme", "Problem"], 10: ["Ask"]}), "deck.pptx")
        assert text.split("\n\n---\n\n") == ["Slide 1: Acme Problem", "Slide 2: Traction", "Slide 10: Ask"]

    def test_pptx_empty_and_garbage(self):
        assert parse_document(_pptx({}), "pptx") == PPTX_EMPTY
        assert parse_document(b"not a zip", "ppt") == PPTX_EMPTY

    def test_docx_paragraphs_and_tables(self):
        document = docx.Document()
        document.add_paragraph("Acme builds billing software.")
        table = document.add_table(rows=1, cols=2)
        table.cell(0, 0).text = "ARR"
        table.cell(0, 1).text = "$1.2M"
        buf = io.BytesIO()
        document.save(buf)
        text = parse_document(buf.getvalue(), "memo.docx")
        assert "Acme builds billing software." in text
        assert "ARR | $1.2M" in text

    def test_docx_empty(self):
        buf = io.BytesIO()
        docx.Document().save(buf)
        assert parse_document(buf.getvalue(), "docx") == DOCX_EMPTY

    def test_xlsx_sheets(self):
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Financials"
        ws.append(["Year", "Revenue"])
        ws.append([2025, 1200000])
        buf = io.BytesIO()
        wb.save(buf)
        text = parse_document(buf.getvalue(), "model.xlsx")
        assert text.startswith("=== Sheet: Financials ===")
        assert "Year,Revenue" in text
        assert "2025,1200000" in text

    def test_xlsx_garbage_is_sentinel(self):
        text = parse_document(b"garbage", "xlsx")
        assert text.startswith("[Excel parsing error:")
        assert is_unreadable(text)

    def test_csv_and_txt(self):
        assert parse_document(b"a,b\n1,2\n", "csv") == "=== Sheet: Sheet1 ===\na,b\n1,2"
        assert parse_document("café notes".encode(), "notes.txt") == "café notes"


class TestPdfAndImages:
    def test_blank_pdf_without_ocr(self):
        assert parse_document(_blank_pdf(), "pdf") == PDF_MINIMAL_TEXT

    def test_blank_pdf_with_ocr(self):
        ocr = MagicMock(return_value="Recognized slide text " * 5)
        text = parse_document(_blank_pdf(), "deck.pdf", ocr=ocr)
        assert text.startswith("Recognized slide text")
        ocr.assert_called_once()

    def test_short_ocr_rejected(self):
        ocr = MagicMock(return_value="too short")
        assert parse_document(_blank_pdf(), "pdf", ocr=ocr) == PDF_MINIMAL_TEXT

    def test_broken_pdf(self):
        text = parse_document(b"%PDF-garbage", "pdf")
        assert text.startswith("[PDF")
        assert is_unreadable(text)

    def test_image_ocr(self):
        assert parse_document(b"\x89PNG", "png") == IMAGE_NO_TEXT
        ocr = MagicMock(return_value="A screenshot showing monthly revenue growth")
        assert parse_document(b"\x89PNG", "shot.png", ocr=ocr).startswith("A screenshot")

    def test_ocr_errors_fall_back(self):
        ocr = MagicMock(side_effect=RuntimeError("engine down"))
        assert parse_document(b"\x89PNG", "jpg", ocr=ocr) == IMAGE_NO_TEXT


def test_unsupported_extension():
    with pytest.raises(UnsupportedFormat):
        parse_document(b"x", "archive.zip")


def test_mime_types():
    assert mime_type_for("deck.PDF") == "application/pdf"
    assert mime_type_for("file.xyz") == "application/octet-stream"


class TestIsUnreadable:
    @pytest.mark.parametrize("text", [
        "",
        "   ",
        PDF_MINIMAL_TEXT,
        IMAGE_NO_TEXT,
        PPTX_EMPTY,
        f"Cover page\n{DOCX_EMPTY}",
    ])
    def test_sentinels(self, text):
        assert is_unreadable(text)

    def test_real_paragraph(self):
        assert not is_unreadable("Acme sells workflow software to mid-market logistics operators.")
