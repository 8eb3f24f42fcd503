"""Evidence normalizer: uploaded bytes -> plain text plus a readability signal.

Parsers never raise for a supported format. A failed or low-yield extraction
falls back to OCR (when an engine is injected) and finally to a bracketed
sentinel string; :func:`is_unreadable` recognizes those sentinels so every
consumer can treat the document the same way.
"""
from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from typing import Callable

import docx
import openpyxl
from lxml import etree
from pypdf import PdfReader

from dealdesk.errors import UnsupportedFormat

log = logging.getLogger(__name__)

# (data, extension) -> recognized text
OcrEngine = Callable[[bytes, str], str]

PDF_MIN_TEXT = 50
PDF_MIN_OCR_TEXT = 80
IMAGE_MIN_OCR_TEXT = 30

PDF_MINIMAL_TEXT = (
    "[PDF was parsed but contains minimal extractable text. "
    "The document may be image-based or encrypted.]"
)
IMAGE_NO_TEXT = "[Image file - text extraction not available. Consider adding text description manually.]"
DOCX_EMPTY = "[DOCX appears to be empty]"
PPTX_EMPTY = "[PowerPoint file appears to be empty or could not be parsed]"
UNPARSEABLE = "[Document could not be parsed]"

UNREADABLE_MARKERS = (
    "[pdf was parsed but contains minimal extractable text",
    "[pdf parsing failed:",
    "[document could not be parsed]",
    "[image file - text extraction not available",
    "[excel parsing error:",
    "[powerpoint file appears to be empty",
    "[docx appears to be empty]",
)

MIME_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "ppt": "application/vnd.ms-powerpoint",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "xls": "application/vnd.ms-excel",
    "csv": "text/csv",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "txt": "text/plain",
}
SUPPORTED_EXTENSIONS = tuple(MIME_TYPES)
IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp")

_DRAWINGML_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
_SLIDE_RE = re.compile(r"^ppt/slides/slide(\d+)\.xml$")


def normalize_extension(name_or_ext: str) -> str:
    ext = name_or_ext.rsplit(".", 1)[-1] if "." in name_or_ext else name_or_ext
    return ext.strip().lower()


def mime_type_for(name_or_ext: str) -> str:
    return MIME_TYPES.get(normalize_extension(name_or_ext), "application/octet-stream")


def is_unreadable(text: str | None) -> bool:
    """True for empty text or text carrying one of the parser sentinels."""
    if not text or not text.strip():
        return True
    lowered = text.lower()
    return any(marker in lowered for marker in UNREADABLE_MARKERS)


def parse_document(data: bytes, extension: str, ocr: OcrEngine | None = None) -> str:
    """Extract text from *data*; *extension* may be a bare extension or a filename."""
    ext = normalize_extension(extension)
    if ext == "pdf":
        return parse_pdf(data, ocr)
    if ext == "docx":
        return parse_docx(data)
    if ext in ("pptx", "ppt"):
        return parse_pptx(data)
    if ext in ("xlsx", "xls"):
        return parse_excel(data)
    if ext == "csv":
        return parse_csv(data)
    if ext in IMAGE_EXTENSIONS:
        return parse_image(data, ext, ocr)
    if ext == "txt":
        return data.decode("utf-8", errors="replace").strip()
    raise UnsupportedFormat(f"Unsupported file type: .{ext}")


# ---------------------------------------------------------------------------
# Format parsers
# ---------------------------------------------------------------------------


def _run_ocr(ocr: OcrEngine | None, data: bytes, ext: str) -> str:
    if ocr is None:
        return ""
    try:
        return (ocr(data, ext) or "").strip()
    except Exception as exc:
        log.warning("OCR failed for .%s: %s", ext, exc)
        return ""


def parse_pdf(data: bytes, ocr: OcrEngine | None = None) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = []
        for page in reader.pages:
            text = page.extract_text() or ""
            if text.strip():
                pages.append(text.strip())
        text = "\n\n".join(pages).strip()
    except Exception as exc:
        log.warning("PDF parsing failed: %s", exc)
        recognized = _run_ocr(ocr, data, "pdf")
        if len(recognized) >= PDF_MIN_OCR_TEXT:
            return recognized
        return f"[PDF parsing failed: {exc}]"

    if len(text) >= PDF_MIN_TEXT:
        return text
    recognized = _run_ocr(ocr, data, "pdf")
    if len(recognized) >= PDF_MIN_OCR_TEXT:
        return recognized
    return PDF_MINIMAL_TEXT


def parse_docx(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:
        log.warning("DOCX parsing failed: %s", exc)
        return UNPARSEABLE
    parts = [p.text.strip() for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    text = "\n".join(parts).strip()
    return text or DOCX_EMPTY


def parse_pptx(data: bytes) -> str:
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        return PPTX_EMPTY
    slides: list[tuple[int, str]] = []
    with archive:
        for name in archive.namelist():
            m = _SLIDE_RE.match(name)
            if not m:
                continue
            try:
                root = etree.fromstring(archive.read(name))
            except etree.XMLSyntaxError:
                log.warning("Skipping malformed slide %s", name)
                continue
            runs = [el.text.strip() for el in root.iter(f"{{{_DRAWINGML_NS}}}t") if el.text and el.text.strip()]
            if runs:
                slides.append((int(m.group(1)), " ".join(runs)))
    if not slides:
        return PPTX_EMPTY
    slides.sort()
    return "\n\n---\n\n".join(f"Slide {n}: {text}" for n, text in slides)


def _rows_to_csv(rows) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue()


def parse_excel(data: bytes) -> str:
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        return f"[Excel parsing error: {exc}]"
    try:
        parts = []
        for ws in wb.worksheets:
            parts.append(f"\n=== Sheet: {ws.title} ===\n")
            parts.append(_rows_to_csv(ws.iter_rows(values_only=True)))
        return "".join(parts).strip()
    except Exception as exc:
        return f"[Excel parsing error: {exc}]"
    finally:
        wb.close()


def parse_csv(data: bytes) -> str:
    text = data.decode("utf-8-sig", errors="replace")
    rows = list(csv.reader(io.StringIO(text)))
    return ("\n=== Sheet: Sheet1 ===\n" + _rows_to_csv(rows)).strip()


def parse_image(data: bytes, ext: str, ocr: OcrEngine | None = None) -> str:
    recognized = _run_ocr(ocr, data, ext)
    if len(recognized) >= IMAGE_MIN_OCR_TEXT:
        return recognized
    return IMAGE_NO_TEXT
