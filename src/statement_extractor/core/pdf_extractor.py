"""PDF text and table-layout extraction using pdfplumber, with password handling."""

from __future__ import annotations

import io
import logging
import math
from collections.abc import Iterable
from typing import Any

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect

from statement_extractor.core.exceptions import PdfFormatError, PdfPasswordError
from statement_extractor.core.models import PdfContent, PdfTableData, TextFragment

logger = logging.getLogger(__name__)

PAGE_MARKER = "--- Page {number} ---"
MIN_TABLE_ROWS = 2
# Words whose tops differ by less than this sit on the same text line
LINE_TOLERANCE = 2.0


def _is_password_error(exc: BaseException) -> bool:
    """Walk the exception chain looking for pdfminer's wrong-password error.

    pdfplumber wraps pdfminer errors, so the original may sit in args or __cause__.
    """
    pending: list[BaseException | None] = [exc]
    seen: set[int] = set()
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, PDFPasswordIncorrect):
            return True
        pending.extend([current.__cause__, current.__context__])
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))
    return False


def row_key(top: float, bucket: float) -> float:
    """Quantise a vertical position to its row bucket (round half up)."""
    return math.floor(top / bucket + 0.5) * bucket


def detect_tables(
    fragments: Iterable[TextFragment], page_number: int, bucket: float = 5.0
) -> list[PdfTableData]:
    """Group one page's text fragments into table-like regions.

    Fragments sharing a row bucket form a row, ordered left to right. Rows
    with more than one fragment are table candidates; a run of at least two
    candidates is a table. A single-fragment row ends the current run.
    """
    rows: dict[float, list[TextFragment]] = {}
    for fragment in fragments:
        rows.setdefault(row_key(fragment.top, bucket), []).append(fragment)

    tables: list[PdfTableData] = []
    current: list[tuple[str, ...]] = []

    def flush() -> None:
        if len(current) >= MIN_TABLE_ROWS:
            tables.append(PdfTableData(page_number=page_number, rows=tuple(current)))
        current.clear()

    for key in sorted(rows):
        row_fragments = rows[key]
        if len(row_fragments) > 1:
            ordered = sorted(row_fragments, key=lambda f: f.x0)
            current.append(tuple(f.text.strip() for f in ordered))
        else:
            flush()

    flush()
    return tables


def merge_words(words: Iterable[dict[str, Any]], gap: float) -> list[TextFragment]:
    """Join words on the same line into fragments, splitting on wide horizontal gaps."""
    lines: list[list[dict[str, Any]]] = []
    for word in sorted(words, key=lambda w: (float(w["top"]), float(w["x0"]))):
        if lines and abs(float(word["top"]) - float(lines[-1][0]["top"])) <= LINE_TOLERANCE:
            lines[-1].append(word)
        else:
            lines.append([word])

    fragments: list[TextFragment] = []
    for line in lines:
        line.sort(key=lambda w: float(w["x0"]))
        text = line[0]["text"]
        x0 = float(line[0]["x0"])
        top = float(line[0]["top"])
        x1 = float(line[0]["x1"])
        for word in line[1:]:
            if float(word["x0"]) - x1 > gap:
                fragments.append(TextFragment(text=text, x0=x0, top=top))
                text, x0, top = word["text"], float(word["x0"]), float(word["top"])
            else:
                text = f"{text} {word['text']}"
            x1 = float(word["x1"])
        fragments.append(TextFragment(text=text, x0=x0, top=top))

    return fragments


class PdfDocument:
    """An open PDF. Close it (or use it as a context manager) on every path."""

    def __init__(self, pdf: pdfplumber.PDF) -> None:
        self._pdf = pdf
        self._closed = False

    @property
    def pages(self) -> list[Any]:
        return self._pdf.pages

    @property
    def page_count(self) -> int:
        return len(self._pdf.pages)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._pdf.close()

    def __enter__(self) -> PdfDocument:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class PdfExtractor:
    """Opens PDF byte buffers and extracts page text and table-like layouts."""

    def __init__(self, row_bucket: float = 5.0, fragment_gap: float = 8.0) -> None:
        self._row_bucket = row_bucket
        self._fragment_gap = fragment_gap

    def open_document(self, data: bytes, password: str = "") -> PdfDocument:
        """Open a PDF, unprotected when ``password`` is empty.

        Raises:
            PdfPasswordError: The password is wrong or one is required.
            PdfFormatError: The bytes are not a readable PDF.
        """
        pdf = None
        try:
            pdf = pdfplumber.open(io.BytesIO(data), password=password or None)
            # Page tree errors surface lazily; touch it now
            _ = len(pdf.pages)
        except Exception as e:
            if pdf is not None:
                pdf.close()
            if _is_password_error(e):
                raise PdfPasswordError("Incorrect password for PDF") from e
            raise PdfFormatError(f"Failed to open PDF: {e}") from e
        return PdfDocument(pdf)

    def extract_all_text(self, doc: PdfDocument) -> str:
        """Text of every page in order, each non-empty page introduced by a page marker."""
        chunks: list[str] = []
        for number, page in enumerate(doc.pages, start=1):
            try:
                page_text = page.extract_text() or ""
            except Exception as e:
                raise PdfFormatError(f"Failed to extract text from page {number}: {e}") from e
            if page_text.strip():
                chunks.append(f"{PAGE_MARKER.format(number=number)}\n\n{page_text}\n")
        return "\n".join(chunks)

    def page_fragments(self, page: Any) -> list[TextFragment]:
        words = page.extract_words(keep_blank_chars=False, use_text_flow=False)
        return merge_words(words, self._fragment_gap)

    def extract_tables(self, doc: PdfDocument) -> list[PdfTableData]:
        """Layout-based table detection across all pages.

        Best effort: a page whose layout cannot be read contributes no tables.
        """
        tables: list[PdfTableData] = []
        for number, page in enumerate(doc.pages, start=1):
            try:
                fragments = self.page_fragments(page)
            except Exception as e:
                logger.warning("Table extraction failed on page %d: %s", number, e)
                continue
            tables.extend(detect_tables(fragments, number, self._row_bucket))
        return tables

    def extract(self, data: bytes, password: str = "", *, with_tables: bool = False) -> PdfContent:
        """Open, extract text (and optionally tables), and close."""
        with self.open_document(data, password) as doc:
            text = self.extract_all_text(doc)
            tables = tuple(self.extract_tables(doc)) if with_tables else ()
            return PdfContent(text=text, page_count=doc.page_count, tables=tables)

    def validate_password(self, data: bytes, password: str) -> bool:
        """True if ``password`` opens the PDF; False on a password failure.

        Raises:
            PdfFormatError: The PDF is unreadable regardless of password.
        """
        try:
            with self.open_document(data, password):
                return True
        except PdfPasswordError:
            return False
