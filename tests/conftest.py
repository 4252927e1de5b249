"""Shared fixtures for Statement Extractor tests."""

from __future__ import annotations

import hashlib
import struct
from collections.abc import Callable
from datetime import UTC, datetime
from email.message import EmailMessage as MimeMessage
from email.utils import format_datetime
from pathlib import Path

import pytest

from statement_extractor.config.settings import StatementExtractorSettings
from statement_extractor.core.models import (
    AttachmentInfo,
    EmailMessage,
    ExtractedEmailInfo,
    SenderInfo,
)

# (x, y, text) in PDF user space, y measured from the bottom of the page
TextLine = tuple[float, float, str]

_PASSWORD_PADDING = bytes.fromhex(
    "28bf4e5e4e758a4164004e56fffa01082e2e00b6d0683e802f0ca9fe6453697a"
)
_DOC_ID = bytes.fromhex("0123456789abcdef0123456789abcdef")
_PERMISSIONS = -44


def _rc4(key: bytes, data: bytes) -> bytes:
    s = list(range(256))
    j = 0
    for i in range(256):
        j = (j + s[i] + key[i % len(key)]) % 256
        s[i], s[j] = s[j], s[i]
    i = j = 0
    out = bytearray()
    for byte in data:
        i = (i + 1) % 256
        j = (j + s[i]) % 256
        s[i], s[j] = s[j], s[i]
        out.append(byte ^ s[(s[i] + s[j]) % 256])
    return bytes(out)


def _pad(password: str) -> bytes:
    return (password.encode("latin-1") + _PASSWORD_PADDING)[:32]


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_pdf(pages: list[list[TextLine]], password: str | None = None) -> bytes:
    """Assemble a small Helvetica-only PDF.

    With ``password`` set, the document uses the standard security handler
    (revision 2, 40-bit RC4) with that string as both user and owner password.
    """
    page_count = len(pages)
    font_id = 3
    first_page_id = 4
    encrypt_id = first_page_id + 2 * page_count

    key = b""
    owner_entry = b""
    user_entry = b""
    if password is not None:
        owner_entry = _rc4(hashlib.md5(_pad(password)).digest()[:5], _pad(password))
        digest = hashlib.md5(
            _pad(password) + owner_entry + struct.pack("<I", _PERMISSIONS & 0xFFFFFFFF) + _DOC_ID
        ).digest()
        key = digest[:5]
        user_entry = _rc4(key, _PASSWORD_PADDING)

    objects: dict[int, bytes] = {}
    kids = " ".join(f"{first_page_id + 2 * i} 0 R" for i in range(page_count))
    objects[1] = b"<< /Type /Catalog /Pages 2 0 R >>"
    objects[2] = f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode()
    objects[font_id] = b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>"

    for index, lines in enumerate(pages):
        page_id = first_page_id + 2 * index
        content_id = page_id + 1
        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 {font_id} 0 R >> >> /Contents {content_id} 0 R >>"
        ).encode()
        stream = "".join(
            f"BT /F1 10 Tf 1 0 0 1 {x} {y} Tm ({_escape(text)}) Tj ET\n" for x, y, text in lines
        ).encode("latin-1")
        if password is not None:
            object_key = hashlib.md5(
                key + struct.pack("<I", content_id)[:3] + struct.pack("<I", 0)[:2]
            ).digest()[:10]
            stream = _rc4(object_key, stream)
        objects[content_id] = (
            f"<< /Length {len(stream)} >>\nstream\n".encode() + stream + b"\nendstream"
        )

    if password is not None:
        objects[encrypt_id] = (
            f"<< /Filter /Standard /V 1 /R 2 /O <{owner_entry.hex()}> "
            f"/U <{user_entry.hex()}> /P {_PERMISSIONS} >>"
        ).encode()

    body = bytearray(b"%PDF-1.4\n")
    offsets: dict[int, int] = {}
    for obj_id in sorted(objects):
        offsets[obj_id] = len(body)
        body += f"{obj_id} 0 obj\n".encode() + objects[obj_id] + b"\nendobj\n"

    size = max(objects) + 1
    xref_offset = len(body)
    body += f"xref\n0 {size}\n0000000000 65535 f \n".encode()
    for obj_id in range(1, size):
        body += f"{offsets.get(obj_id, 0):010d} 00000 n \n".encode()

    trailer = f"<< /Size {size} /Root 1 0 R /ID [<{_DOC_ID.hex()}> <{_DOC_ID.hex()}>]"
    if password is not None:
        trailer += f" /Encrypt {encrypt_id} 0 R"
    body += f"trailer\n{trailer} >>\nstartxref\n{xref_offset}\n%%EOF\n".encode()
    return bytes(body)


def build_statement_email(
    sender: str = "billing@bank.example",
    subject: str = "Your monthly statement",
    pdf: bytes | None = b"%PDF-1.4 fake",
    filename: str = "statement.pdf",
    date: datetime = datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
    body: str = "Your statement is attached.",
    sender_name: str = "Example Bank",
) -> bytes:
    """Raw RFC 822 bytes of a statement email, optionally with a PDF attachment."""
    msg = MimeMessage()
    msg["From"] = f"{sender_name} <{sender}>" if sender_name else sender
    msg["To"] = "me@example.com"
    msg["Subject"] = subject
    msg["Date"] = format_datetime(date)
    msg["Message-ID"] = "<statement-1@bank.example>"
    msg.set_content(body)
    if pdf is not None:
        msg.add_attachment(pdf, maintype="application", subtype="pdf", filename=filename)
    return msg.as_bytes()


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    """Factory for small real PDFs: ``make_pdf(pages, password=None)``."""
    return build_pdf


@pytest.fixture
def make_statement_email() -> Callable[..., bytes]:
    """Factory for raw statement email bytes."""
    return build_statement_email


@pytest.fixture
def tmp_settings(tmp_path: Path) -> StatementExtractorSettings:
    """Settings pointing to temporary directories."""
    return StatementExtractorSettings(
        _env_file=None,
        email_address="me@example.com",
        app_password="app-secret",
        cache_path=tmp_path / "data" / "credential_cache.json",
        output_dir=tmp_path / "output" / "extracted",
        lookback_days=730,
        cache_write_retries=1,
    )


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Temporary output directory for tests."""
    output = tmp_path / "output"
    output.mkdir()
    return output


@pytest.fixture
def tmp_cache_path(tmp_path: Path) -> Path:
    """Temporary credential cache path for tests."""
    return tmp_path / "data" / "credential_cache.json"


@pytest.fixture
def bank_sender() -> SenderInfo:
    return SenderInfo(email="billing@bank.example", name="Example Bank", message_count=3)


@pytest.fixture
def sample_attachment() -> AttachmentInfo:
    return AttachmentInfo(
        filename="statement.pdf", mime_type="application/pdf", size_bytes=1024, part_path="2"
    )


@pytest.fixture
def sample_email(sample_attachment: AttachmentInfo) -> EmailMessage:
    """A parsed statement email with one PDF attachment."""
    return EmailMessage(
        sequence_id=7,
        uid=1017,
        subject="Your monthly statement",
        from_address="billing@bank.example",
        from_name="Example Bank",
        date=datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
        body_text="Your statement is attached.",
        attachments=(sample_attachment,),
    )


@pytest.fixture
def sample_extracted() -> ExtractedEmailInfo:
    return ExtractedEmailInfo(
        subject="Your monthly statement",
        date=datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
        pdf_filename="statement.pdf",
        extracted_text="--- Page 1 ---\n\nClosing balance 1,234.56\n",
        page_count=1,
    )
