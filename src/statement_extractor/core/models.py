"""Frozen dataclasses for the Statement Extractor domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

DEFAULT_PDF_FILENAME = "attachment.pdf"


@dataclass(frozen=True)
class SenderInfo:
    """A sender of statement emails, keyed by lowercased address."""

    email: str
    name: str = ""
    message_count: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.email


@dataclass(frozen=True)
class MimePart:
    """One node of a message's MIME part tree."""

    media_type: str
    filename: str = ""
    size: int = 0
    encoding: str = ""
    children: tuple[MimePart, ...] = field(default_factory=tuple)

    @property
    def is_multipart(self) -> bool:
        return self.media_type.startswith("multipart/")


@dataclass(frozen=True)
class AttachmentInfo:
    """A PDF part located inside a message.

    ``part_path`` is the dotted MIME address ("1", "2.1", ...) used to find the
    same part again when the message is re-fetched.
    """

    filename: str
    mime_type: str
    size_bytes: int
    part_path: str


@dataclass(frozen=True)
class EmailMessage:
    """A fetched message.

    ``sequence_id`` is only meaningful inside the IMAP session that produced it;
    ``uid`` stays valid for as long as the mailbox UIDVALIDITY does.
    """

    sequence_id: int
    uid: int
    subject: str
    from_address: str
    from_name: str = ""
    date: datetime | None = None
    body_text: str = ""
    attachments: tuple[AttachmentInfo, ...] = field(default_factory=tuple)
    message_id_header: str = ""
    structure: MimePart | None = None

    @property
    def has_pdf(self) -> bool:
        return bool(self.attachments)


@dataclass(frozen=True)
class ExtractedEmailInfo:
    """Text extracted from one message's PDF. Immutable once written."""

    subject: str
    date: datetime
    pdf_filename: str
    extracted_text: str
    page_count: int


@dataclass(frozen=True)
class ExtractionRecord:
    """Ledger entry for one sender: every message already extracted, by message key."""

    sender_email: str
    sender_name: str
    extracted_emails: dict[str, ExtractedEmailInfo] = field(default_factory=dict)
    last_extraction_date: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_pdfs_extracted(self) -> int:
        return len(self.extracted_emails)

    def merged_with(self, newer: ExtractionRecord) -> ExtractionRecord:
        """Union this record with a newer one for the same sender.

        Entries from ``newer`` win on key collision; its date and name are kept.
        """
        merged = {**self.extracted_emails, **newer.extracted_emails}
        return ExtractionRecord(
            sender_email=self.sender_email.lower(),
            sender_name=newer.sender_name or self.sender_name,
            extracted_emails=merged,
            last_extraction_date=newer.last_extraction_date,
        )


@dataclass(frozen=True)
class TextFragment:
    """A run of text on a PDF page with its left/top layout coordinates."""

    text: str
    x0: float
    top: float


@dataclass(frozen=True)
class PdfTableData:
    """A table-like region detected on one PDF page."""

    page_number: int
    rows: tuple[tuple[str, ...], ...]


@dataclass(frozen=True)
class PdfContent:
    """Everything extracted from one PDF document."""

    text: str
    page_count: int
    tables: tuple[PdfTableData, ...] = field(default_factory=tuple)


class ExtractionState(str, Enum):
    """States of the two-phase extraction workflow."""

    IDLE = "idle"
    LOADING_EMAIL = "loading_email"
    AUTO_VALIDATING = "auto_validating"
    PASSWORD_ENTRY_PENDING = "password_entry_pending"
    PASSWORD_VALIDATED = "password_validated"
    SENDER_SKIPPED = "sender_skipped"
    EXTRACTION_RUNNING = "extraction_running"
    EXTRACTION_COMPLETE = "extraction_complete"
    ABORTED = "aborted"


class PasswordAttempt(str, Enum):
    """Outcome of submitting a password for the current sender."""

    VALIDATED = "validated"
    INCORRECT_PASSWORD = "incorrect_password"
    FAILED_TO_OPEN = "failed_to_open"
    NO_DOCUMENT = "no_document"


@dataclass
class SenderValidation:
    """Mutable Phase 1 working state for one sender."""

    sender: SenderInfo
    state: ExtractionState = ExtractionState.LOADING_EMAIL
    email: EmailMessage | None = None
    attachment: AttachmentInfo | None = None
    pdf_data: bytes | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)
    error: str | None = None

    @property
    def is_validated(self) -> bool:
        return self.state == ExtractionState.PASSWORD_VALIDATED


@dataclass
class ExtractionProgress:
    """Mutable progress tracker for pipeline status reporting."""

    state: ExtractionState = ExtractionState.IDLE
    processed: int = 0
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    current_sender: str = ""
    status_text: str = ""


@dataclass(frozen=True)
class SenderExtractionResult:
    """Summary of one sender's bulk extraction.

    ``error`` is set only when the sender-level operation failed outright;
    ``persist_error`` when the ledger write failed but results are still returned.
    """

    sender: SenderInfo
    total_emails: int
    success_count: int
    fail_count: int
    extracted_data: tuple[ExtractedEmailInfo, ...] = field(default_factory=tuple)
    error: str | None = None
    persist_error: str | None = None
