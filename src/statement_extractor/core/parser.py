"""RFC 822 message parser: header decoding, body text, MIME tree and PDF attachments."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime

import trafilatura

from statement_extractor.core.attachments import find_pdf_parts, structure_from_message
from statement_extractor.core.exceptions import MessageParseError
from statement_extractor.core.models import EmailMessage

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def decode_header_value(value: str) -> str:
    """Decode an RFC 2047 encoded header value; returns the input if it cannot be decoded."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return value


def parse_date(date_str: str) -> datetime:
    """Parse an RFC 2822 date string into an aware datetime.

    Args:
        date_str: Email date header value.

    Returns:
        Parsed datetime (UTC assumed when the header has no zone), or the epoch
        if parsing fails.
    """
    if not date_str:
        return EPOCH
    try:
        parsed = parsedate_to_datetime(date_str)
    except Exception:
        logger.warning("Failed to parse date: %s", date_str)
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MessageParser:
    """Parses raw RFC 822 bytes into EmailMessage objects."""

    def parse(self, raw_message: bytes, *, sequence_id: int = 0, uid: int = 0) -> EmailMessage:
        """Parse a fetched message.

        Args:
            raw_message: Full message bytes from a ``BODY[]`` fetch.
            sequence_id: Session-scoped sequence number of the message.
            uid: IMAP UID of the message.

        Returns:
            Parsed EmailMessage with its MIME tree and PDF attachments.

        Raises:
            MessageParseError: If the bytes cannot be parsed as a message.
        """
        try:
            msg = BytesParser(policy=policy.default).parsebytes(raw_message)
            from_name, from_address = parseaddr(str(msg.get("From", "")))
            structure = structure_from_message(msg)

            return EmailMessage(
                sequence_id=sequence_id,
                uid=uid,
                subject=decode_header_value(str(msg.get("Subject", ""))) or "No Subject",
                from_address=from_address.lower() or "Unknown",
                from_name=decode_header_value(from_name),
                date=parse_date(str(msg.get("Date", ""))),
                body_text=self._extract_body_text(msg),
                attachments=tuple(find_pdf_parts(structure)),
                message_id_header=str(msg.get("Message-ID", "")).strip(),
                structure=structure,
            )
        except Exception as e:
            raise MessageParseError(f"Failed to parse message UID {uid}: {e}") from e

    def _extract_body_text(self, msg: MimeMessage) -> str:
        """Prefer text/plain; reduce an HTML-only body to text via trafilatura."""
        part = msg.get_body(preferencelist=("plain", "html"))
        if part is None:
            return ""

        content = self._part_text(part)
        if part.get_content_subtype() != "html":
            return content

        try:
            text = trafilatura.extract(
                content,
                output_format="txt",
                favor_recall=True,
                include_tables=True,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            text = None
        return text or ""

    @staticmethod
    def _part_text(part: MimeMessage) -> str:
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError):
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")
