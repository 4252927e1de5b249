"""PDF attachment location: MIME part tree walking, part paths, payload decoding."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from email import policy
from email.message import Message
from email.parser import BytesParser
from typing import TYPE_CHECKING

from statement_extractor.core.models import (
    DEFAULT_PDF_FILENAME,
    AttachmentInfo,
    EmailMessage,
    MimePart,
)

if TYPE_CHECKING:
    from statement_extractor.core.mailbox_client import MailboxClient

logger = logging.getLogger(__name__)

PDF_MEDIA_TYPE = "application/pdf"


def is_pdf_part(media_type: str, filename: str) -> bool:
    """A part is a PDF if either its media type or its filename says so.

    Servers fill in Content-Type inconsistently for PDFs, so both are checked.
    """
    return media_type.lower() == PDF_MEDIA_TYPE or filename.lower().endswith(".pdf")


def _child_path(parent: str, index: int) -> str:
    return f"{parent}.{index}" if parent else str(index)


def iter_parts(root: MimePart) -> Iterator[tuple[str, MimePart]]:
    """Yield ``(part_path, part)`` for every node, root first.

    The root is addressed as "1"; children of the root are "1", "2", ...;
    deeper parts are "<parent>.<index>".
    """
    yield "1", root
    yield from _iter_children(root.children, "")


def _iter_children(children: Sequence[MimePart], parent: str) -> Iterator[tuple[str, MimePart]]:
    for index, child in enumerate(children, start=1):
        path = _child_path(parent, index)
        yield path, child
        yield from _iter_children(child.children, path)


def _message_children(msg: Message) -> list[Message]:
    """Children of an email.message node, numbered the way IMAP numbers them."""
    if msg.get_content_type() == "message/rfc822":
        payload = msg.get_payload()
        if isinstance(payload, list) and payload:
            inner = payload[0]
            if inner.is_multipart():
                return list(inner.get_payload())
            return [inner]
        return []
    if msg.is_multipart():
        payload = msg.get_payload()
        return list(payload) if isinstance(payload, list) else []
    return []


def iter_message_parts(msg: Message) -> Iterator[tuple[str, Message]]:
    """Same traversal and numbering as :func:`iter_parts`, over a parsed message."""
    yield "1", msg
    yield from _iter_message_children(_message_children(msg), "")


def _iter_message_children(children: list[Message], parent: str) -> Iterator[tuple[str, Message]]:
    for index, child in enumerate(children, start=1):
        path = _child_path(parent, index)
        yield path, child
        yield from _iter_message_children(_message_children(child), path)


def _part_filename(msg: Message) -> str:
    try:
        return msg.get_filename() or ""
    except Exception as e:
        logger.debug("Unreadable filename parameter: %s", e)
        return ""


def structure_from_message(msg: Message) -> MimePart:
    """Build a MimePart tree from a parsed RFC 822 message."""
    children = tuple(structure_from_message(child) for child in _message_children(msg))
    size = 0
    if not children and not msg.is_multipart():
        raw = msg.get_payload()
        size = len(raw) if isinstance(raw, str) else 0

    return MimePart(
        media_type=msg.get_content_type(),
        filename=_part_filename(msg),
        size=size,
        encoding=str(msg.get("Content-Transfer-Encoding", "")).strip().lower(),
        children=children,
    )


def find_pdf_parts(structure: MimePart | None) -> list[AttachmentInfo]:
    """Collect every PDF part in a MIME tree, in tree order."""
    if structure is None:
        return []

    attachments: list[AttachmentInfo] = []
    for path, part in iter_parts(structure):
        if part.is_multipart or not is_pdf_part(part.media_type, part.filename):
            continue
        attachments.append(
            AttachmentInfo(
                filename=part.filename or DEFAULT_PDF_FILENAME,
                mime_type=PDF_MEDIA_TYPE,
                size_bytes=part.size,
                part_path=path,
            )
        )
    return attachments


def decode_part(raw_message: bytes, part_path: str) -> bytes | None:
    """Decode the PDF payload at ``part_path`` inside raw RFC 822 bytes.

    Returns None when no PDF part lives at that path any more.
    """
    msg = BytesParser(policy=policy.default).parsebytes(raw_message)

    for path, part in iter_message_parts(msg):
        if path != part_path or part.is_multipart():
            continue
        if not is_pdf_part(part.get_content_type(), _part_filename(part)):
            continue
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes) and payload:
            return payload

    return None


class AttachmentLocator:
    """Finds PDF parts in messages and pulls their decoded bytes from the mailbox."""

    def __init__(self, client: MailboxClient) -> None:
        self._client = client

    def find_pdf_parts(self, message: EmailMessage | MimePart) -> list[AttachmentInfo]:
        """List PDF attachments of a message (or a bare MIME tree)."""
        if isinstance(message, MimePart):
            return find_pdf_parts(message)
        if message.structure is not None:
            return find_pdf_parts(message.structure)
        return list(message.attachments)

    def download_attachment(
        self, message: EmailMessage, attachment: AttachmentInfo
    ) -> bytes | None:
        """Re-fetch the message and decode the attachment's bytes.

        None means "no data": the message or the part is gone.
        """
        raw = self._client.fetch_raw(message.uid)
        if raw is None:
            logger.warning("Message UID %s no longer available", message.uid)
            return None
        return self.extract_attachment(raw, attachment)

    @staticmethod
    def extract_attachment(raw_message: bytes, attachment: AttachmentInfo) -> bytes | None:
        """Decode the attachment from raw message bytes already in hand."""
        data = decode_part(raw_message, attachment.part_path)
        if data is None:
            logger.warning(
                "PDF part %s (%s) not found on re-fetch",
                attachment.part_path, attachment.filename,
            )
        return data
