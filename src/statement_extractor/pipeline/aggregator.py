"""Sender discovery: group statement emails with PDF attachments by sender."""

from __future__ import annotations

import logging

from statement_extractor.core.exceptions import NotConnectedError
from statement_extractor.core.mailbox_client import MailboxClient
from statement_extractor.core.models import EmailMessage, SenderInfo

logger = logging.getLogger(__name__)


def group_by_sender(messages: list[EmailMessage]) -> list[SenderInfo]:
    """Count PDF-bearing messages per lowercased sender, most prolific first.

    The name comes from the first message seen for that sender; ties keep
    first-seen order.
    """
    groups: dict[str, list[EmailMessage]] = {}
    for message in messages:
        if not message.has_pdf or not message.from_address:
            continue
        groups.setdefault(message.from_address.lower(), []).append(message)

    senders = [
        SenderInfo(email=email, name=group[0].from_name, message_count=len(group))
        for email, group in groups.items()
    ]
    senders.sort(key=lambda s: s.message_count, reverse=True)
    return senders


class SenderAggregator:
    """Finds who sends statement emails, via one metadata-only pass over the mailbox."""

    def __init__(self, client: MailboxClient, subject_term: str = "statement") -> None:
        self._client = client
        self._subject_term = subject_term

    def discover_senders(self) -> list[SenderInfo]:
        """Search by subject, fetch envelopes and structures, keep PDF senders.

        Raises:
            NotConnectedError: If the session cannot be (re)established.
            MailboxConnectionError: If the search or fetch fails.
        """
        if not self._client.ensure_connected():
            raise NotConnectedError("Not authenticated - please login again")

        uids = self._client.search_by_subject(self._subject_term)
        if not uids:
            logger.info("No messages with %r in subject", self._subject_term)
            return []

        messages = self._client.fetch_envelope_and_structure(uids)
        senders = group_by_sender(messages)
        logger.info(
            "Discovered %d senders across %d statement emails", len(senders), len(messages)
        )
        return senders
