"""IMAP mailbox client: TLS login, reconnect-on-drop, UID search and batched fetch."""

from __future__ import annotations

import imaplib
import logging
import ssl
import threading
from datetime import date
from typing import Any

from statement_extractor.config.settings import StatementExtractorSettings
from statement_extractor.core.attachments import find_pdf_parts
from statement_extractor.core.exceptions import (
    AuthenticationError,
    MailboxConnectionError,
    NotConnectedError,
)
from statement_extractor.core.imap_response import (
    parse_body_response,
    parse_bodystructure,
    parse_envelope,
    parse_fetch_response,
    parse_search_response,
)
from statement_extractor.core.models import EmailMessage
from statement_extractor.core.parser import MessageParser

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Errors that mean the session itself is gone
_SESSION_ERRORS = (imaplib.IMAP4.abort, OSError, EOFError)


def imap_date(day: date) -> str:
    """Format a date for SEARCH SINCE/BEFORE (dd-Mon-yyyy, locale independent)."""
    return f"{day.day:02d}-{_MONTHS[day.month - 1]}-{day.year}"


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class MailboxClient:
    """Stateful IMAP session wrapper.

    Every command runs under one lock: IMAP does not tolerate interleaved
    commands on a single connection.
    """

    def __init__(
        self,
        host: str = "imap.gmail.com",
        port: int = 993,
        mailbox: str = "INBOX",
        *,
        timeout: float = 30.0,
        batch_size: int = 10,
        parser: MessageParser | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._mailbox = mailbox
        self._timeout = timeout
        self._batch_size = max(1, batch_size)
        self._parser = parser or MessageParser()

        self._conn: imaplib.IMAP4_SSL | None = None
        self._address: str | None = None
        self._secret: str | None = None
        self._uid_validity: str = ""
        self._lock = threading.RLock()
        self.last_error: str | None = None

    @classmethod
    def from_settings(cls, settings: StatementExtractorSettings) -> MailboxClient:
        return cls(
            settings.imap_host,
            settings.imap_port,
            settings.mailbox,
            timeout=settings.connect_timeout_seconds,
            batch_size=settings.fetch_batch_size,
        )

    # ---------- session lifecycle ----------

    def authenticate(self, address: str, secret: str) -> bool:
        """Connect over TLS and log in.

        Returns:
            True on success. On failure the client is left disconnected and
            ``last_error`` holds a readable reason; nothing is raised.
        """
        with self._lock:
            self._address = address
            self._secret = secret
            try:
                self._connect()
                self.last_error = None
                return True
            except MailboxConnectionError as e:
                self.last_error = str(e)
                logger.error("Authentication failed for %s: %s", address, e)
                self._drop()
                return False

    def is_connected(self) -> bool:
        return self._conn is not None

    def ensure_connected(self) -> bool:
        """Probe the session with NOOP and transparently reconnect if it has dropped.

        Returns:
            True if the session is usable afterwards.
        """
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.noop()
                    return True
                except (imaplib.IMAP4.error, *_SESSION_ERRORS) as e:
                    logger.warning("IMAP connection lost (%s), attempting reconnect", e)
                    self._drop()

            if not self._address or self._secret is None:
                return False

            try:
                logger.info("Reconnecting to %s:%d", self._host, self._port)
                self._connect()
                logger.info("Reconnected successfully")
                return True
            except MailboxConnectionError as e:
                self.last_error = str(e)
                logger.error("Reconnection failed: %s", e)
                self._drop()
                return False

    def disconnect(self) -> None:
        """Log out and release the session. Safe to call repeatedly."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.logout()
                logger.info("Disconnected from IMAP server")
            except Exception:
                logger.debug("Connection was already closed or logout failed")
            finally:
                self._conn = None

    @property
    def uid_validity(self) -> str:
        return self._uid_validity

    def message_key(self, uid: int) -> str:
        """Durable ledger key for a message: UIDVALIDITY plus UID."""
        return f"{self._uid_validity}:{uid}"

    def _connect(self) -> None:
        self._drop()
        logger.info("Connecting to %s:%d", self._host, self._port)
        try:
            conn = imaplib.IMAP4_SSL(
                self._host,
                self._port,
                ssl_context=ssl.create_default_context(),
                timeout=self._timeout,
            )
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxConnectionError(f"Could not reach {self._host}: {e}") from e

        try:
            conn.login(self._address or "", self._secret or "")
            status, _ = conn.select(self._mailbox, readonly=True)
            if status != "OK":
                raise MailboxConnectionError(f"Could not open mailbox {self._mailbox}")
            _code, data = conn.response("UIDVALIDITY")
        except MailboxConnectionError:
            self._safe_logout(conn)
            raise
        except _SESSION_ERRORS as e:
            self._safe_logout(conn)
            raise MailboxConnectionError(f"Connection dropped during login: {e}") from e
        except imaplib.IMAP4.error as e:
            self._safe_logout(conn)
            raise AuthenticationError(f"Login failed: {self._readable(e)}") from e

        self._conn = conn
        self._uid_validity = self._decode_uidvalidity(data)
        logger.info("Connected to %s (UIDVALIDITY %s)", self._mailbox, self._uid_validity)

    def _drop(self) -> None:
        if self._conn is not None:
            self._safe_logout(self._conn)
        self._conn = None

    @staticmethod
    def _safe_logout(conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except Exception:
            logger.debug("Logout during cleanup failed")

    @staticmethod
    def _decode_uidvalidity(data: Any) -> str:
        if data and data[0]:
            value = data[0]
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            return str(value)
        return ""

    @staticmethod
    def _readable(exc: Exception) -> str:
        message = exc.args[0] if exc.args else exc
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return str(message)

    def _uid(self, command: str, *args: str) -> Any:
        """Run a UID command, converting protocol failures into MailboxConnectionError."""
        if self._conn is None:
            raise NotConnectedError("Not authenticated - please login again")
        try:
            status, data = self._conn.uid(command, *args)
        except _SESSION_ERRORS as e:
            self._conn = None
            raise MailboxConnectionError(f"IMAP {command} failed: {e}") from e
        except imaplib.IMAP4.error as e:
            raise MailboxConnectionError(f"IMAP {command} failed: {self._readable(e)}") from e
        if status != "OK":
            raise MailboxConnectionError(f"IMAP {command} returned {status}")
        return data

    # ---------- search ----------

    def search_by_subject(self, term: str, since: date | None = None) -> list[int]:
        """UIDs of messages whose subject contains ``term`` (ascending)."""
        criteria = ["SUBJECT", _quote(term)]
        if since is not None:
            criteria += ["SINCE", imap_date(since)]
        with self._lock:
            return parse_search_response(self._uid("SEARCH", *criteria))

    def search_by_from_and_subject(
        self, sender: str, term: str, since: date | None = None
    ) -> list[int]:
        """UIDs of messages from ``sender`` whose subject contains ``term``.

        Servers differ in how strictly they match quoted addresses, so an empty
        result from the quoted form is retried with the unquoted one.
        """
        since_criteria = ["SINCE", imap_date(since)] if since is not None else []
        with self._lock:
            uids = parse_search_response(
                self._uid("SEARCH", "FROM", _quote(sender), "SUBJECT", _quote(term), *since_criteria)
            )
            if not uids:
                logger.debug("No exact match for %s, trying broader search", sender)
                uids = parse_search_response(
                    self._uid("SEARCH", "FROM", sender, "SUBJECT", term, *since_criteria)
                )
        return uids

    # ---------- fetch ----------

    def fetch_envelope_and_structure(self, uids: list[int]) -> list[EmailMessage]:
        """Metadata-only fetch (no bodies), in batches.

        Messages that vanished or cannot be parsed are logged and skipped.
        """
        messages: list[EmailMessage] = []

        for i in range(0, len(uids), self._batch_size):
            batch = uids[i : i + self._batch_size]
            with self._lock:
                data = self._uid(
                    "FETCH", ",".join(str(uid) for uid in batch), "(UID ENVELOPE BODYSTRUCTURE)"
                )

            returned: set[int] = set()
            for seq, attrs in parse_fetch_response(data):
                try:
                    message = self._message_from_metadata(seq, attrs)
                except Exception as e:
                    logger.warning("Skipping unparseable metadata for message %d: %s", seq, e)
                    continue
                returned.add(message.uid)
                messages.append(message)

            missing = set(batch) - returned
            if missing:
                logger.warning("%d message(s) not returned by server: %s", len(missing), sorted(missing))

        logger.debug("Fetched metadata for %d of %d messages", len(messages), len(uids))
        return messages

    @staticmethod
    def _message_from_metadata(seq: int, attrs: dict[str, Any]) -> EmailMessage:
        envelope = parse_envelope(attrs.get("ENVELOPE"))
        structure = parse_bodystructure(attrs.get("BODYSTRUCTURE"))
        senders = envelope["from"]
        from_name, from_address = senders[0] if senders else ("", "")

        return EmailMessage(
            sequence_id=seq,
            uid=int(attrs["UID"]),
            subject=envelope["subject"] or "No Subject",
            from_address=from_address.lower(),
            from_name=from_name,
            date=envelope["date"],
            attachments=tuple(find_pdf_parts(structure)),
            message_id_header=envelope["message_id"],
            structure=structure,
        )

    def fetch_full_and_raw(self, uid: int) -> tuple[EmailMessage, bytes] | None:
        """Fetch one message body and parse it, keeping the raw bytes.

        Returns None if the message no longer exists.

        Raises:
            MessageParseError: If the fetched bytes cannot be parsed.
        """
        with self._lock:
            data = self._uid("FETCH", str(uid), "(UID BODY.PEEK[])")

        for seq, fetched_uid, raw in parse_body_response(data):
            if fetched_uid is not None and fetched_uid != uid:
                continue
            message = self._parser.parse(raw, sequence_id=seq, uid=uid)
            return message, raw

        logger.warning("Message UID %d not returned by server", uid)
        return None

    def fetch_full(self, uid: int) -> EmailMessage | None:
        """Envelope, body text and MIME structure of one message."""
        fetched = self.fetch_full_and_raw(uid)
        return fetched[0] if fetched else None

    def fetch_raw(self, uid: int) -> bytes | None:
        """Raw RFC 822 bytes of one message, or None if it no longer exists."""
        with self._lock:
            data = self._uid("FETCH", str(uid), "(UID BODY.PEEK[])")

        for _seq, fetched_uid, raw in parse_body_response(data):
            if fetched_uid is None or fetched_uid == uid:
                return raw
        return None

    def fetch_latest_from_sender(self, sender: str, term: str) -> EmailMessage | None:
        """The newest message from ``sender`` whose subject contains ``term``.

        FROM search is a substring match, so candidates are walked newest first
        until one was actually sent by ``sender``.
        """
        uids = self.search_by_from_and_subject(sender, term)
        if not uids:
            logger.info("No emails found from %s with %r in subject", sender, term)
            return None

        address = sender.lower()
        logger.info("Found %d candidate emails from %s", len(uids), sender)
        for uid in sorted(uids, reverse=True):
            message = self.fetch_full(uid)
            if message is None:
                continue
            if message.from_address == address:
                return message
            logger.debug("UID %d is from %s, not %s", uid, message.from_address, address)

        logger.info("No email in the search results was sent by %s", sender)
        return None
