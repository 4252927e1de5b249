"""Custom exceptions for the Statement Extractor."""


class StatementExtractorError(Exception):
    """Base exception for all Statement Extractor errors."""


class MailboxConnectionError(StatementExtractorError):
    """Network, TLS or protocol failure talking to the IMAP server."""


class AuthenticationError(MailboxConnectionError):
    """The IMAP server rejected the address/app password pair."""


class NotConnectedError(MailboxConnectionError):
    """A mailbox operation was attempted without a live session."""


class PdfError(StatementExtractorError):
    """Base class for PDF open/extract failures."""


class PdfPasswordError(PdfError):
    """The PDF is encrypted and the supplied password did not unlock it."""


class PdfFormatError(PdfError):
    """The PDF bytes are corrupt or could not be parsed."""


class CacheError(StatementExtractorError):
    """Base class for credential cache persistence failures."""


class CacheWriteError(CacheError):
    """Failed to durably write the credential cache."""


class CacheCorruptedError(CacheError):
    """The persisted credential cache does not match the expected schema."""


class NoValidatedSendersError(StatementExtractorError):
    """Bulk extraction was requested but no sender passed password validation."""


class MessageParseError(StatementExtractorError):
    """Failed to parse a fetched RFC 822 message."""
