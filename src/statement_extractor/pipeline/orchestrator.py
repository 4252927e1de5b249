"""Two-phase extraction workflow: password validation, then incremental bulk extraction."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import TypeVar

from statement_extractor.config.settings import StatementExtractorSettings
from statement_extractor.core.attachments import AttachmentLocator
from statement_extractor.core.exceptions import (
    CacheWriteError,
    MailboxConnectionError,
    MessageParseError,
    NoValidatedSendersError,
    NotConnectedError,
    PdfError,
    PdfFormatError,
    PdfPasswordError,
)
from statement_extractor.core.mailbox_client import MailboxClient
from statement_extractor.core.models import (
    ExtractedEmailInfo,
    ExtractionProgress,
    ExtractionRecord,
    ExtractionState,
    PasswordAttempt,
    SenderExtractionResult,
    SenderInfo,
    SenderValidation,
)
from statement_extractor.core.pdf_extractor import PdfExtractor
from statement_extractor.storage.credential_cache import CredentialCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

PasswordPrompt = Callable[[SenderValidation], "str | None"]


class _ForeignSenderError(Exception):
    """The fetched message was sent by someone other than the sender being extracted."""


class ExtractionOrchestrator:
    """Drives the statement extraction workflow for a selection of senders.

    Phase 1 - Validate: per sender, fetch the latest statement email, download its
              first PDF and find a password that opens it (saved or user-supplied).
    Phase 2 - Extract:  per validated sender, sequentially fetch every statement email
              in the lookback window not yet in the ledger, extract its PDF text,
              and merge the results into the ledger before moving on.
    """

    def __init__(
        self,
        client: MailboxClient,
        cache: CredentialCache,
        *,
        settings: StatementExtractorSettings | None = None,
        locator: AttachmentLocator | None = None,
        extractor: PdfExtractor | None = None,
        on_progress: Callable[[ExtractionProgress], None] | None = None,
    ) -> None:
        self._settings = settings or StatementExtractorSettings()
        self._client = client
        self._cache = cache
        self._locator = locator or AttachmentLocator(client)
        self._extractor = extractor or PdfExtractor(
            row_bucket=self._settings.table_row_bucket,
            fragment_gap=self._settings.fragment_gap,
        )
        self._on_progress = on_progress
        self._progress = ExtractionProgress()
        self._cancel = threading.Event()

        # Phase 1 working set
        self._validations: list[SenderValidation] = []
        self._index = 0
        self._working_passwords: dict[str, str] = {}

    @property
    def on_progress(self) -> Callable[[ExtractionProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[ExtractionProgress], None] | None) -> None:
        self._on_progress = callback

    @property
    def progress(self) -> ExtractionProgress:
        return self._progress

    @property
    def state(self) -> ExtractionState:
        return self._progress.state

    def abort(self) -> None:
        """Request a stop. Phase 2 honours it between messages."""
        logger.info("Abort requested")
        self._cancel.set()
        if self._progress.state not in (
            ExtractionState.EXTRACTION_RUNNING,
            ExtractionState.EXTRACTION_COMPLETE,
        ):
            self._set_state(ExtractionState.ABORTED, "Aborted")

    # ---------- Phase 1: password validation ----------

    def begin_validation(self, senders: list[SenderInfo]) -> None:
        """Start Phase 1 for the given selection, in order."""
        self._cancel.clear()
        self._validations = [SenderValidation(sender=sender) for sender in senders]
        self._index = 0
        self._working_passwords = {}
        self._progress = ExtractionProgress(total=len(senders))
        self._set_state(ExtractionState.IDLE, f"{len(senders)} senders selected")

    @property
    def current(self) -> SenderValidation | None:
        if 0 <= self._index < len(self._validations):
            return self._validations[self._index]
        return None

    @property
    def validation_complete(self) -> bool:
        return self._index >= len(self._validations)

    @property
    def validations(self) -> list[SenderValidation]:
        return list(self._validations)

    @property
    def validated_senders(self) -> list[tuple[SenderInfo, str]]:
        """Validated senders with their working passwords, in selection order."""
        return [
            (v.sender, self._working_passwords[v.sender.email.lower()])
            for v in self._validations
            if v.is_validated and v.sender.email.lower() in self._working_passwords
        ]

    def load_current_sender(self) -> SenderValidation:
        """Fetch the current sender's latest statement and try its saved password.

        The returned validation is either PASSWORD_VALIDATED (saved password
        worked), PASSWORD_ENTRY_PENDING (ask the user), or carries ``error``
        with no PDF loaded (retry or skip).
        """
        validation = self.current
        if validation is None:
            raise IndexError("No sender left to validate")

        sender = validation.sender
        validation.state = ExtractionState.LOADING_EMAIL
        validation.email = validation.attachment = validation.pdf_data = None
        validation.password = validation.error = None
        self._progress.current_sender = sender.email
        self._set_state(
            ExtractionState.LOADING_EMAIL, f"Loading latest statement from {sender.display_name}"
        )

        try:
            if not self._client.ensure_connected():
                validation.error = "Not authenticated - please login again"
                return validation
            email = self._client.fetch_latest_from_sender(
                sender.email, self._settings.subject_term
            )
            if email is None or not email.attachments:
                validation.email = email
                validation.error = "No PDF attachment found"
                return validation

            attachment = email.attachments[0]
            data = self._locator.download_attachment(email, attachment)
        except (MailboxConnectionError, MessageParseError) as e:
            logger.error("Failed to load email for %s: %s", sender.email, e)
            validation.error = f"Failed to load email: {e}"
            return validation

        validation.email = email
        validation.attachment = attachment
        if data is None:
            validation.error = "Failed to download PDF attachment"
            return validation
        validation.pdf_data = data

        saved = self._cache.get_password(sender.email)
        if saved is not None and self._auto_validate(validation, saved):
            return validation

        validation.state = ExtractionState.PASSWORD_ENTRY_PENDING
        self._set_state(
            ExtractionState.PASSWORD_ENTRY_PENDING, f"Password needed for {sender.display_name}"
        )
        return validation

    def _auto_validate(self, validation: SenderValidation, saved: str) -> bool:
        sender = validation.sender
        validation.state = ExtractionState.AUTO_VALIDATING
        self._set_state(ExtractionState.AUTO_VALIDATING, f"Trying saved password for {sender.display_name}")

        try:
            opened = self._extractor.validate_password(validation.pdf_data or b"", saved)
        except PdfFormatError as e:
            validation.error = f"Failed to open PDF: {e}"
            return False

        if opened:
            self._mark_validated(validation, saved)
            logger.info("Saved password accepted for %s", sender.email)
            return True

        logger.info("Saved password for %s no longer works, clearing it", sender.email)
        self._working_passwords.pop(sender.email.lower(), None)
        try:
            self._cache.remove_password(sender.email)
        except CacheWriteError as e:
            logger.error("Could not remove stale password for %s: %s", sender.email, e)
        validation.error = "Saved password no longer works"
        return False

    def submit_password(self, password: str) -> PasswordAttempt:
        """Try a user-supplied password (empty means "not encrypted") on the current PDF."""
        validation = self.current
        if validation is None or validation.pdf_data is None:
            return PasswordAttempt.NO_DOCUMENT

        try:
            with self._extractor.open_document(validation.pdf_data, password) as doc:
                self._extractor.extract_all_text(doc)
        except PdfPasswordError:
            validation.error = "Incorrect password. Please try again."
            return PasswordAttempt.INCORRECT_PASSWORD
        except PdfFormatError as e:
            validation.error = f"Failed to open PDF: {e}"
            return PasswordAttempt.FAILED_TO_OPEN

        self._mark_validated(validation, password)
        try:
            self._cache.save_password(validation.sender.email, password)
        except CacheWriteError as e:
            logger.error("Password for %s validated but not saved: %s", validation.sender.email, e)
        return PasswordAttempt.VALIDATED

    def _mark_validated(self, validation: SenderValidation, password: str) -> None:
        validation.password = password
        validation.error = None
        validation.state = ExtractionState.PASSWORD_VALIDATED
        self._working_passwords[validation.sender.email.lower()] = password
        self._set_state(
            ExtractionState.PASSWORD_VALIDATED,
            f"Password validated for {validation.sender.display_name}",
        )

    def skip_current_sender(self) -> None:
        """Leave the current sender out of this run.

        Only the in-memory password is dropped; a saved one stays in the cache.
        """
        validation = self.current
        if validation is None:
            return
        validation.state = ExtractionState.SENDER_SKIPPED
        validation.password = None
        validation.pdf_data = None
        self._working_passwords.pop(validation.sender.email.lower(), None)
        self._set_state(ExtractionState.SENDER_SKIPPED, f"Skipped {validation.sender.display_name}")

    def retry_current_sender(self) -> SenderValidation:
        return self.load_current_sender()

    def advance(self) -> SenderValidation | None:
        """Move to the next sender; returns it, or None when the selection is done."""
        self._index += 1
        self._progress.processed = min(self._index, len(self._validations))
        return self.current

    def validate_senders(
        self, senders: list[SenderInfo], prompt: PasswordPrompt
    ) -> list[SenderInfo]:
        """Run Phase 1 start to finish.

        ``prompt`` is called whenever user input is needed, with the validation
        (its ``error`` explains the last failure). It returns a password to try,
        any string to retry a failed load, or None to skip the sender.

        Returns:
            The senders that were validated.
        """
        self.begin_validation(senders)

        while not self.validation_complete:
            if self._cancel.is_set():
                self._set_state(ExtractionState.ABORTED, "Aborted during password validation")
                return []

            validation = self.load_current_sender()
            while not validation.is_validated:
                answer = prompt(validation)
                if answer is None or self._cancel.is_set():
                    self.skip_current_sender()
                    break
                if validation.pdf_data is None:
                    validation = self.retry_current_sender()
                    continue
                self.submit_password(answer)
            self.advance()

        validated = [sender for sender, _ in self.validated_senders]
        if not validated:
            self._set_state(ExtractionState.ABORTED, "No senders validated, nothing to extract")
        else:
            logger.info("%d of %d senders validated", len(validated), len(senders))
        return validated

    # ---------- Phase 2: bulk extraction ----------

    def run_extraction(self, only_new: bool = False) -> list[SenderExtractionResult]:
        """Extract every validated sender's statements, one sender at a time.

        Args:
            only_new: Skip messages already recorded in the sender's ledger.

        Returns:
            One result per sender reached (fewer if aborted).

        Raises:
            NoValidatedSendersError: Phase 1 validated nobody.
            NotConnectedError: The session dropped and could not be re-established.
        """
        pairs = self.validated_senders
        if not pairs:
            self._set_state(ExtractionState.ABORTED, "No senders validated, nothing to extract")
            raise NoValidatedSendersError("No sender passed password validation")
        if self._cancel.is_set():
            logger.info("Extraction not started, run was aborted")
            return []
        return self._run(pairs, only_new)

    def extract_sender(
        self, sender: SenderInfo, password: str, only_new: bool = False
    ) -> SenderExtractionResult:
        """Phase 2 for a single sender with an already known password."""
        results = [] if self._cancel.is_set() else self._run([(sender, password)], only_new)
        if results:
            return results[0]
        return SenderExtractionResult(sender=sender, total_emails=0, success_count=0, fail_count=0)

    def _run(
        self, pairs: list[tuple[SenderInfo, str]], only_new: bool
    ) -> list[SenderExtractionResult]:
        self._progress = ExtractionProgress()
        self._set_state(ExtractionState.EXTRACTION_RUNNING, "Searching for statement emails...")

        since = (datetime.now(UTC) - timedelta(days=self._settings.lookback_days)).date()
        plans: list[tuple[SenderInfo, str, list[int], str | None]] = []

        try:
            for sender, password in pairs:
                uids, error = self._plan_sender(sender, only_new, since)
                plans.append((sender, password, uids, error))
                self._progress.total += len(uids)
            self._notify()

            results: list[SenderExtractionResult] = []
            for sender, password, uids, error in plans:
                if self._cancel.is_set():
                    break
                if error is not None:
                    results.append(
                        SenderExtractionResult(
                            sender=sender, total_emails=0, success_count=0, fail_count=0, error=error
                        )
                    )
                    continue
                results.append(self._extract_sender(sender, password, uids))
        except NotConnectedError as e:
            self._set_state(ExtractionState.ABORTED, f"Connection lost: {e}")
            raise

        if self._cancel.is_set():
            self._set_state(
                ExtractionState.ABORTED,
                f"Aborted after {self._progress.processed} of {self._progress.total} emails",
            )
        else:
            self._set_state(
                ExtractionState.EXTRACTION_COMPLETE,
                f"Done: {self._progress.succeeded} extracted, {self._progress.failed} failed",
            )
        return results

    def _plan_sender(
        self, sender: SenderInfo, only_new: bool, since: date
    ) -> tuple[list[int], str | None]:
        """Find the UIDs still to extract for one sender."""
        excluded = self._cache.get_extracted_message_keys(sender.email) if only_new else set()

        self._require_connection()
        try:
            uids = self._with_reconnect(
                lambda: self._client.search_by_from_and_subject(
                    sender.email, self._settings.subject_term, since
                )
            )
        except NotConnectedError:
            raise
        except MailboxConnectionError as e:
            logger.error("Search failed for %s: %s", sender.email, e)
            return [], f"Search failed: {e}"

        pending = [uid for uid in uids if self._client.message_key(uid) not in excluded]
        logger.info(
            "%s: %d statement emails, %d already extracted, %d to process",
            sender.email, len(uids), len(uids) - len(pending), len(pending),
        )
        return pending, None

    def _extract_sender(
        self, sender: SenderInfo, password: str, uids: list[int]
    ) -> SenderExtractionResult:
        extracted: dict[str, ExtractedEmailInfo] = {}
        success = 0
        failed = 0
        foreign = 0
        persist_error: str | None = None
        self._progress.current_sender = sender.email

        try:
            self._require_connection()
            for index, uid in enumerate(uids, start=1):
                if self._cancel.is_set():
                    logger.info("Stopping %s after %d of %d emails", sender.email, index - 1, len(uids))
                    break

                self._progress.status_text = (
                    f"Extracting {sender.display_name} ({index}/{len(uids)})"
                )
                self._notify()

                key = self._client.message_key(uid)
                try:
                    info = self._extract_message(sender, uid, password)
                except _ForeignSenderError as e:
                    logger.info("Skipping UID %d: %s", uid, e)
                    foreign += 1
                    self._progress.total -= 1
                    self._notify()
                    continue
                if info is None:
                    failed += 1
                    self._progress.failed += 1
                else:
                    extracted[key] = info
                    success += 1
                    self._progress.succeeded += 1
                self._progress.processed += 1
                self._notify()
        finally:
            persist_error = self._persist(sender, extracted)

        return SenderExtractionResult(
            sender=sender,
            total_emails=len(uids) - foreign,
            success_count=success,
            fail_count=failed,
            extracted_data=tuple(sorted(extracted.values(), key=lambda i: i.date, reverse=True)),
            persist_error=persist_error,
        )

    def _extract_message(
        self, sender: SenderInfo, uid: int, password: str
    ) -> ExtractedEmailInfo | None:
        """Fetch one message and extract its first PDF. None counts as a failure.

        Raises:
            _ForeignSenderError: The FROM search matched a different address.
        """
        try:
            fetched = self._with_reconnect(lambda: self._client.fetch_full_and_raw(uid))
        except NotConnectedError:
            raise
        except (MailboxConnectionError, MessageParseError) as e:
            logger.warning("Failed to fetch UID %d from %s: %s", uid, sender.email, e)
            return None

        if fetched is None:
            logger.warning("UID %d from %s no longer exists", uid, sender.email)
            return None

        message, raw = fetched
        if message.from_address != sender.email.lower():
            raise _ForeignSenderError(f"sent by {message.from_address}, not {sender.email}")
        if not message.attachments:
            logger.warning("UID %d from %s has no PDF attachment", uid, sender.email)
            return None

        attachment = message.attachments[0]
        data = self._locator.extract_attachment(raw, attachment)
        if data is None:
            return None

        try:
            content = self._extractor.extract(data, password)
        except PdfError as e:
            logger.warning("PDF extraction failed for UID %d from %s: %s", uid, sender.email, e)
            return None

        return ExtractedEmailInfo(
            subject=message.subject,
            date=message.date or datetime.now(UTC),
            pdf_filename=attachment.filename,
            extracted_text=content.text,
            page_count=content.page_count,
        )

    def _persist(self, sender: SenderInfo, extracted: dict[str, ExtractedEmailInfo]) -> str | None:
        """Merge this run's results into the ledger; returns an error message on failure."""
        if not extracted and self._cache.get_extraction_record(sender.email) is None:
            return None

        record = ExtractionRecord(
            sender_email=sender.email.lower(),
            sender_name=sender.name,
            extracted_emails=extracted,
            last_extraction_date=datetime.now(UTC),
        )
        attempts = 1 + max(0, self._settings.cache_write_retries)
        last_error: CacheWriteError | None = None
        for attempt in range(1, attempts + 1):
            try:
                self._cache.save_extraction_record(record)
                return None
            except CacheWriteError as e:
                last_error = e
                logger.warning(
                    "Ledger write for %s failed (attempt %d/%d): %s",
                    sender.email, attempt, attempts, e,
                )
        logger.error("Extraction results for %s were not saved: %s", sender.email, last_error)
        return str(last_error)

    # ---------- connection handling ----------

    def _require_connection(self) -> None:
        if not self._client.ensure_connected():
            raise NotConnectedError("Could not connect to the mail server")

    def _with_reconnect(self, operation: Callable[[], T]) -> T:
        """Run a mailbox operation, reconnecting and retrying once if the session failed."""
        try:
            return operation()
        except MailboxConnectionError as e:
            logger.warning("Mailbox operation failed (%s), reconnecting and retrying", e)
        self._require_connection()
        return operation()

    def _set_state(self, state: ExtractionState, status_text: str) -> None:
        self._progress.state = state
        self._progress.status_text = status_text
        self._notify()

    def _notify(self) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            self._on_progress(self._progress)
