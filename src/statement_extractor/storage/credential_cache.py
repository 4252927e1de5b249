"""Durable per-sender password map and extraction ledger, stored as one JSON document."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from statement_extractor.core.exceptions import CacheCorruptedError, CacheWriteError
from statement_extractor.core.models import ExtractionRecord
from statement_extractor.storage.schema import CacheDocument, ExtractionRecordModel

logger = logging.getLogger(__name__)


class CredentialCache:
    """Persists sender passwords and extraction records across runs.

    Both maps are keyed by lowercased sender email. Every mutation rewrites the
    document to a temporary file and swaps it into place, so a crash mid-write
    leaves the previous file intact. This class is the only writer of that file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._passwords: dict[str, str] = {}
        self._history: dict[str, ExtractionRecord] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """(Re)load the document from disk. A missing file means empty state.

        Raises:
            CacheCorruptedError: If the file is unreadable or fails validation.
        """
        with self._lock:
            if not self._path.exists():
                self._passwords = {}
                self._history = {}
                return

            try:
                document = CacheDocument.model_validate_json(
                    self._path.read_text(encoding="utf-8")
                )
            except (OSError, UnicodeDecodeError) as e:
                raise CacheCorruptedError(f"Cannot read cache {self._path}: {e}") from e
            except ValidationError as e:
                raise CacheCorruptedError(f"Cache {self._path} failed validation: {e}") from e

            self._passwords = {k.lower(): v for k, v in document.passwords.items()}
            self._history = {}
            for model in document.extraction_history:
                record = model.to_domain()
                existing = self._history.get(record.sender_email)
                self._history[record.sender_email] = (
                    existing.merged_with(record) if existing else record
                )
            logger.debug(
                "Loaded %d passwords and %d extraction records from %s",
                len(self._passwords), len(self._history), self._path,
            )

    # ---------- passwords ----------

    def get_password(self, sender_email: str) -> str | None:
        with self._lock:
            return self._passwords.get(sender_email.lower())

    def get_passwords(self) -> dict[str, str]:
        with self._lock:
            return dict(self._passwords)

    def save_password(self, sender_email: str, password: str) -> None:
        """Upsert a sender's password and persist immediately."""
        key = sender_email.lower()

        def apply() -> None:
            self._passwords[key] = password

        self._mutate(apply)

    def remove_password(self, sender_email: str) -> None:
        key = sender_email.lower()
        with self._lock:
            if key not in self._passwords:
                return

            def apply() -> None:
                self._passwords.pop(key, None)

            self._mutate(apply)

    # ---------- extraction ledger ----------

    def get_extraction_record(self, sender_email: str) -> ExtractionRecord | None:
        with self._lock:
            return self._history.get(sender_email.lower())

    def get_extracted_message_keys(self, sender_email: str) -> set[str]:
        """Keys of messages already extracted for this sender (empty if none)."""
        record = self.get_extraction_record(sender_email)
        return set(record.extracted_emails) if record else set()

    def get_extraction_history(self) -> list[ExtractionRecord]:
        with self._lock:
            return list(self._history.values())

    def save_extraction_record(self, record: ExtractionRecord) -> ExtractionRecord:
        """Merge ``record`` into the ledger and persist.

        Entries are unioned by message key (incoming wins on collision), the
        incoming ``last_extraction_date`` is kept, and the total is recomputed.

        Returns:
            The merged record as stored.
        """
        key = record.sender_email.lower()
        merged: list[ExtractionRecord] = []

        def apply() -> None:
            existing = self._history.get(key)
            if existing is None:
                stored = ExtractionRecord(
                    sender_email=key,
                    sender_name=record.sender_name,
                    extracted_emails=dict(record.extracted_emails),
                    last_extraction_date=record.last_extraction_date,
                )
            else:
                stored = existing.merged_with(record)
            self._history[key] = stored
            merged.append(stored)

        self._mutate(apply)
        logger.info(
            "Saved extraction record for %s (%d PDFs total)", key, merged[0].total_pdfs_extracted
        )
        return merged[0]

    def clear_all_data(self) -> None:
        """Forget every password and extraction record."""

        def apply() -> None:
            self._passwords.clear()
            self._history.clear()

        self._mutate(apply)
        logger.info("Cleared all cached passwords and extraction history")

    # ---------- persistence ----------

    def _mutate(self, apply: Callable[[], None]) -> None:
        """Apply an in-memory change and persist it; roll back if the write fails."""
        with self._lock:
            passwords = dict(self._passwords)
            history = dict(self._history)
            apply()
            try:
                self._write()
            except CacheWriteError:
                self._passwords = passwords
                self._history = history
                raise

    def _write(self) -> None:
        document = CacheDocument(
            passwords=self._passwords,
            extraction_history=[
                ExtractionRecordModel.from_domain(record) for record in self._history.values()
            ],
        )
        payload = document.model_dump_json(indent=2)

        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as e:
            raise CacheWriteError(f"Failed to write cache {self._path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp file %s", tmp_name)
