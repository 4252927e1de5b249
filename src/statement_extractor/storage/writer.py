"""File sink for extracted statement text and raw PDF attachments."""

from __future__ import annotations

import logging
import re
import unicodedata
from pathlib import Path

from statement_extractor.core.models import ExtractedEmailInfo, ExtractionRecord

logger = logging.getLogger(__name__)


class ExtractedTextWriter:
    """Write extracted text and attachment bytes under one output directory."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir
        self._output_dir.mkdir(parents=True, exist_ok=True)

    def write(self, filename: str, content: bytes | str, *, subdir: str = "") -> Path:
        """Save content as-is under the output directory.

        Returns:
            Path to the written file.
        """
        target_dir = self._output_dir / self._safe_filename(subdir) if subdir else self._output_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        filepath = target_dir / self._safe_filename(filename)

        if isinstance(content, bytes):
            filepath.write_bytes(content)
        else:
            filepath.write_text(content, encoding="utf-8")
        logger.debug("Wrote %s", filepath)
        return filepath

    def write_extracted(self, message_key: str, info: ExtractedEmailInfo, *, subdir: str = "") -> Path:
        """Write one extracted email's text.

        File naming: {date}_{slug}_{key}.txt
        Example: 2024-01-15_monthly-statement_4242-1017.txt
        """
        date_str = info.date.strftime("%Y-%m-%d")
        slug = self.slugify(info.subject)
        key = re.sub(r"[^\w-]", "-", message_key)
        header = "\n".join(
            [
                f"Subject: {info.subject}",
                f"Date: {info.date.isoformat()}",
                f"PDF: {info.pdf_filename}",
                f"Pages: {info.page_count}",
                "",
                "",
            ]
        )
        return self.write(f"{date_str}_{slug}_{key}.txt", header + info.extracted_text, subdir=subdir)

    def export_record(self, record: ExtractionRecord) -> list[Path]:
        """Write every extracted email of a sender into its own subdirectory."""
        paths = [
            self.write_extracted(key, info, subdir=record.sender_email)
            for key, info in sorted(
                record.extracted_emails.items(), key=lambda item: item[1].date, reverse=True
            )
        ]
        logger.info("Exported %d extracted emails for %s", len(paths), record.sender_email)
        return paths

    @staticmethod
    def _safe_filename(filename: str) -> str:
        name = Path(filename).name.strip().lstrip(".")
        return re.sub(r"[^\w.\- ]", "_", name) or "untitled"

    @staticmethod
    def slugify(text: str, max_length: int = 50) -> str:
        """Convert text to a filesystem-safe slug.

        Args:
            text: Input text (typically email subject).
            max_length: Maximum slug length.

        Returns:
            Lowercase, hyphenated, ASCII-safe slug.
        """
        # Normalize unicode characters
        text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
        # Lowercase and replace non-alphanum with hyphens
        text = re.sub(r"[^\w\s-]", "", text.lower())
        text = re.sub(r"[-\s]+", "-", text).strip("-")
        return text[:max_length] if text else "untitled"
