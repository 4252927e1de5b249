"""Tests for ExtractedTextWriter: writes extracted text and PDFs to disk."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from statement_extractor.core.models import ExtractedEmailInfo, ExtractionRecord
from statement_extractor.storage.writer import ExtractedTextWriter


class TestWriteExtracted:
    """write_extracted() creates a .txt file with a header and the PDF text."""

    def test_filename_follows_pattern(
        self, tmp_output_dir: Path, sample_extracted: ExtractedEmailInfo
    ) -> None:
        writer = ExtractedTextWriter(tmp_output_dir)
        path = writer.write_extracted("4242:1017", sample_extracted)

        assert path.name == "2024-03-01_your-monthly-statement_4242-1017.txt"
        assert path.parent == tmp_output_dir

    def test_content_has_header_and_text(
        self, tmp_output_dir: Path, sample_extracted: ExtractedEmailInfo
    ) -> None:
        writer = ExtractedTextWriter(tmp_output_dir)
        content = writer.write_extracted("4242:1017", sample_extracted).read_text(encoding="utf-8")

        assert content.startswith("Subject: Your monthly statement\n")
        assert "PDF: statement.pdf" in content
        assert "Pages: 1" in content
        assert content.endswith(sample_extracted.extracted_text)

    def test_subdir_keeps_email_readable(
        self, tmp_output_dir: Path, sample_extracted: ExtractedEmailInfo
    ) -> None:
        writer = ExtractedTextWriter(tmp_output_dir)
        path = writer.write_extracted("1:2", sample_extracted, subdir="billing@bank.example")
        assert path.parent == tmp_output_dir / "billing_bank.example"


class TestWrite:
    def test_bytes_written_verbatim(self, tmp_output_dir: Path) -> None:
        writer = ExtractedTextWriter(tmp_output_dir)
        path = writer.write("statement.pdf", b"%PDF-1.4 data")
        assert path.read_bytes() == b"%PDF-1.4 data"

    def test_path_traversal_stripped(self, tmp_output_dir: Path) -> None:
        writer = ExtractedTextWriter(tmp_output_dir)
        path = writer.write("../../etc/passwd", "x")
        assert path.parent == tmp_output_dir
        assert path.name == "passwd"

    def test_creates_output_dir(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "out"
        ExtractedTextWriter(target)
        assert target.is_dir()


class TestExportRecord:
    def test_one_file_per_email(self, tmp_output_dir: Path) -> None:
        record = ExtractionRecord(
            sender_email="billing@bank.example",
            sender_name="Bank",
            extracted_emails={
                f"1:{day}": ExtractedEmailInfo(
                    subject=f"Statement {day}",
                    date=datetime(2024, day, 1, tzinfo=UTC),
                    pdf_filename="s.pdf",
                    extracted_text="text",
                    page_count=1,
                )
                for day in (1, 2, 3)
            },
        )
        paths = ExtractedTextWriter(tmp_output_dir).export_record(record)

        assert len(paths) == 3
        assert paths[0].name.startswith("2024-03-01")
        assert all(p.exists() for p in paths)


class TestSlugify:
    def test_basic(self) -> None:
        assert ExtractedTextWriter.slugify("Your Statement: March 2024!") == "your-statement-march-2024"

    def test_unicode_is_transliterated(self) -> None:
        assert ExtractedTextWriter.slugify("Kontoauszug März") == "kontoauszug-marz"

    def test_empty(self) -> None:
        assert ExtractedTextWriter.slugify("!!!") == "untitled"

    def test_max_length(self) -> None:
        assert len(ExtractedTextWriter.slugify("a" * 100)) == 50
