"""Minimal CLI entry point for manual runs of the Statement Extractor."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from collections.abc import Callable

from statement_extractor.config.settings import StatementExtractorSettings
from statement_extractor.core.attachments import AttachmentLocator
from statement_extractor.core.exceptions import CacheCorruptedError
from statement_extractor.core.mailbox_client import MailboxClient
from statement_extractor.core.models import (
    AttachmentInfo,
    EmailMessage,
    ExtractionProgress,
    ExtractionRecord,
    ExtractionState,
    SenderExtractionResult,
    SenderInfo,
    SenderValidation,
)
from statement_extractor.core.pdf_extractor import PdfExtractor
from statement_extractor.pipeline.aggregator import SenderAggregator
from statement_extractor.pipeline.orchestrator import ExtractionOrchestrator
from statement_extractor.storage.credential_cache import CredentialCache
from statement_extractor.storage.writer import ExtractedTextWriter


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: ExtractionProgress) -> None:
    """Print extraction progress to stdout."""
    if progress.state != ExtractionState.EXTRACTION_RUNNING:
        return
    print(
        f"[{progress.processed}/{progress.total}] "
        f"ok={progress.succeeded} failed={progress.failed} "
        f"{progress.status_text}",
        end="\r",
        flush=True,
    )


def make_password_prompt(
    read_password: Callable[[str], str] = getpass.getpass,
    read_line: Callable[[str], str] = input,
) -> Callable[[SenderValidation], str | None]:
    """Build the Phase 1 prompt callback.

    A freshly loaded PDF is first tried without a password; after that the
    user is asked, and an empty answer skips the sender.
    """
    tried_blank: set[str] = set()

    def prompt(validation: SenderValidation) -> str | None:
        name = validation.sender.display_name
        if validation.pdf_data is None:
            print(f"\n{name}: {validation.error or 'no statement loaded'}")
            answer = read_line("Retry? [y/N] ").strip().lower()
            return "" if answer in ("y", "yes") else None

        key = validation.sender.email.lower()
        if validation.error is None and key not in tried_blank:
            tried_blank.add(key)
            return ""

        if validation.error:
            print(f"\n{name}: {validation.error}")
        answer = read_password(f"PDF password for {name} (empty to skip): ")
        return answer or None

    return prompt


def select_senders(discovered: list[SenderInfo], requested: list[str] | None) -> list[SenderInfo]:
    """Pick the senders named on the command line, or every discovered sender."""
    if not requested:
        return list(discovered)
    by_email = {sender.email.lower(): sender for sender in discovered}
    return [by_email.get(email.lower(), SenderInfo(email=email.lower())) for email in requested]


def print_results(results: list[SenderExtractionResult]) -> None:
    print("\n\nExtraction summary:")
    for result in results:
        line = (
            f"  {result.sender.display_name:40s} "
            f"{result.success_count}/{result.total_emails} extracted, {result.fail_count} failed"
        )
        if result.error:
            line += f"  [error: {result.error}]"
        if result.persist_error:
            line += f"  [not saved: {result.persist_error}]"
        print(line)


def format_sender(sender: SenderInfo, record: ExtractionRecord | None) -> str:
    """One line of the senders listing, with how much is already extracted."""
    history = f"{record.total_pdfs_extracted} extracted" if record else "no history"
    return f"  {sender.message_count:4d}  {sender.email:40s} {history:16s} {sender.name}"


def print_email_details(email: EmailMessage) -> None:
    """Print the headers, body and numbered PDF attachments of a message."""
    print(f"\nSubject: {email.subject}")
    from_line = f"{email.from_name} <{email.from_address}>" if email.from_name else email.from_address
    print(f"From:    {from_line}")
    if email.date is not None:
        print(f"Date:    {email.date:%Y-%m-%d %H:%M %Z}")
    print(f"\n{email.body_text.strip() or '(no text body)'}\n")
    print(f"Attachments ({len(email.attachments)}):")
    for number, attachment in enumerate(email.attachments, start=1):
        print(
            f"  [{number}] {attachment.filename}  "
            f"part {attachment.part_path}, {attachment.size_bytes} bytes"
        )


def pick_attachment(email: EmailMessage, number: int) -> AttachmentInfo:
    """The 1-based ``number``-th PDF attachment of ``email``.

    Raises:
        ValueError: If the message has no such attachment.
    """
    if not 1 <= number <= len(email.attachments):
        raise ValueError(
            f"Attachment {number} does not exist, message has {len(email.attachments)}"
        )
    return email.attachments[number - 1]


def _connect(settings: StatementExtractorSettings) -> MailboxClient:
    """Log in with the configured account, asking for the app password if unset."""
    address = settings.email_address or input("Email address: ").strip()
    secret = settings.app_password or getpass.getpass(f"App password for {address}: ")

    client = MailboxClient.from_settings(settings)
    if not client.authenticate(address, secret):
        print(f"Error: {client.last_error}", file=sys.stderr)
        sys.exit(1)
    return client


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Statement Extractor - Extract text from statement PDFs in your mailbox"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # senders command
    subparsers.add_parser("senders", help="List senders of statement emails with PDFs")

    # extract command
    extract_parser = subparsers.add_parser("extract", help="Validate passwords and extract PDFs")
    extract_parser.add_argument(
        "--sender", "-s", action="append", dest="senders",
        help="Sender email to include (repeatable, default: all discovered)",
    )
    extract_parser.add_argument(
        "--only-new", action="store_true", dest="only_new",
        help="Skip emails already in the extraction history",
    )
    extract_parser.add_argument(
        "--export", action="store_true", help="Write extracted text files afterwards"
    )

    # history command
    subparsers.add_parser("history", help="Show extraction history per sender")

    # clear command
    clear_parser = subparsers.add_parser("clear", help="Forget saved passwords and history")
    clear_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    # export command
    export_parser = subparsers.add_parser("export", help="Write extracted text to the output dir")
    export_parser.add_argument("--sender", "-s", help="Only export this sender")

    # show-pdf command
    show_parser = subparsers.add_parser("show-pdf", help="Print the latest statement PDF of a sender")
    show_parser.add_argument("sender", help="Sender email address")
    show_parser.add_argument("--tables", action="store_true", help="Also print detected tables")
    show_parser.add_argument("--save", action="store_true", help="Save the PDF to the output dir")
    show_parser.add_argument(
        "--attachment", "-a", type=int, default=1,
        help="Which PDF attachment to open, as numbered by show-email (default: 1)",
    )

    # show-email command
    email_parser = subparsers.add_parser(
        "show-email", help="Show the latest statement email of a sender and its attachments"
    )
    email_parser.add_argument("sender", help="Sender email address")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = StatementExtractorSettings()
    setup_logging(settings.log_level)
    settings.ensure_directories()

    try:
        cache = CredentialCache(settings.cache_path)
    except CacheCorruptedError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    writer = ExtractedTextWriter(settings.output_dir)

    if args.command == "history":
        history = cache.get_extraction_history()
        print(f"\nExtraction history for {len(history)} senders:")
        for record in sorted(history, key=lambda r: r.last_extraction_date, reverse=True):
            print(
                f"  {record.sender_email:40s} {record.total_pdfs_extracted:5d} PDFs  "
                f"last run {record.last_extraction_date:%Y-%m-%d %H:%M}"
            )
        return

    if args.command == "clear":
        if not args.yes and input("Delete all saved passwords and history? [y/N] ").strip().lower() != "y":
            print("Cancelled")
            return
        cache.clear_all_data()
        print("Cleared all saved passwords and extraction history")
        return

    if args.command == "export":
        records = cache.get_extraction_history()
        if args.sender:
            records = [r for r in records if r.sender_email == args.sender.lower()]
        count = sum(len(writer.export_record(record)) for record in records)
        print(f"\nExported {count} files to {settings.output_dir}")
        return

    client = _connect(settings)
    orchestrator: ExtractionOrchestrator | None = None

    try:
        if args.command == "senders":
            senders = SenderAggregator(client, settings.subject_term).discover_senders()
            print(f"\nFound {len(senders)} senders:\n")
            for sender in senders:
                print(format_sender(sender, cache.get_extraction_record(sender.email)))

        elif args.command == "extract":
            discovered = [] if args.senders else SenderAggregator(
                client, settings.subject_term
            ).discover_senders()
            selection = select_senders(discovered, args.senders)
            if not selection:
                print("\nNo senders to process")
                return

            orchestrator = ExtractionOrchestrator(
                client, cache, settings=settings, on_progress=on_progress
            )
            validated = orchestrator.validate_senders(selection, make_password_prompt())
            if not validated:
                print("\nNo sender passwords validated, nothing to extract")
                return

            results = orchestrator.run_extraction(only_new=args.only_new)
            print_results(results)

            if args.export:
                for result in results:
                    record = cache.get_extraction_record(result.sender.email)
                    if record:
                        writer.export_record(record)
                print(f"\nText written to {settings.output_dir}")

        elif args.command == "show-pdf":
            extractor = PdfExtractor(
                row_bucket=settings.table_row_bucket, fragment_gap=settings.fragment_gap
            )
            email = client.fetch_latest_from_sender(args.sender, settings.subject_term)
            if email is None or not email.attachments:
                print(f"\nNo statement PDF found from {args.sender}")
                sys.exit(1)

            attachment = pick_attachment(email, args.attachment)
            data = AttachmentLocator(client).download_attachment(email, attachment)
            if data is None:
                print("\nFailed to download PDF attachment", file=sys.stderr)
                sys.exit(1)

            password = cache.get_password(args.sender) or ""
            if not extractor.validate_password(data, password):
                password = getpass.getpass(f"PDF password for {args.sender}: ")
            content = extractor.extract(data, password, with_tables=args.tables)

            print(f"\n{email.subject} ({attachment.filename}, {content.page_count} pages)\n")
            print(content.text)
            for table in content.tables:
                print(f"\nTable on page {table.page_number}:")
                for row in table.rows:
                    print("  | " + " | ".join(row))

            if args.save:
                path = writer.write(attachment.filename, data, subdir=args.sender.lower())
                print(f"\nSaved PDF to {path}")

        elif args.command == "show-email":
            email = client.fetch_latest_from_sender(args.sender, settings.subject_term)
            if email is None:
                print(f"\nNo statement email found from {args.sender}")
                sys.exit(1)
            print_email_details(email)

    except KeyboardInterrupt:
        if orchestrator is not None:
            orchestrator.abort()
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
