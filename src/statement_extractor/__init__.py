"""Statement Extractor - Find statement emails over IMAP and extract their PDF text."""

from statement_extractor.core.models import (
    AttachmentInfo,
    EmailMessage,
    ExtractedEmailInfo,
    ExtractionProgress,
    ExtractionRecord,
    ExtractionState,
    PasswordAttempt,
    PdfContent,
    SenderExtractionResult,
    SenderInfo,
    SenderValidation,
)
from statement_extractor.pipeline.aggregator import SenderAggregator
from statement_extractor.pipeline.orchestrator import ExtractionOrchestrator

__all__ = [
    "AttachmentInfo",
    "EmailMessage",
    "ExtractedEmailInfo",
    "ExtractionOrchestrator",
    "ExtractionProgress",
    "ExtractionRecord",
    "ExtractionState",
    "PasswordAttempt",
    "PdfContent",
    "SenderAggregator",
    "SenderExtractionResult",
    "SenderInfo",
    "SenderValidation",
]
